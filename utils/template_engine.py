"""Prompt template engine using string.Template for safe rendering."""

import os
from string import Template


def get_prompts_dir():
    """Return the absolute path to the prompt templates directory."""
    return os.path.join(os.path.dirname(os.path.dirname(__file__)), "agents", "prompts")


def load_prompt(name):
    """Load a prompt file (without the .txt suffix) and return its contents."""
    prompts_dir = get_prompts_dir()
    resolved = os.path.realpath(os.path.join(prompts_dir, f"{name}.txt"))
    if not resolved.startswith(os.path.realpath(prompts_dir) + os.sep):
        raise ValueError(f"Prompt path escapes prompts directory: {name}")
    with open(resolved, "r") as f:
        return f.read()


def render_prompt(name, variables):
    """Load and render a prompt with the given variables.

    Uses string.Template for safe substitution - unknown placeholders
    are left as-is rather than raising errors.
    """
    return Template(load_prompt(name)).safe_substitute(variables)
