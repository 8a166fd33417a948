"""Per-action inference settings."""

from config.defaults import DEFAULTS

_FAST_MODEL = "claude-haiku-4-5-20251001"

AGENT_CONFIG = {
    "blueprint": {"model": DEFAULTS["model"], "max_tokens": 8192, "temperature": 0.7},
    "phase_generation": {"model": DEFAULTS["model"], "max_tokens": 8192, "temperature": 0.5},
    "phase_implementation": {"model": DEFAULTS["model"], "max_tokens": DEFAULTS["max_tokens"], "temperature": 0.2},
    "realtime_code_fixer": {"model": DEFAULTS["model"], "max_tokens": 16384, "temperature": 0.2},
    "diff_fixer": {"model": _FAST_MODEL, "max_tokens": 8192, "temperature": 0.1},
    "file_regeneration": {"model": DEFAULTS["model"], "max_tokens": 16384, "temperature": 0.2},
    "code_review": {"model": DEFAULTS["model"], "max_tokens": 8192, "temperature": 0.2},
    "project_setup": {"model": _FAST_MODEL, "max_tokens": 2048, "temperature": 0.1},
    "conversation": {"model": _FAST_MODEL, "max_tokens": 4096, "temperature": 0.4},
}


def get_model_config(action):
    """Return the settings for an action, falling back to the default model."""
    return AGENT_CONFIG.get(
        action,
        {"model": DEFAULTS["model"], "max_tokens": DEFAULTS["max_tokens"], "temperature": 0.2},
    )
