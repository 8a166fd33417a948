"""Command, fixer and static-analysis rules."""

import re

# Files the realtime fixer never touches. Matched against the lowercased path.
FIXER_SKIP_SUFFIXES = (
    ".css",
    ".scss",
    ".json",
    ".md",
    ".svg",
    ".lock",
    ".config.js",
    ".config.ts",
    ".config.mjs",
    ".config.cjs",
    ".d.ts",
)

# First token of a line that marks it as a shell command in model output.
COMMAND_PREFIXES = (
    "bun", "bunx", "npm", "npx", "yarn", "pnpm", "pip", "node",
    "git", "mkdir", "cd", "rm", "cp", "mv", "touch", "echo",
)

# Package manager the sandbox actually runs.
PACKAGE_MANAGER = "bun"

# A runtime error containing this text means the sandbox itself is broken.
CORRUPTED_SANDBOX_MARKER = "Unterminated string in JSON at position"

# TypeScript diagnostics handled without the LLM.
MODULE_NOT_FOUND = "TS2307"
NO_DEFAULT_EXPORT = ("TS1192", "TS2613")
NO_NAMED_EXPORT = "TS2614"

EXTERNAL_PACKAGE_RE = re.compile(r'External package "(.+?)"')

_BULLET_RE = re.compile(r"^\s*(?:[-*]\s+|\d+\.\s+|\$\s+)")


def looks_like_command(line):
    """Return True if a line reads like a shell command."""
    text = _BULLET_RE.sub("", line).strip()
    if not text or text.startswith("#"):
        return False
    head = text.split()[0]
    return head in COMMAND_PREFIXES


def clean_command(line):
    """Strip list bullets and prompts, and route npm through the sandbox's package manager."""
    text = _BULLET_RE.sub("", line).strip()
    if text.startswith("npm "):
        text = PACKAGE_MANAGER + text[3:]
    return text


def should_skip_fixer(path):
    return path.lower().endswith(FIXER_SKIP_SUFFIXES)
