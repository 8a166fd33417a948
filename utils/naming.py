"""Naming utilities: slugs, sandbox project names, webhook URLs, path containment."""

import os
import re

MAX_SLUG = 40


def slugify(text):
    """Convert text to a lowercase, dash-separated slug."""
    text = text.lower().strip()
    text = re.sub(r"[^\w\s-]", "", text)
    text = re.sub(r"[\s_-]+", "-", text)
    return text.strip("-")[:MAX_SLUG].strip("-")


def sandbox_project_name(state):
    """Unique instance name: v1-<project slug>-<last 6 of the session id>."""
    base = slugify(state.blueprint.project_name or state.template.name or "project") or "project"
    suffix = slugify(state.session_id)[-6:]
    return f"v1-{base}-{suffix}"


def webhook_url(hostname, session_id, event_type="runtime_error"):
    """Per-session callback URL handed to the sandbox on instance creation."""
    proto = "http" if hostname.startswith(("localhost", "127.0.0.1")) else "https"
    return f"{proto}://{hostname}/api/webhook/sandbox/{session_id}/{event_type}"


def check_containment(base_dir, relative_path):
    """Resolve relative_path under base_dir, refusing paths that escape it."""
    full_path = os.path.join(base_dir, relative_path)
    resolved = os.path.realpath(full_path)
    if not resolved.startswith(os.path.realpath(base_dir) + os.sep):
        raise ValueError(f"Path escapes output directory: {relative_path}")
    return resolved
