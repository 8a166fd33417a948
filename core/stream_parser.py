"""Streaming parser for the heredoc-style code output format.

The model writes files as shell heredocs so that file boundaries are
unambiguous even mid-stream::

    # File: src/App.tsx
    # Purpose: Root component
    cat > src/App.tsx << 'EOF'
    ...full file content...
    EOF

    cat << 'EOF' | patch src/lib/utils.ts
    --- a/src/lib/utils.ts
    +++ b/src/lib/utils.ts
    @@ -1,3 +1,3 @@
    ...
    EOF

    bun add zustand

Anything outside a heredoc that looks like a shell command is collected as
an install command. Parsing is line based, so markers split across chunks
are buffered until their line is complete.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from config.rules import clean_command, looks_like_command
from core.state import GeneratedFile
from core.unified_diff import UnifiedDiffError, apply_unified_diff

logger = logging.getLogger(__name__)

FULL_CONTENT = "full_content"
UNIFIED_DIFF = "unified_diff"

_FULL_OPEN_RE = re.compile(r"""^cat\s+>\s*['"]?([^'"\s]+)['"]?\s+<<-?\s*['"]?(\w+)['"]?\s*$""")
_DIFF_OPEN_RE = re.compile(
    r"""^cat\s+<<-?\s*['"]?(\w+)['"]?\s*\|\s*patch\s+(?:-p\d\s+)?['"]?([^'"\s]+)['"]?\s*$"""
)
_FILE_HEADER_RE = re.compile(r"^#\s*File:\s*(\S+)\s*$")
_PURPOSE_RE = re.compile(r"^#\s*Purpose:\s*(.*?)\s*$")
_FENCE_RE = re.compile(r"^\s*```")


@dataclass
class OpenFile:
    path: str
    format: str
    delimiter: str
    purpose: str = ""
    lines: list[str] = field(default_factory=list)


@dataclass
class ParsingState:
    buffer: str = ""                                   # trailing partial line
    completed_files: dict = field(default_factory=dict)    # path -> GeneratedFile
    current_file: OpenFile | None = None
    pending_purpose: str = ""
    extracted_install_commands: list[str] = field(default_factory=list)


def _noop(*args, **kwargs):
    return None


def _strip_fences(lines):
    """Remove one enclosing ``` fence pair, if present."""
    trimmed = list(lines)
    while trimmed and not trimmed[-1].strip():
        trimmed.pop()
    if len(trimmed) >= 2 and _FENCE_RE.match(trimmed[0]) and trimmed[-1].strip() == "```":
        return trimmed[1:-1]
    return lines


def _finalize(state, open_file, on_file_close, resolve_original):
    body = _strip_fences(open_file.lines)
    if open_file.format == UNIFIED_DIFF:
        previous = state.completed_files.get(open_file.path)
        if previous is not None:
            original = previous.file_contents
        else:
            original = resolve_original(open_file.path) or ""
        try:
            content = apply_unified_diff(original, "\n".join(body))
        except UnifiedDiffError as e:
            logger.warning("Dropping unusable diff for %s: %s", open_file.path, e)
            return
    else:
        content = "\n".join(body) + "\n" if body else ""

    generated = GeneratedFile(
        file_path=open_file.path,
        file_contents=content,
        file_purpose=open_file.purpose,
    )
    state.completed_files[open_file.path] = generated
    on_file_close(generated)


def _handle_line(line, state, on_file_open, on_file_close, resolve_original, pending_chunk):
    current = state.current_file
    if current is not None:
        if line.strip() == current.delimiter:
            if pending_chunk:
                pending_chunk.flush()
            state.current_file = None
            _finalize(state, current, on_file_close, resolve_original)
        else:
            current.lines.append(line)
            pending_chunk.add(current.path, line, current.format)
        return

    stripped = line.strip()
    m = _FULL_OPEN_RE.match(stripped)
    if m:
        path, delimiter, fmt = m.group(1), m.group(2), FULL_CONTENT
    else:
        m = _DIFF_OPEN_RE.match(stripped)
        if m:
            delimiter, path, fmt = m.group(1), m.group(2), UNIFIED_DIFF
        else:
            path = None

    if path:
        state.current_file = OpenFile(path=path, format=fmt, delimiter=delimiter,
                                      purpose=state.pending_purpose)
        state.pending_purpose = ""
        on_file_open(path)
        return

    pm = _PURPOSE_RE.match(stripped)
    if pm:
        state.pending_purpose = pm.group(1)
        return
    if _FILE_HEADER_RE.match(stripped) or _FENCE_RE.match(stripped):
        return
    if stripped == "EOF" or not stripped:
        # Stray close marker with no open file.
        return
    if looks_like_command(stripped):
        command = clean_command(stripped)
        if command not in state.extracted_install_commands:
            state.extracted_install_commands.append(command)


class _ChunkBatcher:
    """Groups consecutive content lines of one file into a single chunk event."""

    def __init__(self, on_file_chunk):
        self._emit = on_file_chunk
        self._path = None
        self._format = None
        self._parts = []

    def add(self, path, line, fmt):
        if self._path is not None and self._path != path:
            self.flush()
        self._path, self._format = path, fmt
        self._parts.append(line + "\n")

    def flush(self):
        if self._parts:
            self._emit(self._path, "".join(self._parts), self._format)
        self._path, self._format, self._parts = None, None, []

    def __bool__(self):
        return bool(self._parts)


def parse_streaming_chunks(chunk, state, on_file_open=None, on_file_chunk=None,
                           on_file_close=None, resolve_original=None):
    """Feed one chunk of model output into ``state``.

    Callbacks:
        on_file_open(path): as soon as an open marker line is complete.
        on_file_chunk(path, text, format): content lines of the open file.
        on_file_close(GeneratedFile): after the close marker, with the final
            content (diffs already applied).
        resolve_original(path) -> str | None: last known content for diffs.

    Returns the same ``state`` object for chaining.
    """
    on_file_open = on_file_open or _noop
    on_file_close = on_file_close or _noop
    resolve_original = resolve_original or _noop
    batcher = _ChunkBatcher(on_file_chunk or _noop)

    data = state.buffer + (chunk or "")
    lines = data.split("\n")
    state.buffer = lines.pop()
    for line in lines:
        _handle_line(line.rstrip("\r"), state, on_file_open, on_file_close, resolve_original, batcher)
    batcher.flush()
    return state


def finish(state, on_file_open=None, on_file_chunk=None, on_file_close=None, resolve_original=None):
    """Flush the trailing partial line and drop any file left unclosed."""
    if state.buffer:
        tail, state.buffer = state.buffer, ""
        parse_streaming_chunks(tail + "\n", state, on_file_open, on_file_chunk,
                               on_file_close, resolve_original)
    if state.current_file is not None:
        logger.warning("Stream ended inside %s; file dropped", state.current_file.path)
        state.current_file = None
    return state


def deserialize(text, resolve_original=None):
    """Parse a complete response. Returns (list of GeneratedFile, commands)."""
    state = ParsingState()
    parse_streaming_chunks(text, state, resolve_original=resolve_original)
    finish(state, resolve_original=resolve_original)
    return list(state.completed_files.values()), list(state.extracted_install_commands)


def serialize(files):
    """Render files in the heredoc format, e.g. to show the codebase to the model."""
    parts = []
    for f in files:
        header = f"# File: {f.file_path}\n"
        if f.file_purpose:
            header += f"# Purpose: {f.file_purpose}\n"
        delimiter = "EOF"
        while any(line.strip() == delimiter for line in f.file_contents.split("\n")):
            delimiter += "_"
        body = f.file_contents if f.file_contents.endswith("\n") or not f.file_contents else f.file_contents + "\n"
        parts.append(f"{header}cat > {f.file_path} << '{delimiter}'\n{body}{delimiter}\n")
    return "\n".join(parts)


def format_instructions():
    return (
        "Write every file as a shell heredoc.\n"
        "For a new file or a full rewrite:\n"
        "# File: <path>\n"
        "# Purpose: <one line>\n"
        "cat > <path> << 'EOF'\n"
        "<entire file content>\n"
        "EOF\n\n"
        "For a small change to an existing file, use a unified diff:\n"
        "cat << 'EOF' | patch <path>\n"
        "--- a/<path>\n"
        "+++ b/<path>\n"
        "@@ -<line>,<count> +<line>,<count> @@\n"
        "<diff lines>\n"
        "EOF\n\n"
        "Put dependency installs on their own lines outside any heredoc, e.g. `bun add <pkg>`.\n"
        "Do not wrap the output in markdown code fences."
    )
