"""Minimal unified-diff application for streamed file patches."""

import re

_HUNK_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


class UnifiedDiffError(ValueError):
    """Raised when a hunk cannot be located in the original text."""


def _parse_hunks(diff_text):
    hunks = []
    current = None
    for line in diff_text.split("\n"):
        m = _HUNK_RE.match(line)
        if m:
            current = {"old_start": int(m.group(1)), "lines": []}
            hunks.append(current)
            continue
        if current is None or line.startswith(("--- ", "+++ ")):
            continue
        if line.startswith("\\"):
            # "\ No newline at end of file"
            continue
        if line == "":
            current["lines"].append((" ", ""))
        elif line[0] in " -+":
            current["lines"].append((line[0], line[1:]))
        else:
            raise UnifiedDiffError(f"Unexpected line in hunk: {line!r}")
    for hunk in hunks:
        # Trailing blank context lines are usually an artifact of the stream.
        while hunk["lines"] and hunk["lines"][-1] == (" ", ""):
            hunk["lines"].pop()
    return hunks


def _locate(lines, old, expected):
    """Find ``old`` in ``lines``, scanning outward from ``expected``."""
    if not old:
        return min(max(expected, 0), len(lines))
    n = len(old)
    limit = len(lines) - n
    for offset in range(0, len(lines) + 1):
        for pos in (expected - offset, expected + offset):
            if 0 <= pos <= limit and lines[pos:pos + n] == old:
                return pos
    return -1


def apply_unified_diff(original, diff_text):
    """Apply a unified diff to ``original`` and return the new text.

    Hunks may be offset from their declared line numbers. Raises
    UnifiedDiffError if the diff has no hunks or a hunk's context is missing.
    """
    hunks = _parse_hunks(diff_text or "")
    if not hunks:
        raise UnifiedDiffError("Diff contains no hunks")

    lines = original.split("\n") if original else []
    shift = 0
    for hunk in hunks:
        old = [text for op, text in hunk["lines"] if op in (" ", "-")]
        new = [text for op, text in hunk["lines"] if op in (" ", "+")]
        expected = max(hunk["old_start"] - 1, 0) + shift
        pos = _locate(lines, old, expected)
        if pos < 0:
            raise UnifiedDiffError(f"Hunk at line {hunk['old_start']} does not match the original")
        lines[pos:pos + len(old)] = new
        shift += len(new) - len(old)
    return "\n".join(lines)
