"""Tests for core.stream_parser and core.unified_diff."""

import pytest

from core.state import GeneratedFile
from core.stream_parser import (
    FULL_CONTENT,
    UNIFIED_DIFF,
    ParsingState,
    deserialize,
    finish,
    parse_streaming_chunks,
    serialize,
)
from core.unified_diff import UnifiedDiffError, apply_unified_diff


class _Recorder:
    def __init__(self):
        self.opened = []
        self.chunks = []
        self.closed = []

    def feed(self, state, chunk, resolve_original=None):
        return parse_streaming_chunks(
            chunk, state,
            on_file_open=self.opened.append,
            on_file_chunk=lambda path, text, fmt: self.chunks.append((path, text, fmt)),
            on_file_close=self.closed.append,
            resolve_original=resolve_original,
        )


# ---------------------------------------------------------------------------
# Full-content files
# ---------------------------------------------------------------------------

def test_file_split_across_chunks():
    rec = _Recorder()
    state = ParsingState()
    for chunk in ["cat > src/App.tsx << 'EOF'\n", "line1\n", "line2\n", "line3\n", "EOF\n"]:
        rec.feed(state, chunk)

    assert list(state.completed_files) == ["src/App.tsx"]
    assert state.completed_files["src/App.tsx"].file_contents == "line1\nline2\nline3\n"
    assert state.extracted_install_commands == []
    assert rec.opened == ["src/App.tsx"]
    assert [c[1] for c in rec.chunks] == ["line1\n", "line2\n", "line3\n"]
    assert all(c[2] == FULL_CONTENT for c in rec.chunks)
    assert len(rec.closed) == 1


def test_markers_split_mid_line():
    rec = _Recorder()
    state = ParsingState()
    for chunk in ["cat > src/a.ts << 'E", "OF'\nhello\nE", "OF\n"]:
        rec.feed(state, chunk)
    assert state.completed_files["src/a.ts"].file_contents == "hello\n"
    assert state.current_file is None


def test_lines_in_one_chunk_are_batched():
    rec = _Recorder()
    state = ParsingState()
    rec.feed(state, "cat > a.ts << 'EOF'\none\ntwo\nthree\n")
    assert rec.chunks == [("a.ts", "one\ntwo\nthree\n", FULL_CONTENT)]


def test_purpose_header_is_attached():
    files, _ = deserialize(
        "# File: src/store.ts\n"
        "# Purpose: Global todo store\n"
        "cat > src/store.ts << 'EOF'\n"
        "export const store = {};\n"
        "EOF\n"
    )
    assert files[0].file_path == "src/store.ts"
    assert files[0].file_purpose == "Global todo store"


def test_enclosing_fence_is_stripped():
    files, _ = deserialize("cat > a.ts << 'EOF'\n```tsx\nconst x = 1;\n```\nEOF\n")
    assert files[0].file_contents == "const x = 1;\n"


def test_custom_delimiter():
    files, _ = deserialize("cat > notes.sh << 'END'\necho hi\nEOF\nEND\n")
    assert files[0].file_contents == "echo hi\nEOF\n"


def test_unclosed_file_is_dropped_on_finish():
    rec = _Recorder()
    state = ParsingState()
    rec.feed(state, "cat > a.ts << 'EOF'\nconst x = 1;\n")
    finish(state)
    assert state.completed_files == {}
    assert state.current_file is None
    assert rec.closed == []


def test_stray_close_marker_is_ignored():
    files, commands = deserialize("EOF\ncat > a.ts << 'EOF'\nx\nEOF\nEOF\n")
    assert [f.file_path for f in files] == ["a.ts"]
    assert commands == []


def test_multiple_files_in_order():
    files, _ = deserialize(
        "cat > a.ts << 'EOF'\nA\nEOF\n\ncat > b.ts << 'EOF'\nB\nEOF\n"
    )
    assert [f.file_path for f in files] == ["a.ts", "b.ts"]


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def test_commands_outside_heredocs_are_collected():
    text = (
        "Here is the phase.\n"
        "npm install zustand\n"
        "- bun add clsx\n"
        "cat > a.ts << 'EOF'\n"
        "bun add not-a-command-inside-file\n"
        "EOF\n"
        "bun add clsx\n"
    )
    files, commands = deserialize(text)
    assert commands == ["bun install zustand", "bun add clsx"]
    assert files[0].file_contents == "bun add not-a-command-inside-file\n"


# ---------------------------------------------------------------------------
# Unified diffs
# ---------------------------------------------------------------------------

PATCH = (
    "cat << 'EOF' | patch src/utils.ts\n"
    "--- a/src/utils.ts\n"
    "+++ b/src/utils.ts\n"
    "@@ -1,3 +1,3 @@\n"
    " a\n"
    "-b\n"
    "+B\n"
    " c\n"
    "EOF\n"
)


def test_diff_applies_to_resolved_original():
    rec = _Recorder()
    state = ParsingState()
    rec.feed(state, PATCH, resolve_original=lambda path: "a\nb\nc\n")
    assert state.completed_files["src/utils.ts"].file_contents == "a\nB\nc\n"
    assert rec.chunks[0][2] == UNIFIED_DIFF


def test_diff_applies_to_file_completed_earlier_in_stream():
    text = "cat > src/utils.ts << 'EOF'\na\nb\nc\nEOF\n" + PATCH
    files, _ = deserialize(text)
    assert len(files) == 1
    assert files[0].file_contents == "a\nB\nc\n"


def test_unusable_diff_is_dropped():
    rec = _Recorder()
    state = ParsingState()
    rec.feed(state, PATCH, resolve_original=lambda path: "x\ny\nz\n")
    assert state.completed_files == {}
    assert rec.closed == []


def test_unified_diff_with_offset_hunk():
    original = "header\nheader2\na\nb\nc\n"
    diff = "@@ -1,3 +1,3 @@\n a\n-b\n+B\n c\n"
    assert apply_unified_diff(original, diff) == "header\nheader2\na\nB\nc\n"


def test_unified_diff_without_hunks_raises():
    with pytest.raises(UnifiedDiffError):
        apply_unified_diff("a\n", "--- a/x\n+++ b/x\n")


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def test_serialize_then_deserialize_preserves_files():
    originals = [
        GeneratedFile("src/a.ts", "export const a = 1;\n", "Constant a"),
        GeneratedFile("scripts/gen.sh", "cat > x << 'EOF'\nbody\nEOF\n", "Script with a heredoc"),
    ]
    text = serialize(originals)
    assert "<< 'EOF_'" in text

    files, commands = deserialize(text)
    assert [(f.file_path, f.file_contents, f.file_purpose) for f in files] == [
        (f.file_path, f.file_contents, f.file_purpose) for f in originals
    ]
    assert commands == []


# ---------------------------------------------------------------------------
# Chunking independence
# ---------------------------------------------------------------------------

MIXED = (
    "# File: src/utils.ts\r\n"
    "# Purpose: Helpers\r\n"
    "cat > src/utils.ts << 'EOF'\r\n"
    "a\r\nb\r\nc\r\n"
    "EOF\r\n"
    "npm install zustand\n"
    "cat << 'EOF' | patch src/utils.ts\n"
    "--- a/src/utils.ts\n"
    "+++ b/src/utils.ts\n"
    "@@ -1,3 +1,3 @@\n"
    " a\n-b\n+B\n c\n"
    "EOF\n"
    "cat > src/App.tsx << 'END'\n"
    "```tsx\nexport default function App() {}\n```\n"
    "END\n"
    "bun add clsx"
)


def _parse_in_chunks(chunks):
    state = ParsingState()
    for chunk in chunks:
        parse_streaming_chunks(chunk, state)
    finish(state)
    files = [(f.file_path, f.file_contents, f.file_purpose) for f in state.completed_files.values()]
    return files, list(state.extracted_install_commands)


def test_every_split_point_matches_whole_response():
    files, commands = deserialize(MIXED)
    expected = ([(f.file_path, f.file_contents, f.file_purpose) for f in files], commands)
    assert expected[0][0] == ("src/utils.ts", "a\nB\nc\n", "Helpers")
    assert expected[1] == ["bun install zustand", "bun add clsx"]

    for i in range(len(MIXED) + 1):
        assert _parse_in_chunks([MIXED[:i], MIXED[i:]]) == expected, f"split at {i}"


def test_replaying_the_same_chunks_is_deterministic():
    chunks = [MIXED[i:i + 7] for i in range(0, len(MIXED), 7)]
    first = _parse_in_chunks(chunks)
    assert _parse_in_chunks(chunks) == first
    assert _parse_in_chunks(list(MIXED)) == first
