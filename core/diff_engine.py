"""SEARCH/REPLACE diff application with fallback matching strategies.

A diff is one or more blocks of the form::

    <<<<<<< SEARCH
    old text
    =======
    new text
    >>>>>>> REPLACE

Blocks are applied in the order given. Each block is matched against the
document as left by the previously successful blocks, trying each strategy
in turn until one finds a unique match.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from enum import Enum

from config.defaults import DEFAULTS

logger = logging.getLogger(__name__)

_SEARCH_RE = re.compile(r"^\s*<{3,}\s*SEARCH\s*$")
_DIVIDER_RE = re.compile(r"^\s*={3,}\s*$")
_REPLACE_RE = re.compile(r"^\s*>{3,}\s*REPLACE\s*$")
_SEARCH_COUNT_RE = re.compile(r"<<<\s+SEARCH")
_REPLACE_COUNT_RE = re.compile(r">>>\s+REPLACE")


class MatchingStrategy(str, Enum):
    EXACT = "exact"
    WHITESPACE_INSENSITIVE = "whitespace_insensitive"
    INDENTATION_PRESERVING = "indentation_preserving"
    FUZZY = "fuzzy"


DEFAULT_STRATEGIES = (
    MatchingStrategy.EXACT,
    MatchingStrategy.WHITESPACE_INSENSITIVE,
    MatchingStrategy.INDENTATION_PRESERVING,
    MatchingStrategy.FUZZY,
)


class FailureReason(str, Enum):
    NO_MATCH = "no_match"
    AMBIGUOUS_MATCH = "ambiguous_match"
    BELOW_THRESHOLD = "below_threshold"


class SearchReplaceParseError(ValueError):
    """Raised when a diff has unbalanced SEARCH/REPLACE markers."""


@dataclass
class SearchReplaceBlock:
    search: str
    replace: str


@dataclass
class FailedBlock:
    search: str
    replace: str
    error: str
    reason: FailureReason


@dataclass
class BlockOutcome:
    index: int
    strategies_tried: list[MatchingStrategy]
    strategy: MatchingStrategy | None      # None when the block failed


@dataclass
class DiffResult:
    content: str
    blocks_total: int = 0
    blocks_applied: int = 0
    blocks_failed: int = 0
    failed_blocks: list[FailedBlock] = field(default_factory=list)
    outcomes: list[BlockOutcome] = field(default_factory=list)

    @property
    def success(self):
        return self.blocks_failed == 0


class _NoMatch(Exception):
    def __init__(self, reason, message):
        super().__init__(message)
        self.reason = reason


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def count_search_blocks(text):
    return len(_SEARCH_COUNT_RE.findall(text or ""))


def count_markers(text):
    """Return (search_markers, replace_markers) found in a diff."""
    text = text or ""
    return len(_SEARCH_COUNT_RE.findall(text)), len(_REPLACE_COUNT_RE.findall(text))


def parse_search_replace_blocks(diff_text):
    """Split a diff into SearchReplaceBlock objects.

    Text outside of blocks is ignored. Raises SearchReplaceParseError when a
    block is opened but never completed.
    """
    blocks = []
    section = None          # None | "search" | "replace"
    search_lines: list[str] = []
    replace_lines: list[str] = []

    for line in (diff_text or "").split("\n"):
        if section is None:
            if _SEARCH_RE.match(line):
                section = "search"
                search_lines, replace_lines = [], []
            continue
        if section == "search":
            if _DIVIDER_RE.match(line):
                section = "replace"
            elif _SEARCH_RE.match(line):
                raise SearchReplaceParseError("SEARCH marker inside an open SEARCH section")
            else:
                search_lines.append(line)
            continue
        if _REPLACE_RE.match(line):
            blocks.append(SearchReplaceBlock("\n".join(search_lines), "\n".join(replace_lines)))
            section = None
        else:
            replace_lines.append(line)

    if section is not None:
        raise SearchReplaceParseError(f"Unterminated block ({section} section never closed)")
    return blocks


def format_search_replace_blocks(blocks):
    """Render blocks back into diff text."""
    parts = []
    for block in blocks:
        parts.append(
            "<<<<<<< SEARCH\n"
            f"{block.search}\n"
            "=======\n"
            f"{block.replace}\n"
            ">>>>>>> REPLACE"
        )
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Strategies. Each returns the new document or raises _NoMatch.
# ---------------------------------------------------------------------------

def _apply_exact(content, search, replace, threshold):
    if not search:
        raise _NoMatch(FailureReason.NO_MATCH, "Empty SEARCH text")
    occurrences = content.count(search)
    if occurrences == 0:
        raise _NoMatch(FailureReason.NO_MATCH, "SEARCH text not found verbatim")
    if occurrences > 1:
        raise _NoMatch(FailureReason.AMBIGUOUS_MATCH, f"SEARCH text found {occurrences} times")
    idx = content.index(search)
    return content[:idx] + replace + content[idx + len(search):]


def _normalize_with_map(text):
    """Collapse whitespace runs to one space, keeping an index map to the source."""
    chars = []
    index_map = []
    in_ws = False
    for i, ch in enumerate(text):
        if ch.isspace():
            if not in_ws:
                chars.append(" ")
                index_map.append(i)
            in_ws = True
        else:
            chars.append(ch)
            index_map.append(i)
            in_ws = False
    return "".join(chars), index_map


def _find_all(haystack, needle):
    positions = []
    start = haystack.find(needle)
    while start != -1:
        positions.append(start)
        start = haystack.find(needle, start + 1)
    return positions


def _apply_whitespace_insensitive(content, search, replace, threshold):
    needle = " ".join(search.split())
    if not needle:
        raise _NoMatch(FailureReason.NO_MATCH, "Empty SEARCH text")
    normalized, index_map = _normalize_with_map(content)
    positions = _find_all(normalized, needle)
    if not positions:
        raise _NoMatch(FailureReason.NO_MATCH, "SEARCH text not found ignoring whitespace")
    if len(positions) > 1:
        raise _NoMatch(
            FailureReason.AMBIGUOUS_MATCH,
            f"SEARCH text found {len(positions)} times ignoring whitespace",
        )
    pos = positions[0]
    start = index_map[pos]
    end = index_map[pos + len(needle) - 1] + 1

    # A match starting a line takes over that line's indentation.
    line_start = content.rfind("\n", 0, start) + 1
    prefix = content[line_start:start]
    if not prefix.strip():
        start = line_start
        replace = _reindent(replace, _first_indent(search.split("\n")), prefix)
    return content[:start] + replace + content[end:]


def _leading_ws(line):
    return line[: len(line) - len(line.lstrip())]


def _first_indent(lines):
    for line in lines:
        if line.strip():
            return _leading_ws(line)
    return ""


def _reindent(text, from_indent, to_indent):
    """Move lines indented by from_indent to to_indent, keeping relative depth."""
    out = []
    for line in text.split("\n"):
        if not line.strip():
            out.append(line)
        elif line.startswith(from_indent):
            out.append(to_indent + line[len(from_indent):])
        else:
            out.append(to_indent + line.lstrip())
    return "\n".join(out)


def _apply_indentation_preserving(content, search, replace, threshold):
    search_lines = search.split("\n")
    if not search.strip():
        raise _NoMatch(FailureReason.NO_MATCH, "Empty SEARCH text")
    lines = content.split("\n")
    n = len(search_lines)
    wanted = [s.lstrip() for s in search_lines]
    matches = [
        i for i in range(len(lines) - n + 1)
        if [l.lstrip() for l in lines[i:i + n]] == wanted
    ]
    if not matches:
        raise _NoMatch(FailureReason.NO_MATCH, "SEARCH text not found ignoring indentation")
    if len(matches) > 1:
        raise _NoMatch(
            FailureReason.AMBIGUOUS_MATCH,
            f"SEARCH text found {len(matches)} times ignoring indentation",
        )
    i = matches[0]
    target_indent = _first_indent(lines[i:i + n])
    search_indent = _first_indent(search_lines)

    reindented = _reindent(replace, search_indent, target_indent).split("\n")
    return "\n".join(lines[:i] + reindented + lines[i + n:])


def _apply_fuzzy(content, search, replace, threshold):
    search_lines = search.split("\n")
    lines = content.split("\n")
    n = len(search_lines)
    if not search.strip() or n > len(lines):
        raise _NoMatch(FailureReason.NO_MATCH, "No candidate window for fuzzy match")

    best_score = 0.0
    best_windows: list[int] = []
    for i in range(len(lines) - n + 1):
        window = "\n".join(lines[i:i + n])
        matcher = SequenceMatcher(None, window, search, autojunk=False)
        if matcher.real_quick_ratio() < threshold or matcher.quick_ratio() < threshold:
            continue
        score = matcher.ratio()
        if score > best_score:
            best_score = score
            best_windows = [i]
        elif score == best_score:
            best_windows.append(i)

    if not best_windows or best_score < threshold:
        raise _NoMatch(
            FailureReason.BELOW_THRESHOLD,
            f"Best fuzzy similarity {best_score:.2f} is below threshold {threshold:.2f}",
        )
    if len(best_windows) > 1:
        raise _NoMatch(
            FailureReason.AMBIGUOUS_MATCH,
            f"{len(best_windows)} windows tie at similarity {best_score:.2f}",
        )
    i = best_windows[0]
    return "\n".join(lines[:i] + replace.split("\n") + lines[i + n:])


_STRATEGY_FUNCS = {
    MatchingStrategy.EXACT: _apply_exact,
    MatchingStrategy.WHITESPACE_INSENSITIVE: _apply_whitespace_insensitive,
    MatchingStrategy.INDENTATION_PRESERVING: _apply_indentation_preserving,
    MatchingStrategy.FUZZY: _apply_fuzzy,
}


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------

def apply_blocks(original, blocks, strategies=DEFAULT_STRATEGIES, fuzzy_threshold=None):
    """Apply already-parsed blocks to ``original``."""
    if fuzzy_threshold is None:
        fuzzy_threshold = DEFAULTS["fuzzy_threshold"]

    result = DiffResult(content=original, blocks_total=len(blocks))
    content = original

    for index, block in enumerate(blocks):
        tried = []
        last_failure = _NoMatch(FailureReason.NO_MATCH, "No matching strategy configured")
        applied_with = None
        for strategy in strategies:
            strategy = MatchingStrategy(strategy)
            tried.append(strategy)
            try:
                content = _STRATEGY_FUNCS[strategy](content, block.search, block.replace, fuzzy_threshold)
            except _NoMatch as e:
                last_failure = e
                continue
            applied_with = strategy
            break

        result.outcomes.append(BlockOutcome(index=index, strategies_tried=tried, strategy=applied_with))
        if applied_with is None:
            result.blocks_failed += 1
            result.failed_blocks.append(FailedBlock(
                search=block.search,
                replace=block.replace,
                error=str(last_failure),
                reason=last_failure.reason,
            ))
            logger.debug("Block %d failed: %s", index, last_failure)
        else:
            result.blocks_applied += 1

    result.content = content
    return result


def apply_search_replace_diff(original, diff_text, strategies=DEFAULT_STRATEGIES, fuzzy_threshold=None):
    """Parse ``diff_text`` and apply its blocks to ``original``.

    Args:
        original: Current file text.
        diff_text: One or more SEARCH/REPLACE blocks.
        strategies: Matching strategies, tried in order for every block.
        fuzzy_threshold: Minimum similarity (0-1) for the fuzzy strategy.
            Defaults to DEFAULTS["fuzzy_threshold"].

    Returns:
        DiffResult with the final content and per-block outcomes.

    Raises:
        SearchReplaceParseError: If a block is left unterminated.
    """
    blocks = parse_search_replace_blocks(diff_text)
    return apply_blocks(original, blocks, strategies=strategies, fuzzy_threshold=fuzzy_threshold)
