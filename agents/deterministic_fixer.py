"""Deterministic fixer: repairs common TypeScript import errors. Zero LLM calls.

Handles:
    TS2307  Cannot find module       -> re-point a relative import at the real file
    TS1192  no default export        -> switch to a named import
    TS2613  no default export        -> switch to a named import
    TS2614  no exported member       -> switch to a default import

Imports of external packages cannot be fixed here; they are reported as
unfixable with a reason naming the package so the caller can install it.
"""

from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass, field, replace

from config.rules import MODULE_NOT_FOUND, NO_DEFAULT_EXPORT, NO_NAMED_EXPORT

logger = logging.getLogger(__name__)

_SOURCE_EXTS = (".ts", ".tsx", ".js", ".jsx")
_CANNOT_FIND_RE = re.compile(r"""Cannot find module ['"]([^'"]+)['"]""")
_MODULE_RE = re.compile(r"""Module ['"]+([^'"]+)['"]+""")
_MEMBER_RE = re.compile(r"""has no exported member ['"]([^'"]+)['"]""")


@dataclass
class FixResult:
    modified_files: list = field(default_factory=list)     # GeneratedFile
    fixed_issues: list = field(default_factory=list)
    unfixable_issues: list = field(default_factory=list)   # {"issue": ..., "reason": ...}


def _issue_path(issue):
    return issue.get("filePath") or issue.get("file_path") or issue.get("file") or ""


def _strip_ext(path):
    for ext in _SOURCE_EXTS:
        if path.endswith(ext):
            return path[: -len(ext)]
    return path


def _resolve_module(importer, module, paths):
    """Find the single project file a broken relative import most likely meant."""
    wanted = posixpath.basename(_strip_ext(module))
    candidates = []
    for p in paths:
        if not p.endswith(_SOURCE_EXTS):
            continue
        stem = _strip_ext(p)
        if posixpath.basename(stem) == wanted:
            candidates.append(stem)
        elif posixpath.basename(stem) == "index" and posixpath.basename(posixpath.dirname(stem)) == wanted:
            candidates.append(posixpath.dirname(stem))
    if len(candidates) != 1:
        return None
    rel = posixpath.relpath(candidates[0], posixpath.dirname(importer) or ".")
    return rel if rel.startswith(".") else "./" + rel


def _quoted(module):
    return r"""(?P<q>['"])""" + re.escape(module) + r"""(?P=q)"""


def _fix_missing_module(content, importer, module, paths):
    if not module.startswith("."):
        return None, f'External package "{module}" should be handled by package manager'
    target = _resolve_module(importer, module, paths)
    if target is None:
        return None, f"Could not resolve relative import {module!r}"
    if target == module:
        return None, f"Import {module!r} already points at the resolved file"
    new_content, n = re.subn(r"(from\s+|import\s+|require\(\s*)" + _quoted(module),
                             lambda m: f"{m.group(1)}{m.group('q')}{target}{m.group('q')}", content)
    if not n:
        return None, f"Import of {module!r} not found in {importer}"
    return new_content, None


def _default_to_named(content, module):
    pattern = re.compile(r"import\s+([A-Za-z_$][\w$]*)\s+from\s+" + _quoted(module))
    new_content, n = pattern.subn(lambda m: f"import {{ {m.group(1)} }} from {m.group('q')}{module}{m.group('q')}", content)
    if not n:
        return None, f"No default import of {module!r} found"
    return new_content, None


def _named_to_default(content, module, member):
    pattern = re.compile(r"import\s*\{\s*" + re.escape(member) + r"\s*\}\s*from\s+" + _quoted(module))
    new_content, n = pattern.subn(lambda m: f"import {member} from {m.group('q')}{module}{m.group('q')}", content)
    if not n:
        return None, f"No sole named import of {member!r} from {module!r} found"
    return new_content, None


def _fix_one(issue, content, importer, paths):
    code = issue.get("code", "")
    message = issue.get("message", "")
    if code == MODULE_NOT_FOUND:
        m = _CANNOT_FIND_RE.search(message)
        if not m:
            return None, "Module name not found in message"
        return _fix_missing_module(content, importer, m.group(1), paths)
    if code in NO_DEFAULT_EXPORT:
        m = _MODULE_RE.search(message)
        if not m:
            return None, "Module name not found in message"
        return _default_to_named(content, m.group(1))
    if code == NO_NAMED_EXPORT:
        m, member = _MODULE_RE.search(message), _MEMBER_RE.search(message)
        if not (m and member):
            return None, "Module or member name not found in message"
        return _named_to_default(content, m.group(1), member.group(1))
    return None, f"No deterministic fix for {code or 'uncoded issue'}"


def fix_project_issues(files, issues, fetch_file=None):
    """Apply deterministic fixes for ``issues`` across ``files``.

    Args:
        files: GeneratedFile list (template + generated).
        issues: typecheck issue dicts with code, message and filePath.
        fetch_file: optional callable(path) -> GeneratedFile | None for files
            missing from ``files``.

    Returns:
        FixResult with the modified files (one entry per file), the issues
        fixed, and the ones left with a reason.
    """
    by_path = {f.file_path: f for f in files}
    paths = list(by_path)
    result = FixResult()
    modified = {}

    for issue in issues:
        importer = _issue_path(issue)
        current = modified.get(importer) or by_path.get(importer)
        if current is None and fetch_file is not None:
            current = fetch_file(importer)
        if current is None:
            result.unfixable_issues.append({"issue": issue, "reason": f"File {importer!r} not available"})
            continue

        new_content, reason = _fix_one(issue, current.file_contents, importer, paths)
        if new_content is None:
            result.unfixable_issues.append({"issue": issue, "reason": reason})
            continue
        modified[importer] = replace(current, file_contents=new_content)
        result.fixed_issues.append(issue)

    result.modified_files = list(modified.values())
    logger.info("Deterministic fixes: %d fixed, %d unfixable",
                len(result.fixed_issues), len(result.unfixable_issues))
    return result
