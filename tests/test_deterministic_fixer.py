"""Tests for agents.deterministic_fixer: TypeScript import repairs."""

from agents.deterministic_fixer import fix_project_issues
from config.rules import EXTERNAL_PACKAGE_RE
from core.state import GeneratedFile


def _issue(path, code, message):
    return {"filePath": path, "line": 1, "code": code, "message": message}


FILES = [
    GeneratedFile("src/App.tsx", "import Button from './Button';\nimport utils from './utils';\n"),
    GeneratedFile("src/components/Button.tsx", "export default function Button() {}\n"),
    GeneratedFile("src/utils.ts", "export const utils = {};\n"),
    GeneratedFile("src/Page.tsx", "import { Header } from './Header';\n"),
    GeneratedFile("src/Header.tsx", "export default function Header() {}\n"),
]


def test_relative_import_is_repointed():
    issue = _issue("src/App.tsx", "TS2307",
                   "Cannot find module './Button' or its corresponding type declarations.")
    result = fix_project_issues(FILES, [issue])

    assert result.fixed_issues == [issue]
    assert len(result.modified_files) == 1
    assert result.modified_files[0].file_contents.startswith(
        "import Button from './components/Button';\n")


def test_external_package_is_unfixable_with_named_reason():
    issue = _issue("src/App.tsx", "TS2307", "Cannot find module 'zustand' or its corresponding type declarations.")
    result = fix_project_issues(FILES, [issue])

    assert result.modified_files == []
    reason = result.unfixable_issues[0]["reason"]
    assert EXTERNAL_PACKAGE_RE.search(reason).group(1) == "zustand"


def test_default_import_becomes_named():
    issue = _issue("src/App.tsx", "TS1192", "Module '\"./utils\"' has no default export.")
    result = fix_project_issues(FILES, [issue])
    assert "import { utils } from './utils';" in result.modified_files[0].file_contents


def test_named_import_becomes_default():
    issue = _issue("src/Page.tsx", "TS2614",
                   "Module '\"./Header\"' has no exported member 'Header'. "
                   "Did you mean to use 'import Header from \"./Header\"' instead?")
    result = fix_project_issues(FILES, [issue])
    assert result.modified_files[0].file_contents == "import Header from './Header';\n"


def test_fixes_to_one_file_accumulate():
    issues = [
        _issue("src/App.tsx", "TS2307", "Cannot find module './Button'."),
        _issue("src/App.tsx", "TS1192", "Module '\"./utils\"' has no default export."),
    ]
    result = fix_project_issues(FILES, issues)

    assert len(result.fixed_issues) == 2
    assert len(result.modified_files) == 1
    assert result.modified_files[0].file_contents == (
        "import Button from './components/Button';\nimport { utils } from './utils';\n"
    )


def test_unknown_file_uses_fetch_callback():
    fetched = GeneratedFile("src/Other.tsx", "import utils from './utils';\n")
    issue = _issue("src/Other.tsx", "TS1192", "Module '\"./utils\"' has no default export.")

    result = fix_project_issues(FILES, [issue], fetch_file=lambda path: fetched if path == "src/Other.tsx" else None)
    assert result.modified_files[0].file_path == "src/Other.tsx"

    missing = fix_project_issues(FILES, [_issue("src/Gone.tsx", "TS1192", "Module './x' has no default export.")])
    assert "not available" in missing.unfixable_issues[0]["reason"]


def test_unhandled_code_is_reported():
    result = fix_project_issues(FILES, [_issue("src/App.tsx", "TS2322", "Type 'string' is not assignable")])
    assert result.unfixable_issues[0]["reason"] == "No deterministic fix for TS2322"
