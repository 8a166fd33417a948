"""Realtime code fixer: bounded review passes that patch one file via SEARCH/REPLACE diffs."""

import logging
import re
from dataclasses import replace

from agents.base import BaseAgent, blueprint_text, phase_text, template_text
from config.defaults import DEFAULTS
from config.rules import should_skip_fixer
from core.diff_engine import (
    DEFAULT_STRATEGIES,
    SearchReplaceBlock,
    SearchReplaceParseError,
    apply_search_replace_diff,
    count_markers,
    count_search_blocks,
    format_search_replace_blocks,
)
from utils.llm import call_llm

logger = logging.getLogger(__name__)

_CONTENT_RE = re.compile(r"<content>(.*?)</content>", re.DOTALL)
# Models sometimes close a block with "=======" followed directly by a fence.
_FENCE_RESIDUE_RE = re.compile(r"^={7}\s*$\n^`{3}\s*$", re.MULTILINE)
_CODE_FENCE_RE = re.compile(r"^\s*```[\w-]*\n(.*?)\n```\s*$", re.DOTALL)


def _strip_code_fence(text):
    m = _CODE_FENCE_RE.match(text)
    body = m.group(1) if m else text
    # The <content> tags may be commented out with // or /* */.
    body = re.sub(r"^\s*(?://|/\*)\s*$", "", body, count=1, flags=re.MULTILINE)
    return body.strip("\n") + "\n"


class RealtimeCodeFixer(BaseAgent):
    """Reviews a freshly generated file and applies the fixes the model proposes.

    ``run`` never raises: on any failure it returns the file as it was before
    the failing pass.
    """

    name = "realtime_code_fixer"
    action = "realtime_code_fixer"
    prompt_name = "code_fixer"
    quick_prompt_name = "code_fixer_quick"
    system_prompt = (
        "You are a meticulous senior engineer. You review one freshly generated source file "
        "for critical bugs and answer only with SEARCH/REPLACE blocks or a full <content> rewrite."
    )
    diff_fixer_system_prompt = (
        "You repair SEARCH/REPLACE blocks that failed to apply. The SEARCH text of every block "
        "you return must match the current file content exactly."
    )

    def __init__(self, passes=None, fuzzy_threshold=None, max_diff_retries=None):
        self.passes = passes or DEFAULTS["fixer_passes"]
        self.fuzzy_threshold = fuzzy_threshold or DEFAULTS["fuzzy_threshold"]
        self.max_diff_retries = max_diff_retries or DEFAULTS["diff_max_retries"]

    async def run(self, file, state, phase=None, issues=None, passes=None):
        if should_skip_fixer(file.file_path):
            return file

        passes = passes or self.passes
        content = file.file_contents
        search_blocks = None
        i = 0
        while search_blocks != 0 and i < passes:
            before = content
            try:
                prompt = self._pass_prompt(i, file, content, state, phase, issues)
                response = await call_llm(self.system_prompt, prompt, action=self.action)
                if not response or not response.strip():
                    logger.info("Empty fixer response for %s on pass %d", file.file_path, i)
                    break

                rewrite = _CONTENT_RE.search(response)
                if rewrite:
                    logger.info("Full rewrite of %s on pass %d", file.file_path, i)
                    content = _strip_code_fence(rewrite.group(1))
                    break

                search_blocks = count_search_blocks(response)
                if search_blocks == 0:
                    break
                content = await self.apply_diff_safely(file.file_path, content, response)
            except Exception:
                logger.exception("Fixer pass %d failed for %s", i, file.file_path)
                return replace(file, file_contents=before)
            i += 1

        return replace(file, file_contents=content)

    def _pass_prompt(self, index, file, content, state, phase, issues):
        if index == 0:
            return self._render(
                query=state.query,
                blueprint=blueprint_text(state),
                template=template_text(state),
                phase=phase_text(phase) if phase is not None else "(none)",
                file_path=file.file_path,
                file_purpose=file.file_purpose or "(unspecified)",
                issues=self._issues_text(issues),
                content=content,
            )
        return self._render(self.quick_prompt_name, file_path=file.file_path, content=content)

    def _issues_text(self, issues):
        if not issues:
            return "(none reported)"
        if isinstance(issues, str):
            return issues
        return "\n".join(f"- {i}" for i in issues)

    async def apply_diff_safely(self, file_path, content, diff):
        """Apply ``diff`` to ``content``, asking for corrected blocks when some fail.

        Each round either applies everything (done), or keeps whatever applied
        and retries only the failed blocks. After the retry budget the partial
        result is returned.
        """
        diff = _FENCE_RESIDUE_RE.sub(">>>>>>> REPLACE\n```", diff)
        current = content

        for attempt in range(self.max_diff_retries):
            searches, replaces = count_markers(diff)
            if searches != replaces:
                problem = f"Malformed diff: {searches} SEARCH markers but {replaces} REPLACE markers"
                logger.info("%s in %s", problem, file_path)
                diff = await self._corrected_diff(file_path, current, diff, problem)
                if diff is None:
                    break
                continue

            try:
                result = apply_search_replace_diff(
                    current, diff, DEFAULT_STRATEGIES, self.fuzzy_threshold,
                )
            except SearchReplaceParseError as e:
                diff = await self._corrected_diff(file_path, current, diff, str(e))
                if diff is None:
                    break
                continue

            current = result.content
            if not result.failed_blocks:
                return current

            logger.info(
                "%d of %d blocks failed for %s (attempt %d)",
                result.blocks_failed, result.blocks_total, file_path, attempt + 1,
            )
            failed = format_search_replace_blocks(
                SearchReplaceBlock(b.search, b.replace) for b in result.failed_blocks
            )
            errors = "\n".join(f"- block {n + 1}: {b.error}" for n, b in enumerate(result.failed_blocks))
            diff = await self._corrected_diff(file_path, current, failed, errors)
            if diff is None:
                break

        return current

    async def _corrected_diff(self, file_path, content, failed_diff, errors):
        """Ask the diff-fixer model for corrected blocks. Returns None if unusable."""
        prompt = self._render(
            "diff_fixer",
            file_path=file_path,
            content=content,
            failed_blocks=failed_diff,
            errors=errors,
        )
        try:
            response = await call_llm(self.diff_fixer_system_prompt, prompt, action="diff_fixer")
        except Exception:
            logger.exception("Diff correction request failed for %s", file_path)
            return None

        searches, replaces = count_markers(response)
        if searches == 0 or searches != replaces:
            logger.warning("Diff correction for %s was unusable (%d/%d markers)", file_path, searches, replaces)
            return None
        return response
