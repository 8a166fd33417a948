"""Reviewer agent: reviews the deployed codebase and lists files to fix."""

import logging
import os

from agents.base import BaseAgent, blueprint_text, codebase_text
from core.state import code_review_from_dict
from utils.llm import call_llm

logger = logging.getLogger(__name__)

_PROMPT_FILE = os.path.join(os.path.dirname(__file__), "prompts", "code_review.txt")


def _load_prompt():
    with open(_PROMPT_FILE) as f:
        return f.read()


class ReviewerAgent(BaseAgent):
    """Returns a CodeReview, or None when the model gives nothing usable."""

    name = "reviewer"
    action = "code_review"

    async def run(self, issues, state):
        if not state.generated_files:
            return None

        prompt = _load_prompt()
        parts = [
            f"User request:\n{state.query}",
            f"\nBlueprint:\n{blueprint_text(state)}",
            f"\nCodebase:\n{codebase_text(state, include_template=False)}",
            f"\nReported issues:\n{issues.to_prompt()}",
        ]

        try:
            result = await call_llm(prompt, "\n".join(parts), response_format="json", action=self.action)
        except Exception:
            logger.exception("Code review call failed")
            return None

        if not isinstance(result, dict):
            logger.warning("Code review returned non-JSON output")
            return None
        return code_review_from_dict(result)
