"""Phase planner: decides the next phase from progress, issues and user suggestions."""

import os

from agents.base import BaseAgent, blueprint_text, file_list_text, phases_text
from core.state import phase_from_dict
from utils.llm import call_llm

_PROMPT_FILE = os.path.join(os.path.dirname(__file__), "prompts", "phase_planner.txt")


def _load_prompt():
    with open(_PROMPT_FILE) as f:
        return f.read()


class PhasePlannerAgent(BaseAgent):
    """Produces the next PhaseConcept. An empty ``files`` list means no more work."""

    name = "phase_planner"
    action = "phase_generation"

    async def run(self, issues, suggestions, state):
        prompt = _load_prompt()

        parts = [
            f"User request:\n{state.query}",
            f"\nBlueprint:\n{blueprint_text(state)}",
            f"\nPhases so far:\n{phases_text(state)}",
            f"\nFiles:\n{file_list_text(state)}",
            f"\nCommands already run:\n" + ("\n".join(state.commands_history) or "(none)"),
        ]
        if issues is not None:
            parts.append(f"\nCurrent issues:\n{issues.to_prompt()}")
        if suggestions:
            # Suggestions take priority over the roadmap.
            numbered = "\n".join(f"{n}. {s}" for n, s in enumerate(suggestions, 1))
            parts.append(f"\nUser suggestions to address in this phase:\n{numbered}")

        result = await call_llm(prompt, "\n".join(parts), response_format="json", action=self.action)

        if not isinstance(result, dict):
            raise ValueError(f"Phase planner returned non-JSON output: {str(result)[:200]}")
        return phase_from_dict(result)
