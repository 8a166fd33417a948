"""Blueprint agent: turns a request and a template into a phased plan skeleton."""

import os

from core.state import Blueprint, FileConcept, PhaseConcept, blueprint_from_dict
from utils.llm import call_llm
from utils.naming import slugify

_PROMPT_FILE = os.path.join(os.path.dirname(__file__), "prompts", "blueprint.txt")


def _load_prompt():
    with open(_PROMPT_FILE) as f:
        return f.read()


class BlueprintAgent:
    """Produces a Blueprint. Falls back to a single-phase plan if the output isn't JSON."""

    name = "blueprint"
    action = "blueprint"

    async def run(self, query, template):
        files = "\n".join(f"- {f.file_path}" for f in template.files) or "(empty)"
        user_message = (
            f"Request: {query}\n"
            f"Template: {template.name}\n{template.description}\n"
            f"Template files:\n{files}"
        )
        result = await call_llm(_load_prompt(), user_message, response_format="json", action=self.action)

        if isinstance(result, dict) and result.get("title"):
            blueprint = blueprint_from_dict(result)
            if blueprint.initial_phase is not None:
                return blueprint
        else:
            blueprint = None

        # Fallback: treat the whole request as one phase
        title = blueprint.title if blueprint else query.strip()[:60]
        return Blueprint(
            title=title,
            project_name=slugify(title) or "project",
            description=blueprint.description if blueprint else query,
            frameworks=blueprint.frameworks if blueprint else (),
            initial_phase=PhaseConcept(
                name="Core Application",
                description=query,
                files=(FileConcept(path="src/App.tsx", purpose="Main application component"),),
            ),
        )
