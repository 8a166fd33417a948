"""Abstract base class and shared prompt context for the LLM-backed agents."""

import json
from abc import ABC, abstractmethod

from core.files import all_files
from core.stream_parser import serialize
from utils.template_engine import render_prompt


class BaseAgent(ABC):
    """Base class that every agent extends."""

    name = "base"
    action = None          # key into config.models.AGENT_CONFIG
    prompt_name = None     # agents/prompts/<prompt_name>.txt
    system_prompt = ""

    @abstractmethod
    async def run(self, *args, **kwargs):
        """Perform the agent's operation."""

    def _render(self, prompt_name=None, **variables):
        return render_prompt(prompt_name or self.prompt_name, variables)


def blueprint_text(state):
    bp = state.blueprint
    return json.dumps({
        "title": bp.title,
        "project_name": bp.project_name,
        "description": bp.description,
        "frameworks": list(bp.frameworks),
        "implementation_roadmap": list(bp.implementation_roadmap),
    }, indent=2)


def template_text(state):
    tpl = state.template
    deps = ", ".join(f"{k}@{v}" for k, v in sorted(tpl.dependencies.items())) or "none"
    return f"{tpl.name}: {tpl.description}\nDependencies: {deps}"


def codebase_text(state, include_template=True):
    files = all_files(state) if include_template else list(state.generated_files.values())
    return serialize(files) if files else "(no files yet)"


def file_list_text(state):
    lines = [f"- {f.file_path}: {f.file_purpose}" if f.file_purpose else f"- {f.file_path}"
             for f in all_files(state)]
    return "\n".join(lines) or "(no files yet)"


def phases_text(state):
    if not state.generated_phases:
        return "(none)"
    return "\n".join(
        f"- {p.name} [{'done' if p.completed else 'in progress'}]: {p.description}"
        for p in state.generated_phases
    )


def phase_text(phase):
    files = "\n".join(f"- {f.path}: {f.purpose}" for f in phase.files) or "(none)"
    return f"Phase: {phase.name}\n{phase.description}\nFiles:\n{files}"
