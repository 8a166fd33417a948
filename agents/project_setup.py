"""Project setup assistant: proposes install commands for the blueprint."""

import logging
import re

from agents.base import BaseAgent, blueprint_text, template_text
from config.rules import clean_command, looks_like_command
from utils.llm import call_llm

logger = logging.getLogger(__name__)

_FENCE_LINE_RE = re.compile(r"^\s*```")


def extract_commands(text):
    """Pull command lines out of free-form model output, in order and deduplicated."""
    commands = []
    for line in (text or "").splitlines():
        if _FENCE_LINE_RE.match(line) or not looks_like_command(line):
            continue
        cmd = clean_command(line)
        if cmd not in commands:
            commands.append(cmd)
    return commands


class ProjectSetupAssistant(BaseAgent):
    name = "project_setup"
    action = "project_setup"
    prompt_name = "project_setup"
    system_prompt = "You are a build engineer. Reply with shell commands only, one per line."

    async def run(self, state, error=None):
        return await self.generate_setup_commands(state, error)

    async def generate_setup_commands(self, state, error=None):
        """Return setup commands. Inference errors propagate to the caller."""
        prompt = self._render(
            query=state.query,
            blueprint=blueprint_text(state),
            template=template_text(state),
            commands_history="\n".join(state.commands_history) or "(none)",
            error=error or "(none)",
        )
        try:
            response = await call_llm(self.system_prompt, prompt, action=self.action)
        except Exception:
            logger.exception("Setup command generation failed")
            raise
        return extract_commands(response)
