"""Phase generator: streams every file of a phase and starts a fixer per file."""

import asyncio
import logging
import os
from dataclasses import dataclass, field

from agents.base import BaseAgent, blueprint_text, codebase_text, phase_text
from config.defaults import DEFAULTS
from core.files import file_contents
from core.stream_parser import ParsingState, finish, format_instructions, parse_streaming_chunks
from utils.llm import stream_llm

logger = logging.getLogger(__name__)

_PROMPT_FILE = os.path.join(os.path.dirname(__file__), "prompts", "phase_implementation.txt")


def _load_prompt():
    with open(_PROMPT_FILE) as f:
        return f.read()


@dataclass
class PhaseImplementationResult:
    files: list = field(default_factory=list)           # GeneratedFile as streamed
    fixer_tasks: list = field(default_factory=list)     # (GeneratedFile, asyncio.Task)
    commands: list = field(default_factory=list)


class PhaseStreamError(RuntimeError):
    """Streaming stopped early. ``result`` holds the files that closed before it did."""

    def __init__(self, message, result):
        super().__init__(message)
        self.result = result


def _noop(*args):
    return None


class PhaseGeneratorAgent(BaseAgent):
    """Streams the implementation of one phase.

    A fixer task is created the moment each file closes, so correction of
    earlier files overlaps with generation of later ones. The tasks are
    returned unawaited for the caller to join.
    """

    name = "phase_generator"
    action = "phase_implementation"

    def __init__(self, fixer=None):
        self.fixer = fixer

    async def run(self, phase, issues, state, on_file_open=None, on_file_chunk=None, on_file_close=None):
        on_file_open = on_file_open or _noop
        on_file_chunk = on_file_chunk or _noop
        on_file_close = on_file_close or _noop
        result = PhaseImplementationResult()
        parse_state = ParsingState()

        def _closed(generated):
            result.files.append(generated)
            on_file_close(generated)
            if self.fixer is not None:
                task = asyncio.ensure_future(
                    self.fixer.run(generated, state, phase=phase, issues=self._static_issues(issues))
                )
                result.fixer_tasks.append((generated, task))

        def _resolve(path):
            return file_contents(state, path)

        def _feed(text):
            parse_streaming_chunks(text, parse_state, on_file_open, on_file_chunk, _closed, _resolve)

        try:
            await stream_llm(
                _load_prompt(),
                self._user_message(phase, issues, state),
                on_chunk=_feed,
                chunk_size=DEFAULTS["stream_chunk_size"],
                action=self.action,
            )
        except Exception as e:
            logger.error("Phase %r stream failed after %d files: %s", phase.name, len(result.files), e)
            raise PhaseStreamError(f"Streaming phase {phase.name!r} failed: {e}", result) from e
        finish(parse_state, on_file_open, on_file_chunk, _closed, _resolve)

        result.commands = list(parse_state.extracted_install_commands)
        for cmd in phase.install_commands:
            if cmd not in result.commands:
                result.commands.append(cmd)
        logger.info("Phase %r streamed %d files", phase.name, len(result.files))
        return result

    def _static_issues(self, issues):
        if issues is None:
            return None
        return [str(i.get("message", i)) if isinstance(i, dict) else str(i)
                for i in issues.lint_issues + issues.typecheck_issues]

    def _user_message(self, phase, issues, state):
        parts = [
            f"User request:\n{state.query}",
            f"\nBlueprint:\n{blueprint_text(state)}",
            f"\nCurrent codebase:\n{codebase_text(state)}",
            f"\nImplement this phase:\n{phase_text(phase)}",
        ]
        if issues is not None and not issues.is_empty():
            parts.append(f"\nKnown issues to fix along the way:\n{issues.to_prompt()}")
        parts.append(f"\nOutput format:\n{format_instructions()}")
        return "\n".join(parts)
