"""Tests for the LLM-backed agents and utils.llm: all inference is mocked."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agents.blueprint import BlueprintAgent
from agents.conversation import FALLBACK_RESPONSE, ConversationProcessor
from agents.generator import PhaseGeneratorAgent
from agents.planner import PhasePlannerAgent
from agents.project_setup import ProjectSetupAssistant, extract_commands
from agents.reviewer import ReviewerAgent
from core.issues import IssueReport
from core.state import (
    Blueprint,
    CodeGenState,
    FileConcept,
    GeneratedFile,
    PhaseConcept,
    TemplateDetails,
)
from utils import llm


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_state(**overrides):
    state = CodeGenState(
        session_id="sess-1",
        query="build a todo app",
        blueprint=Blueprint(title="Todo", project_name="todo", implementation_roadmap=("Core", "Polish")),
        template=TemplateDetails(name="react-vite", files=(GeneratedFile("src/main.tsx", "main\n"),),
                                 dependencies={"react": "^18"}),
    )
    return state.evolve(**overrides) if overrides else state


# ---------------------------------------------------------------------------
# utils.llm
# ---------------------------------------------------------------------------

class _FakeStream:
    def __init__(self, pieces):
        self.pieces = pieces

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    @property
    def text_stream(self):
        return self._gen()

    async def _gen(self):
        for piece in self.pieces:
            yield piece

    async def get_final_message(self):
        return SimpleNamespace(stop_reason="end_turn")


def test_get_client_requires_api_key(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    with pytest.raises(RuntimeError, match="ANTHROPIC_API_KEY"):
        llm.get_client()


@pytest.mark.asyncio
async def test_stream_llm_batches_chunks():
    client = MagicMock()
    client.messages.stream.return_value = _FakeStream(["ab", "cd", "e"])
    chunks = []
    with patch("utils.llm.get_client", return_value=client):
        text = await llm.stream_llm("sys", "hi", on_chunk=chunks.append, chunk_size=3, action="conversation")

    assert text == "abcde"
    assert chunks == ["abcd", "e"]
    kwargs = client.messages.stream.call_args.kwargs
    assert kwargs["messages"] == [{"role": "user", "content": "hi"}]
    assert kwargs["model"] == llm.get_model_config("conversation")["model"]


@pytest.mark.asyncio
async def test_call_llm_parses_fenced_json():
    with patch("utils.llm.stream_llm", new_callable=AsyncMock, return_value='```json\n{"a": 1}\n```'):
        assert await llm.call_llm("sys", "hi", response_format="json") == {"a": 1}


@pytest.mark.asyncio
async def test_call_llm_returns_raw_text_when_json_invalid():
    with patch("utils.llm.stream_llm", new_callable=AsyncMock, return_value="not json"):
        assert await llm.call_llm("sys", "hi", response_format="json") == "not json"


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_planner_returns_phase_and_prioritizes_suggestions():
    plan = {"name": "Dark mode", "description": "Add a theme toggle",
            "files": [{"path": "src/Theme.tsx", "purpose": "Toggle"}], "install_commands": ["bun add clsx"]}
    with patch("agents.planner.call_llm", new_callable=AsyncMock, return_value=plan) as mock_llm:
        phase = await PhasePlannerAgent().run(IssueReport(), ["add dark mode"], _make_state())

    assert phase == PhaseConcept("Dark mode", "Add a theme toggle",
                                 (FileConcept("src/Theme.tsx", "Toggle"),), False, ("bun add clsx",))
    user_message = mock_llm.await_args.args[1]
    assert "1. add dark mode" in user_message
    assert "<RUNTIME ERRORS>" in user_message
    assert mock_llm.await_args.kwargs["response_format"] == "json"


@pytest.mark.asyncio
async def test_planner_rejects_non_json():
    with patch("agents.planner.call_llm", new_callable=AsyncMock, return_value="sorry"):
        with pytest.raises(ValueError):
            await PhasePlannerAgent().run(None, [], _make_state())


# ---------------------------------------------------------------------------
# Reviewer
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_reviewer_skips_empty_codebase():
    with patch("agents.reviewer.call_llm", new_callable=AsyncMock) as mock_llm:
        assert await ReviewerAgent().run(IssueReport(), _make_state()) is None
    mock_llm.assert_not_awaited()


@pytest.mark.asyncio
async def test_reviewer_parses_review():
    state = _make_state().with_files([GeneratedFile("src/App.tsx", "app\n")])
    review = {"issues_found": True, "summary": "one bug",
              "files_to_fix": [{"file_path": "src/App.tsx", "issues": ["crash on load"]}]}
    with patch("agents.reviewer.call_llm", new_callable=AsyncMock, return_value=review):
        result = await ReviewerAgent().run(IssueReport(), state)
    assert result.issues_found
    assert result.files_to_fix[0].issues == ("crash on load",)


@pytest.mark.asyncio
async def test_reviewer_failure_returns_none():
    state = _make_state().with_files([GeneratedFile("src/App.tsx", "app\n")])
    with patch("agents.reviewer.call_llm", new_callable=AsyncMock, side_effect=RuntimeError("down")):
        assert await ReviewerAgent().run(IssueReport(), state) is None


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_conversation_returns_reply_and_enhanced_request():
    answer = {"user_response": "On it!", "enhanced_user_request": "Add a dark mode toggle to the header"}
    with patch("agents.conversation.call_llm", new_callable=AsyncMock, return_value=answer):
        reply, enhanced = await ConversationProcessor().run("dark mode pls", _make_state())
    assert reply == "On it!"
    assert enhanced == "Add a dark mode toggle to the header"


@pytest.mark.asyncio
async def test_conversation_falls_back_on_error():
    with patch("agents.conversation.call_llm", new_callable=AsyncMock, side_effect=RuntimeError("down")):
        reply, enhanced = await ConversationProcessor().run("dark mode pls", _make_state())
    assert reply == FALLBACK_RESPONSE
    assert enhanced == "User request: dark mode pls"


# ---------------------------------------------------------------------------
# Blueprint
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_blueprint_from_model_output():
    output = {"title": "Todo", "project_name": "todo",
              "initial_phase": {"name": "Core", "description": "d", "files": ["src/App.tsx"]}}
    with patch("agents.blueprint.call_llm", new_callable=AsyncMock, return_value=output):
        bp = await BlueprintAgent().run("todo app", TemplateDetails(name="react-vite"))
    assert bp.initial_phase.name == "Core"


@pytest.mark.asyncio
async def test_blueprint_falls_back_to_single_phase():
    with patch("agents.blueprint.call_llm", new_callable=AsyncMock, return_value="garbage"):
        bp = await BlueprintAgent().run("A Todo App", TemplateDetails(name="react-vite"))
    assert bp.title == "A Todo App"
    assert bp.project_name == "a-todo-app"
    assert bp.initial_phase.name == "Core Application"
    assert bp.initial_phase.files[0].path == "src/App.tsx"


# ---------------------------------------------------------------------------
# Project setup
# ---------------------------------------------------------------------------

def test_extract_commands():
    text = "```bash\nnpm install zustand\n- bun add clsx\nThen run it\nbun add clsx\n```"
    assert extract_commands(text) == ["bun install zustand", "bun add clsx"]


@pytest.mark.asyncio
async def test_setup_commands_include_error_context():
    with patch("agents.project_setup.call_llm", new_callable=AsyncMock,
               return_value="bun add zustand\n") as mock_llm:
        commands = await ProjectSetupAssistant().generate_setup_commands(
            _make_state(), error="bun add zustnd: package not found")
    assert commands == ["bun add zustand"]
    assert "package not found" in mock_llm.await_args.args[1]


@pytest.mark.asyncio
async def test_setup_errors_propagate():
    with patch("agents.project_setup.call_llm", new_callable=AsyncMock, side_effect=RuntimeError("down")):
        with pytest.raises(RuntimeError):
            await ProjectSetupAssistant().run(_make_state())


# ---------------------------------------------------------------------------
# Phase generator
# ---------------------------------------------------------------------------

def _fake_stream(text, pieces=3):
    async def _stream(system_prompt, user_message, on_chunk=None, chunk_size=None, action=None):
        size = max(1, len(text) // pieces)
        for i in range(0, len(text), size):
            on_chunk(text[i:i + size])
            await asyncio.sleep(0)
        return text
    return _stream


@pytest.mark.asyncio
async def test_generator_starts_fixer_per_closed_file():
    output = (
        "# Purpose: Root\n"
        "cat > src/App.tsx << 'EOF'\nexport default function App() {}\nEOF\n"
        "bun add zustand\n"
        "cat > src/store.ts << 'EOF'\nexport const store = {};\nEOF\n"
    )
    fixer = MagicMock()
    fixer.run = AsyncMock(side_effect=lambda f, state, phase=None, issues=None: f)
    opened = []
    phase = PhaseConcept("Core", "d", install_commands=("bun add clsx",))

    with patch("agents.generator.stream_llm", _fake_stream(output)):
        result = await PhaseGeneratorAgent(fixer).run(
            phase, None, _make_state(), on_file_open=opened.append)
    fixed = await asyncio.gather(*(task for _, task in result.fixer_tasks))

    assert opened == ["src/App.tsx", "src/store.ts"]
    assert [f.file_path for f in result.files] == ["src/App.tsx", "src/store.ts"]
    assert result.files[0].file_purpose == "Root"
    assert [f.file_path for f in fixed] == ["src/App.tsx", "src/store.ts"]
    assert result.commands == ["bun add zustand", "bun add clsx"]
    assert fixer.run.await_count == 2
