"""Tests for core.issues: runtime errors, static analysis cache, reports."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from core.events import EventType
from core.issues import IssueAggregator, IssueReport, empty_analysis
from core.state import Blueprint, CodeGenState, TemplateDetails


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_state(**overrides):
    state = CodeGenState(
        session_id="sess-1",
        query="todo app",
        blueprint=Blueprint(title="Todo"),
        template=TemplateDetails(name="react-vite"),
        sandbox_instance_id="inst-1",
    )
    return state.evolve(**overrides) if overrides else state


def _make_aggregator(state=None, errors_resp=None, analysis_resp=None):
    state = state or _make_state()
    sandbox = MagicMock()
    sandbox.get_instance_errors = AsyncMock(return_value=errors_resp or {"success": True, "errors": []})
    sandbox.clear_instance_errors = AsyncMock(return_value={"success": True})
    sandbox.run_static_analysis = AsyncMock(return_value=analysis_resp or {
        "success": True,
        "lint": {"issues": [], "summary": {}},
        "typecheck": {"issues": [{"filePath": "src/a.ts", "line": 3, "code": "TS2307",
                                  "message": "Cannot find module './b'"}], "summary": {"errors": 1}},
    })
    deployment = MagicMock()
    deployment.generation = 1
    deployment.deploy = AsyncMock(return_value="inst-2")
    clear_client_errors = MagicMock()
    sink = MagicMock()
    aggregator = IssueAggregator(sandbox, deployment, lambda: state, clear_client_errors, sink)
    return aggregator, sandbox, deployment, clear_client_errors, sink


def _emitted(sink):
    return [c.args[0] for c in sink.emit.call_args_list]


# ---------------------------------------------------------------------------
# Runtime errors
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_no_instance_means_no_runtime_errors():
    aggregator, sandbox, *_ = _make_aggregator(_make_state(sandbox_instance_id=None))
    assert await aggregator.fetch_runtime_errors() == []
    sandbox.get_instance_errors.assert_not_awaited()


@pytest.mark.asyncio
async def test_runtime_errors_are_reported_and_cleared():
    aggregator, sandbox, deployment, _, sink = _make_aggregator(errors_resp={
        "success": True, "errors": [{"message": "TypeError: x is undefined"}],
    })

    errors = await aggregator.fetch_runtime_errors()

    assert errors == [{"message": "TypeError: x is undefined"}]
    assert _emitted(sink) == [EventType.RUNTIME_ERROR_FOUND]
    sandbox.clear_instance_errors.assert_awaited_once_with("inst-1")
    deployment.deploy.assert_not_awaited()


@pytest.mark.asyncio
async def test_corrupted_sandbox_error_triggers_redeploy():
    aggregator, sandbox, deployment, _, sink = _make_aggregator(errors_resp={
        "success": True,
        "errors": [{"message": "SyntaxError: Unterminated string in JSON at position 1024"}],
    })

    assert await aggregator.fetch_runtime_errors() == []
    deployment.deploy.assert_awaited_once_with(redeploy=True)
    assert EventType.RUNTIME_ERROR_FOUND not in _emitted(sink)


@pytest.mark.asyncio
async def test_failed_error_fetch_triggers_redeploy():
    aggregator, sandbox, deployment, *_ = _make_aggregator(errors_resp={"success": False, "error": "404"})

    assert await aggregator.fetch_runtime_errors() == []
    deployment.deploy.assert_awaited_once_with(redeploy=True)


# ---------------------------------------------------------------------------
# Static analysis
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_static_analysis_is_cached_per_deployment():
    aggregator, sandbox, deployment, _, sink = _make_aggregator()

    first = await aggregator.run_static_analysis()
    second = await aggregator.run_static_analysis()
    assert first is second
    assert sandbox.run_static_analysis.await_count == 1
    assert first["typecheck"]["issues"][0]["code"] == "TS2307"
    assert EventType.STATIC_ANALYSIS_RESULTS in _emitted(sink)

    deployment.generation = 2
    await aggregator.run_static_analysis()
    assert sandbox.run_static_analysis.await_count == 2


@pytest.mark.asyncio
async def test_invalidate_forces_new_analysis():
    aggregator, sandbox, *_ = _make_aggregator()
    await aggregator.run_static_analysis()
    aggregator.invalidate_analysis()
    await aggregator.run_static_analysis()
    assert sandbox.run_static_analysis.await_count == 2


@pytest.mark.asyncio
async def test_static_analysis_failure_is_not_cached():
    aggregator, sandbox, _, _, sink = _make_aggregator(
        analysis_resp={"success": False, "error": "tsc crashed"})

    assert await aggregator.run_static_analysis() == empty_analysis()
    await aggregator.run_static_analysis()
    assert sandbox.run_static_analysis.await_count == 2
    assert EventType.ERROR in _emitted(sink)


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_fetch_all_combines_sources():
    state = _make_state(client_reported_errors=({"message": "Button does nothing"},))
    aggregator, *_ = _make_aggregator(state)

    report = await aggregator.fetch_all()
    assert report.client_errors == [{"message": "Button does nothing"}]
    assert len(report.typecheck_issues) == 1
    assert not report.is_empty()


@pytest.mark.asyncio
async def test_fetch_all_reuses_given_analysis():
    aggregator, sandbox, *_ = _make_aggregator()
    report = await aggregator.fetch_all(static_analysis=empty_analysis(success=True))
    sandbox.run_static_analysis.assert_not_awaited()
    assert report.is_empty()


@pytest.mark.asyncio
async def test_reset_clears_client_and_sandbox_errors():
    aggregator, sandbox, _, clear_client_errors, _ = _make_aggregator()
    await aggregator.reset()
    clear_client_errors.assert_called_once_with()
    sandbox.clear_instance_errors.assert_awaited_once_with("inst-1")


def test_report_prompt_lists_every_section():
    report = IssueReport(
        runtime_errors=["ReferenceError: foo is not defined"],
        static_analysis={
            "lint": {"issues": [{"filePath": "src/a.ts", "line": 3, "code": "no-unused-vars",
                                 "message": "x is unused"}]},
            "typecheck": {"issues": []},
        },
    )
    text = report.to_prompt()
    assert "<RUNTIME ERRORS>\n- ReferenceError: foo is not defined\n</RUNTIME ERRORS>" in text
    assert "<CLIENT REPORTED ERRORS>\nNone\n</CLIENT REPORTED ERRORS>" in text
    assert "- src/a.ts:3 [no-unused-vars] x is unused" in text
    assert "<TYPE ERRORS>\nNone\n</TYPE ERRORS>" in text
