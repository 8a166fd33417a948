"""Issue aggregation: runtime errors, static analysis, client-reported errors."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from config.rules import CORRUPTED_SANDBOX_MARKER
from core.events import EventType

logger = logging.getLogger(__name__)


def empty_analysis(success=False):
    return {
        "success": success,
        "lint": {"issues": [], "summary": {}},
        "typecheck": {"issues": [], "summary": {}},
    }


def _normalize_analysis(resp):
    analysis = empty_analysis(success=bool(resp.get("success")))
    for key in ("lint", "typecheck"):
        section = resp.get(key) or {}
        analysis[key] = {
            "issues": list(section.get("issues") or []),
            "summary": dict(section.get("summary") or {}),
        }
    return analysis


def _describe(issue):
    if isinstance(issue, str):
        return issue
    if isinstance(issue, dict):
        loc = issue.get("filePath") or issue.get("file_path") or issue.get("file") or ""
        if issue.get("line"):
            loc += f":{issue['line']}"
        code = f"[{issue['code']}] " if issue.get("code") else ""
        error = issue.get("error")
        message = issue.get("message")
        if not message and isinstance(error, dict):
            message = error.get("message")
        elif not message:
            message = error
        return f"{loc} {code}{message or json.dumps(issue)}".strip()
    return str(issue)


@dataclass
class IssueReport:
    runtime_errors: list = field(default_factory=list)
    static_analysis: dict = field(default_factory=empty_analysis)
    client_errors: list = field(default_factory=list)

    @property
    def lint_issues(self):
        return self.static_analysis.get("lint", {}).get("issues", [])

    @property
    def typecheck_issues(self):
        return self.static_analysis.get("typecheck", {}).get("issues", [])

    def is_empty(self):
        return not (self.runtime_errors or self.client_errors or self.lint_issues or self.typecheck_issues)

    def to_prompt(self):
        """Render all three sources verbatim for a planning or review prompt."""
        sections = []

        def _section(title, items):
            body = "\n".join(f"- {_describe(i)}" for i in items) if items else "None"
            sections.append(f"<{title}>\n{body}\n</{title}>")

        _section("RUNTIME ERRORS", self.runtime_errors)
        _section("CLIENT REPORTED ERRORS", self.client_errors)
        _section("LINT ERRORS", self.lint_issues)
        _section("TYPE ERRORS", self.typecheck_issues)
        return "\n\n".join(sections)

    def to_dict(self):
        return {
            "runtime_errors": self.runtime_errors,
            "static_analysis": self.static_analysis,
            "client_errors": self.client_errors,
        }


class IssueAggregator:
    """Builds IssueReport snapshots for the orchestrator.

    Static analysis is cached per deployment generation: a cached result is
    reused until the DeploymentController completes another deployment.
    """

    def __init__(self, sandbox, deployment, get_state, clear_client_errors, sink):
        self.sandbox = sandbox
        self.deployment = deployment
        self._get_state = get_state
        self._clear_client_errors = clear_client_errors
        self._sink = sink
        self._analysis_cache = None
        self._cache_generation = None

    async def fetch_runtime_errors(self, clear=True):
        instance_id = self._get_state().sandbox_instance_id
        if not instance_id:
            return []

        resp = await self.sandbox.get_instance_errors(instance_id)
        if not resp.get("success"):
            logger.warning("Fetching runtime errors failed: %s; redeploying", resp.get("error"))
            await self.deployment.deploy(redeploy=True)
            return []

        errors = list(resp.get("errors") or [])
        if any(CORRUPTED_SANDBOX_MARKER in json.dumps(e) for e in errors):
            logger.warning("Sandbox reported corrupted JSON state; redeploying")
            await self.deployment.deploy(redeploy=True)
            return []

        if errors:
            self._sink.emit(EventType.RUNTIME_ERROR_FOUND, {"errors": errors, "count": len(errors)})
            if clear:
                await self.sandbox.clear_instance_errors(instance_id)
        return errors

    async def run_static_analysis(self, file_paths=None):
        if self._analysis_cache is not None and self._cache_generation == self.deployment.generation:
            return self._analysis_cache

        state = self._get_state()
        if not state.sandbox_instance_id:
            return empty_analysis()

        resp = await self.sandbox.run_static_analysis(state.sandbox_instance_id, file_paths)
        if not resp.get("success"):
            error = resp.get("error") or "static analysis failed"
            logger.error("Static analysis failed: %s", error)
            self._sink.emit(EventType.ERROR, {"error": f"Static analysis failed: {error}"})
            return empty_analysis()

        analysis = _normalize_analysis(resp)
        self._analysis_cache = analysis
        self._cache_generation = self.deployment.generation
        self._sink.emit(EventType.STATIC_ANALYSIS_RESULTS, {"static_analysis": analysis})
        return analysis

    def invalidate_analysis(self):
        self._analysis_cache = None
        self._cache_generation = None

    async def fetch_all(self, static_analysis=None):
        runtime_errors = await self.fetch_runtime_errors(clear=True)
        if static_analysis is None:
            static_analysis = await self.run_static_analysis()
        client_errors = list(self._get_state().client_reported_errors)
        return IssueReport(
            runtime_errors=runtime_errors,
            static_analysis=static_analysis,
            client_errors=client_errors,
        )

    async def reset(self):
        """Clear client-reported errors and the sandbox's error log. Keeps the analysis cache."""
        self._clear_client_errors()
        instance_id = self._get_state().sandbox_instance_id
        if instance_id:
            resp = await self.sandbox.clear_instance_errors(instance_id)
            if not resp.get("success"):
                logger.warning("Clearing sandbox errors failed: %s", resp.get("error"))
