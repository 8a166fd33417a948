"""Session state models shared across all stages.

The whole session lives in one ``CodeGenState`` record. The orchestrator
replaces it wholesale on every change (``dataclasses.replace``) so any
snapshot can be persisted and a session resumed from it.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace, asdict
from enum import Enum


class DevState(str, Enum):
    IDLE = "idle"
    PHASE_GENERATING = "phase_generating"
    PHASE_IMPLEMENTING = "phase_implementing"
    REVIEWING = "reviewing"
    FINALIZING = "finalizing"


@dataclass(frozen=True)
class FileConcept:
    path: str
    purpose: str = ""


@dataclass(frozen=True)
class PhaseConcept:
    name: str
    description: str
    files: tuple[FileConcept, ...] = ()
    last_phase: bool = False
    install_commands: tuple[str, ...] = ()     # planner-suggested setup


@dataclass(frozen=True)
class PhaseState(PhaseConcept):
    completed: bool = False

    @classmethod
    def from_concept(cls, concept: PhaseConcept, completed: bool = False) -> "PhaseState":
        return cls(
            name=concept.name,
            description=concept.description,
            files=concept.files,
            last_phase=concept.last_phase,
            install_commands=concept.install_commands,
            completed=completed,
        )


@dataclass(frozen=True)
class GeneratedFile:
    file_path: str
    file_contents: str
    file_purpose: str = ""
    last_hash: str = ""                 # placeholder, never computed
    last_modified: float = 0.0
    unmerged: tuple[str, ...] = ()


@dataclass(frozen=True)
class TemplateDetails:
    name: str
    description: str = ""
    files: tuple[GeneratedFile, ...] = ()
    dependencies: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Blueprint:
    title: str
    project_name: str = ""
    description: str = ""
    frameworks: tuple[str, ...] = ()
    implementation_roadmap: tuple[str, ...] = ()
    initial_phase: PhaseConcept | None = None


@dataclass(frozen=True)
class FileFix:
    file_path: str
    issues: tuple[str, ...] = ()
    require_code_changes: bool = True


@dataclass(frozen=True)
class CodeReview:
    issues_found: bool
    summary: str = ""
    files_to_fix: tuple[FileFix, ...] = ()
    commands: tuple[str, ...] = ()


@dataclass(frozen=True)
class CodeGenState:
    session_id: str
    query: str
    blueprint: Blueprint
    template: TemplateDetails
    hostname: str = "localhost"
    dev_state: DevState = DevState.IDLE
    generated_phases: tuple[PhaseState, ...] = ()
    generated_files: dict = field(default_factory=dict)     # path -> GeneratedFile
    commands_history: tuple[str, ...] = ()
    pending_user_inputs: tuple[str, ...] = ()
    client_reported_errors: tuple[dict, ...] = ()
    sandbox_instance_id: str | None = None
    preview_url: str | None = None
    tunnel_url: str | None = None
    current_phase: PhaseConcept | None = None
    last_review: CodeReview | None = None
    conversation_messages: tuple[dict, ...] = ()
    review_cycles: int = 0

    # -- copy-on-write helpers ------------------------------------------------

    def evolve(self, **changes) -> "CodeGenState":
        return replace(self, **changes)

    def with_files(self, files) -> "CodeGenState":
        """Return a copy with ``files`` merged into the map, last write wins."""
        merged = dict(self.generated_files)
        now = time.time()
        for f in files:
            merged[f.file_path] = replace(f, last_hash="", last_modified=now, unmerged=())
        return replace(self, generated_files=merged)

    def with_phase(self, phase: PhaseConcept, completed: bool = False) -> "CodeGenState":
        return replace(
            self,
            generated_phases=self.generated_phases + (PhaseState.from_concept(phase, completed),),
        )

    def with_phase_completed(self, name: str) -> "CodeGenState":
        phases = tuple(
            replace(p, completed=True) if p.name == name else p
            for p in self.generated_phases
        )
        return replace(self, generated_phases=phases)

    # -- serialization ----------------------------------------------------------

    def to_dict(self) -> dict:
        data = asdict(self)
        data["dev_state"] = self.dev_state.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CodeGenState":
        return cls(
            session_id=data["session_id"],
            query=data.get("query", ""),
            blueprint=blueprint_from_dict(data.get("blueprint") or {}),
            template=template_from_dict(data.get("template") or {}),
            hostname=data.get("hostname", "localhost"),
            dev_state=DevState(data.get("dev_state", DevState.IDLE.value)),
            generated_phases=tuple(_phase_state(p) for p in data.get("generated_phases", [])),
            generated_files={
                path: _generated_file(f) for path, f in data.get("generated_files", {}).items()
            },
            commands_history=tuple(data.get("commands_history", [])),
            pending_user_inputs=tuple(data.get("pending_user_inputs", [])),
            client_reported_errors=tuple(data.get("client_reported_errors", [])),
            sandbox_instance_id=data.get("sandbox_instance_id"),
            preview_url=data.get("preview_url"),
            tunnel_url=data.get("tunnel_url"),
            current_phase=phase_from_dict(data["current_phase"]) if data.get("current_phase") else None,
            last_review=_code_review(data["last_review"]) if data.get("last_review") else None,
            conversation_messages=tuple(data.get("conversation_messages", [])),
            review_cycles=data.get("review_cycles", 0),
        )


# ---------------------------------------------------------------------------
# dict -> dataclass helpers (also used to read LLM JSON output)
# ---------------------------------------------------------------------------

def _file_concepts(items):
    concepts = []
    for item in items or []:
        if isinstance(item, str):
            concepts.append(FileConcept(path=item))
        elif isinstance(item, dict) and item.get("path"):
            concepts.append(FileConcept(path=item["path"], purpose=item.get("purpose", "")))
    return tuple(concepts)


def phase_from_dict(data: dict) -> PhaseConcept:
    return PhaseConcept(
        name=data.get("name", ""),
        description=data.get("description", ""),
        files=_file_concepts(data.get("files")),
        last_phase=bool(data.get("last_phase", data.get("lastPhase", False))),
        install_commands=tuple(data.get("install_commands", [])),
    )


def _phase_state(data: dict) -> PhaseState:
    return PhaseState.from_concept(phase_from_dict(data), completed=bool(data.get("completed")))


def _generated_file(data: dict) -> GeneratedFile:
    return GeneratedFile(
        file_path=data["file_path"],
        file_contents=data.get("file_contents", ""),
        file_purpose=data.get("file_purpose", ""),
        last_hash=data.get("last_hash", ""),
        last_modified=data.get("last_modified", 0.0),
        unmerged=tuple(data.get("unmerged", [])),
    )


def template_from_dict(data: dict) -> TemplateDetails:
    return TemplateDetails(
        name=data.get("name", ""),
        description=data.get("description", ""),
        files=tuple(_generated_file(f) for f in data.get("files", [])),
        dependencies=dict(data.get("dependencies", {})),
    )


def blueprint_from_dict(data: dict) -> Blueprint:
    initial = data.get("initial_phase")
    return Blueprint(
        title=data.get("title", ""),
        project_name=data.get("project_name", ""),
        description=data.get("description", ""),
        frameworks=tuple(data.get("frameworks", [])),
        implementation_roadmap=tuple(
            r if isinstance(r, str) else r.get("phase", str(r))
            for r in data.get("implementation_roadmap", [])
        ),
        initial_phase=phase_from_dict(initial) if initial else None,
    )


def _code_review(data: dict) -> CodeReview:
    return CodeReview(
        issues_found=bool(data.get("issues_found")),
        summary=data.get("summary", ""),
        files_to_fix=tuple(
            FileFix(
                file_path=f["file_path"],
                issues=tuple(f.get("issues", [])),
                require_code_changes=f.get("require_code_changes", True),
            )
            for f in data.get("files_to_fix", [])
            if isinstance(f, dict) and f.get("file_path")
        ),
        commands=tuple(data.get("commands", [])),
    )


def code_review_from_dict(data: dict) -> CodeReview:
    return _code_review(data)
