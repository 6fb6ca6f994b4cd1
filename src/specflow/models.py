from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .canonical import content_hash


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


class Phase(str, Enum):
    INTAKE = "intake"
    STACK_SELECTION = "stack_selection"
    SPECIFICATION = "specification"
    DEPENDENCY_APPROVAL = "dependency_approval"
    SOLUTIONING = "solutioning"
    VALIDATION = "validation"
    DONE = "done"


class PhaseStatus(str, Enum):
    ACTIVE = "active"
    REWORK = "rework"
    BLOCKED = "blocked"


class ExecutionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class GateStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    AUTO_APPROVED = "auto_approved"


class SubagentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


# ---------------------------------------------------------------------------
# Parameter resolution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParameterOverrides:
    temperature: float | None = None
    max_tokens: int | None = None
    timeout_seconds: int | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None

    def is_empty(self) -> bool:
        return all(value is None for value in self.__dict__.values())


class ParameterAudit(BaseModel):
    """Every constraint and clamp applied while resolving parameters."""

    model_config = ConfigDict(frozen=True)

    backend_id: str
    provider: str
    backend_max_output_tokens: int
    base_temperature: float
    phase_temperature: float | None = None
    final_temperature: float
    timeout_seconds: int
    top_p: float
    applied_constraints: tuple[str, ...] = ()
    validation_warnings: tuple[str, ...] = ()


class ResolvedParameters(BaseModel):
    model_config = ConfigDict(frozen=True)

    temperature: float
    max_tokens: int
    timeout_seconds: int
    top_p: float
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    source: Literal["preset", "override"]
    applied_phase: str | None = None
    audit: ParameterAudit


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GenerationRequest:
    """Opaque request handed to a backend: prompt, system instruction, parameters."""

    backend_id: str
    prompt: str
    system_instruction: str
    parameters: ResolvedParameters


@dataclass(frozen=True)
class BackendResponse:
    text: str
    finish_reason: str | None = None
    usage: dict[str, int] = field(default_factory=dict)
    reasoning: str | None = None
    model: str | None = None


@dataclass(frozen=True)
class GenerationResult:
    content: str
    finish_reason: str | None
    usage: dict[str, int]
    model: str
    parameters: ResolvedParameters
    attempts: int = 1


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------

COMPONENT_TYPES: frozenset[str] = frozenset({"atom", "molecule", "organism", "template", "page"})


@dataclass(frozen=True)
class ComponentSpec:
    """One UI component to be generated by an isolated subagent."""

    name: str
    type: str = "molecule"
    description: str = ""
    props: tuple[str, ...] = ()
    dependencies: tuple[str, ...] = ()
    parent: str | None = None

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("ComponentSpec.name must be non-empty")
        if self.type not in COMPONENT_TYPES:
            raise ValueError(
                f"ComponentSpec {self.name!r} has invalid type {self.type!r}; "
                f"expected one of {sorted(COMPONENT_TYPES)}"
            )
        if self.parent is not None and self.parent == self.name:
            raise ValueError(f"ComponentSpec {self.name!r} cannot be its own parent")


@dataclass(frozen=True)
class ComponentContext:
    project_id: str
    project_name: str
    project_brief: str
    stack: str = "Next.js + Tailwind + shadcn/ui"
    phase_tag: str = Phase.SOLUTIONING.value


@dataclass(frozen=True)
class SubagentResult:
    component_name: str
    status: SubagentStatus
    code: str = ""
    errors: tuple[str, ...] = ()
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status is SubagentStatus.SUCCEEDED

    @property
    def skipped(self) -> bool:
        return self.status is SubagentStatus.SKIPPED


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


class Project(BaseModel):
    project_id: str
    name: str
    brief: str
    current_phase: Phase = Phase.INTAKE
    completed_phases: list[Phase] = Field(default_factory=list)
    approvals: dict[str, bool] = Field(default_factory=dict)
    workflow_version: int = 1
    phase_status: PhaseStatus = PhaseStatus.ACTIVE
    remedy_attempts: int = 0
    last_remedy_phase: Phase | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class PhaseExecutionRecord(BaseModel):
    record_id: str = Field(default_factory=lambda: new_id("EXEC"))
    project_id: str
    phase: Phase
    status: ExecutionStatus = ExecutionStatus.IN_PROGRESS
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    duration_seconds: float | None = None
    error: str | None = None
    artifacts: list[str] = Field(default_factory=list)

    def close(self, status: ExecutionStatus, *, error: str | None = None) -> None:
        self.status = status
        self.completed_at = utc_now()
        self.duration_seconds = (self.completed_at - self.started_at).total_seconds()
        self.error = error


class Artifact(BaseModel):
    artifact_id: str
    phase: Phase
    filename: str
    version: int
    content: str
    content_hash: str
    retired: bool = False
    created_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def build(cls, *, phase: Phase, filename: str, version: int, content: str, retired: bool = False) -> "Artifact":
        return cls(
            artifact_id=f"{phase.value}/{filename}",
            phase=phase,
            filename=filename,
            version=version,
            content=content,
            content_hash=content_hash(content),
            retired=retired,
        )


class ArtifactVersionRecord(BaseModel):
    artifact_id: str
    phase: Phase
    filename: str
    version: int
    content_hash: str
    regeneration_reason: str = "initial"
    created_at: datetime = Field(default_factory=utc_now)


class ApprovalGate(BaseModel):
    gate_name: str
    phase: Phase
    status: GateStatus = GateStatus.PENDING
    blocking: bool = True
    approver: str | None = None
    rejection_reason: str | None = None
    notes: str | None = None
    score: float | None = None
    auto_approve_threshold: float | None = None
    decided_at: datetime | None = None

    @property
    def is_satisfied(self) -> bool:
        return self.status in {GateStatus.APPROVED, GateStatus.AUTO_APPROVED}


class FailureReason(BaseModel):
    artifact_id: str | None
    phase: Phase
    message: str
    failure_type: str = "unknown"


class ValidationRun(BaseModel):
    run_id: str = Field(default_factory=lambda: new_id("VAL"))
    project_id: str
    phase: Phase
    passed: bool
    failure_reasons: list[FailureReason] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def warning_count(self) -> int:
        return len(self.warnings)


class AutoRemedyRun(BaseModel):
    run_id: str = Field(default_factory=lambda: new_id("REM"))
    project_id: str
    validation_run_id: str
    phase: Phase
    failure_type: str = "unknown"
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    successful: bool = False
    changes_applied: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    revalidation_run_id: str | None = None


class PhaseSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    project_id: str
    phase_name: Phase
    snapshot_number: int
    artifacts: dict[str, str]
    artifact_set_hash: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    user_inputs: dict[str, Any] = Field(default_factory=dict)
    validation_results: dict[str, Any] | None = None
    reason: str = ""
    created_at: datetime = Field(default_factory=utc_now)
