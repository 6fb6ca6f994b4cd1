from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Literal

from .models import Phase

PhaseKind = Literal["generated", "approval", "validation", "terminal"]

PHASE_ORDER: tuple[Phase, ...] = tuple(Phase)
PROJECT_BRIEF_FILENAME = "project-brief.md"
COMPONENT_INVENTORY_FILENAME = "component-inventory.md"
DESIGN_TOKENS_FILENAME = "design-tokens.json"
VALIDATION_REPORT_FILENAME = "validation-report.md"


@dataclass(frozen=True)
class PhaseDefinition:
    """Static description of one workflow phase."""

    phase: Phase
    kind: PhaseKind
    handler: str
    outputs: tuple[str, ...] = ()
    gates: tuple[str, ...] = ()
    description: str = ""


@dataclass(frozen=True)
class GateDefinition:
    gate_name: str
    phase: Phase
    blocking: bool
    auto_approve_threshold: float | None = None
    description: str = ""


PHASE_DEFINITIONS: Mapping[Phase, PhaseDefinition] = MappingProxyType(
    {
        Phase.INTAKE: PhaseDefinition(
            Phase.INTAKE,
            kind="generated",
            handler="generation",
            outputs=("project-analysis.md",),
            description="Analyse the project brief: goals, users, constraints.",
        ),
        Phase.STACK_SELECTION: PhaseDefinition(
            Phase.STACK_SELECTION,
            kind="approval",
            handler="approval",
            outputs=("stack-analysis.md",),
            gates=("stack_approved",),
            description="Compare candidate technology stacks and recommend one.",
        ),
        Phase.SPECIFICATION: PhaseDefinition(
            Phase.SPECIFICATION,
            kind="generated",
            handler="generation",
            outputs=("PRD.md", "data-model.md", COMPONENT_INVENTORY_FILENAME, DESIGN_TOKENS_FILENAME),
            gates=("prd_approved",),
            description="Product requirements, data model, component inventory and design tokens.",
        ),
        Phase.DEPENDENCY_APPROVAL: PhaseDefinition(
            Phase.DEPENDENCY_APPROVAL,
            kind="approval",
            handler="approval",
            outputs=("dependencies.json",),
            gates=("dependencies_approved",),
            description="Third-party dependencies with versions and justification.",
        ),
        Phase.SOLUTIONING: PhaseDefinition(
            Phase.SOLUTIONING,
            kind="generated",
            handler="subagents",
            gates=("architecture_approved",),
            description="One isolated subagent per inventoried component.",
        ),
        Phase.VALIDATION: PhaseDefinition(
            Phase.VALIDATION,
            kind="validation",
            handler="validation",
            description="Cross-artifact validation of every completed phase.",
        ),
        Phase.DONE: PhaseDefinition(Phase.DONE, kind="terminal", handler="terminal"),
    }
)

GATE_DEFINITIONS: Mapping[str, GateDefinition] = MappingProxyType(
    {
        "stack_approved": GateDefinition("stack_approved", Phase.STACK_SELECTION, blocking=True),
        "prd_approved": GateDefinition("prd_approved", Phase.SPECIFICATION, blocking=False),
        "dependencies_approved": GateDefinition("dependencies_approved", Phase.DEPENDENCY_APPROVAL, blocking=True),
        "architecture_approved": GateDefinition(
            "architecture_approved", Phase.SOLUTIONING, blocking=False, auto_approve_threshold=95.0
        ),
    }
)


def next_phase(phase: Phase) -> Phase | None:
    index = PHASE_ORDER.index(phase)
    return PHASE_ORDER[index + 1] if index + 1 < len(PHASE_ORDER) else None


def is_terminal(phase: Phase) -> bool:
    return next_phase(phase) is None


def phases_before(phase: Phase) -> tuple[Phase, ...]:
    return PHASE_ORDER[: PHASE_ORDER.index(phase)]


def gates_for_phase(phase: Phase) -> list[GateDefinition]:
    return [gate for gate in GATE_DEFINITIONS.values() if gate.phase is phase]
