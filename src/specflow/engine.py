from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .canonical import artifact_set_hash
from .dispatcher import SubagentDispatcher
from .errors import PhaseTransitionError, ProjectBusyError, ProjectNotFoundError
from .handlers import PhaseContext, PhaseHandlerRegistry, PhaseOutput, default_handler_registry
from .llm import GenerationClient
from .models import (
    ApprovalGate,
    Artifact,
    AutoRemedyRun,
    ComponentContext,
    ComponentSpec,
    ExecutionStatus,
    GateStatus,
    Phase,
    PhaseExecutionRecord,
    PhaseSnapshot,
    PhaseStatus,
    Project,
    SubagentResult,
    ValidationRun,
    new_id,
    utc_now,
)
from .phases import (
    GATE_DEFINITIONS,
    PHASE_DEFINITIONS,
    PHASE_ORDER,
    PROJECT_BRIEF_FILENAME,
    VALIDATION_REPORT_FILENAME,
    is_terminal,
    next_phase,
    phases_before,
)
from .remedy import PhaseOutcome, determine_outcome, dominant_failure_type, plan_remedy
from .self_review import DesignTokenSource
from .settings import RuntimeSettings
from .state_store import ProjectStore
from .validation import render_report, run_validation

logger = logging.getLogger(__name__)

GateDecision = Literal["approve", "reject"]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class PhaseExecutionResult:
    success: bool
    message: str
    artifacts: list[Artifact] = field(default_factory=list)


@dataclass
class PhaseAdvanceResult:
    success: bool
    message: str
    from_phase: Phase | None = None
    to_phase: Phase | None = None


@dataclass
class GateDecisionResult:
    success: bool
    message: str
    gate: ApprovalGate | None = None


@dataclass
class ValidationOutcome:
    success: bool
    message: str
    validation_run: ValidationRun | None = None
    remedy_run: AutoRemedyRun | None = None
    revalidation_run: ValidationRun | None = None
    remedy_attempts: int = 0
    blocked: bool = False
    outcome: PhaseOutcome | None = None

    @property
    def final_run(self) -> ValidationRun | None:
        return self.revalidation_run or self.validation_run


@dataclass
class RollbackResult:
    success: bool
    message: str
    restored: list[Artifact] = field(default_factory=list)
    retired: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RollbackPreview:
    snapshot_number: int
    changed: tuple[str, ...]
    added_back: tuple[str, ...]
    removed: tuple[str, ...]


class ValidationLoopState(TypedDict, total=False):
    project_id: str
    phase: Phase
    run: ValidationRun
    remedy: AutoRemedyRun
    revalidation: ValidationRun
    remedy_attempts: int
    blocked: bool
    outcome: PhaseOutcome


# ---------------------------------------------------------------------------
# Phase state machine
# ---------------------------------------------------------------------------


class PhaseStateMachine:
    """Drives a project through the fixed phase sequence.

    Public operations return result objects carrying a success flag and a
    human-readable message; invariant violations are reported there with no
    side effects. Every operation that mutates a project holds the store's
    advisory project lock.
    """

    def __init__(
        self,
        *,
        store: ProjectStore,
        client: GenerationClient,
        settings: RuntimeSettings | None = None,
        registry: PhaseHandlerRegistry | None = None,
        design_tokens: DesignTokenSource | None = None,
    ) -> None:
        self.store = store
        self.client = client
        self.settings = settings or RuntimeSettings()
        self.registry = registry or default_handler_registry(client, self.settings)
        self.design_tokens = design_tokens
        self.validation_graph = self._build_validation_graph().compile()

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def create_project(self, name: str, brief: str, *, project_id: str | None = None) -> Project:
        """Create a project in the intake phase with every gate pending.

        Raises:
            ValueError: If name or brief is blank.
            FileExistsError: If ``project_id`` is already taken.
        """
        if not name.strip():
            raise ValueError("project name must be non-empty")
        if not brief.strip():
            raise ValueError("project brief must be non-empty")
        project = Project(project_id=project_id or new_id("PRJ"), name=name.strip(), brief=brief.strip())
        project.approvals = {gate_name: False for gate_name in GATE_DEFINITIONS}
        self.store.create_project(project)
        for definition in GATE_DEFINITIONS.values():
            self.store.write_gate(
                project.project_id,
                ApprovalGate(
                    gate_name=definition.gate_name,
                    phase=definition.phase,
                    blocking=definition.blocking,
                    auto_approve_threshold=definition.auto_approve_threshold,
                ),
            )
        self.store.save_artifact(project.project_id, Phase.INTAKE, PROJECT_BRIEF_FILENAME, project.brief)
        logger.info("Created project %s (%s)", project.project_id, project.name)
        return project

    # ------------------------------------------------------------------
    # Context and snapshots
    # ------------------------------------------------------------------

    def _context_for(self, project: Project, phase: Phase) -> dict[str, str]:
        """Current artifacts of every completed phase before ``phase``, keyed ``phase/filename``."""
        context: dict[str, str] = {}
        for prior in phases_before(phase):
            if prior not in project.completed_phases:
                continue
            for filename, artifact in self.store.current_artifacts(project.project_id, prior).items():
                context[f"{prior.value}/{filename}"] = artifact.content
        return context

    def _phase_context(self, project: Project, phase: Phase) -> PhaseContext:
        current = self.store.current_artifacts(project.project_id, phase)
        return PhaseContext(
            project=project,
            definition=PHASE_DEFINITIONS[phase],
            context_artifacts=self._context_for(project, phase),
            current_artifacts={filename: artifact.content for filename, artifact in current.items()},
        )

    def _snapshot(self, project: Project, phase: Phase, reason: str) -> PhaseSnapshot:
        contents = {
            filename: artifact.content
            for filename, artifact in self.store.current_artifacts(project.project_id, phase).items()
        }
        gates = {
            gate.gate_name: gate.model_dump(mode="json", include={"status", "notes", "rejection_reason", "approver", "score"})
            for gate in self.store.list_gates(project.project_id)
            if gate.phase is phase
        }
        runs = self.store.list_validation_runs(project.project_id, phase)
        return self.store.create_snapshot(
            project.project_id,
            phase,
            artifacts=contents,
            artifact_set_hash=artifact_set_hash(contents),
            metadata={
                "current_phase": project.current_phase.value,
                "completed_phases": [completed.value for completed in project.completed_phases],
                "phase_status": project.phase_status.value,
                "remedy_attempts": project.remedy_attempts,
                "workflow_version": project.workflow_version,
            },
            user_inputs=gates,
            validation_results=runs[-1].model_dump(mode="json") if runs else None,
            reason=reason,
        )

    async def _persist(
        self, project_id: str, phase: Phase, artifacts: Mapping[str, str], *, reason: str
    ) -> list[Artifact]:
        persisted: list[Artifact] = []
        for filename, content in artifacts.items():
            artifact = await asyncio.to_thread(
                self.store.save_artifact, project_id, phase, filename, content, reason=reason
            )
            persisted.append(artifact)
        return persisted

    # ------------------------------------------------------------------
    # Execute
    # ------------------------------------------------------------------

    async def execute_phase(self, project_id: str) -> PhaseExecutionResult:
        """Run the current phase's generation routine and persist its artifacts.

        Returns:
            success plus the artifacts written; failures carry the aggregated error.
        """
        try:
            with self.store.project_lock(project_id):
                return await self._execute_locked(project_id)
        except (ProjectNotFoundError, ProjectBusyError, PhaseTransitionError) as exc:
            return PhaseExecutionResult(success=False, message=str(exc))

    async def _execute_locked(self, project_id: str) -> PhaseExecutionResult:
        project = self.store.read_project(project_id)
        phase = project.current_phase
        definition = PHASE_DEFINITIONS[phase]
        if is_terminal(phase):
            raise PhaseTransitionError(f"Phase '{phase.value}' is the final phase; nothing left to execute")
        if definition.kind == "validation":
            raise PhaseTransitionError(f"Phase '{phase.value}' runs checks only; use validate_phase")
        if project.phase_status is PhaseStatus.BLOCKED:
            raise PhaseTransitionError(
                f"Phase '{phase.value}' is blocked after {project.remedy_attempts} remedy attempt(s); "
                "manual intervention required"
            )
        handler = self.registry.for_phase(definition)

        if self.store.list_execution_records(project_id, phase) and self.store.current_artifacts(project_id, phase):
            self._snapshot(project, phase, reason="before regeneration")
        for gate in self.store.list_gates(project_id):
            if gate.phase is phase and gate.status is GateStatus.REJECTED:
                gate.status = GateStatus.PENDING
                gate.decided_at = None
                self.store.write_gate(project_id, gate)
                logger.info("Gate %s reset to pending on resubmission", gate.gate_name)

        record = PhaseExecutionRecord(project_id=project_id, phase=phase)
        self.store.write_execution_record(record)
        reason = "regenerated" if project.phase_status is PhaseStatus.REWORK else "generated"
        try:
            output = await handler.execute(self._phase_context(project, phase))
            persisted = await self._persist(project_id, phase, output.artifacts, reason=reason)
        except Exception as exc:  # noqa: BLE001 - phase boundary: recorded and surfaced.
            logger.exception("Phase %s failed for %s", phase.value, project_id)
            error = f"{type(exc).__name__}: {exc}"
            record.close(ExecutionStatus.FAILED, error=error)
            self.store.write_execution_record(record)
            return PhaseExecutionResult(success=False, message=f"Phase '{phase.value}' failed: {error}")

        record.artifacts = [artifact.artifact_id for artifact in persisted]
        if not output.success:
            error = "; ".join(output.errors) or output.message
            record.close(ExecutionStatus.FAILED, error=error)
            self.store.write_execution_record(record)
            logger.warning("Phase %s failed for %s: %s", phase.value, project_id, error)
            return PhaseExecutionResult(
                success=False, message=f"Phase '{phase.value}' failed: {output.message}", artifacts=persisted
            )

        record.close(ExecutionStatus.COMPLETED)
        self.store.write_execution_record(record)
        if project.phase_status is PhaseStatus.REWORK:
            project.phase_status = PhaseStatus.ACTIVE
            self.store.write_project(project)
        return PhaseExecutionResult(success=True, message=output.message, artifacts=persisted)

    # ------------------------------------------------------------------
    # Advance
    # ------------------------------------------------------------------

    async def advance_phase(self, project_id: str) -> PhaseAdvanceResult:
        """Move the project to the next phase when every precondition holds.

        Writes nothing unless the advance succeeds.
        """
        try:
            with self.store.project_lock(project_id):
                project = self.store.read_project(project_id)
                current = project.current_phase
                self._check_can_advance(project)
                target = next_phase(current)
                if target is None:
                    raise PhaseTransitionError(f"Phase '{current.value}' is the final phase; cannot advance further")
                project.completed_phases.append(current)
                project.current_phase = target
                project.phase_status = PhaseStatus.ACTIVE
                self.store.write_project(project)
        except (ProjectNotFoundError, ProjectBusyError, PhaseTransitionError) as exc:
            return PhaseAdvanceResult(success=False, message=str(exc))
        logger.info("Project %s advanced %s -> %s", project_id, current.value, target.value)
        return PhaseAdvanceResult(
            success=True,
            message=f"Advanced from {current.value} to {target.value}",
            from_phase=current,
            to_phase=target,
        )

    def _check_can_advance(self, project: Project) -> None:
        phase = project.current_phase
        definition = PHASE_DEFINITIONS[phase]
        if is_terminal(phase):
            raise PhaseTransitionError(f"Phase '{phase.value}' is the final phase; cannot advance further")
        if project.phase_status is PhaseStatus.BLOCKED:
            raise PhaseTransitionError(f"Phase '{phase.value}' is blocked; manual intervention required")
        if project.phase_status is PhaseStatus.REWORK:
            raise PhaseTransitionError(f"Phase '{phase.value}' is in rework after a rejection; execute it again")
        if definition.kind == "validation":
            runs = self.store.list_validation_runs(project.project_id, phase)
            if not runs or not runs[-1].passed:
                raise PhaseTransitionError(f"Phase '{phase.value}' requires a passing validation run")
        else:
            records = self.store.list_execution_records(project.project_id, phase)
            if not records or records[-1].status is not ExecutionStatus.COMPLETED:
                raise PhaseTransitionError(f"Phase '{phase.value}' has not completed successfully")
        unmet = [
            gate.gate_name
            for gate in self.store.list_gates(project.project_id)
            if gate.phase is phase and gate.blocking and not gate.is_satisfied
        ]
        if unmet:
            raise PhaseTransitionError(f"Blocking gate(s) not approved for '{phase.value}': {', '.join(unmet)}")

    # ------------------------------------------------------------------
    # Approval gates
    # ------------------------------------------------------------------

    async def approve_gate(
        self,
        project_id: str,
        gate_name: str,
        decision: GateDecision,
        notes: str | None = None,
        *,
        approver: str | None = None,
        score: float | None = None,
    ) -> GateDecisionResult:
        """Record an approval or rejection for a gate of the current phase.

        A score at or above the gate's auto-approve threshold yields
        ``auto_approved``. A rejection returns the phase to rework.
        """
        if decision not in ("approve", "reject"):
            return GateDecisionResult(success=False, message=f"Unknown decision {decision!r}; use approve or reject")
        try:
            with self.store.project_lock(project_id):
                project = self.store.read_project(project_id)
                if gate_name not in GATE_DEFINITIONS:
                    raise PhaseTransitionError(f"Unknown gate '{gate_name}'")
                gate = self.store.read_gate(project_id, gate_name)
                if gate.phase is not project.current_phase:
                    raise PhaseTransitionError(
                        f"Gate '{gate_name}' belongs to phase '{gate.phase.value}'; "
                        f"project is in phase '{project.current_phase.value}'"
                    )
                records = self.store.list_execution_records(project_id, gate.phase)
                if not any(record.status is ExecutionStatus.COMPLETED for record in records):
                    raise PhaseTransitionError(f"Phase '{gate.phase.value}' has no completed output to review")

                gate.approver = approver
                gate.notes = notes
                gate.score = score
                gate.decided_at = utc_now()
                if decision == "approve":
                    threshold = gate.auto_approve_threshold
                    auto = score is not None and threshold is not None and score >= threshold
                    gate.status = GateStatus.AUTO_APPROVED if auto else GateStatus.APPROVED
                    gate.rejection_reason = None
                    project.approvals[gate_name] = True
                else:
                    gate.status = GateStatus.REJECTED
                    gate.rejection_reason = notes or "Rejected without reason"
                    project.approvals[gate_name] = False
                    project.phase_status = PhaseStatus.REWORK
                self.store.write_gate(project_id, gate)
                self.store.write_project(project)
        except (ProjectNotFoundError, ProjectBusyError, PhaseTransitionError) as exc:
            return GateDecisionResult(success=False, message=str(exc))
        logger.info("Gate %s for %s -> %s", gate_name, project_id, gate.status.value)
        return GateDecisionResult(success=True, message=f"Gate '{gate_name}' is {gate.status.value}", gate=gate)

    # ------------------------------------------------------------------
    # Validation and auto-remedy
    # ------------------------------------------------------------------

    def _build_validation_graph(self) -> StateGraph:
        graph = StateGraph(ValidationLoopState)
        graph.add_node("validate", self._validate_node)
        graph.add_node("route", self._route_node)
        graph.add_node("remedy", self._remedy_node)
        graph.add_node("revalidate", self._revalidate_node)
        graph.add_node("settle", self._settle_node)
        graph.add_node("block", self._block_node)
        graph.add_node("finalize", self._finalize_node)

        graph.add_edge(START, "validate")
        graph.add_edge("validate", "route")
        graph.add_edge("remedy", "revalidate")
        graph.add_edge("revalidate", "settle")
        graph.add_edge("settle", END)
        graph.add_edge("block", END)
        graph.add_edge("finalize", END)
        return graph

    def _artifacts_for_validation(self, project: Project, phase: Phase) -> dict[Phase, dict[str, Artifact]]:
        if phase is Phase.VALIDATION:
            targets = [prior for prior in PHASE_ORDER if prior in project.completed_phases]
        else:
            targets = [phase]
        return {target: self.store.current_artifacts(project.project_id, target) for target in targets}

    def _run_validation(self, project_id: str, phase: Phase) -> ValidationRun:
        project = self.store.read_project(project_id)
        run = run_validation(project_id, phase, self._artifacts_for_validation(project, phase))
        self.store.write_validation_run(run)
        return run

    async def _validate_node(self, state: ValidationLoopState) -> dict[str, Any]:
        return {"run": self._run_validation(state["project_id"], state["phase"])}

    def _route_node(self, state: ValidationLoopState) -> Command[str]:
        run = state["run"]
        if run.passed:
            return Command(goto="finalize")
        if state.get("remedy_attempts", 0) >= self.settings.max_remedy_attempts:
            return Command(goto="block")
        return Command(goto="remedy")

    async def _remedy_node(self, state: ValidationLoopState) -> dict[str, Any]:
        project_id = state["project_id"]
        run = state["run"]
        project = self.store.read_project(project_id)
        if project.last_remedy_phase is not state["phase"]:
            project.remedy_attempts = 0
            project.last_remedy_phase = state["phase"]
            self.store.write_project(project)

        remedy = AutoRemedyRun(
            project_id=project_id,
            validation_run_id=run.run_id,
            phase=state["phase"],
            failure_type=dominant_failure_type(run.failure_reasons),
        )
        self.store.write_remedy_run(remedy)
        plan = plan_remedy(run)
        if plan.is_empty:
            remedy.errors.append("No automatically regenerable artifacts implicated; manual review required")
        for target_phase, filenames in plan.targets.items():
            self._snapshot(project, target_phase, reason=f"before auto-remedy {remedy.run_id}")
            before = {
                filename: artifact.version
                for filename, artifact in self.store.current_artifacts(project_id, target_phase).items()
            }
            try:
                output = await self._regenerate(project, target_phase, filenames, plan.feedback.get(target_phase, []))
                persisted = await self._persist(
                    project_id, target_phase, output.artifacts, reason=f"auto-remedy {remedy.run_id}"
                )
            except Exception as exc:  # noqa: BLE001 - recorded on the remedy run.
                logger.exception("Auto-remedy of %s failed for %s", target_phase.value, project_id)
                remedy.errors.append(f"{target_phase.value}: {type(exc).__name__}: {exc}")
                continue
            remedy.changes_applied += [
                f"{artifact.artifact_id}@v{artifact.version}"
                for artifact in persisted
                if before.get(artifact.filename) != artifact.version
            ]
            remedy.errors += output.errors
        self.store.write_remedy_run(remedy)
        return {"remedy": remedy}

    async def _regenerate(
        self, project: Project, phase: Phase, filenames: Sequence[str], feedback: Sequence[str]
    ) -> PhaseOutput:
        handler = self.registry.for_phase(PHASE_DEFINITIONS[phase])
        return await handler.regenerate(self._phase_context(project, phase), filenames, feedback)

    async def _revalidate_node(self, state: ValidationLoopState) -> dict[str, Any]:
        revalidation = self._run_validation(state["project_id"], state["phase"])
        remedy = state["remedy"]
        remedy.revalidation_run_id = revalidation.run_id
        remedy.successful = revalidation.passed
        remedy.completed_at = utc_now()
        self.store.write_remedy_run(remedy)
        return {"revalidation": revalidation, "remedy": remedy}

    async def _settle_node(self, state: ValidationLoopState) -> dict[str, Any]:
        revalidation = state["revalidation"]
        project = self.store.read_project(state["project_id"])
        if not revalidation.passed:
            project.remedy_attempts += 1
            if project.remedy_attempts >= self.settings.max_remedy_attempts:
                project.phase_status = PhaseStatus.BLOCKED
                logger.warning(
                    "Phase %s for %s blocked after %d remedy attempt(s)",
                    state["phase"].value,
                    project.project_id,
                    project.remedy_attempts,
                )
            self.store.write_project(project)
        else:
            self._write_report(project, revalidation)
        return {
            "remedy_attempts": project.remedy_attempts,
            "blocked": project.phase_status is PhaseStatus.BLOCKED,
            "outcome": determine_outcome(revalidation, project.remedy_attempts, self.settings.max_remedy_attempts),
        }

    async def _block_node(self, state: ValidationLoopState) -> dict[str, Any]:
        project = self.store.read_project(state["project_id"])
        project.phase_status = PhaseStatus.BLOCKED
        self.store.write_project(project)
        return {"blocked": True, "outcome": "blocked"}

    async def _finalize_node(self, state: ValidationLoopState) -> dict[str, Any]:
        run = state["run"]
        project = self.store.read_project(state["project_id"])
        self._write_report(project, run)
        return {
            "blocked": False,
            "outcome": determine_outcome(run, state.get("remedy_attempts", 0), self.settings.max_remedy_attempts),
        }

    def _write_report(self, project: Project, run: ValidationRun) -> None:
        if run.phase is Phase.VALIDATION:
            self.store.save_artifact(
                project.project_id, Phase.VALIDATION, VALIDATION_REPORT_FILENAME, render_report(run), reason=run.run_id
            )

    async def validate_phase(self, project_id: str) -> ValidationOutcome:
        """Validate the current phase and, on failure, launch one scoped auto-remedy.

        Returns:
            The initial run, the remedy run and re-validation (when a remedy
            ran), the remedy-attempt counter, and whether the phase is blocked.
        """
        try:
            with self.store.project_lock(project_id):
                project = self.store.read_project(project_id)
                phase = project.current_phase
                if is_terminal(phase):
                    raise PhaseTransitionError(f"Phase '{phase.value}' is the final phase; nothing to validate")
                if project.phase_status is PhaseStatus.BLOCKED:
                    return ValidationOutcome(
                        success=False,
                        message=f"Phase '{phase.value}' is blocked; manual intervention required",
                        remedy_attempts=project.remedy_attempts,
                        blocked=True,
                        outcome="blocked",
                    )
                attempts = project.remedy_attempts if project.last_remedy_phase is phase else 0
                state = await self.validation_graph.ainvoke(
                    {"project_id": project_id, "phase": phase, "remedy_attempts": attempts}
                )
        except (ProjectNotFoundError, ProjectBusyError, PhaseTransitionError) as exc:
            return ValidationOutcome(success=False, message=str(exc))

        final = state.get("revalidation") or state["run"]
        outcome = state.get("outcome")
        if final.passed:
            message = f"Validation of '{phase.value}' passed"
        elif state.get("blocked"):
            message = f"Validation of '{phase.value}' failed; phase blocked after {state.get('remedy_attempts', 0)} remedy attempt(s)"
        else:
            message = f"Validation of '{phase.value}' failed with {len(final.failure_reasons)} issue(s)"
        return ValidationOutcome(
            success=final.passed,
            message=message,
            validation_run=state["run"],
            remedy_run=state.get("remedy"),
            revalidation_run=state.get("revalidation"),
            remedy_attempts=state.get("remedy_attempts", 0),
            blocked=bool(state.get("blocked")),
            outcome=outcome,
        )

    async def unblock_phase(self, project_id: str) -> PhaseAdvanceResult:
        """Manual intervention: clear the blocked status and reset the remedy counter."""
        try:
            with self.store.project_lock(project_id):
                project = self.store.read_project(project_id)
                if project.phase_status is not PhaseStatus.BLOCKED:
                    raise PhaseTransitionError(f"Phase '{project.current_phase.value}' is not blocked")
                project.phase_status = PhaseStatus.ACTIVE
                project.remedy_attempts = 0
                self.store.write_project(project)
        except (ProjectNotFoundError, ProjectBusyError, PhaseTransitionError) as exc:
            return PhaseAdvanceResult(success=False, message=str(exc))
        return PhaseAdvanceResult(
            success=True,
            message=f"Phase '{project.current_phase.value}' unblocked",
            from_phase=project.current_phase,
            to_phase=project.current_phase,
        )

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback_preview(self, project_id: str, phase_name: str, snapshot_number: int) -> RollbackPreview:
        """Describe what ``rollback_phase`` would change, without writing.

        Raises:
            ValueError: If the phase name is unknown.
            FileNotFoundError: If the snapshot does not exist.
        """
        phase = Phase(phase_name)
        snapshot = self.store.read_snapshot(project_id, phase, snapshot_number)
        current = self.store.current_artifacts(project_id, phase)
        return RollbackPreview(
            snapshot_number=snapshot_number,
            changed=tuple(
                sorted(
                    filename
                    for filename, content in snapshot.artifacts.items()
                    if filename in current and current[filename].content != content
                )
            ),
            added_back=tuple(sorted(filename for filename in snapshot.artifacts if filename not in current)),
            removed=tuple(sorted(filename for filename in current if filename not in snapshot.artifacts)),
        )

    async def rollback_phase(self, project_id: str, phase_name: str, snapshot_number: int) -> RollbackResult:
        """Restore one snapshot as the phase's current artifact set.

        Restoring writes new artifact versions and retires artifacts absent
        from the snapshot; no snapshot is deleted. The pre-rollback state is
        itself snapshotted first.
        """
        try:
            phase = Phase(phase_name)
        except ValueError:
            return RollbackResult(success=False, message=f"Unknown phase '{phase_name}'")
        try:
            with self.store.project_lock(project_id):
                project = self.store.read_project(project_id)
                if PHASE_ORDER.index(phase) > PHASE_ORDER.index(project.current_phase):
                    raise PhaseTransitionError(
                        f"Cannot roll back '{phase.value}'; project is still in '{project.current_phase.value}'"
                    )
                try:
                    snapshot = self.store.read_snapshot(project_id, phase, snapshot_number)
                except FileNotFoundError as exc:
                    raise PhaseTransitionError(f"Snapshot {phase.value}#{snapshot_number} not found") from exc

                current = self.store.current_artifacts(project_id, phase)
                current_hash = artifact_set_hash({name: artifact.content for name, artifact in current.items()})
                if current_hash == snapshot.artifact_set_hash:
                    return RollbackResult(
                        success=True,
                        message=f"{phase.value} already matches snapshot #{snapshot_number}",
                        restored=list(current.values()),
                    )
                self._snapshot(project, phase, reason=f"before rollback to #{snapshot_number}")
                reason = f"rollback to snapshot {snapshot_number}"
                restored = await self._persist(project_id, phase, snapshot.artifacts, reason=reason)
                retired = [filename for filename in current if filename not in snapshot.artifacts]
                for filename in retired:
                    self.store.retire_artifact(project_id, phase, filename, reason=reason)
        except (ProjectNotFoundError, ProjectBusyError, PhaseTransitionError) as exc:
            return RollbackResult(success=False, message=str(exc))
        logger.info("Rolled back %s for %s to snapshot #%d", phase.value, project_id, snapshot_number)
        return RollbackResult(
            success=True,
            message=f"Restored {len(restored)} artifact(s) from {phase.value} snapshot #{snapshot_number}",
            restored=restored,
            retired=retired,
        )

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    async def dispatch_components(
        self,
        specs: Sequence[ComponentSpec],
        context: ComponentContext,
        concurrency: int | None = None,
    ) -> list[SubagentResult]:
        """Generate components outside a phase run; sequential when concurrency is 1."""
        dispatcher = SubagentDispatcher(
            self.client,
            design_tokens=self.design_tokens,
            shared_component_import=self.settings.shared_component_import,
            max_retries=self.settings.subagent_max_retries,
        )
        limit = concurrency if concurrency is not None else self.settings.max_concurrency
        if limit <= 1:
            return await dispatcher.dispatch_sequential(specs, context)
        return await dispatcher.dispatch_parallel(specs, context, limit)
