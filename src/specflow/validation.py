from __future__ import annotations

import json
import logging
import time
from collections.abc import Mapping

from .dispatcher import parse_component_specs
from .models import Artifact, FailureReason, Phase, ValidationRun
from .phases import COMPONENT_INVENTORY_FILENAME, PHASE_DEFINITIONS
from .remedy import classify_failure
from .self_review import find_placeholders

logger = logging.getLogger(__name__)

MIN_MARKDOWN_LENGTH = 200


def _failure(phase: Phase, filename: str | None, message: str) -> FailureReason:
    return FailureReason(
        artifact_id=f"{phase.value}/{filename}" if filename else None,
        phase=phase,
        message=message,
        failure_type=classify_failure(message).failure_type,
    )


def check_phase_artifacts(phase: Phase, artifacts: Mapping[str, Artifact]) -> tuple[list[FailureReason], list[str]]:
    """Structural checks for one phase's current artifact set."""
    failures: list[FailureReason] = []
    warnings: list[str] = []
    definition = PHASE_DEFINITIONS[phase]

    for filename in definition.outputs:
        if filename not in artifacts:
            failures.append(_failure(phase, filename, f"Missing required artifact {filename}"))
    if definition.handler == "subagents" and not any(name.endswith(".tsx") for name in artifacts):
        failures.append(_failure(phase, None, "No components generated for solutioning"))

    for filename, artifact in sorted(artifacts.items()):
        content = artifact.content
        if not content.strip():
            failures.append(_failure(phase, filename, f"Artifact {filename} is empty"))
            continue
        if filename.endswith(".json"):
            try:
                json.loads(content)
            except json.JSONDecodeError as exc:
                failures.append(_failure(phase, filename, f"Invalid JSON in {filename}: {exc.msg}"))
        for marker in find_placeholders(content):
            failures.append(_failure(phase, filename, f"Unresolved placeholder in {filename}: '{marker}'"))
        if filename.endswith(".md") and len(content.strip()) < MIN_MARKDOWN_LENGTH:
            warnings.append(f"{phase.value}/{filename} is unusually short ({len(content.strip())} chars)")
    return failures, warnings


def check_component_coverage(
    specification: Mapping[str, Artifact], solutioning: Mapping[str, Artifact]
) -> list[FailureReason]:
    """Every inventoried component must have a generated ``.tsx`` artifact."""
    inventory = specification.get(COMPONENT_INVENTORY_FILENAME)
    if inventory is None:
        return []
    try:
        specs = parse_component_specs(inventory.content)
    except ValueError as exc:
        return [_failure(Phase.SPECIFICATION, COMPONENT_INVENTORY_FILENAME, f"Malformed component inventory: {exc}")]
    return [
        _failure(
            Phase.SOLUTIONING,
            f"{spec.name}.tsx",
            f"Component {spec.name} listed in {COMPONENT_INVENTORY_FILENAME} but not generated",
        )
        for spec in specs
        if f"{spec.name}.tsx" not in solutioning
    ]


def run_validation(
    project_id: str,
    phase: Phase,
    artifacts_by_phase: Mapping[Phase, Mapping[str, Artifact]],
) -> ValidationRun:
    """Validate ``phase``; the validation phase checks every phase in ``artifacts_by_phase``.

    Returns:
        A ValidationRun; quality problems are reported as failure reasons, never raised.
    """
    started = time.perf_counter()
    targets = list(artifacts_by_phase) if phase is Phase.VALIDATION else [phase]
    failures: list[FailureReason] = []
    warnings: list[str] = []
    for target in targets:
        phase_failures, phase_warnings = check_phase_artifacts(target, artifacts_by_phase.get(target, {}))
        failures += phase_failures
        warnings += phase_warnings
    if phase is Phase.VALIDATION and Phase.SOLUTIONING in artifacts_by_phase:
        failures += check_component_coverage(
            artifacts_by_phase.get(Phase.SPECIFICATION, {}), artifacts_by_phase[Phase.SOLUTIONING]
        )

    run = ValidationRun(
        project_id=project_id,
        phase=phase,
        passed=not failures,
        failure_reasons=failures,
        warnings=warnings,
        duration_seconds=time.perf_counter() - started,
    )
    logger.info(
        "Validation of %s for %s: passed=%s failures=%d warnings=%d",
        phase.value,
        project_id,
        run.passed,
        len(failures),
        len(warnings),
    )
    return run


def render_report(run: ValidationRun) -> str:
    lines = [
        f"# Validation report: {run.project_id}",
        "",
        f"- Run: {run.run_id}",
        f"- Passed: {'yes' if run.passed else 'no'}",
        f"- Failures: {len(run.failure_reasons)}",
        f"- Warnings: {run.warning_count}",
        "",
    ]
    if run.failure_reasons:
        lines += ["## Failures", ""]
        lines += [f"- [{reason.failure_type}] {reason.message}" for reason in run.failure_reasons]
        lines.append("")
    if run.warnings:
        lines += ["## Warnings", ""]
        lines += [f"- {warning}" for warning in run.warnings]
    return "\n".join(lines).rstrip() + "\n"
