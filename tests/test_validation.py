from __future__ import annotations

import asyncio

import pytest
from conftest import INVENTORY, LONG_MARKDOWN, TOKENS_JSON, FakeBackend, component_code, make_client

from specflow.handlers import (
    GenerationPhaseHandler,
    PhaseContext,
    PhaseHandlerRegistry,
    SubagentPhaseHandler,
)
from specflow.models import Artifact, FailureReason, Phase, Project, ValidationRun
from specflow.phases import PHASE_DEFINITIONS
from specflow.remedy import classify_failure, determine_outcome, dominant_failure_type, plan_remedy
from specflow.validation import check_component_coverage, render_report, run_validation


def _artifacts(phase: Phase, contents: dict[str, str]) -> dict[str, Artifact]:
    return {
        filename: Artifact.build(phase=phase, filename=filename, version=1, content=content)
        for filename, content in contents.items()
    }


def _specification(**overrides: str) -> dict[str, Artifact]:
    contents = {
        "PRD.md": f"# PRD\n\n{LONG_MARKDOWN}",
        "data-model.md": f"# Data model\n\n{LONG_MARKDOWN}",
        "component-inventory.md": INVENTORY,
        "design-tokens.json": TOKENS_JSON,
    }
    contents.update(overrides)
    return _artifacts(Phase.SPECIFICATION, contents)


def test_complete_phase_passes_with_short_markdown_warning() -> None:
    run = run_validation("PRJ-1", Phase.SPECIFICATION, {Phase.SPECIFICATION: _specification()})
    assert run.passed is True
    assert run.failure_reasons == []
    assert run.warning_count == 1
    assert "component-inventory.md" in run.warnings[0]


def test_structural_failures_are_classified() -> None:
    specification = _specification(**{"design-tokens.json": "{not json", "data-model.md": "  "})
    del specification["PRD.md"]
    run = run_validation("PRJ-1", Phase.SPECIFICATION, {Phase.SPECIFICATION: specification})

    by_artifact = {reason.artifact_id: reason for reason in run.failure_reasons}
    assert run.passed is False
    assert by_artifact["specification/PRD.md"].failure_type == "missing_artifact"
    assert by_artifact["specification/data-model.md"].failure_type == "missing_artifact"
    assert by_artifact["specification/design-tokens.json"].failure_type == "format_validation_error"


def test_validation_phase_checks_component_coverage() -> None:
    solutioning = _artifacts(Phase.SOLUTIONING, {"Layout.tsx": component_code("Layout")})
    run = run_validation(
        "PRJ-1",
        Phase.VALIDATION,
        {Phase.SPECIFICATION: _specification(), Phase.SOLUTIONING: solutioning},
    )
    missing = sorted(reason.artifact_id or "" for reason in run.failure_reasons)
    assert missing == ["solutioning/Header.tsx", "solutioning/TaskCard.tsx"]
    assert all(reason.failure_type == "structural_inconsistency" for reason in run.failure_reasons)
    assert "Header listed in component-inventory.md but not generated" in render_report(run)


def test_coverage_skipped_without_inventory() -> None:
    assert check_component_coverage({}, {}) == []


@pytest.mark.parametrize(
    ("message", "failure_type", "manual"),
    [
        ("Unresolved placeholder in PRD.md: 'TODO'", "placeholder_content", False),
        ("Invalid JSON in design-tokens.json: Expecting value", "format_validation_error", False),
        ("Missing required artifact PRD.md", "missing_artifact", False),
        ("Artifact violates principle 3 of the constitution", "constitutional_violation", True),
        ("Something odd happened", "unknown", True),
    ],
)
def test_classify_failure(message: str, failure_type: str, manual: bool) -> None:
    classification = classify_failure(message)
    assert classification.failure_type == failure_type
    assert classification.requires_manual_review is manual


def _failed_run(*reasons: FailureReason) -> ValidationRun:
    return ValidationRun(project_id="PRJ-1", phase=Phase.VALIDATION, passed=False, failure_reasons=list(reasons))


def test_plan_remedy_scopes_to_implicated_artifacts() -> None:
    run = _failed_run(
        FailureReason(
            artifact_id="specification/PRD.md",
            phase=Phase.SPECIFICATION,
            message="Unresolved placeholder in PRD.md: 'TBD'",
            failure_type="placeholder_content",
        ),
        FailureReason(
            artifact_id="intake/project-brief.md",
            phase=Phase.INTAKE,
            message="Artifact project-brief.md is empty",
            failure_type="missing_artifact",
        ),
        FailureReason(
            artifact_id=None,
            phase=Phase.SOLUTIONING,
            message="No components generated for solutioning",
            failure_type="structural_inconsistency",
        ),
        FailureReason(
            artifact_id="solutioning/Nav.tsx",
            phase=Phase.SOLUTIONING,
            message="Component Nav listed in component-inventory.md but not generated",
            failure_type="structural_inconsistency",
        ),
    )
    plan = plan_remedy(run)

    assert plan.targets == {Phase.SPECIFICATION: ["PRD.md"], Phase.SOLUTIONING: ["Nav.tsx"]}
    assert plan.feedback[Phase.SPECIFICATION] == ["Unresolved placeholder in PRD.md: 'TBD'"]
    assert len(plan.excluded) == 2
    assert dominant_failure_type(run.failure_reasons) == "structural_inconsistency"


def test_determine_outcome() -> None:
    passed = ValidationRun(project_id="PRJ-1", phase=Phase.INTAKE, passed=True)
    warned = ValidationRun(project_id="PRJ-1", phase=Phase.INTAKE, passed=True, warnings=["short"])
    failed = _failed_run()
    assert determine_outcome(passed, 0, 3) == "proceed"
    assert determine_outcome(warned, 0, 3) == "user_choice"
    assert determine_outcome(failed, 2, 3) == "auto_remedy"
    assert determine_outcome(failed, 3, 3) == "blocked"


# ---------------------------------------------------------------------------
# Phase handlers
# ---------------------------------------------------------------------------

PROJECT = Project(project_id="PRJ-1", name="Planner", brief="Plan weekly work.")


def test_generation_handler_strips_fences_and_chains_outputs() -> None:
    backend = FakeBackend(script=["```markdown\n# PRD body\n```", "# Data", INVENTORY, TOKENS_JSON])
    handler = GenerationPhaseHandler(make_client(backend))
    context = PhaseContext(
        project=PROJECT,
        definition=PHASE_DEFINITIONS[Phase.SPECIFICATION],
        context_artifacts={"intake/project-analysis.md": "analysis"},
    )
    output = asyncio.run(handler.execute(context))

    assert list(output.artifacts) == ["PRD.md", "data-model.md", "component-inventory.md", "design-tokens.json"]
    assert output.artifacts["PRD.md"] == "# PRD body"
    assert "# specification/PRD.md" in backend.requests[1].system_instruction
    assert backend.requests[0].parameters.applied_phase == "specification"


def test_subagent_regenerate_drops_links_to_parents_outside_subset() -> None:
    backend = FakeBackend()
    handler = SubagentPhaseHandler(make_client(backend), max_concurrency=1)
    context = PhaseContext(
        project=PROJECT,
        definition=PHASE_DEFINITIONS[Phase.SOLUTIONING],
        context_artifacts={
            "specification/component-inventory.md": INVENTORY,
            "specification/design-tokens.json": TOKENS_JSON,
        },
    )
    output = asyncio.run(handler.regenerate(context, ["Header.tsx"]))
    assert output.success is True
    assert list(output.artifacts) == ["Header.tsx"]


def test_subagent_handler_requires_inventory() -> None:
    handler = SubagentPhaseHandler(make_client(FakeBackend()))
    context = PhaseContext(project=PROJECT, definition=PHASE_DEFINITIONS[Phase.SOLUTIONING], context_artifacts={})
    with pytest.raises(ValueError, match="component-inventory.md is required"):
        asyncio.run(handler.execute(context))


def test_handler_registry_rejects_unregistered_phase() -> None:
    registry = PhaseHandlerRegistry()
    with pytest.raises(LookupError, match="No handler registered"):
        registry.for_phase(PHASE_DEFINITIONS[Phase.INTAKE])
