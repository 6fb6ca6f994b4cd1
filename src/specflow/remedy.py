from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Literal

from .models import FailureReason, Phase, ValidationRun

logger = logging.getLogger(__name__)

PhaseOutcome = Literal["proceed", "user_choice", "auto_remedy", "blocked"]

PROTECTED_ARTIFACTS: frozenset[str] = frozenset({"project-brief.md", "constitution.md"})


@dataclass(frozen=True)
class FailurePattern:
    failure_type: str
    pattern: re.Pattern[str]
    confidence: float
    manual_review: bool = False


FAILURE_PATTERNS: tuple[FailurePattern, ...] = (
    FailurePattern(
        "constitutional_violation",
        re.compile(r"constitution(?:al)?|violates? (?:the )?principle", re.IGNORECASE),
        0.98,
        manual_review=True,
    ),
    FailurePattern("format_validation_error", re.compile(r"invalid json|malformed|parse error", re.IGNORECASE), 0.95),
    FailurePattern("missing_artifact", re.compile(r"missing required artifact|is empty", re.IGNORECASE), 0.9),
    FailurePattern("placeholder_content", re.compile(r"placeholder", re.IGNORECASE), 0.9),
    FailurePattern(
        "structural_inconsistency",
        re.compile(r"listed in .* but not|not generated|inconsistent|mismatch", re.IGNORECASE),
        0.75,
    ),
)


@dataclass(frozen=True)
class FailureClassification:
    failure_type: str
    confidence: float
    requires_manual_review: bool


def classify_failure(message: str) -> FailureClassification:
    """Map a failure message onto a failure type; unmatched messages need manual review."""
    for candidate in FAILURE_PATTERNS:
        if candidate.pattern.search(message):
            return FailureClassification(candidate.failure_type, candidate.confidence, candidate.manual_review)
    return FailureClassification("unknown", 0.3, True)


def dominant_failure_type(reasons: Iterable[FailureReason]) -> str:
    counts: dict[str, int] = {}
    for reason in reasons:
        counts[reason.failure_type] = counts.get(reason.failure_type, 0) + 1
    if not counts:
        return "unknown"
    return max(sorted(counts), key=lambda failure_type: counts[failure_type])


@dataclass
class RemedyPlan:
    """Artifacts to regenerate, grouped by owning phase, plus what was excluded and why."""

    targets: dict[Phase, list[str]] = field(default_factory=dict)
    feedback: dict[Phase, list[str]] = field(default_factory=dict)
    excluded: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.targets


def split_artifact_id(artifact_id: str) -> tuple[Phase, str]:
    phase_value, _, filename = artifact_id.partition("/")
    if not filename:
        raise ValueError(f"artifact_id must look like '<phase>/<filename>', got: {artifact_id!r}")
    return Phase(phase_value), filename


def plan_remedy(run: ValidationRun) -> RemedyPlan:
    """Scope regeneration to the artifacts named by the failure reasons.

    Protected artifacts, reasons without an artifact, and failure types that
    require manual review are excluded.
    """
    plan = RemedyPlan()
    for reason in run.failure_reasons:
        classification = classify_failure(reason.message)
        if reason.artifact_id is None:
            plan.excluded.append(f"{reason.message} (no artifact implicated)")
            continue
        phase, filename = split_artifact_id(reason.artifact_id)
        if filename in PROTECTED_ARTIFACTS:
            plan.excluded.append(f"{reason.artifact_id} is protected")
            continue
        if classification.requires_manual_review:
            plan.excluded.append(f"{reason.artifact_id} requires manual review ({classification.failure_type})")
            continue
        filenames = plan.targets.setdefault(phase, [])
        if filename not in filenames:
            filenames.append(filename)
        plan.feedback.setdefault(phase, []).append(reason.message)
    for excluded in plan.excluded:
        logger.info("Auto-remedy excluded: %s", excluded)
    return plan


def determine_outcome(run: ValidationRun, remedy_attempts: int, max_attempts: int) -> PhaseOutcome:
    if run.passed:
        return "user_choice" if run.warning_count else "proceed"
    if remedy_attempts >= max_attempts:
        return "blocked"
    return "auto_remedy"
