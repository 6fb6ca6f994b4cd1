from importlib.metadata import version

from .capabilities import BackendCapability, BackendPreset, BackendRegistry, default_registry
from .dispatcher import SubagentDispatcher, order_components, parse_component_specs
from .engine import (
    GateDecisionResult,
    PhaseAdvanceResult,
    PhaseExecutionResult,
    PhaseStateMachine,
    RollbackPreview,
    RollbackResult,
    ValidationOutcome,
)
from .errors import (
    BackendConfigurationError,
    BackendNotFoundError,
    BackendRequestError,
    GenerationFailedError,
    GenerationTimeoutError,
    PhaseTransitionError,
    ProjectBusyError,
    ProjectNotFoundError,
    RateLimitError,
    SpecflowError,
    TransientBackendError,
)
from .llm import ChatOpenAIBackend, GenerationBackend, GenerationClient, RetryPolicy
from .models import (
    ApprovalGate,
    Artifact,
    AutoRemedyRun,
    ComponentContext,
    ComponentSpec,
    GateStatus,
    GenerationResult,
    ParameterAudit,
    ParameterOverrides,
    Phase,
    PhaseExecutionRecord,
    PhaseSnapshot,
    PhaseStatus,
    Project,
    ResolvedParameters,
    SubagentResult,
    ValidationRun,
)
from .parameters import ParameterCache, ParameterResolver
from .self_review import SelfReviewResult, StaticDesignTokens, review_component
from .settings import RuntimeSettings
from .state_store import FileProjectStore


def get_version() -> str:
    try:
        return version("specflow-engine")
    except Exception:
        return "0.0.0"


__all__ = [
    "ApprovalGate",
    "Artifact",
    "AutoRemedyRun",
    "BackendCapability",
    "BackendConfigurationError",
    "BackendNotFoundError",
    "BackendPreset",
    "BackendRegistry",
    "BackendRequestError",
    "ChatOpenAIBackend",
    "ComponentContext",
    "ComponentSpec",
    "FileProjectStore",
    "GateDecisionResult",
    "GateStatus",
    "GenerationBackend",
    "GenerationClient",
    "GenerationFailedError",
    "GenerationResult",
    "GenerationTimeoutError",
    "ParameterAudit",
    "ParameterCache",
    "ParameterOverrides",
    "ParameterResolver",
    "Phase",
    "PhaseAdvanceResult",
    "PhaseExecutionRecord",
    "PhaseExecutionResult",
    "PhaseSnapshot",
    "PhaseStateMachine",
    "PhaseStatus",
    "PhaseTransitionError",
    "Project",
    "ProjectBusyError",
    "ProjectNotFoundError",
    "RateLimitError",
    "ResolvedParameters",
    "RetryPolicy",
    "RollbackPreview",
    "RollbackResult",
    "RuntimeSettings",
    "SelfReviewResult",
    "SpecflowError",
    "StaticDesignTokens",
    "SubagentDispatcher",
    "SubagentResult",
    "TransientBackendError",
    "ValidationOutcome",
    "ValidationRun",
    "default_registry",
    "get_version",
    "order_components",
    "parse_component_specs",
    "review_component",
]
