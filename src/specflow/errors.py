from __future__ import annotations


class SpecflowError(RuntimeError):
    """Base class for orchestration errors."""


class BackendNotFoundError(SpecflowError, LookupError):
    """Unknown backend id or missing capability metadata. Never retried."""


class BackendRequestError(SpecflowError):
    """Backend rejected the request (auth, bad request). Never retried."""


class BackendConfigurationError(SpecflowError):
    """Missing API key or invalid backend settings. Fails fast, never retried."""


class TransientBackendError(SpecflowError):
    """Network or server-side failure that may succeed on retry."""


class RateLimitError(TransientBackendError):
    """Backend signalled a rate limit."""


class GenerationTimeoutError(SpecflowError):
    """A generation call exceeded its wall-clock timeout."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Generation request timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class GenerationFailedError(SpecflowError):
    """Retries exhausted; carries the last underlying message."""

    def __init__(self, message: str, *, attempts: int, last_error: BaseException | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class PhaseTransitionError(SpecflowError):
    """Phase invariant violated (terminal phase, wrong-phase gate, unmet gate)."""


class ProjectNotFoundError(SpecflowError, LookupError):
    pass


class ProjectBusyError(SpecflowError):
    """Another holder owns the project advisory lock."""
