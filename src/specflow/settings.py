from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_store_root: str = "state_store"
    backend_id: str = "gpt-4o-mini"
    max_remedy_attempts: int = 3
    max_concurrency: int = 5
    generation_max_retries: int = 3
    subagent_max_retries: int = 2
    rate_limit_base_delay: float = 1.0
    transient_base_delay: float = 2.0
    max_backoff: float = 40.0
    shared_component_import: str = "@/components/ui"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_store_root=os.getenv("SPECFLOW_STATE_STORE_ROOT", "state_store"),
            backend_id=os.getenv("SPECFLOW_BACKEND_ID", "gpt-4o-mini"),
            max_remedy_attempts=_get_env_int("SPECFLOW_MAX_REMEDY_ATTEMPTS", default=3, minimum=1, maximum=20),
            max_concurrency=_get_env_int("SPECFLOW_MAX_CONCURRENCY", default=5, minimum=1, maximum=64),
            generation_max_retries=_get_env_int("SPECFLOW_GENERATION_MAX_RETRIES", default=3, minimum=1, maximum=10),
            subagent_max_retries=_get_env_int("SPECFLOW_SUBAGENT_MAX_RETRIES", default=2, minimum=1, maximum=10),
            rate_limit_base_delay=_get_env_float("SPECFLOW_RATE_LIMIT_BASE_DELAY", default=1.0, minimum=0.0),
            transient_base_delay=_get_env_float("SPECFLOW_TRANSIENT_BASE_DELAY", default=2.0, minimum=0.0),
            max_backoff=_get_env_float("SPECFLOW_MAX_BACKOFF", default=40.0, minimum=0.0),
            shared_component_import=os.getenv("SPECFLOW_SHARED_COMPONENT_IMPORT", "@/components/ui"),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        backend_id = self.backend_id.strip()
        if not backend_id:
            raise ValueError("SPECFLOW_BACKEND_ID must be non-empty")
        if not self.state_store_root.strip():
            raise ValueError("SPECFLOW_STATE_STORE_ROOT must be non-empty")
        shared_import = self.shared_component_import.strip()
        if not shared_import:
            raise ValueError("SPECFLOW_SHARED_COMPONENT_IMPORT must be non-empty")

        # -- Numeric bounds validation --
        if self.max_remedy_attempts < 1:
            raise ValueError(f"SPECFLOW_MAX_REMEDY_ATTEMPTS must be >= 1, got: {self.max_remedy_attempts}")
        if self.max_concurrency < 1:
            raise ValueError(f"SPECFLOW_MAX_CONCURRENCY must be >= 1, got: {self.max_concurrency}")
        if self.generation_max_retries < 1 or self.subagent_max_retries < 1:
            raise ValueError("retry budgets must be >= 1")
        if self.max_backoff < max(self.rate_limit_base_delay, self.transient_base_delay):
            raise ValueError(
                f"SPECFLOW_MAX_BACKOFF must be >= the base delays, got: {self.max_backoff}"
            )
        return replace(self, backend_id=backend_id, shared_component_import=shared_import)

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 3_600.0) -> float:
    """Float counterpart of ``_get_env_int``; delays are expressed in seconds."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed
