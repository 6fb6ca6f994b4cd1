from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from .capabilities import BackendRegistry
from .models import ParameterAudit, ParameterOverrides, ResolvedParameters

logger = logging.getLogger(__name__)

MIN_TIMEOUT_SECONDS: int = 30
MAX_TIMEOUT_SECONDS: int = 600
STABILITY_WARNING = "Both temperature and top_p adjusted; recommend adjusting only one for stability"


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    size: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total) * 100.0 if total else 0.0


class ParameterCache:
    """Owned cache of non-overridden resolutions, keyed by backend id.

    Entries live until ``clear`` or ``invalidate`` is called; there is no expiry.
    """

    def __init__(self) -> None:
        self._entries: dict[str, dict[str | None, ResolvedParameters]] = {}
        self._hits = 0
        self._misses = 0
        self._lock = threading.Lock()

    def get(self, backend_id: str, phase_tag: str | None) -> ResolvedParameters | None:
        with self._lock:
            cached = self._entries.get(backend_id, {}).get(phase_tag)
            if cached is None:
                self._misses += 1
            else:
                self._hits += 1
            return cached

    def put(self, backend_id: str, phase_tag: str | None, resolved: ResolvedParameters) -> None:
        with self._lock:
            self._entries.setdefault(backend_id, {})[phase_tag] = resolved

    def invalidate(self, backend_id: str) -> bool:
        with self._lock:
            return self._entries.pop(backend_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            size = sum(len(by_phase) for by_phase in self._entries.values())
            return CacheStats(hits=self._hits, misses=self._misses, size=size)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class ParameterResolver:
    """Computes effective generation parameters for a backend and phase."""

    def __init__(self, registry: BackendRegistry, cache: ParameterCache | None = None) -> None:
        self.registry = registry
        self.cache = cache if cache is not None else ParameterCache()

    def resolve(
        self,
        backend_id: str,
        phase_tag: str | None = None,
        overrides: ParameterOverrides | None = None,
    ) -> ResolvedParameters:
        """Resolve parameters for one generation call.

        Temperature precedence is override, then phase adjustment, then preset,
        clamped to the provider range. Output length defaults to the backend
        maximum and is clamped to it. Timeout is clamped to [30, 600] seconds.

        Args:
            backend_id: Registered backend identifier.
            phase_tag: Optional phase tag for phase-specific temperature.
            overrides: Explicit overrides; bypasses the cache when non-empty.

        Returns:
            Resolved parameters with an audit trail of applied constraints.

        Raises:
            BackendNotFoundError: If the backend or its capability metadata is unknown.
        """
        use_cache = overrides is None or overrides.is_empty()
        if use_cache:
            cached = self.cache.get(backend_id, phase_tag)
            if cached is not None:
                return cached

        preset = self.registry.preset(backend_id)
        capability = self.registry.capability(backend_id)
        overrides = overrides or ParameterOverrides()
        constraints: list[str] = []
        warnings: list[str] = []

        phase_temperature = preset.phase_temperatures.get(phase_tag) if phase_tag else None
        if overrides.temperature is not None:
            requested_temperature = overrides.temperature
        elif phase_temperature is not None:
            requested_temperature = phase_temperature
            constraints.append(f"Applied {phase_tag} phase temperature: {phase_temperature}")
        else:
            requested_temperature = preset.temperature
        low, high = capability.valid_temperature_range
        temperature = _clamp(requested_temperature, low, high)
        if temperature != requested_temperature:
            message = f"Clamped temperature to valid range [{low}, {high}]"
            constraints.append(message)
            warnings.append(f"Temperature {requested_temperature} outside {capability.provider} range [{low}, {high}]")

        if overrides.max_tokens is not None:
            requested_tokens = overrides.max_tokens
        else:
            requested_tokens = capability.max_output_tokens
            constraints.append(f"Using model max output tokens: {capability.max_output_tokens}")
        max_tokens = max(1, min(requested_tokens, capability.max_output_tokens))
        if max_tokens != requested_tokens:
            constraints.append(f"Capped max_tokens from {requested_tokens} to {max_tokens}")
            warnings.append(f"max_tokens {requested_tokens} outside backend limit [1, {capability.max_output_tokens}]")

        requested_timeout = overrides.timeout_seconds if overrides.timeout_seconds is not None else preset.timeout_seconds
        clamped_timeout = _clamp(requested_timeout, MIN_TIMEOUT_SECONDS, MAX_TIMEOUT_SECONDS)
        timeout_seconds = int(clamped_timeout)
        if clamped_timeout != requested_timeout:
            constraints.append(
                f"Clamped timeout from {requested_timeout}s to {timeout_seconds}s "
                f"(range [{MIN_TIMEOUT_SECONDS}, {MAX_TIMEOUT_SECONDS}])"
            )
            warnings.append(f"Timeout {requested_timeout}s outside [{MIN_TIMEOUT_SECONDS}, {MAX_TIMEOUT_SECONDS}]")

        top_p = overrides.top_p if overrides.top_p is not None else preset.top_p
        clamped_top_p = _clamp(top_p, 0.0, 1.0)
        if clamped_top_p != top_p:
            constraints.append("Clamped top_p to valid range [0.0, 1.0]")
            warnings.append(f"top_p {top_p} outside [0.0, 1.0]")

        if temperature != preset.temperature and clamped_top_p != preset.top_p:
            warnings.append(STABILITY_WARNING)

        frequency_penalty = _clamp(
            overrides.frequency_penalty if overrides.frequency_penalty is not None else preset.frequency_penalty, -2.0, 2.0
        )
        presence_penalty = _clamp(
            overrides.presence_penalty if overrides.presence_penalty is not None else preset.presence_penalty, -2.0, 2.0
        )

        for warning in warnings:
            logger.warning("Parameter resolution for %s: %s", backend_id, warning)

        resolved = ResolvedParameters(
            temperature=temperature,
            max_tokens=max_tokens,
            timeout_seconds=timeout_seconds,
            top_p=clamped_top_p,
            frequency_penalty=frequency_penalty,
            presence_penalty=presence_penalty,
            source="preset" if use_cache else "override",
            applied_phase=phase_tag,
            audit=ParameterAudit(
                backend_id=backend_id,
                provider=capability.provider,
                backend_max_output_tokens=capability.max_output_tokens,
                base_temperature=preset.temperature,
                phase_temperature=phase_temperature,
                final_temperature=temperature,
                timeout_seconds=timeout_seconds,
                top_p=clamped_top_p,
                applied_constraints=tuple(constraints),
                validation_warnings=tuple(warnings),
            ),
        )
        if use_cache:
            self.cache.put(backend_id, phase_tag, resolved)
        return resolved

    def validate_overrides(self, backend_id: str, overrides: ParameterOverrides) -> list[str]:
        """Return human-readable problems with ``overrides``; empty when valid."""
        capability = self.registry.capability(backend_id)
        errors: list[str] = []
        low, high = capability.valid_temperature_range
        if overrides.temperature is not None and not low <= overrides.temperature <= high:
            errors.append(f"temperature must be within [{low}, {high}] for {capability.provider}")
        if overrides.max_tokens is not None:
            if overrides.max_tokens < 1:
                errors.append("max_tokens must be positive")
            elif overrides.max_tokens > capability.max_output_tokens:
                errors.append(f"max_tokens exceeds backend limit {capability.max_output_tokens}")
        if overrides.top_p is not None and not 0.0 <= overrides.top_p <= 1.0:
            errors.append("top_p must be within [0, 1]")
        if overrides.timeout_seconds is not None and not (
            MIN_TIMEOUT_SECONDS <= overrides.timeout_seconds <= MAX_TIMEOUT_SECONDS
        ):
            errors.append(f"timeout must be within [{MIN_TIMEOUT_SECONDS}, {MAX_TIMEOUT_SECONDS}] seconds")
        for name in ("frequency_penalty", "presence_penalty"):
            value = getattr(overrides, name)
            if value is not None and not -2.0 <= value <= 2.0:
                errors.append(f"{name} must be within [-2, 2]")
        return errors

    def invalidate_backend(self, backend_id: str) -> bool:
        return self.cache.invalidate(backend_id)

    def clear_cache(self) -> None:
        self.cache.clear()

    def cache_stats(self) -> CacheStats:
        return self.cache.stats()


def summarize(resolved: ResolvedParameters) -> str:
    audit = resolved.audit
    parts = [
        f"{audit.backend_id} ({audit.provider})",
        f"temperature={resolved.temperature}",
        f"max_tokens={resolved.max_tokens}",
        f"timeout={resolved.timeout_seconds}s",
        f"top_p={resolved.top_p}",
        f"source={resolved.source}",
    ]
    if resolved.applied_phase:
        parts.append(f"phase={resolved.applied_phase}")
    if audit.validation_warnings:
        parts.append(f"warnings={len(audit.validation_warnings)}")
    return ", ".join(parts)
