from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from .errors import BackendNotFoundError


PROVIDER_TEMPERATURE_RANGES: Mapping[str, tuple[float, float]] = MappingProxyType(
    {
        "anthropic": (0.0, 1.0),
        "openai": (0.0, 2.0),
        "gemini": (0.0, 2.0),
        "deepseek": (0.0, 2.0),
        "zai": (0.0, 2.0),
        "groq": (0.0, 2.0),
    }
)


@dataclass(frozen=True)
class BackendCapability:
    """Static limits advertised by a generation backend."""

    backend_id: str
    provider: str
    max_output_tokens: int
    max_input_tokens: int = 128_000
    temperature_range: tuple[float, float] | None = None

    def __post_init__(self) -> None:
        if not self.backend_id.strip():
            raise ValueError("BackendCapability.backend_id must be non-empty")
        if self.max_output_tokens < 1:
            raise ValueError(f"{self.backend_id}: max_output_tokens must be >= 1")
        if self.temperature_range is None and self.provider not in PROVIDER_TEMPERATURE_RANGES:
            raise ValueError(
                f"{self.backend_id}: unknown provider '{self.provider}' requires an explicit temperature_range"
            )

    @property
    def valid_temperature_range(self) -> tuple[float, float]:
        if self.temperature_range is not None:
            return self.temperature_range
        return PROVIDER_TEMPERATURE_RANGES[self.provider]


@dataclass(frozen=True)
class BackendPreset:
    """Default generation parameters for a backend, with optional per-phase temperatures."""

    temperature: float = 0.7
    timeout_seconds: int = 120
    top_p: float = 1.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    phase_temperatures: Mapping[str, float] = field(default_factory=dict)


class BackendRegistry:
    """Maps backend ids to capability descriptors and default presets."""

    def __init__(
        self,
        capabilities: Mapping[str, BackendCapability] | None = None,
        presets: Mapping[str, BackendPreset] | None = None,
    ) -> None:
        self._capabilities: dict[str, BackendCapability] = dict(capabilities or {})
        self._presets: dict[str, BackendPreset] = dict(presets or {})

    def register(self, capability: BackendCapability, preset: BackendPreset | None = None) -> None:
        self._capabilities[capability.backend_id] = capability
        self._presets[capability.backend_id] = preset or BackendPreset()

    def backend_ids(self) -> list[str]:
        return sorted(set(self._capabilities) | set(self._presets))

    def preset(self, backend_id: str) -> BackendPreset:
        """Return the default preset for ``backend_id``.

        Raises:
            BackendNotFoundError: If no preset is registered.
        """
        try:
            return self._presets[backend_id]
        except KeyError:
            available = ", ".join(self.backend_ids()) or "none"
            raise BackendNotFoundError(
                f"Backend '{backend_id}' not found in parameter presets. Registered backends: {available}"
            ) from None

    def capability(self, backend_id: str) -> BackendCapability:
        """Return the capability descriptor for ``backend_id``.

        Raises:
            BackendNotFoundError: If capability metadata is missing.
        """
        try:
            return self._capabilities[backend_id]
        except KeyError:
            raise BackendNotFoundError(f"Capability metadata missing for backend '{backend_id}'") from None


_DEFAULT_BACKENDS: tuple[tuple[BackendCapability, BackendPreset], ...] = (
    (
        BackendCapability("gpt-4o", "openai", max_output_tokens=16_384, max_input_tokens=128_000),
        BackendPreset(temperature=1.0, timeout_seconds=180, top_p=1.0),
    ),
    (
        BackendCapability("gpt-4o-mini", "openai", max_output_tokens=16_384, max_input_tokens=128_000),
        BackendPreset(temperature=0.7, timeout_seconds=120, top_p=1.0),
    ),
    (
        BackendCapability("gemini-2.5-flash", "gemini", max_output_tokens=65_536, max_input_tokens=1_048_576),
        BackendPreset(temperature=0.7, timeout_seconds=150, top_p=0.95),
    ),
    (
        BackendCapability("gemini-2.0-flash", "gemini", max_output_tokens=8_192, max_input_tokens=1_048_576),
        BackendPreset(temperature=0.7, timeout_seconds=120, top_p=0.95),
    ),
    (
        BackendCapability("claude-sonnet-4-20250514", "anthropic", max_output_tokens=4_096, max_input_tokens=200_000),
        BackendPreset(temperature=0.7, timeout_seconds=180, top_p=1.0),
    ),
    (
        BackendCapability("deepseek-chat", "deepseek", max_output_tokens=8_192, max_input_tokens=64_000),
        BackendPreset(temperature=0.7, timeout_seconds=180, top_p=1.0),
    ),
    (
        BackendCapability("glm-4.6", "zai", max_output_tokens=131_072, max_input_tokens=200_000),
        BackendPreset(temperature=0.7, timeout_seconds=180, top_p=1.0),
    ),
)

# Lower creativity for structured phases, higher for ideation.
DEFAULT_PHASE_TEMPERATURES: Mapping[str, float] = MappingProxyType(
    {
        "intake": 0.8,
        "specification": 0.5,
        "dependency_approval": 0.3,
        "solutioning": 0.4,
    }
)


def default_registry() -> BackendRegistry:
    """Build a registry with the shipped backends and their presets."""
    registry = BackendRegistry()
    for capability, preset in _DEFAULT_BACKENDS:
        registry.register(
            capability,
            BackendPreset(
                temperature=preset.temperature,
                timeout_seconds=preset.timeout_seconds,
                top_p=preset.top_p,
                phase_temperatures=dict(DEFAULT_PHASE_TEMPERATURES),
            ),
        )
    return registry
