from __future__ import annotations

import pytest
from conftest import DEMO_BACKEND, demo_registry

from specflow.capabilities import BackendCapability, BackendPreset, BackendRegistry, default_registry
from specflow.errors import BackendNotFoundError
from specflow.models import ParameterOverrides
from specflow.parameters import STABILITY_WARNING, ParameterCache, ParameterResolver, summarize


def test_resolve_without_overrides_uses_preset_and_backend_maximum() -> None:
    resolved = ParameterResolver(demo_registry()).resolve(DEMO_BACKEND)
    assert resolved.temperature == 0.7
    assert resolved.max_tokens == 8192
    assert resolved.source == "preset"
    assert "Using model max output tokens: 8192" in resolved.audit.applied_constraints
    assert resolved.audit.validation_warnings == ()


def test_phase_temperature_applies_and_override_wins() -> None:
    registry = BackendRegistry()
    registry.register(
        BackendCapability("phased", "openai", max_output_tokens=4096),
        BackendPreset(temperature=0.7, phase_temperatures={"specification": 0.5}),
    )
    resolver = ParameterResolver(registry)

    phased = resolver.resolve("phased", "specification")
    assert phased.temperature == 0.5
    assert phased.audit.phase_temperature == 0.5
    assert phased.applied_phase == "specification"

    overridden = resolver.resolve("phased", "specification", ParameterOverrides(temperature=0.9))
    assert overridden.temperature == 0.9
    assert overridden.source == "override"


def test_temperature_clamped_to_provider_range() -> None:
    registry = default_registry()
    resolved = ParameterResolver(registry).resolve(
        "claude-sonnet-4-20250514", overrides=ParameterOverrides(temperature=1.7)
    )
    assert resolved.temperature == 1.0
    assert "Clamped temperature to valid range [0.0, 1.0]" in resolved.audit.applied_constraints
    assert resolved.audit.validation_warnings


def test_max_tokens_capped_at_backend_limit() -> None:
    resolved = ParameterResolver(demo_registry()).resolve(DEMO_BACKEND, overrides=ParameterOverrides(max_tokens=50_000))
    assert resolved.max_tokens == 8192
    assert "Capped max_tokens from 50000 to 8192" in resolved.audit.applied_constraints


@pytest.mark.parametrize(
    ("requested", "expected"),
    [(10, 30), (30, 30), (600, 600), (601, 600), (5_000, 600)],
)
def test_timeout_clamped_to_bounds(requested: int, expected: int) -> None:
    resolved = ParameterResolver(demo_registry()).resolve(
        DEMO_BACKEND, overrides=ParameterOverrides(timeout_seconds=requested)
    )
    assert resolved.timeout_seconds == expected
    clamped = any(item.startswith("Clamped timeout") for item in resolved.audit.applied_constraints)
    assert clamped is (requested != expected)


def test_fractional_timeout_inside_range_is_not_reported_as_clamped() -> None:
    resolved = ParameterResolver(demo_registry()).resolve(
        DEMO_BACKEND, overrides=ParameterOverrides(timeout_seconds=45.5)  # type: ignore[arg-type]
    )
    assert resolved.timeout_seconds == 45
    assert not any(item.startswith("Clamped timeout") for item in resolved.audit.applied_constraints)
    assert not any(item.startswith("Timeout") for item in resolved.audit.validation_warnings)


def test_adjusting_temperature_and_top_p_warns_about_stability() -> None:
    resolver = ParameterResolver(demo_registry())
    both = resolver.resolve(DEMO_BACKEND, overrides=ParameterOverrides(temperature=0.2, top_p=0.5))
    assert STABILITY_WARNING in both.audit.validation_warnings

    one = resolver.resolve(DEMO_BACKEND, overrides=ParameterOverrides(temperature=0.2))
    assert STABILITY_WARNING not in one.audit.validation_warnings


def test_unknown_backend_raises_not_found() -> None:
    resolver = ParameterResolver(demo_registry())
    with pytest.raises(BackendNotFoundError, match="not found in parameter presets"):
        resolver.resolve("missing-model")


def test_cache_hits_are_counted_and_overrides_bypass_cache() -> None:
    cache = ParameterCache()
    resolver = ParameterResolver(demo_registry(), cache)

    first = resolver.resolve(DEMO_BACKEND, "intake")
    second = resolver.resolve(DEMO_BACKEND, "intake")
    assert first is second
    resolver.resolve(DEMO_BACKEND, overrides=ParameterOverrides(max_tokens=100))

    stats = resolver.cache_stats()
    assert stats.hits == 1
    assert stats.misses == 1
    assert stats.size == 1


def test_invalidate_backend_forces_recomputation() -> None:
    registry = demo_registry()
    resolver = ParameterResolver(registry)
    before = resolver.resolve(DEMO_BACKEND)

    registry.register(
        BackendCapability(DEMO_BACKEND, "openai", max_output_tokens=2048),
        BackendPreset(temperature=0.3),
    )
    assert resolver.resolve(DEMO_BACKEND) is before
    assert resolver.invalidate_backend(DEMO_BACKEND) is True
    after = resolver.resolve(DEMO_BACKEND)
    assert after.max_tokens == 2048
    assert after.temperature == 0.3
    assert resolver.invalidate_backend("never-cached") is False


def test_caches_are_owned_per_resolver() -> None:
    left = ParameterResolver(demo_registry())
    right = ParameterResolver(demo_registry())
    left.resolve(DEMO_BACKEND)
    assert right.cache_stats().size == 0
    left.clear_cache()
    assert left.cache_stats().size == 0


def test_validate_overrides_reports_each_problem() -> None:
    resolver = ParameterResolver(demo_registry())
    errors = resolver.validate_overrides(
        DEMO_BACKEND,
        ParameterOverrides(temperature=3.0, max_tokens=0, top_p=1.5, timeout_seconds=5, presence_penalty=4.0),
    )
    assert len(errors) == 5
    assert resolver.validate_overrides(DEMO_BACKEND, ParameterOverrides(temperature=0.5)) == []


def test_summarize_mentions_backend_and_source() -> None:
    text = summarize(ParameterResolver(demo_registry()).resolve(DEMO_BACKEND, "intake"))
    assert DEMO_BACKEND in text
    assert "source=preset" in text
    assert "phase=intake" in text


def test_capability_requires_range_for_unknown_provider() -> None:
    with pytest.raises(ValueError):
        BackendCapability("odd", "someprovider", max_output_tokens=100)
    capability = BackendCapability("odd", "someprovider", max_output_tokens=100, temperature_range=(0.0, 1.5))
    assert capability.valid_temperature_range == (0.0, 1.5)
