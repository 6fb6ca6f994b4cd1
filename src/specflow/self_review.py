"""Deterministic static review applied to generated components before acceptance.

No network access and no model calls: the same code and token set always
produce the same issues, in the same order.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)

DEFAULT_SHARED_COMPONENT_IMPORT = "@/components/ui"

_PLACEHOLDER_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(?:TODO|FIXME|TBD|XXX)\b[^\n]*"),
    re.compile(r"lorem ipsum[^\n<\"']*", re.IGNORECASE),
    re.compile(r"\bplaceholder (?:text|content|copy|image|data)\b", re.IGNORECASE),
)
_ANIMATION_RE = re.compile(
    r"\bmotion\.[A-Za-z]+|\banimate=|\buseAnimation\(|@keyframes\s+[\w-]+|\banimate-[a-z][\w-]*"
)
_REDUCED_MOTION_GUARD_RE = re.compile(r"useReducedMotion|prefers-reduced-motion|motion-reduce:|motion-safe:")
_HEX_COLOR_RE = re.compile(r"#(?:[0-9a-fA-F]{8}|[0-9a-fA-F]{6}|[0-9a-fA-F]{3,4})\b")
_FUNCTIONAL_COLOR_RE = re.compile(r"\b(?:rgba?|hsla?)\([^)]*\)")
_CSS_VARIABLE_RE = re.compile(r"--(?P<name>[\w-]+)\s*:\s*(?P<value>[^;\n]+);")


class DesignTokenSource(Protocol):
    """Read-only provider of design-token name -> value pairs."""

    def tokens(self) -> Mapping[str, str]:
        ...


@dataclass(frozen=True)
class StaticDesignTokens:
    values: Mapping[str, str]

    def tokens(self) -> Mapping[str, str]:
        return self.values


def parse_design_tokens(text: str) -> dict[str, str]:
    """Read tokens from a JSON object (nested groups flattened) or CSS custom properties."""
    stripped = text.strip()
    if stripped.startswith("{"):
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            return dict(_flatten_tokens(payload))
    return {match.group("name"): match.group("value").strip() for match in _CSS_VARIABLE_RE.finditer(text)}


def _flatten_tokens(payload: Mapping[str, object], prefix: str = "") -> Iterable[tuple[str, str]]:
    for key, value in payload.items():
        name = f"{prefix}-{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            yield from _flatten_tokens(value, name)
        elif isinstance(value, (str, int, float)):
            yield name, str(value)


def _normalize_color(value: str) -> str:
    return re.sub(r"\s+", "", value).lower()


def _unique(values: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        seen.setdefault(value.strip(), None)
    return [value for value in seen if value]


@dataclass(frozen=True)
class SelfReviewResult:
    passed: bool
    issues: tuple[str, ...]


def find_placeholders(code: str) -> list[str]:
    return _unique(match.group(0) for pattern in _PLACEHOLDER_PATTERNS for match in pattern.finditer(code))


def find_unguarded_animations(code: str) -> list[str]:
    if _REDUCED_MOTION_GUARD_RE.search(code):
        return []
    return _unique(match.group(0) for match in _ANIMATION_RE.finditer(code))


def find_untokenized_colors(code: str, design_tokens: Mapping[str, str]) -> list[str]:
    allowed = {_normalize_color(value) for value in design_tokens.values()}
    literals = [match.group(0) for match in _HEX_COLOR_RE.finditer(code)]
    literals += [match.group(0) for match in _FUNCTIONAL_COLOR_RE.finditer(code) if "var(" not in match.group(0)]
    return _unique(literal for literal in literals if _normalize_color(literal) not in allowed)


def review_component(
    code: str,
    *,
    design_tokens: Mapping[str, str] | None = None,
    shared_component_import: str = DEFAULT_SHARED_COMPONENT_IMPORT,
) -> SelfReviewResult:
    """Statically review generated component code.

    Args:
        code: Extracted component source.
        design_tokens: Token name -> value. The color check is skipped when empty.
        shared_component_import: Module path every component must import from.

    Returns:
        ``passed`` plus one issue per offending substring.
    """
    issues: list[str] = []
    issues += [f"Unresolved placeholder marker: '{marker}'" for marker in find_placeholders(code)]
    issues += [
        f"Animation without reduced-motion guard: '{construct}'" for construct in find_unguarded_animations(code)
    ]
    import_re = re.compile(rf"from\s+['\"]{re.escape(shared_component_import)}(?:/[^'\"]*)?['\"]")
    if not import_re.search(code):
        issues.append(f"Missing required shared component import from '{shared_component_import}'")
    if design_tokens:
        issues += [
            f"Color literal not in design tokens: '{literal}'"
            for literal in find_untokenized_colors(code, design_tokens)
        ]
    if issues:
        logger.debug("Self-review found %d issue(s)", len(issues))
    return SelfReviewResult(passed=not issues, issues=tuple(issues))
