from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import Iterable, Mapping, Sequence
from types import MappingProxyType

from .extraction import DEFAULT_STRATEGIES, ExtractionStrategy, extract_component_code
from .llm import GenerationClient
from .models import COMPONENT_TYPES, ComponentContext, ComponentSpec, SubagentResult, SubagentStatus
from .self_review import DEFAULT_SHARED_COMPONENT_IMPORT, DesignTokenSource, StaticDesignTokens, review_component

logger = logging.getLogger(__name__)

SKIPPED_PARENT_FAILED = "skipped - parent failed"

_INVENTORY_LINE_RE = re.compile(
    r"^\s*[-*]\s*(?P<name>[A-Z][A-Za-z0-9]*)\s*"
    r"(?:\((?P<type>[a-z]+)\))?\s*"
    r"(?:\[parent:\s*(?P<parent>[A-Z][A-Za-z0-9]*)\])?\s*"
    r"(?::\s*(?P<description>.*))?$"
)


def order_components(specs: Sequence[ComponentSpec]) -> list[ComponentSpec]:
    """Order specs so every parent precedes its children.

    Input order is preserved among unrelated components.

    Raises:
        ValueError: On duplicate names, a parent that is not in ``specs``, or a parent cycle.
    """
    by_name: dict[str, ComponentSpec] = {}
    for spec in specs:
        if spec.name in by_name:
            raise ValueError(f"Duplicate component name: {spec.name}")
        by_name[spec.name] = spec
    for spec in specs:
        if spec.parent is not None and spec.parent not in by_name:
            raise ValueError(f"Component '{spec.name}' references unknown parent '{spec.parent}'")

    ordered: list[ComponentSpec] = []
    visited: set[str] = set()
    for spec in specs:
        chain: list[ComponentSpec] = []
        on_chain: set[str] = set()
        current: ComponentSpec | None = spec
        while current is not None and current.name not in visited:
            if current.name in on_chain:
                raise ValueError(f"Component parent cycle detected at '{current.name}'")
            on_chain.add(current.name)
            chain.append(current)
            current = by_name[current.parent] if current.parent is not None else None
        for item in reversed(chain):
            visited.add(item.name)
            ordered.append(item)
    return ordered


class SubagentDispatcher:
    """Generates one component per call, each with a prompt scoped to that component only.

    Sibling components appear in prompts by name, never by content. The map of
    generated components is local to this instance; parallel dispatch gives
    every in-flight call its own instance.
    """

    def __init__(
        self,
        client: GenerationClient,
        *,
        design_tokens: DesignTokenSource | None = None,
        shared_component_import: str = DEFAULT_SHARED_COMPONENT_IMPORT,
        max_retries: int = 2,
        strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES,
        generated: Mapping[str, str] | None = None,
    ) -> None:
        self.client = client
        self.design_tokens = design_tokens or StaticDesignTokens({})
        self.shared_component_import = shared_component_import
        self.max_retries = max_retries
        self.strategies = tuple(strategies)
        self._generated: dict[str, str] = dict(generated or {})
        self.last_batch_sizes: list[int] = []

    @property
    def generated_components(self) -> Mapping[str, str]:
        return MappingProxyType(self._generated)

    def clear(self) -> None:
        self._generated.clear()
        self.last_batch_sizes = []

    def _spawn(self) -> "SubagentDispatcher":
        return SubagentDispatcher(
            self.client,
            design_tokens=self.design_tokens,
            shared_component_import=self.shared_component_import,
            max_retries=self.max_retries,
            strategies=self.strategies,
            generated=self._generated,
        )

    def build_prompt(self, spec: ComponentSpec, context: ComponentContext) -> str:
        tokens = self.design_tokens.tokens()
        existing = ", ".join(sorted(name for name in self._generated if name != spec.name)) or "none"
        token_lines = "\n".join(f"- {name}: {value}" for name, value in sorted(tokens.items())) or "- none supplied"
        props = ", ".join(spec.props) or "none"
        dependencies = ", ".join(spec.dependencies) or "none"
        return (
            f"Generate the {spec.type} component '{spec.name}' for project '{context.project_name}'.\n\n"
            f"## Project brief\n{context.project_brief}\n\n"
            f"## Stack\n{context.stack}\n\n"
            "## Component\n"
            f"- Name: {spec.name}\n"
            f"- Type: {spec.type}\n"
            f"- Description: {spec.description or 'n/a'}\n"
            f"- Props: {props}\n"
            f"- Dependencies: {dependencies}\n"
            f"- Parent: {spec.parent or 'none'}\n\n"
            f"## Existing components (reference by name only)\n{existing}\n\n"
            f"## Design tokens\n{token_lines}\n\n"
            "## Requirements\n"
            f"- Import shared primitives from '{self.shared_component_import}'.\n"
            "- Guard every animation with useReducedMotion.\n"
            "- Use design tokens for colors; no literal color values.\n"
            "- No TODO comments, lorem ipsum or placeholder content. No console.log.\n\n"
            "Respond with a JSON array of files: "
            f'[{{"filename": "{spec.name}.tsx", "content": "..."}}]'
        )

    async def dispatch_one(self, spec: ComponentSpec, context: ComponentContext) -> SubagentResult:
        """Generate, extract and self-review a single component.

        Never raises for generation or review failures; they are reported on
        the result. Only a passing component enters the generated map.
        """
        started = time.perf_counter()
        prompt = self.build_prompt(spec, context)
        try:
            generation = await self.client.generate(
                prompt,
                max_retries=self.max_retries,
                phase_tag=context.phase_tag,
            )
            code = extract_component_code(generation.content, self.strategies)
        except Exception as exc:  # noqa: BLE001 - reported as a failed component.
            logger.warning("Component %s failed to generate: %s", spec.name, exc)
            return SubagentResult(
                component_name=spec.name,
                status=SubagentStatus.FAILED,
                errors=(str(exc),),
                duration_seconds=time.perf_counter() - started,
            )

        review = review_component(
            code,
            design_tokens=self.design_tokens.tokens(),
            shared_component_import=self.shared_component_import,
        )
        duration = time.perf_counter() - started
        if not review.passed:
            logger.warning("Component %s failed self-review: %s", spec.name, "; ".join(review.issues))
            return SubagentResult(
                component_name=spec.name,
                status=SubagentStatus.FAILED,
                code=code,
                errors=review.issues,
                duration_seconds=duration,
            )
        self._generated[spec.name] = code
        logger.info("Generated component %s in %.2fs", spec.name, duration)
        return SubagentResult(
            component_name=spec.name,
            status=SubagentStatus.SUCCEEDED,
            code=code,
            duration_seconds=duration,
        )

    async def dispatch_sequential(
        self, specs: Sequence[ComponentSpec], context: ComponentContext
    ) -> list[SubagentResult]:
        """Dispatch in parent-first order; children of unsuccessful parents are skipped."""
        outcomes: dict[str, SubagentStatus] = {}
        results: list[SubagentResult] = []
        for spec in order_components(specs):
            if spec.parent is not None and outcomes.get(spec.parent) is not SubagentStatus.SUCCEEDED:
                result = _skipped(spec)
            else:
                result = await self.dispatch_one(spec, context)
            outcomes[spec.name] = result.status
            results.append(result)
        return results

    async def dispatch_parallel(
        self,
        specs: Sequence[ComponentSpec],
        context: ComponentContext,
        max_concurrency: int = 5,
    ) -> list[SubagentResult]:
        """Dispatch in batches of at most ``max_concurrency``, one isolated dispatcher per call.

        Batches are cut per parent depth, so a child always runs in a later
        batch than its parent. Batches run strictly one after another and each
        is awaited in full. A child is skipped unless its parent succeeded.

        Raises:
            ValueError: If ``max_concurrency`` < 1, or on invalid parent references.
        """
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got: {max_concurrency}")
        batches = plan_batches(specs, max_concurrency)
        self.last_batch_sizes = [len(batch) for batch in batches]

        outcomes: dict[str, SubagentStatus] = {}
        results: list[SubagentResult] = []
        for index, batch in enumerate(batches, start=1):
            by_name: dict[str, SubagentResult] = {}
            runnable: list[ComponentSpec] = []
            for spec in batch:
                if spec.parent is not None and outcomes.get(spec.parent) is not SubagentStatus.SUCCEEDED:
                    by_name[spec.name] = _skipped(spec)
                else:
                    runnable.append(spec)
            logger.info("Dispatching batch %d/%d (%d component(s))", index, len(batches), len(runnable))
            workers = [self._spawn() for _ in runnable]
            batch_results = await asyncio.gather(
                *(worker.dispatch_one(spec, context) for worker, spec in zip(workers, runnable))
            )
            for result in batch_results:
                by_name[result.component_name] = result
            for spec in batch:
                result = by_name[spec.name]
                outcomes[spec.name] = result.status
                if result.success:
                    self._generated[spec.name] = result.code
                results.append(result)
        return results


def plan_batches(specs: Sequence[ComponentSpec], max_concurrency: int) -> list[list[ComponentSpec]]:
    """Group components by parent depth, then chunk each depth by ``max_concurrency``."""
    depths: dict[str, int] = {}
    levels: dict[int, list[ComponentSpec]] = {}
    for spec in order_components(specs):
        depth = 0 if spec.parent is None else depths[spec.parent] + 1
        depths[spec.name] = depth
        levels.setdefault(depth, []).append(spec)
    batches: list[list[ComponentSpec]] = []
    for depth in sorted(levels):
        level = levels[depth]
        batches.extend(level[start : start + max_concurrency] for start in range(0, len(level), max_concurrency))
    return batches


def _skipped(spec: ComponentSpec) -> SubagentResult:
    logger.info("Skipping component %s: parent %s did not generate", spec.name, spec.parent)
    return SubagentResult(
        component_name=spec.name,
        status=SubagentStatus.SKIPPED,
        errors=(f"{SKIPPED_PARENT_FAILED}: {spec.parent}",),
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_component_specs(text: str) -> list[ComponentSpec]:
    """Parse a component inventory.

    Accepts a JSON array of objects, or markdown list lines such as
    ``- Header (organism) [parent: Layout]: Top navigation``.

    Raises:
        ValueError: If a JSON entry is malformed or names an unknown type.
    """
    stripped = text.strip()
    if stripped.startswith("["):
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Component inventory is not valid JSON: {exc}") from exc
        specs: list[ComponentSpec] = []
        for item in payload:
            if not isinstance(item, dict) or not isinstance(item.get("name"), str):
                raise ValueError(f"Invalid component entry: {item!r}")
            specs.append(
                ComponentSpec(
                    name=item["name"],
                    type=str(item.get("type", "molecule")),
                    description=str(item.get("description", "")),
                    props=tuple(str(prop) for prop in item.get("props", ())),
                    dependencies=tuple(str(dep) for dep in item.get("dependencies", ())),
                    parent=item.get("parent") or None,
                )
            )
        return specs

    specs = []
    for line in text.splitlines():
        match = _INVENTORY_LINE_RE.match(line)
        if match is None:
            continue
        component_type = match.group("type") or "molecule"
        if component_type not in COMPONENT_TYPES:
            continue
        specs.append(
            ComponentSpec(
                name=match.group("name"),
                type=component_type,
                description=(match.group("description") or "").strip(),
                parent=match.group("parent"),
            )
        )
    return specs


def build_artifact_map(results: Iterable[SubagentResult]) -> dict[str, str]:
    return {f"{result.component_name}.tsx": result.code for result in results if result.success}


def failed_components(results: Iterable[SubagentResult]) -> list[str]:
    return [result.component_name for result in results if result.status is SubagentStatus.FAILED]
