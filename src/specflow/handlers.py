from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Protocol

from .dispatcher import SubagentDispatcher, build_artifact_map, failed_components, parse_component_specs
from .llm import GenerationClient
from .models import ComponentContext, ComponentSpec, Phase, Project, SubagentResult
from .phases import COMPONENT_INVENTORY_FILENAME, DESIGN_TOKENS_FILENAME, PhaseDefinition
from .self_review import StaticDesignTokens, parse_design_tokens
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

_WHOLE_FENCE_RE = re.compile(r"^\s*```[\w-]*\s*\n(?P<body>[\s\S]*?)\n?```\s*$")

ARTIFACT_INSTRUCTIONS: Mapping[str, str] = {
    "project-analysis.md": "Analyse the project brief: goals, target users, core features, constraints and risks.",
    "stack-analysis.md": "Compare two or three candidate technology stacks and recommend one with trade-offs.",
    "PRD.md": "Write the product requirements document: personas, user stories and acceptance criteria.",
    "data-model.md": "Describe every entity, its fields, types and relationships.",
    COMPONENT_INVENTORY_FILENAME: (
        "List every UI component, one per line, formatted exactly as "
        "'- Name (atom|molecule|organism|template|page) [parent: ParentName]: description'. "
        "Omit the [parent: ...] part for top-level components."
    ),
    DESIGN_TOKENS_FILENAME: "Return a JSON object of design tokens (colors, spacing, radii, typography). JSON only.",
    "dependencies.json": "Return a JSON array of {name, version, purpose} for every third-party dependency. JSON only.",
}


@dataclass(frozen=True)
class PhaseContext:
    """Read-only inputs handed to a phase handler."""

    project: Project
    definition: PhaseDefinition
    context_artifacts: Mapping[str, str]
    current_artifacts: Mapping[str, str] = field(default_factory=dict)

    @property
    def phase(self) -> Phase:
        return self.definition.phase

    def context_documents(self) -> list[str]:
        return [f"# {key}\n\n{content}" for key, content in sorted(self.context_artifacts.items())]


@dataclass
class PhaseOutput:
    artifacts: dict[str, str] = field(default_factory=dict)
    success: bool = True
    message: str = ""
    errors: list[str] = field(default_factory=list)


class PhaseHandler(Protocol):
    def can_handle(self, definition: PhaseDefinition) -> bool:
        ...

    async def execute(self, context: PhaseContext) -> PhaseOutput:
        ...

    async def regenerate(
        self, context: PhaseContext, filenames: Sequence[str], feedback: Sequence[str] = ()
    ) -> PhaseOutput:
        ...


def _strip_whole_fence(text: str) -> str:
    match = _WHOLE_FENCE_RE.match(text)
    return match.group("body").strip() if match else text.strip()


class GenerationPhaseHandler:
    """One Generation Client call per declared output artifact."""

    def __init__(self, client: GenerationClient, *, max_retries: int = 3) -> None:
        self.client = client
        self.max_retries = max_retries

    def can_handle(self, definition: PhaseDefinition) -> bool:
        return definition.kind == "generated" and bool(definition.outputs)

    def build_prompt(self, context: PhaseContext, filename: str, feedback: Sequence[str] = ()) -> str:
        instruction = ARTIFACT_INSTRUCTIONS.get(filename, f"Produce the {filename} artifact.")
        prompt = (
            f"Project: {context.project.name}\n"
            f"Phase: {context.phase.value} ({context.definition.description})\n"
            f"Artifact: {filename}\n\n"
            f"{instruction}\n\n"
            "Return only the artifact content."
        )
        if feedback:
            issues = "\n".join(f"- {item}" for item in feedback)
            prompt += f"\n\nThe previous version failed validation. Fix these issues:\n{issues}"
        return prompt

    async def _generate(
        self, context: PhaseContext, filenames: Sequence[str], feedback: Sequence[str] = ()
    ) -> PhaseOutput:
        output = PhaseOutput()
        documents = context.context_documents()
        if context.phase is Phase.INTAKE:
            documents.insert(0, f"# Project brief\n\n{context.project.brief}")
        for filename in filenames:
            result = await self.client.generate(
                self.build_prompt(context, filename, feedback),
                context_docs=documents,
                max_retries=self.max_retries,
                phase_tag=context.phase.value,
            )
            content = _strip_whole_fence(result.content)
            output.artifacts[filename] = content
            # Later outputs of the same phase see earlier ones.
            documents.append(f"# {context.phase.value}/{filename}\n\n{content}")
        output.message = f"Generated {len(output.artifacts)} artifact(s) for {context.phase.value}"
        return output

    async def execute(self, context: PhaseContext) -> PhaseOutput:
        return await self._generate(context, context.definition.outputs)

    async def regenerate(
        self, context: PhaseContext, filenames: Sequence[str], feedback: Sequence[str] = ()
    ) -> PhaseOutput:
        return await self._generate(context, list(filenames), feedback)


class ApprovalPhaseHandler:
    """Generates the analysis a human approves; the gate itself is enforced by the engine."""

    def __init__(self, generator: GenerationPhaseHandler) -> None:
        self.generator = generator

    def can_handle(self, definition: PhaseDefinition) -> bool:
        return definition.kind == "approval"

    async def execute(self, context: PhaseContext) -> PhaseOutput:
        output = await self.generator.regenerate(context, context.definition.outputs)
        gates = ", ".join(context.definition.gates)
        output.message = f"{output.message}; awaiting approval ({gates})"
        return output

    async def regenerate(
        self, context: PhaseContext, filenames: Sequence[str], feedback: Sequence[str] = ()
    ) -> PhaseOutput:
        return await self.generator.regenerate(context, filenames, feedback)


class SubagentPhaseHandler:
    """Dispatches one isolated subagent per component listed in the inventory."""

    def __init__(
        self,
        client: GenerationClient,
        *,
        max_concurrency: int = 5,
        max_retries: int = 2,
        shared_component_import: str = "@/components/ui",
    ) -> None:
        self.client = client
        self.max_concurrency = max_concurrency
        self.max_retries = max_retries
        self.shared_component_import = shared_component_import

    def can_handle(self, definition: PhaseDefinition) -> bool:
        return definition.handler == "subagents"

    def _dispatcher(self, context: PhaseContext) -> SubagentDispatcher:
        token_text = context.context_artifacts.get(f"{Phase.SPECIFICATION.value}/{DESIGN_TOKENS_FILENAME}", "")
        return SubagentDispatcher(
            self.client,
            design_tokens=StaticDesignTokens(parse_design_tokens(token_text)),
            shared_component_import=self.shared_component_import,
            max_retries=self.max_retries,
        )

    def _specs(self, context: PhaseContext) -> list[ComponentSpec]:
        inventory = context.context_artifacts.get(f"{Phase.SPECIFICATION.value}/{COMPONENT_INVENTORY_FILENAME}")
        if inventory is None:
            raise ValueError(f"{COMPONENT_INVENTORY_FILENAME} is required before {context.phase.value}")
        return parse_component_specs(inventory)

    async def _dispatch(self, context: PhaseContext, specs: Sequence[ComponentSpec]) -> PhaseOutput:
        dispatcher = self._dispatcher(context)
        component_context = ComponentContext(
            project_id=context.project.project_id,
            project_name=context.project.name,
            project_brief=context.project.brief,
            phase_tag=context.phase.value,
        )
        if self.max_concurrency > 1:
            results = await dispatcher.dispatch_parallel(specs, component_context, self.max_concurrency)
        else:
            results = await dispatcher.dispatch_sequential(specs, component_context)
        return _output_from_results(results)

    async def execute(self, context: PhaseContext) -> PhaseOutput:
        specs = self._specs(context)
        if not specs:
            return PhaseOutput(success=False, message="Component inventory lists no components", errors=["empty inventory"])
        return await self._dispatch(context, specs)

    async def regenerate(
        self, context: PhaseContext, filenames: Sequence[str], feedback: Sequence[str] = ()
    ) -> PhaseOutput:
        wanted = {filename.removesuffix(".tsx") for filename in filenames}
        # Parents outside the subset already exist; drop the link so ordering stays valid.
        specs = [
            spec if spec.parent in wanted else replace(spec, parent=None)
            for spec in self._specs(context)
            if spec.name in wanted
        ]
        return await self._dispatch(context, specs)


def _output_from_results(results: Sequence[SubagentResult]) -> PhaseOutput:
    failed = failed_components(results)
    skipped = [result.component_name for result in results if result.skipped]
    errors = [f"{result.component_name}: {'; '.join(result.errors)}" for result in results if not result.success]
    succeeded = sum(1 for result in results if result.success)
    message = f"Generated {succeeded}/{len(results)} component(s)"
    if failed:
        message += f"; failed: {', '.join(failed)}"
    if skipped:
        message += f"; skipped: {', '.join(skipped)}"
    return PhaseOutput(artifacts=build_artifact_map(results), success=not errors, message=message, errors=errors)


class PhaseHandlerRegistry:
    """Maps a handler tag to the handler that runs phases declaring that tag."""

    def __init__(self) -> None:
        self._handlers: dict[str, PhaseHandler] = {}

    def register(self, tag: str, handler: PhaseHandler) -> None:
        self._handlers[tag] = handler

    def for_phase(self, definition: PhaseDefinition) -> PhaseHandler:
        """Return the handler for ``definition``.

        Raises:
            LookupError: If no registered handler accepts the phase.
        """
        handler = self._handlers.get(definition.handler)
        if handler is None or not handler.can_handle(definition):
            raise LookupError(f"No handler registered for phase {definition.phase.value} ({definition.handler})")
        return handler


def default_handler_registry(client: GenerationClient, settings: RuntimeSettings) -> PhaseHandlerRegistry:
    generator = GenerationPhaseHandler(client, max_retries=settings.generation_max_retries)
    registry = PhaseHandlerRegistry()
    registry.register("generation", generator)
    registry.register("approval", ApprovalPhaseHandler(generator))
    registry.register(
        "subagents",
        SubagentPhaseHandler(
            client,
            max_concurrency=settings.max_concurrency,
            max_retries=settings.subagent_max_retries,
            shared_component_import=settings.shared_component_import,
        ),
    )
    return registry
