from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Callable
from pathlib import Path

import pytest

from specflow.capabilities import BackendCapability, BackendPreset, BackendRegistry
from specflow.engine import PhaseStateMachine
from specflow.llm import GenerationClient, RetryPolicy
from specflow.models import BackendResponse, GenerationRequest
from specflow.parameters import ParameterResolver
from specflow.settings import RuntimeSettings
from specflow.state_store import FileProjectStore

DEMO_BACKEND = "demo-model"

LONG_MARKDOWN = (
    "## Overview\n\n"
    "The application lets small teams plan weekly work, assign owners and track progress. "
    "It targets web browsers first and keeps every screen usable with a keyboard alone. "
    "Data is stored per workspace and shared with invited members only.\n"
)

INVENTORY = (
    "- Layout (template): Page shell with navigation\n"
    "- Header (organism) [parent: Layout]: Top navigation bar\n"
    "- TaskCard (molecule): A single task summary\n"
)

TOKENS_JSON = json.dumps({"color": {"primary": "#2563eb", "surface": "#ffffff"}, "radius": {"md": "8px"}})


def component_code(name: str) -> str:
    return (
        'import { Button } from "@/components/ui/button";\n\n'
        f"export function {name}() {{\n"
        '  return <Button className="bg-primary">Open</Button>;\n'
        "}\n"
    )


def demo_registry() -> BackendRegistry:
    registry = BackendRegistry()
    registry.register(
        BackendCapability(DEMO_BACKEND, "openai", max_output_tokens=8192),
        BackendPreset(temperature=0.7, timeout_seconds=120, top_p=1.0),
    )
    return registry


Responder = Callable[[GenerationRequest], "str | BackendResponse"]

_ARTIFACT_RE = re.compile(r"^Artifact: (?P<filename>\S+)$", re.MULTILINE)
_COMPONENT_RE = re.compile(r"Generate the \w+ component '(?P<name>\w+)'")


def project_responder(overrides: dict[str, str] | None = None) -> Responder:
    """Answer phase and component prompts with content that passes validation."""
    overrides = overrides or {}

    def respond(request: GenerationRequest) -> str:
        component = _COMPONENT_RE.search(request.prompt)
        if component:
            name = component.group("name")
            code = overrides.get(f"{name}.tsx", component_code(name))
            return json.dumps([{"filename": f"{name}.tsx", "content": code}])
        artifact = _ARTIFACT_RE.search(request.prompt)
        filename = artifact.group("filename") if artifact else ""
        if filename in overrides:
            return overrides[filename]
        if filename == "component-inventory.md":
            return INVENTORY
        if filename == "design-tokens.json":
            return TOKENS_JSON
        if filename == "dependencies.json":
            return json.dumps([{"name": "next", "version": "15.0.0", "purpose": "framework"}])
        return f"# {filename}\n\n{LONG_MARKDOWN}"

    return respond


class FakeBackend:
    """Scripted backend; an Exception in ``script`` is raised, anything else is answered."""

    def __init__(
        self,
        responder: Responder | None = None,
        *,
        script: list[object] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.responder = responder or project_responder()
        self.script = list(script or [])
        self.delay = delay
        self.requests: list[GenerationRequest] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def complete(self, request: GenerationRequest) -> BackendResponse:
        self.requests.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            item: object = self.script.pop(0) if self.script else self.responder(request)
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, BackendResponse):
                return item
            return BackendResponse(text=str(item), finish_reason="stop")
        finally:
            self.in_flight -= 1


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_client(backend: FakeBackend, *, sleep: RecordingSleep | None = None) -> GenerationClient:
    return GenerationClient(
        backend=backend,
        resolver=ParameterResolver(demo_registry()),
        backend_id=DEMO_BACKEND,
        retry_policy=RetryPolicy(),
        sleep=sleep or RecordingSleep(),
    )


def make_engine(
    tmp_path: Path, backend: FakeBackend | None = None, **settings_overrides: object
) -> tuple[PhaseStateMachine, FakeBackend]:
    backend = backend or FakeBackend()
    settings = RuntimeSettings(backend_id=DEMO_BACKEND, **settings_overrides).normalized()  # type: ignore[arg-type]
    engine = PhaseStateMachine(
        store=FileProjectStore(tmp_path / "state_store"),
        client=make_client(backend),
        settings=settings,
    )
    return engine, backend


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()
