"""Entry point for `python -m specflow` and the `specflow` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from specflow.capabilities import default_registry
from specflow.engine import PhaseStateMachine
from specflow.llm import ChatOpenAIBackend, GenerationClient, RetryPolicy
from specflow.models import Phase
from specflow.parameters import ParameterResolver
from specflow.settings import RuntimeSettings
from specflow.state_store import FileProjectStore


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive a specflow project through its phases")
    parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Directory the state store path is resolved against (default: cwd)",
    )
    parser.add_argument("--base-url", default=None, help="OpenAI-compatible endpoint for non-OpenAI backends")
    parser.add_argument("--api-key-env", default="OPENAI_API_KEY", help="Environment variable holding the API key")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create", help="Create a project in the intake phase")
    create.add_argument("--name", required=True)
    brief = create.add_mutually_exclusive_group(required=True)
    brief.add_argument("--brief", default=None, help="Inline project brief")
    brief.add_argument("--brief-file", type=Path, default=None, help="Path to a markdown project brief")
    create.add_argument("--project-id", default=None)

    for name, help_text in (
        ("execute", "Run the current phase's generation routine"),
        ("advance", "Advance to the next phase"),
        ("validate", "Validate the current phase and auto-remedy on failure"),
        ("unblock", "Clear a blocked phase after manual intervention"),
        ("status", "Print the project and its gates"),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("project_id")

    approve = commands.add_parser("approve", help="Approve or reject a gate of the current phase")
    approve.add_argument("project_id")
    approve.add_argument("gate_name")
    approve.add_argument("--decision", default="approve", choices=["approve", "reject"])
    approve.add_argument("--notes", default=None)
    approve.add_argument("--approver", default=None)
    approve.add_argument("--score", type=float, default=None)

    rollback = commands.add_parser("rollback", help="Restore a phase snapshot as the current artifact set")
    rollback.add_argument("project_id")
    rollback.add_argument("phase", choices=[phase.value for phase in Phase])
    rollback.add_argument("snapshot_number", type=int)
    rollback.add_argument("--preview", action="store_true", help="Show the change set without writing")
    return parser.parse_args(argv)


def build_engine(args: argparse.Namespace, settings: RuntimeSettings) -> PhaseStateMachine:
    client = GenerationClient(
        backend=ChatOpenAIBackend(
            model_name=settings.backend_id,
            base_url=args.base_url,
            api_key_env=args.api_key_env,
            repo_root=args.repo_root,
        ),
        resolver=ParameterResolver(default_registry()),
        backend_id=settings.backend_id,
        retry_policy=RetryPolicy(
            rate_limit_base_delay=settings.rate_limit_base_delay,
            transient_base_delay=settings.transient_base_delay,
            max_backoff=settings.max_backoff,
        ),
    )
    store = FileProjectStore(settings.state_store_path(args.repo_root))
    return PhaseStateMachine(store=store, client=client, settings=settings)


def _print_result(result: Any) -> int:
    success = bool(getattr(result, "success", False))
    print(f"success={success}")
    print(f"message={result.message}")
    return 0 if success else 1


async def run_command(args: argparse.Namespace, engine: PhaseStateMachine) -> int:
    if args.command == "create":
        brief = args.brief if args.brief is not None else args.brief_file.read_text(encoding="utf-8")
        project = engine.create_project(args.name, brief, project_id=args.project_id)
        print(f"project_id={project.project_id}")
        return 0
    if args.command == "execute":
        result = await engine.execute_phase(args.project_id)
        for artifact in result.artifacts:
            print(f"artifact={artifact.artifact_id}@v{artifact.version}")
        return _print_result(result)
    if args.command == "advance":
        return _print_result(await engine.advance_phase(args.project_id))
    if args.command == "approve":
        result = await engine.approve_gate(
            args.project_id,
            args.gate_name,
            args.decision,
            args.notes,
            approver=args.approver,
            score=args.score,
        )
        return _print_result(result)
    if args.command == "validate":
        outcome = await engine.validate_phase(args.project_id)
        final = outcome.final_run
        if final is not None:
            print("validation:")
            print(json.dumps(final.model_dump(mode="json"), indent=2, default=str))
        print(f"remedy_attempts={outcome.remedy_attempts} blocked={outcome.blocked} outcome={outcome.outcome}")
        return _print_result(outcome)
    if args.command == "unblock":
        return _print_result(await engine.unblock_phase(args.project_id))
    if args.command == "rollback":
        if args.preview:
            preview = engine.rollback_preview(args.project_id, args.phase, args.snapshot_number)
            print(json.dumps(preview.__dict__, indent=2))
            return 0
        return _print_result(await engine.rollback_phase(args.project_id, args.phase, args.snapshot_number))

    project = engine.store.read_project(args.project_id)
    print(json.dumps(project.model_dump(mode="json"), indent=2, default=str))
    for gate in engine.store.list_gates(args.project_id):
        print(f"gate={gate.gate_name} phase={gate.phase.value} status={gate.status.value} blocking={gate.blocking}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    engine = build_engine(args, settings)
    try:
        return asyncio.run(run_command(args, engine))
    except (OSError, ValueError, LookupError) as exc:
        logging.error("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
