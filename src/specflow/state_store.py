from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import ProjectBusyError, ProjectNotFoundError
from .models import (
    ApprovalGate,
    Artifact,
    ArtifactVersionRecord,
    AutoRemedyRun,
    Phase,
    PhaseExecutionRecord,
    PhaseSnapshot,
    Project,
    ValidationRun,
    utc_now,
)

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive lock on a ``.lock`` sidecar of *path*.

    The sidecar lets the data file be replaced with ``os.replace`` while
    the lock handle stays valid.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to a temp file in the same directory, then ``os.replace`` it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, label: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


def _read_model(path: Path, model: type[RecordT], label: str) -> RecordT:
    text = _safe_read_json(path, label)
    try:
        return model.model_validate_json(text)
    except ValidationError as exc:
        raise ValueError(f"{label} at {path} failed validation: {exc}") from exc


def sanitize_segment(value: str, *, label: str = "path segment") -> str:
    """Map an id or filename onto one filesystem-safe path segment.

    Raises:
        ValueError: If nothing filesystem-safe remains.
    """
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", value.strip()).strip("-.")
    if not cleaned:
        raise ValueError(f"{label} contains no filesystem-safe characters: {value!r}")
    return cleaned[:128]


# ---------------------------------------------------------------------------
# Persistence protocol
# ---------------------------------------------------------------------------


class ProjectStore(Protocol):
    """Persistence collaborator consumed by the phase state machine."""

    def create_project(self, project: Project) -> None: ...
    def read_project(self, project_id: str) -> Project: ...
    def write_project(self, project: Project) -> None: ...
    def project_lock(self, project_id: str) -> Any: ...
    def save_artifact(
        self, project_id: str, phase: Phase, filename: str, content: str, *, reason: str = "initial"
    ) -> Artifact: ...
    def retire_artifact(self, project_id: str, phase: Phase, filename: str, *, reason: str) -> Artifact: ...
    def current_artifacts(self, project_id: str, phase: Phase) -> dict[str, Artifact]: ...
    def list_artifact_versions(self, project_id: str, phase: Phase | None = None) -> list[ArtifactVersionRecord]: ...
    def write_execution_record(self, record: PhaseExecutionRecord) -> None: ...
    def list_execution_records(self, project_id: str, phase: Phase | None = None) -> list[PhaseExecutionRecord]: ...
    def write_gate(self, project_id: str, gate: ApprovalGate) -> None: ...
    def read_gate(self, project_id: str, gate_name: str) -> ApprovalGate: ...
    def list_gates(self, project_id: str) -> list[ApprovalGate]: ...
    def write_validation_run(self, run: ValidationRun) -> None: ...
    def list_validation_runs(self, project_id: str, phase: Phase | None = None) -> list[ValidationRun]: ...
    def write_remedy_run(self, run: AutoRemedyRun) -> None: ...
    def list_remedy_runs(self, project_id: str, phase: Phase | None = None) -> list[AutoRemedyRun]: ...
    def create_snapshot(
        self,
        project_id: str,
        phase: Phase,
        *,
        artifacts: dict[str, str],
        artifact_set_hash: str,
        metadata: dict[str, Any],
        user_inputs: dict[str, Any],
        validation_results: dict[str, Any] | None,
        reason: str,
    ) -> PhaseSnapshot: ...
    def read_snapshot(self, project_id: str, phase: Phase, snapshot_number: int) -> PhaseSnapshot: ...
    def list_snapshots(self, project_id: str, phase: Phase) -> list[PhaseSnapshot]: ...


# ---------------------------------------------------------------------------
# FileProjectStore
# ---------------------------------------------------------------------------


class FileProjectStore:
    """Filesystem implementation of ``ProjectStore``.

    Every write is atomic (temp file then rename). Version and snapshot
    numbering run under ``fcntl`` locks so concurrent processes sharing the
    directory never allocate the same number. Layout per project::

        projects/<id>/project.json
        projects/<id>/artifacts/<phase>/<filename>/v0001.json
        projects/<id>/artifact_versions/<phase>/<filename>/v0001.json
        projects/<id>/phase_history/<record_id>.json
        projects/<id>/gates/<gate_name>.json
        projects/<id>/validation_runs/<run_id>.json
        projects/<id>/remedy_runs/<run_id>.json
        projects/<id>/snapshots/<phase>/0001.json
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.projects_dir = root / "projects"
        self.projects_dir.mkdir(parents=True, exist_ok=True)

    def project_root(self, project_id: str) -> Path:
        return self.projects_dir / sanitize_segment(project_id, label="project_id")

    def _project_path(self, project_id: str) -> Path:
        return self.project_root(project_id) / "project.json"

    def _artifact_dir(self, project_id: str, phase: Phase, filename: str) -> Path:
        return self.project_root(project_id) / "artifacts" / phase.value / sanitize_segment(filename, label="filename")

    def _version_record_dir(self, project_id: str, phase: Phase, filename: str) -> Path:
        return (
            self.project_root(project_id)
            / "artifact_versions"
            / phase.value
            / sanitize_segment(filename, label="filename")
        )

    def _snapshot_dir(self, project_id: str, phase: Phase) -> Path:
        return self.project_root(project_id) / "snapshots" / phase.value

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def create_project(self, project: Project) -> None:
        """Persist a new project.

        Raises:
            FileExistsError: If a project with the same id already exists.
        """
        path = self._project_path(project.project_id)
        with _locked_file(path):
            if path.is_file():
                raise FileExistsError(f"project already exists: {project.project_id}")
            _atomic_write_text(path, project.model_dump_json(indent=2))

    def read_project(self, project_id: str) -> Project:
        """Read a project under its file lock.

        Raises:
            ProjectNotFoundError: If the project does not exist.
            ValueError: If the file is corrupt or fails validation.
        """
        path = self._project_path(project_id)
        if not path.is_file():
            raise ProjectNotFoundError(f"Project not found: {project_id}")
        with _locked_file(path):
            return _read_model(path, Project, "project")

    def write_project(self, project: Project) -> None:
        project.updated_at = utc_now()
        path = self._project_path(project.project_id)
        with _locked_file(path):
            _atomic_write_text(path, project.model_dump_json(indent=2))

    def list_projects(self) -> list[str]:
        return sorted(path.parent.name for path in self.projects_dir.glob("*/project.json"))

    @contextmanager
    def project_lock(self, project_id: str) -> Iterator[None]:
        """Advisory lock serialising phase advances for one project.

        Non-blocking: a second holder gets ``ProjectBusyError`` immediately
        instead of stalling the event loop.

        Raises:
            ProjectNotFoundError: If the project does not exist.
            ProjectBusyError: If another holder owns the lock.
        """
        if not self._project_path(project_id).is_file():
            raise ProjectNotFoundError(f"Project not found: {project_id}")
        lock_path = self.project_root(project_id) / ".project.lock"
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        with lock_path.open("a+", encoding="utf-8") as lock_handle:
            try:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as exc:
                raise ProjectBusyError(f"Project {project_id} has an operation in progress") from exc
            try:
                yield
            finally:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)

    # ------------------------------------------------------------------
    # Artifacts (versioned, content-addressed)
    # ------------------------------------------------------------------

    def _latest_version_path(self, directory: Path) -> Path | None:
        versions = sorted(directory.glob("v*.json"))
        return versions[-1] if versions else None

    def _write_version(
        self, project_id: str, phase: Phase, filename: str, content: str, *, reason: str, retired: bool
    ) -> Artifact:
        directory = self._artifact_dir(project_id, phase, filename)
        with _locked_file(directory / "versions"):
            latest_path = self._latest_version_path(directory)
            latest = _read_model(latest_path, Artifact, "artifact") if latest_path else None
            candidate = Artifact.build(
                phase=phase,
                filename=filename,
                version=(latest.version + 1) if latest else 1,
                content=content,
                retired=retired,
            )
            if latest is not None and latest.content_hash == candidate.content_hash and latest.retired == retired:
                return latest
            _atomic_write_text(directory / f"v{candidate.version:04d}.json", candidate.model_dump_json(indent=2))
            record = ArtifactVersionRecord(
                artifact_id=candidate.artifact_id,
                phase=phase,
                filename=filename,
                version=candidate.version,
                content_hash=candidate.content_hash,
                regeneration_reason=reason,
            )
            _atomic_write_text(
                self._version_record_dir(project_id, phase, filename) / f"v{candidate.version:04d}.json",
                record.model_dump_json(indent=2),
            )
        logger.debug("Stored %s v%d (%s)", candidate.artifact_id, candidate.version, reason)
        return candidate

    def save_artifact(
        self, project_id: str, phase: Phase, filename: str, content: str, *, reason: str = "initial"
    ) -> Artifact:
        """Store ``content`` as the next version of ``phase/filename``.

        Unchanged content returns the current version without writing.

        Returns:
            The current artifact after the write.
        """
        return self._write_version(project_id, phase, filename, content, reason=reason, retired=False)

    def retire_artifact(self, project_id: str, phase: Phase, filename: str, *, reason: str) -> Artifact:
        """Write a retired version, dropping ``filename`` from the current set."""
        return self._write_version(project_id, phase, filename, "", reason=reason, retired=True)

    def read_artifact(self, project_id: str, phase: Phase, filename: str, version: int | None = None) -> Artifact:
        directory = self._artifact_dir(project_id, phase, filename)
        path = directory / f"v{version:04d}.json" if version is not None else self._latest_version_path(directory)
        if path is None:
            raise FileNotFoundError(f"artifact not found: {phase.value}/{filename}")
        return _read_model(path, Artifact, "artifact")

    def current_artifacts(self, project_id: str, phase: Phase) -> dict[str, Artifact]:
        phase_dir = self.project_root(project_id) / "artifacts" / phase.value
        current: dict[str, Artifact] = {}
        if not phase_dir.is_dir():
            return current
        for directory in sorted(path for path in phase_dir.iterdir() if path.is_dir()):
            latest_path = self._latest_version_path(directory)
            if latest_path is None:
                continue
            artifact = _read_model(latest_path, Artifact, "artifact")
            if not artifact.retired:
                current[artifact.filename] = artifact
        return current

    def list_artifact_versions(self, project_id: str, phase: Phase | None = None) -> list[ArtifactVersionRecord]:
        base = self.project_root(project_id) / "artifact_versions"
        pattern = f"{phase.value}/*/v*.json" if phase is not None else "*/*/v*.json"
        records = [_read_model(path, ArtifactVersionRecord, "artifact version") for path in base.glob(pattern)]
        return sorted(records, key=lambda record: (record.artifact_id, record.version))

    # ------------------------------------------------------------------
    # Phase execution records (append-only)
    # ------------------------------------------------------------------

    def write_execution_record(self, record: PhaseExecutionRecord) -> None:
        path = self.project_root(record.project_id) / "phase_history" / f"{record.record_id}.json"
        _atomic_write_text(path, record.model_dump_json(indent=2))

    def list_execution_records(self, project_id: str, phase: Phase | None = None) -> list[PhaseExecutionRecord]:
        records = self._list_models(self.project_root(project_id) / "phase_history", PhaseExecutionRecord)
        if phase is not None:
            records = [record for record in records if record.phase is phase]
        return sorted(records, key=lambda record: record.started_at)

    # ------------------------------------------------------------------
    # Approval gates
    # ------------------------------------------------------------------

    def write_gate(self, project_id: str, gate: ApprovalGate) -> None:
        path = self.project_root(project_id) / "gates" / f"{sanitize_segment(gate.gate_name)}.json"
        with _locked_file(path):
            _atomic_write_text(path, gate.model_dump_json(indent=2))

    def read_gate(self, project_id: str, gate_name: str) -> ApprovalGate:
        path = self.project_root(project_id) / "gates" / f"{sanitize_segment(gate_name)}.json"
        return _read_model(path, ApprovalGate, f"approval gate {gate_name}")

    def list_gates(self, project_id: str) -> list[ApprovalGate]:
        return sorted(
            self._list_models(self.project_root(project_id) / "gates", ApprovalGate),
            key=lambda gate: gate.gate_name,
        )

    # ------------------------------------------------------------------
    # Validation and remedy runs
    # ------------------------------------------------------------------

    def write_validation_run(self, run: ValidationRun) -> None:
        path = self.project_root(run.project_id) / "validation_runs" / f"{run.run_id}.json"
        _atomic_write_text(path, run.model_dump_json(indent=2))

    def list_validation_runs(self, project_id: str, phase: Phase | None = None) -> list[ValidationRun]:
        runs = self._list_models(self.project_root(project_id) / "validation_runs", ValidationRun)
        if phase is not None:
            runs = [run for run in runs if run.phase is phase]
        return sorted(runs, key=lambda run: run.created_at)

    def write_remedy_run(self, run: AutoRemedyRun) -> None:
        path = self.project_root(run.project_id) / "remedy_runs" / f"{run.run_id}.json"
        _atomic_write_text(path, run.model_dump_json(indent=2))

    def list_remedy_runs(self, project_id: str, phase: Phase | None = None) -> list[AutoRemedyRun]:
        runs = self._list_models(self.project_root(project_id) / "remedy_runs", AutoRemedyRun)
        if phase is not None:
            runs = [run for run in runs if run.phase is phase]
        return sorted(runs, key=lambda run: run.started_at)

    # ------------------------------------------------------------------
    # Snapshots (immutable)
    # ------------------------------------------------------------------

    def create_snapshot(
        self,
        project_id: str,
        phase: Phase,
        *,
        artifacts: dict[str, str],
        artifact_set_hash: str,
        metadata: dict[str, Any],
        user_inputs: dict[str, Any],
        validation_results: dict[str, Any] | None,
        reason: str,
    ) -> PhaseSnapshot:
        """Allocate the next snapshot number for ``phase`` and persist the snapshot.

        Raises:
            FileExistsError: If the allocated number is already taken on disk.
        """
        directory = self._snapshot_dir(project_id, phase)
        with _locked_file(directory / "numbering"):
            existing = [int(path.stem) for path in directory.glob("[0-9]*.json")]
            snapshot = PhaseSnapshot(
                project_id=project_id,
                phase_name=phase,
                snapshot_number=max(existing, default=0) + 1,
                artifacts=dict(artifacts),
                artifact_set_hash=artifact_set_hash,
                metadata=metadata,
                user_inputs=user_inputs,
                validation_results=validation_results,
                reason=reason,
            )
            path = directory / f"{snapshot.snapshot_number:04d}.json"
            if path.exists():
                raise FileExistsError(f"snapshot already exists: {path}")
            _atomic_write_text(path, snapshot.model_dump_json(indent=2))
        logger.info("Created snapshot %s#%d for %s (%s)", phase.value, snapshot.snapshot_number, project_id, reason)
        return snapshot

    def read_snapshot(self, project_id: str, phase: Phase, snapshot_number: int) -> PhaseSnapshot:
        path = self._snapshot_dir(project_id, phase) / f"{snapshot_number:04d}.json"
        return _read_model(path, PhaseSnapshot, f"snapshot {phase.value}#{snapshot_number}")

    def list_snapshots(self, project_id: str, phase: Phase) -> list[PhaseSnapshot]:
        snapshots = [
            _read_model(path, PhaseSnapshot, "snapshot")
            for path in self._snapshot_dir(project_id, phase).glob("[0-9]*.json")
        ]
        return sorted(snapshots, key=lambda snapshot: snapshot.snapshot_number)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _list_models(directory: Path, model: type[RecordT]) -> list[RecordT]:
        if not directory.is_dir():
            return []
        return [_read_model(path, model, model.__name__) for path in sorted(directory.glob("*.json"))]
