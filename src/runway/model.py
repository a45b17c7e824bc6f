# model.py
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Tuple

from .errors import InvalidEvent


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"


ALL_EVENTS: FrozenSet[EventKind] = frozenset(EventKind)


@dataclass(frozen=True)
class Event:
    """An external trigger (push, pull request) that may start a pipeline run."""
    kind: EventKind
    ref: str = "HEAD"
    source_identity: str = "local"
    repo_url: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Event:
        if not isinstance(data, Mapping):
            raise InvalidEvent(f"event must be a mapping, got {type(data).__name__}")
        raw_kind = data.get("kind")
        if not raw_kind:
            raise InvalidEvent("event is missing 'kind'", details={"event": dict(data)})
        try:
            kind = EventKind(str(raw_kind))
        except ValueError:
            raise InvalidEvent(
                f"unknown event kind {raw_kind!r}",
                details={"known": ", ".join(k.value for k in EventKind)},
            ) from None
        return cls(
            kind=kind,
            ref=str(data.get("ref") or "HEAD"),
            source_identity=str(data.get("source_identity") or "unknown"),
            repo_url=data.get("repo_url"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "ref": self.ref,
            "source_identity": self.source_identity,
            "repo_url": self.repo_url,
        }


class StepKind(str, Enum):
    CHECKOUT = "checkout"
    INSTALL_TOOLCHAIN = "install_toolchain"
    INSTALL_COMPONENT = "install_component"
    RUN_COMMAND = "run_command"


@dataclass(frozen=True)
class Step:
    """A single step inside a CI job."""
    name: str
    kind: StepKind = StepKind.RUN_COMMAND
    run: str = ""
    cwd: str | None = None
    params: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolchainSpec:
    name: str = "system"
    version: str = "stable"
    components: Tuple[str, ...] = ()

    def with_components(self, *components: str) -> ToolchainSpec:
        merged = tuple(dict.fromkeys([*self.components, *components]))
        return ToolchainSpec(name=self.name, version=self.version, components=merged)

    @property
    def scope(self) -> str:
        # cache scope: entries are never shared between toolchains
        return f"{self.name}-{self.version}"


@dataclass(frozen=True)
class CacheKeySpec:
    """
    Declares one dependency cache for a job.

    prefix:     stable key prefix, also used for partial (prefix) restores
    paths:      files/dirs whose contents feed the key (e.g. Cargo.lock)
    cache_dirs: files/dirs stored in the payload (e.g. target, ~/.cargo)
    """
    prefix: str
    paths: Tuple[str, ...] = ()
    cache_dirs: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Job:
    """
    The static description of one unit of work (a JobDefinition).

    `on` is the trigger filter: the event kinds this job runs for.
    `needs` lists jobs that must succeed before this one starts.
    """
    name: str
    steps: Tuple[Step, ...]
    on: FrozenSet[EventKind] = ALL_EVENTS
    needs: Tuple[str, ...] = ()
    toolchain: ToolchainSpec | None = None
    caches: Tuple[CacheKeySpec, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    timeout: float | None = None


JobDefinition = Job


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    jobs: Tuple[Job, ...]
    fail_fast: bool = False
    env: Mapping[str, str] = field(default_factory=dict)

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    @property
    def job_names(self) -> list[str]:
        return [j.name for j in self.jobs]


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED)


# forward-only state machine
_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.SKIPPED},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED},
    JobStatus.SUCCEEDED: set(),
    JobStatus.FAILED: set(),
    JobStatus.SKIPPED: set(),
}


class RunStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class JobResult:
    """Immutable snapshot of a JobRun, as stored in a RunReport."""
    id: str
    name: str
    status: JobStatus
    started_at: datetime | None
    finished_at: datetime | None
    captured_output: str
    error: str | None = None
    skip_reason: str | None = None
    cache_status: str | None = None

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "captured_output": self.captured_output,
            "error": self.error,
            "skip_reason": self.skip_reason,
            "cache_status": self.cache_status,
        }


class JobRun:
    """
    Runtime instance of a Job for one Event.

    Mutated only by the scheduler and the sandbox. Transitions go forward
    only (pending -> running -> terminal, or pending -> skipped); terminal
    runs never change again.
    """

    def __init__(self, job: Job, run_id: str | None = None):
        self.id = f"{run_id or 'local'}:{job.name}:{uuid.uuid4().hex[:8]}"
        self.job = job
        self.status = JobStatus.PENDING
        self.started_at: datetime | None = None
        self.finished_at: datetime | None = None
        self.error: str | None = None
        self.skip_reason: str | None = None
        self.cache_status: str | None = None
        self._output: list[str] = []
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self.job.name

    @property
    def captured_output(self) -> str:
        with self._lock:
            return "".join(self._output)

    def append_output(self, text: str) -> None:
        if not text:
            return
        with self._lock:
            self._output.append(text)

    def transition(self, status: JobStatus, *, error: str | None = None, reason: str | None = None) -> bool:
        """
        Move to `status`. Returns False (and changes nothing) when the run is
        already terminal; raises ValueError on any other backwards move.
        """
        with self._lock:
            if self.status.terminal:
                return False
            if status not in _TRANSITIONS[self.status]:
                raise ValueError(f"JobRun {self.name}: illegal transition {self.status.value} -> {status.value}")
            self._apply(status, error, reason)
            return True

    def transition_if_active(self, status: JobStatus, *, error: str | None = None, reason: str | None = None) -> bool:
        """Like transition(), but returns False instead of raising when the move is not allowed."""
        with self._lock:
            if status not in _TRANSITIONS[self.status]:
                return False
            self._apply(status, error, reason)
            return True

    def skip_if_pending(self, reason: str) -> bool:
        """Skip a run that has not started yet; running and terminal runs are left alone."""
        with self._lock:
            if self.status is not JobStatus.PENDING:
                return False
            self._apply(JobStatus.SKIPPED, None, reason)
            return True

    def _apply(self, status: JobStatus, error: str | None, reason: str | None) -> None:
        self.status = status
        now = utcnow()
        if status is JobStatus.RUNNING:
            self.started_at = now
        else:
            self.finished_at = now
        if error is not None:
            self.error = error
        if reason is not None:
            self.skip_reason = reason

    def snapshot(self) -> JobResult:
        with self._lock:
            return JobResult(
                id=self.id,
                name=self.job.name,
                status=self.status,
                started_at=self.started_at,
                finished_at=self.finished_at,
                captured_output="".join(self._output),
                error=self.error,
                skip_reason=self.skip_reason,
                cache_status=self.cache_status,
            )

    def __repr__(self) -> str:
        return f"JobRun({self.name!r}, status={self.status.value})"


@dataclass(frozen=True)
class RunReport:
    run_id: str
    event: Event
    pipeline: str
    status: RunStatus
    jobs: Tuple[JobResult, ...]
    started_at: datetime
    finished_at: datetime | None = None

    def job(self, name: str) -> JobResult:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    @property
    def per_job_statuses(self) -> Dict[str, str]:
        return {j.name: j.status.value for j in self.jobs}

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "event": self.event.to_dict(),
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "jobs": [j.to_dict() for j in self.jobs],
        }
