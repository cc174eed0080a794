# model.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple


def _frozen_mapping(value: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(value or {}))


# ----------------------------------------------------------------------
# Definitions (immutable once loaded)
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class TriggerRule:
    """An event kind plus optional branch filters."""
    event: str
    branches: Tuple[str, ...] = ()
    branches_ignore: Tuple[str, ...] = ()


@dataclass(frozen=True)
class StepSpec:
    """
    A single step inside a job.

    Exactly one of `run` (shell command) or `uses` (action reference) is set.
    """
    name: str
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    id: Optional[str] = None
    condition: Optional[str] = None
    working_directory: Optional[str] = None
    timeout_minutes: Optional[float] = None

    def __post_init__(self) -> None:
        if (self.run is None) == (self.uses is None):
            raise ValueError(f"step {self.name!r} must define exactly one of 'run' or 'uses'")
        object.__setattr__(self, "with_", _frozen_mapping(self.with_))
        object.__setattr__(self, "env", _frozen_mapping(self.env))


@dataclass(frozen=True)
class ConcurrencyGroupSpec:
    group: str
    cancel_in_progress: bool = False


@dataclass(frozen=True)
class EnvironmentSpec:
    """Deployment environment; selects environment-scoped secrets."""
    name: str
    url: Optional[str] = None


@dataclass(frozen=True)
class CacheSpec:
    paths: Tuple[str, ...]
    key: str = ""


@dataclass(frozen=True)
class JobSpec:
    """
    A job: ordered steps sharing one workspace, plus graph and policy metadata.

    `needs` are the jobs that must be terminal before this one may start.
    `tolerate_failure_of` lists predecessors whose failure still counts as
    success for this job's default condition.
    """
    id: str
    steps: Tuple[StepSpec, ...]
    name: str = ""
    needs: Tuple[str, ...] = ()
    runs_on: str = "local"
    concurrency: Optional[ConcurrencyGroupSpec] = None
    condition: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    secrets: frozenset = frozenset()
    permissions: Mapping[str, str] = field(default_factory=dict)
    environment: Optional[EnvironmentSpec] = None
    cache: Optional[CacheSpec] = None
    tolerate_failure_of: frozenset = frozenset()

    def __post_init__(self) -> None:
        if not self.steps:
            raise ValueError(f"job {self.id!r} must have at least one step")
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "needs", tuple(self.needs))
        object.__setattr__(self, "secrets", frozenset(self.secrets))
        object.__setattr__(self, "tolerate_failure_of", frozenset(self.tolerate_failure_of))
        object.__setattr__(self, "env", _frozen_mapping(self.env))
        object.__setattr__(self, "permissions", _frozen_mapping(self.permissions))
        if not self.name:
            object.__setattr__(self, "name", self.id)


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    triggers: Tuple[TriggerRule, ...]
    jobs: Mapping[str, JobSpec]
    env: Mapping[str, str] = field(default_factory=dict)
    concurrency: Optional[ConcurrencyGroupSpec] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "triggers", tuple(self.triggers))
        object.__setattr__(self, "jobs", _frozen_mapping(self.jobs))
        object.__setattr__(self, "env", _frozen_mapping(self.env))
        for job_id, spec in self.jobs.items():
            if job_id != spec.id:
                raise ValueError(f"job key {job_id!r} does not match JobSpec.id {spec.id!r}")


# ----------------------------------------------------------------------
# Trigger metadata
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class TriggerEvent:
    """An incoming event: push / pull_request to a ref."""
    kind: str
    ref: str
    actor: str = ""
    sha: str = ""
    base_ref: Optional[str] = None

    @property
    def branch(self) -> str:
        return branch_name(self.ref)


def branch_name(ref: str) -> str:
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


@dataclass(frozen=True)
class TriggerContext:
    """Immutable trigger metadata bound into a Run."""
    event: str
    ref: str
    branch: str
    run_id: str
    pipeline: str
    actor: str = ""
    sha: str = ""
    base_ref: Optional[str] = None

    def as_namespace(self) -> Dict[str, Any]:
        return {
            "event_name": self.event,
            "event": self.event,
            "ref": self.ref,
            "ref_name": self.branch,
            "branch": self.branch,
            "base_ref": self.base_ref or "",
            "actor": self.actor,
            "sha": self.sha,
            "run_id": self.run_id,
            "workflow": self.pipeline,
            "pipeline": self.pipeline,
        }


# ----------------------------------------------------------------------
# Runtime state
# ----------------------------------------------------------------------

class JobState(str, Enum):
    PENDING = "pending"        # waiting on predecessors
    BLOCKED = "blocked"        # waiting on a concurrency group slot
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED, JobState.CANCELLED}
)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class StepResult:
    name: str
    exit_code: int
    duration_ms: int
    outcome: StepOutcome
    output: str = ""
    outputs: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome in (StepOutcome.SUCCESS, StepOutcome.SKIPPED)


@dataclass
class JobInstance:
    run_id: str
    spec: JobSpec
    state: JobState = JobState.PENDING
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    steps: List[StepResult] = field(default_factory=list)
    with_warnings: bool = False
    error: Optional[str] = None

    @property
    def id(self) -> str:
        return f"{self.run_id}:{self.spec.id}"

    @property
    def job_id(self) -> str:
        return self.spec.id

    @property
    def duration_ms(self) -> int:
        if self.started_at is None:
            return 0
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return int((end - self.started_at) * 1000)

    @property
    def display_status(self) -> str:
        if self.state is JobState.SUCCEEDED and self.with_warnings:
            return "succeeded-with-warnings"
        return self.state.value

    @property
    def output_tail(self) -> str:
        for result in reversed(self.steps):
            if result.output:
                return result.output
        return ""


@dataclass
class Run:
    id: str
    pipeline: PipelineDefinition
    context: TriggerContext
    jobs: Dict[str, JobInstance] = field(default_factory=dict)
    status: RunStatus = RunStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not self.jobs:
            self.jobs = {
                job_id: JobInstance(run_id=self.id, spec=spec)
                for job_id, spec in self.pipeline.jobs.items()
            }

    @property
    def terminal(self) -> bool:
        return all(inst.state.terminal for inst in self.jobs.values())

    def conclude(self) -> RunStatus:
        """
        Compute the terminal Run status from job states.

        SUCCEEDED iff every non-skipped job succeeded. Anything else is a
        failed run; CANCELLED is the failed run whose only non-successes are
        cancellations (preempted or aborted jobs), so callers that only know
        success/failure should treat it as FAILED.
        """
        states = [inst.state for inst in self.jobs.values()]
        if any(s is JobState.FAILED for s in states):
            return RunStatus.FAILED
        if any(s is JobState.CANCELLED for s in states):
            return RunStatus.CANCELLED
        return RunStatus.SUCCEEDED


@dataclass(frozen=True)
class ArtifactRef:
    run_id: str
    name: str
    producer: str
    size: int
    sha256: str
    created_at: datetime
    expires_at: Optional[datetime] = None
