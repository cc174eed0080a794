from __future__ import annotations

import os
import threading
import time
from collections import defaultdict
from typing import Callable, Dict, List

import pytest

from relayci.actions import default_registry
from relayci.artifacts import ArtifactStore
from relayci.model import PipelineDefinition, Run, TriggerContext
from relayci.runner import ActionContext, ActionRegistry, JobExecutor, StepRunner
from relayci.scheduler import JobEvent, Scheduler
from relayci.secrets import EnvironmentResolver


def wait_for(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.01)


class EventLog:
    """Collects scheduler JobEvents."""

    def __init__(self) -> None:
        self.events: List[JobEvent] = []
        self._lock = threading.Lock()

    def __call__(self, event: JobEvent) -> None:
        with self._lock:
            self.events.append(event)

    def for_job(self, job_id: str, run_id: str | None = None) -> List[JobEvent]:
        with self._lock:
            return [
                e for e in self.events
                if e.job_id == job_id and (run_id is None or e.run_id == run_id)
            ]

    def states(self, job_id: str, run_id: str | None = None) -> List[str]:
        return [e.state.value for e in self.for_job(job_id, run_id)]

    def seq_of(self, job_id: str, state: str, run_id: str | None = None) -> int:
        for e in self.for_job(job_id, run_id):
            if e.state.value == state:
                return e.seq
        raise AssertionError(f"{job_id} never reached {state}")

    def reached(self, job_id: str, state: str, run_id: str | None = None) -> bool:
        return state in self.states(job_id, run_id)


@pytest.fixture
def gates() -> Dict[str, threading.Event]:
    return defaultdict(threading.Event)


@pytest.fixture
def registry(gates) -> ActionRegistry:
    """Built-in actions plus in-process test actions (no subprocesses)."""
    reg = default_registry()

    @reg.action("ok")
    def ok(ctx: ActionContext) -> int:
        ctx.log(f"ok {ctx.inputs.get('message', '')}".strip())
        return 0

    @reg.action("fail")
    def fail(ctx: ActionContext) -> int:
        ctx.log("boom")
        return 1

    @reg.action("gate")
    def gate(ctx: ActionContext) -> int:
        event = gates[ctx.inputs["name"]]
        while not event.wait(0.01):
            if ctx.env.token.cancelled:
                return 1
        return 0

    @reg.action("set-output")
    def set_output(ctx: ActionContext) -> int:
        ctx.outputs.update(ctx.inputs)
        return 0

    @reg.action("echo-env")
    def echo_env(ctx: ActionContext) -> int:
        ctx.log(ctx.env.variables.get(ctx.inputs["var"], ""))
        return 0

    return reg


@pytest.fixture
def artifacts(tmp_path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "artifacts")


@pytest.fixture
def executor(tmp_path, registry, artifacts) -> JobExecutor:
    return JobExecutor(
        StepRunner(registry, kill_grace=2.0),
        artifacts=artifacts,
        workspace_root=tmp_path / "workspaces",
    )


@pytest.fixture
def resolver() -> EnvironmentResolver:
    return EnvironmentResolver(
        {"DEPLOY_TOKEN": "s3cr3t-token"},
        passthrough={"PATH": os.environ.get("PATH", "/usr/bin:/bin")},
    )


@pytest.fixture
def event_log() -> EventLog:
    return EventLog()


@pytest.fixture
def scheduler(executor, resolver, event_log) -> Scheduler:
    s = Scheduler(executor, resolver=resolver, max_workers=4)
    s.add_listener(event_log)
    return s


@pytest.fixture
def make_run() -> Callable[..., Run]:
    counter = iter(range(1, 10_000))

    def _make(pipeline: PipelineDefinition, ref: str = "main", event: str = "push") -> Run:
        run_id = f"run{next(counter)}"
        ctx = TriggerContext(
            event=event,
            ref=f"refs/heads/{ref}",
            branch=ref,
            run_id=run_id,
            pipeline=pipeline.name,
        )
        return Run(id=run_id, pipeline=pipeline, context=ctx)

    return _make
