# scheduler.py
from __future__ import annotations

import itertools
import logging
import os
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Deque, Dict, List, Optional, Set

from .concurrency import CancellationToken, ConcurrencyGroupManager, Holder
from .dag import build_dag
from .errors import (
    ConcurrencyPreemptedError,
    ExpressionError,
    RelayError,
    RunCancelledError,
)
from .expressions import StatusView, evaluate_condition, interpolate
from .loader import check_pipeline
from .model import JobInstance, JobState, Run, RunStatus
from .runner import JobExecutor, expression_context
from .secrets import EnvironmentResolver, JobScope

if TYPE_CHECKING:
    from .history import RunHistory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobEvent:
    """One JobInstance state transition. `seq` is global across all runs."""
    seq: int
    run_id: str
    job_id: str
    state: JobState
    at: float


Listener = Callable[[JobEvent], None]


class RunHandle:
    """Handle on a submitted Run: wait for it, or abort it."""

    def __init__(self, run: Run, token: CancellationToken):
        self.run = run
        self.token = token
        self._done = threading.Event()
        self._error: Optional[BaseException] = None

    @property
    def id(self) -> str:
        return self.run.id

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def status(self) -> RunStatus:
        return self.run.status

    def cancel(self, reason: str = "run cancelled") -> bool:
        """Abort the Run. In-flight steps are asked to stop; nothing new starts."""
        return self.token.cancel(RunCancelledError(reason))

    def wait(self, timeout: Optional[float] = None) -> Run:
        if not self._done.wait(timeout):
            raise TimeoutError(f"run {self.run.id} still running after {timeout}s")
        if self._error is not None:
            raise self._error
        return self.run


class Scheduler:
    """
    Dependency graph scheduler.

    - Validates the job graph and every expression on submit
      (DefinitionError rejects the Run before any job starts).
    - Dispatches every job whose predecessors are terminal and whose
      condition holds to a bounded thread pool.
    - Failure propagates downstream as SKIPPED unless a job's condition
      says otherwise.
    """

    def __init__(
        self,
        executor: Optional[JobExecutor] = None,
        *,
        resolver: Optional[EnvironmentResolver] = None,
        concurrency: Optional[ConcurrencyGroupManager] = None,
        max_workers: Optional[int] = None,
        history: Optional["RunHistory"] = None,
    ):
        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(2, c - 1)
        self.executor = executor or JobExecutor()
        self.resolver = resolver or EnvironmentResolver()
        self.concurrency = concurrency or ConcurrencyGroupManager()
        self.max_workers = max_workers
        self.history = history
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()
        self._seq = itertools.count(1)

    def add_listener(self, listener: Listener) -> None:
        """Listeners are called under the scheduler lock and must not block."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, run: Run) -> RunHandle:
        check_pipeline(run.pipeline)
        adj, _ = build_dag(run.pipeline.jobs)

        handle = RunHandle(run, CancellationToken())
        thread = threading.Thread(
            target=self._drive,
            args=(handle, adj),
            name=f"relayci-run-{run.id}",
            daemon=True,
        )
        thread.start()
        return handle

    def run(self, run: Run, timeout: Optional[float] = None) -> Run:
        return self.submit(run).wait(timeout)

    # ------------------------------------------------------------------
    # Run driver
    # ------------------------------------------------------------------

    def _drive(self, handle: RunHandle, adj: Dict[str, Set[str]]) -> None:
        run = handle.run
        token = handle.token
        run.status = RunStatus.RUNNING
        group = run.pipeline.concurrency
        holder: Optional[Holder] = None
        key = ""
        try:
            if group is not None:
                key = interpolate(group.group, {"trigger": run.context.as_namespace(),
                                                "github": run.context.as_namespace(),
                                                "env": dict(run.pipeline.env)})
                holder = Holder(run.id, token)
                if not self.concurrency.acquire(key, holder, group.cancel_in_progress).granted:
                    logger.info("run %s: waiting for concurrency group %s", run.id, key)
                    self.concurrency.wait_until_granted(key, holder)

            if not token.cancelled:
                self._schedule(run, token, adj)
        except BaseException as e:
            logger.exception("run %s: scheduler error", run.id)
            handle._error = e
        finally:
            if holder is not None:
                self.concurrency.release(key, holder)
            for inst in run.jobs.values():
                if inst.state is JobState.PENDING:
                    self._transition(run, inst, JobState.SKIPPED)
                elif not inst.state.terminal:
                    inst.error = inst.error or str(token.reason or "run aborted")
                    self._transition(run, inst, JobState.CANCELLED)
            run.status = RunStatus.CANCELLED if token.cancelled else run.conclude()
            run.finished_at = datetime.now(timezone.utc)
            logger.info("run %s: %s", run.id, run.status.value)
            self._record(run)
            handle._done.set()

    def _schedule(self, run: Run, token: CancellationToken, adj: Dict[str, Set[str]]) -> None:
        remaining: Dict[str, int] = {
            name: len(set(spec.needs)) for name, spec in run.pipeline.jobs.items()
        }
        settled: Deque[str] = deque(sorted(n for n, c in remaining.items() if c == 0))
        in_flight: Dict[Future, str] = {}

        def unlock_dependents(name: str) -> None:
            for child in sorted(adj[name]):
                remaining[child] -= 1
                if remaining[child] == 0:
                    settled.append(child)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=f"relayci-{run.id}") as pool:
            while True:
                # decide every job whose predecessors are all terminal
                while settled:
                    name = settled.popleft()
                    inst = run.jobs[name]
                    verdict = self._decide(run, inst, token)
                    if verdict is JobState.QUEUED:
                        self._transition(run, inst, JobState.QUEUED)
                        in_flight[pool.submit(self._execute, run, inst, token)] = name
                    else:
                        self._transition(run, inst, verdict)
                        unlock_dependents(name)

                if not in_flight:
                    break

                # wait for one completion, then loop to schedule newly-ready jobs
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    name = in_flight.pop(fut)
                    exc = fut.exception()
                    if exc is not None:
                        inst = run.jobs[name]
                        inst.error = f"{type(exc).__name__}: {exc}"
                        if not inst.state.terminal:
                            self._transition(run, inst, JobState.FAILED)
                    unlock_dependents(name)

    def _decide(self, run: Run, inst: JobInstance, token: CancellationToken) -> JobState:
        """QUEUED if the job should run now, else the terminal state to record."""
        if token.cancelled:
            logger.info("[%s] skipped: run aborted", inst.spec.id)
            return JobState.SKIPPED

        spec = inst.spec
        preds = [run.jobs[d] for d in set(spec.needs)]
        ok = all(
            p.state is JobState.SUCCEEDED
            or (p.state is JobState.FAILED and p.job_id in spec.tolerate_failure_of)
            for p in preds
        )
        failed = any(p.state is JobState.FAILED for p in preds)
        cancelled = any(p.state is JobState.CANCELLED for p in preds)

        context = expression_context(run, inst, None)
        context["env"] = {**run.pipeline.env, **spec.env}
        status = StatusView(succeeded=ok, failed=failed, cancelled=cancelled)
        try:
            go = evaluate_condition(spec.condition, context, status)
        except ExpressionError as e:
            inst.error = str(e)
            return JobState.FAILED

        if go:
            return JobState.QUEUED
        if not ok:
            blocked_by = sorted(p.job_id for p in preds if p.state is not JobState.SUCCEEDED)
            logger.info("[%s] skipped: predecessors not successful: %s", spec.id, blocked_by)
        else:
            logger.info("[%s] skipped: condition is false", spec.id)
        return JobState.SKIPPED

    # ------------------------------------------------------------------
    # Job execution (pool threads)
    # ------------------------------------------------------------------

    def _execute(self, run: Run, inst: JobInstance, run_token: CancellationToken) -> None:
        spec = inst.spec
        token = run_token.child()
        holder: Optional[Holder] = None
        key = ""
        final = JobState.FAILED
        try:
            if spec.concurrency is not None:
                context = expression_context(run, inst, None)
                context["env"] = {**run.pipeline.env, **spec.env}
                key = interpolate(spec.concurrency.group, context)
                holder = Holder(inst.id, token)
                result = self.concurrency.acquire(key, holder, spec.concurrency.cancel_in_progress)
                if result.evicted is not None:
                    logger.info("[%s] preempted %s in group %s", spec.id, result.evicted.id, key)
                if not result.granted:
                    self._transition(run, inst, JobState.BLOCKED)
                    self.concurrency.wait_until_granted(key, holder)

            token.raise_if_cancelled()
            env_map = self.resolver.resolve(JobScope.for_job(run, spec.id))

            inst.started_at = time.monotonic()
            self._transition(run, inst, JobState.RUNNING)
            self.executor.run(run, inst, env_map, token)
            final = JobState.SUCCEEDED
        except (ConcurrencyPreemptedError, RunCancelledError) as e:
            inst.error = str(e)
            final = JobState.CANCELLED
        except RelayError as e:
            inst.error = str(e)
            final = JobState.FAILED
        except Exception as e:
            logger.exception("[%s] unexpected error", spec.id)
            inst.error = f"{type(e).__name__}: {e}"
            final = JobState.FAILED
        finally:
            self._transition(run, inst, final)
            if holder is not None:
                self.concurrency.release(key, holder)

    # ------------------------------------------------------------------
    # State + events
    # ------------------------------------------------------------------

    def _transition(self, run: Run, inst: JobInstance, state: JobState) -> None:
        with self._lock:
            inst.state = state
            now = time.monotonic()
            if state.terminal:
                inst.finished_at = now
            event = JobEvent(seq=next(self._seq), run_id=run.id, job_id=inst.job_id, state=state, at=now)
            logger.debug("[%s] %s -> %s", run.id, inst.job_id, state.value)
            for listener in self._listeners:
                listener(event)

    def _record(self, run: Run) -> None:
        if self.history is None:
            return
        try:
            self.history.record(run)
        except Exception:
            logger.exception("run %s: could not record history", run.id)
