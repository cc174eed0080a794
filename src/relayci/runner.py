# runner.py
from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import tempfile
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

from .artifacts import ArtifactStore
from .cache import CacheStore
from .concurrency import CancellationToken
from .errors import RelayError, RunCancelledError, StepExecutionError
from .expressions import StatusView, evaluate_condition, interpolate
from .model import JobInstance, Run, StepOutcome, StepResult, StepSpec
from .secrets import EnvMap

logger = logging.getLogger(__name__)

TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "cargo": "Install a Rust toolchain (rustup) or fix PATH.",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}

OUTPUT_ENV = "RELAYCI_OUTPUT"
WORKSPACE_ENV = "RELAYCI_WORKSPACE"


# ----------------------------------------------------------------------
# Step environment + actions
# ----------------------------------------------------------------------

@dataclass
class StepEnvironment:
    """Everything one step execution sees. Owned by a single JobInstance."""
    workspace: Path
    scratch: Path
    variables: Dict[str, str]
    context: Mapping[str, Any]
    token: CancellationToken
    run_id: str = ""
    job_id: str = ""
    env_map: Optional[EnvMap] = None
    artifacts: Optional[ArtifactStore] = None
    source_dir: Optional[Path] = None

    def mask(self, text: str) -> str:
        return self.env_map.mask(text) if self.env_map else text


@dataclass
class ActionContext:
    step: StepSpec
    inputs: Dict[str, str]
    env: StepEnvironment
    outputs: Dict[str, str] = field(default_factory=dict)
    lines: List[str] = field(default_factory=list)

    def log(self, message: str) -> None:
        self.lines.append(message)


ActionFn = Callable[[ActionContext], Optional[int]]


class ActionRegistry:
    """Named actions for `uses:` steps. `owner/name@v1` resolves to `name`."""

    def __init__(self) -> None:
        self._actions: Dict[str, ActionFn] = {}

    def register(self, name: str, fn: ActionFn) -> None:
        self._actions[name] = fn

    def action(self, name: str) -> Callable[[ActionFn], ActionFn]:
        def deco(fn: ActionFn) -> ActionFn:
            self.register(name, fn)
            return fn
        return deco

    def resolve(self, ref: str) -> Optional[ActionFn]:
        bare = ref.split("@", 1)[0]
        return self._actions.get(bare) or self._actions.get(bare.rsplit("/", 1)[-1])

    def names(self) -> List[str]:
        return sorted(self._actions)


# ----------------------------------------------------------------------
# Step runner
# ----------------------------------------------------------------------

class StepRunner:
    """Executes one step against a provisioned workspace and captures its result."""

    def __init__(
        self,
        actions: Optional[ActionRegistry] = None,
        *,
        output_tail: int = 4000,
        kill_grace: float = 5.0,
        poll_interval: float = 0.05,
    ):
        if actions is None:
            from .actions import default_registry
            actions = default_registry()
        self.actions = actions
        self.output_tail = output_tail
        self.kill_grace = kill_grace
        self.poll_interval = poll_interval

    def execute(self, step: StepSpec, env: StepEnvironment) -> StepResult:
        start = time.monotonic()
        if step.uses is not None:
            exit_code, outcome, output, outputs = self._run_action(step, env)
        else:
            exit_code, outcome, output, outputs = self._run_command(step, env)
        duration_ms = int((time.monotonic() - start) * 1000)
        return StepResult(
            name=step.name,
            exit_code=exit_code,
            duration_ms=duration_ms,
            outcome=outcome,
            output=env.mask(output)[-self.output_tail:],
            outputs=outputs,
        )

    # ---- uses: ----
    def _run_action(self, step: StepSpec, env: StepEnvironment):
        fn = self.actions.resolve(step.uses)
        if fn is None:
            return 1, StepOutcome.FAILURE, f"unknown action '{step.uses}'", {}

        ctx = ActionContext(
            step=step,
            inputs={k: interpolate(v, env.context) for k, v in step.with_.items()},
            env=env,
        )
        try:
            exit_code = fn(ctx) or 0
        except RelayError as e:
            ctx.log(str(e))
            exit_code = 1
        except Exception as e:
            logger.debug("action %s raised", step.uses, exc_info=True)
            ctx.log(f"{type(e).__name__}: {e}")
            exit_code = 1

        output = "\n".join(ctx.lines)
        if env.token.cancelled:
            return exit_code, StepOutcome.CANCELLED, output, ctx.outputs
        outcome = StepOutcome.SUCCESS if exit_code == 0 else StepOutcome.FAILURE
        return exit_code, outcome, output, ctx.outputs

    # ---- run: ----
    def _run_command(self, step: StepSpec, env: StepEnvironment):
        command = interpolate(step.run, env.context)
        cwd = (env.workspace / (step.working_directory or ".")).resolve()
        if not cwd.is_dir():
            return 1, StepOutcome.FAILURE, f"working directory not found: {cwd}", {}

        output_file = env.scratch / f"output-{time.monotonic_ns()}"
        output_file.touch()
        variables = dict(env.variables)
        variables[OUTPUT_ENV] = str(output_file)
        variables[WORKSPACE_ENV] = str(env.workspace)

        bash = shutil.which("bash", path=variables.get("PATH"))
        argv = [bash, "-e", "-o", "pipefail", "-c", command] if bash else command
        proc = subprocess.Popen(
            argv,
            shell=bash is None,
            cwd=str(cwd),
            env=variables,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            start_new_session=os.name == "posix",
        )

        tail: Deque[str] = deque(maxlen=500)
        reader = threading.Thread(target=self._drain, args=(proc, tail, env, step), daemon=True)
        reader.start()

        deadline = None
        if step.timeout_minutes:
            deadline = time.monotonic() + step.timeout_minutes * 60
        cancelled = timed_out = False
        while True:
            try:
                exit_code = proc.wait(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                pass
            if not cancelled and env.token.cancelled:
                cancelled = True
                self._terminate(proc)
            elif not timed_out and deadline is not None and time.monotonic() > deadline:
                timed_out = True
                self._terminate(proc)
        reader.join(timeout=self.kill_grace)

        output = "".join(tail)
        if cancelled:
            return exit_code, StepOutcome.CANCELLED, output, {}
        if timed_out:
            output += f"\nstep timed out after {step.timeout_minutes} minutes"
            return exit_code or 1, StepOutcome.FAILURE, output, {}
        if exit_code == 127:
            tool = command.strip().split()[0] if command.strip() else ""
            output += f"\ncommand not found. {TOOL_HINTS.get(tool, f'Install {tool} or fix PATH.')}"
        if exit_code != 0:
            return exit_code, StepOutcome.FAILURE, output, {}
        return 0, StepOutcome.SUCCESS, output, _read_outputs(output_file)

    def _drain(self, proc: subprocess.Popen, tail: Deque[str], env: StepEnvironment, step: StepSpec) -> None:
        for line in proc.stdout:
            tail.append(line)
            logger.debug("[%s] %s | %s", env.job_id, step.name, env.mask(line.rstrip()))
        proc.stdout.close()

    def _terminate(self, proc: subprocess.Popen) -> None:
        """SIGTERM the step's process group, then SIGKILL after the grace period."""
        if os.name == "posix":
            try:
                os.killpg(proc.pid, signal.SIGTERM)
            except ProcessLookupError:
                return
            try:
                proc.wait(timeout=self.kill_grace)
            except subprocess.TimeoutExpired:
                try:
                    os.killpg(proc.pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
        else:
            proc.terminate()
            try:
                proc.wait(timeout=self.kill_grace)
            except subprocess.TimeoutExpired:
                proc.kill()


def _read_outputs(path: Path) -> Dict[str, str]:
    outputs: Dict[str, str] = {}
    if not path.exists():
        return outputs
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        if "=" in line:
            key, value = line.split("=", 1)
            outputs[key.strip()] = value
    return outputs


# ----------------------------------------------------------------------
# Job executor
# ----------------------------------------------------------------------

def expression_context(run: Run, instance: JobInstance, env: Optional[EnvMap]) -> Dict[str, Any]:
    """The explicit context every condition and interpolation in a job sees."""
    trigger = run.context.as_namespace()
    needs = {
        dep: {"result": run.jobs[dep].state.value}
        for dep in instance.spec.needs
        if dep in run.jobs
    }
    return {
        "trigger": trigger,
        "github": trigger,
        "env": dict(env.variables) if env else {},
        "secrets": dict(env.secrets) if env else {},
        "needs": needs,
        "steps": {},
        "job": {"id": instance.spec.id, "status": "success"},
        "runner": {"name": instance.spec.runs_on, "os": os.name},
    }


class JobExecutor:
    """
    Runs a job's steps strictly in order inside one fresh workspace.

    Updates the JobInstance's step results and warning flag as it goes; raises
    StepExecutionError on a failing step (unless tolerated) and the token's
    reason on cancellation.
    """

    def __init__(
        self,
        step_runner: Optional[StepRunner] = None,
        *,
        artifacts: Optional[ArtifactStore] = None,
        cache: Optional[CacheStore] = None,
        source_dir: str | Path | None = None,
        workspace_root: str | Path | None = None,
        keep_workspaces: bool = False,
    ):
        self.step_runner = step_runner or StepRunner()
        self.artifacts = artifacts
        self.cache = cache
        self.source_dir = Path(source_dir).resolve() if source_dir else None
        self.workspace_root = Path(workspace_root) if workspace_root else None
        self.keep_workspaces = keep_workspaces
        self._on_step: List[Callable[[JobInstance, StepResult], None]] = []

    def on_step_complete(self, callback: Callable[[JobInstance, StepResult], None]) -> None:
        """Register callback for when a step completes."""
        self._on_step.append(callback)

    def run(self, run: Run, instance: JobInstance, env_map: EnvMap, token: CancellationToken) -> None:
        if self.workspace_root is not None:
            self.workspace_root.mkdir(parents=True, exist_ok=True)
        root = Path(tempfile.mkdtemp(prefix=f"relayci-{instance.job_id}-", dir=self.workspace_root))
        workspace = root / "work"
        scratch = root / "scratch"
        workspace.mkdir()
        scratch.mkdir()
        try:
            self._run_in(run, instance, env_map, token, workspace, scratch)
        finally:
            if not self.keep_workspaces:
                shutil.rmtree(root, ignore_errors=True)

    def _run_in(
        self,
        run: Run,
        instance: JobInstance,
        env_map: EnvMap,
        token: CancellationToken,
        workspace: Path,
        scratch: Path,
    ) -> None:
        spec = instance.spec
        context = expression_context(run, instance, env_map)
        job_env = dict(env_map.variables)
        declared = {**run.pipeline.env, **spec.env}
        job_env.update({k: interpolate(v, context) for k, v in declared.items()})
        context["env"] = job_env

        if self.cache is not None and spec.cache is not None:
            hit = self.cache.restore(run.pipeline.name, spec, workspace, context)
            logger.info("[%s] cache: %s", spec.id, hit.reason)

        failure: Optional[StepExecutionError] = None
        for step in spec.steps:
            status = StatusView(succeeded=failure is None, failed=failure is not None, cancelled=token.cancelled)
            if token.cancelled:
                self._record(instance, StepResult(step.name, 0, 0, StepOutcome.CANCELLED))
                continue
            if not evaluate_condition(step.condition, context, status):
                self._record(instance, StepResult(step.name, 0, 0, StepOutcome.SKIPPED))
                continue

            variables = dict(job_env)
            variables.update({k: interpolate(v, context) for k, v in step.env.items()})
            step_env = StepEnvironment(
                workspace=workspace,
                scratch=scratch,
                variables=variables,
                context=context,
                token=token,
                run_id=run.id,
                job_id=spec.id,
                env_map=env_map,
                artifacts=self.artifacts,
                source_dir=self.source_dir,
            )
            logger.info("[%s] > %s", spec.id, step.name)
            result = self.step_runner.execute(step, step_env)
            self._record(instance, result)
            if step.id:
                context["steps"][step.id] = {"outputs": dict(result.outputs), "outcome": result.outcome.value}

            if result.outcome is StepOutcome.FAILURE:
                if step.continue_on_error:
                    logger.warning("[%s] step '%s' failed (exit=%d), continuing", spec.id, step.name, result.exit_code)
                    instance.with_warnings = True
                    continue
                if failure is None:
                    failure = StepExecutionError(
                        job=spec.id, step=step.name, exit_code=result.exit_code, output=result.output
                    )
                    context["job"]["status"] = "failure"

        if token.cancelled:
            raise token.reason or RunCancelledError("cancelled")
        if failure is not None:
            raise failure

        if self.cache is not None and spec.cache is not None:
            key = self.cache.save(run.pipeline.name, spec, workspace, context)
            if key:
                self.cache.prune(spec.id)
                logger.info("[%s] cache: saved (%s...)", spec.id, key[:12])

    def _record(self, instance: JobInstance, result: StepResult) -> None:
        instance.steps.append(result)
        for cb in self._on_step:
            cb(instance, result)
