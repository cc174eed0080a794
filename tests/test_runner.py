import os
import shutil
import threading
import time

import pytest

from relayci.concurrency import CancellationToken
from relayci.dsl import action, job, pipeline, sh
from relayci.errors import RelayError, RunCancelledError, StepExecutionError
from relayci.model import StepOutcome, StepSpec
from relayci.runner import ActionRegistry, StepEnvironment, StepRunner
from relayci.secrets import EnvironmentResolver, EnvMap, JobScope

needs_shell = pytest.mark.skipif(
    os.name != "posix" or shutil.which("bash") is None, reason="needs a POSIX shell"
)


@pytest.fixture
def step_env(tmp_path):
    def _make(token=None, variables=None, secrets=None, context=None):
        ws = tmp_path / "ws"
        scratch = tmp_path / "scratch"
        ws.mkdir(exist_ok=True)
        scratch.mkdir(exist_ok=True)
        env = {"PATH": os.environ.get("PATH", "/usr/bin:/bin")}
        env.update(variables or {})
        return StepEnvironment(
            workspace=ws,
            scratch=scratch,
            variables=env,
            context=context or {},
            token=token or CancellationToken(),
            run_id="run1",
            job_id="job",
            env_map=EnvMap(variables=env, secrets=secrets or {}),
        )
    return _make


# ---------------------------------------------------------------------
# Shell steps
# ---------------------------------------------------------------------

@needs_shell
def test_command_output_and_success(step_env):
    result = StepRunner().execute(StepSpec("hello", run="echo hello"), step_env())
    assert result.outcome is StepOutcome.SUCCESS
    assert result.exit_code == 0
    assert "hello" in result.output


@needs_shell
@pytest.mark.parametrize("cmd, code", [("exit 3", 3), ("false | true", 1), ("false\necho after", 1)])
def test_command_failure(step_env, cmd, code):
    result = StepRunner().execute(StepSpec("bad", run=cmd), step_env())
    assert result.outcome is StepOutcome.FAILURE
    assert result.exit_code == code
    assert "after" not in result.output


@needs_shell
def test_step_outputs(step_env):
    step = StepSpec("meta", run='echo "version=1.2.0" >> "$RELAYCI_OUTPUT"\necho "a=b=c" >> "$RELAYCI_OUTPUT"')
    result = StepRunner().execute(step, step_env())
    assert dict(result.outputs) == {"version": "1.2.0", "a": "b=c"}


@needs_shell
def test_secret_values_are_masked(step_env):
    env = step_env(variables={"TOKEN": "hunter2"}, secrets={"TOKEN": "hunter2"})
    result = StepRunner().execute(StepSpec("leak", run='echo "token is $TOKEN"'), env)
    assert "hunter2" not in result.output
    assert "token is ***" in result.output


@needs_shell
def test_command_is_interpolated(step_env):
    env = step_env(context={"trigger": {"branch": "release"}})
    result = StepRunner().execute(StepSpec("b", run="echo branch=${{ trigger.branch }}"), env)
    assert "branch=release" in result.output


@needs_shell
def test_working_directory(step_env):
    env = step_env()
    (env.workspace / "sub").mkdir()
    result = StepRunner().execute(StepSpec("pwd", run="pwd", working_directory="sub"), env)
    assert result.output.strip().endswith("/sub")

    missing = StepRunner().execute(StepSpec("pwd", run="pwd", working_directory="nope"), env)
    assert missing.outcome is StepOutcome.FAILURE


@needs_shell
def test_missing_tool_hint(step_env):
    result = StepRunner().execute(StepSpec("x", run="definitely-not-a-tool-xyz --version"), step_env())
    assert result.exit_code == 127
    assert "fix PATH" in result.output


@needs_shell
def test_output_tail_is_bounded(step_env):
    result = StepRunner(output_tail=10).execute(StepSpec("x", run="echo 0123456789abcdefghij"), step_env())
    assert len(result.output) <= 10


@needs_shell
def test_cancellation_terminates_process_group(step_env):
    token = CancellationToken()
    env = step_env(token=token)
    threading.Timer(0.3, token.cancel).start()
    start = time.monotonic()
    result = StepRunner(kill_grace=2.0).execute(StepSpec("sleep", run="sleep 30 & sleep 30; wait"), env)
    assert result.outcome is StepOutcome.CANCELLED
    assert time.monotonic() - start < 15


@needs_shell
def test_step_timeout(step_env):
    step = StepSpec("slow", run="sleep 30", timeout_minutes=0.005)
    result = StepRunner(kill_grace=2.0).execute(step, step_env())
    assert result.outcome is StepOutcome.FAILURE
    assert "timed out" in result.output


# ---------------------------------------------------------------------
# Action steps
# ---------------------------------------------------------------------

def test_action_resolution():
    reg = ActionRegistry()
    reg.register("checkout", lambda ctx: 0)
    assert reg.resolve("actions/checkout@v4") is reg.resolve("checkout")
    assert reg.resolve("unknown") is None


def test_unknown_action_fails(step_env):
    result = StepRunner(ActionRegistry()).execute(StepSpec("x", uses="nope@v1"), step_env())
    assert result.outcome is StepOutcome.FAILURE
    assert "unknown action" in result.output


def test_action_errors_become_step_failures(step_env):
    reg = ActionRegistry()

    @reg.action("explode")
    def explode(ctx):
        raise RelayError("exploded")

    result = StepRunner(reg).execute(StepSpec("x", uses="explode"), step_env())
    assert result.outcome is StepOutcome.FAILURE
    assert "exploded" in result.output


def test_action_inputs_are_interpolated(step_env, registry):
    env = step_env(context={"trigger": {"ref": "refs/heads/main"}})
    result = StepRunner(registry).execute(
        StepSpec("o", uses="set-output", with_={"ref": "${{ trigger.ref }}"}), env
    )
    assert dict(result.outputs) == {"ref": "refs/heads/main"}


# ---------------------------------------------------------------------
# JobExecutor
# ---------------------------------------------------------------------

def _run_job(executor, make_run, spec, token=None):
    run = make_run(pipeline("p", spec))
    inst = run.jobs[spec.id]
    resolver = EnvironmentResolver(passthrough={"PATH": os.environ.get("PATH", "")})
    env_map = resolver.resolve(JobScope.for_job(run, spec.id))
    executor.run(run, inst, env_map, token or CancellationToken())
    return inst


def _outcomes(inst):
    return [s.outcome.value for s in inst.steps]


def test_continue_on_error_marks_warnings(executor, make_run):
    spec = job("lint", action("fail", continue_on_error=True), action("ok"))
    inst = _run_job(executor, make_run, spec)
    assert inst.with_warnings
    assert _outcomes(inst) == ["failure", "success"]


def test_failure_skips_remaining_steps_unless_they_ask(executor, make_run):
    spec = job(
        "test",
        action("fail", name="unit"),
        action("ok", name="coverage"),
        action("ok", name="report", when="failure()"),
        action("ok", name="cleanup", when="always()"),
    )
    with pytest.raises(StepExecutionError) as exc:
        _run_job(executor, make_run, spec)
    assert exc.value.step == "unit"
    assert exc.value.job == "test"


def test_step_outcomes_after_failure(executor, make_run):
    spec = job(
        "test",
        action("fail", name="unit"),
        action("ok", name="coverage"),
        action("ok", name="report", when="failure()"),
    )
    run = make_run(pipeline("p", spec))
    inst = run.jobs["test"]
    with pytest.raises(StepExecutionError):
        executor.run(run, inst, EnvMap(variables={}), CancellationToken())
    assert _outcomes(inst) == ["failure", "skipped", "success"]


def test_step_outputs_feed_later_conditions(executor, make_run):
    spec = job(
        "release",
        action("set-output", id="meta", with_={"version": "1.2.0"}),
        action("ok", name="matches", when="steps.meta.outputs.version == '1.2.0'"),
        action("ok", name="differs", when="steps.meta.outputs.version != '1.2.0'"),
    )
    inst = _run_job(executor, make_run, spec)
    assert _outcomes(inst) == ["success", "success", "skipped"]


def test_cancelled_token_cancels_every_step(executor, make_run):
    token = CancellationToken()
    token.cancel("stop")
    spec = job("a", action("ok"), action("ok"))
    run = make_run(pipeline("p", spec))
    inst = run.jobs["a"]
    with pytest.raises(RunCancelledError):
        executor.run(run, inst, EnvMap(variables={}), token)
    assert _outcomes(inst) == ["cancelled", "cancelled"]


@needs_shell
def test_steps_share_one_workspace_and_it_is_removed(executor, make_run, tmp_path):
    spec = job(
        "build",
        sh("write", "echo built > out.txt"),
        sh("read", "cat out.txt"),
    )
    inst = _run_job(executor, make_run, spec)
    assert "built" in inst.steps[1].output
    assert list((tmp_path / "workspaces").iterdir()) == []


def test_job_env_is_interpolated(executor, make_run):
    spec = job("a", action("echo-env", with_={"var": "GREETING"}), env={"GREETING": "hi-${{ trigger.branch }}"})
    inst = _run_job(executor, make_run, spec)
    assert inst.steps[0].output == "hi-main"


def test_step_callbacks(executor, make_run):
    seen = []
    executor.on_step_complete(lambda inst, result: seen.append((inst.job_id, result.name)))
    _run_job(executor, make_run, job("a", action("ok", name="one"), action("ok", name="two")))
    assert seen == [("a", "one"), ("a", "two")]


def test_passthrough_variables_are_not_interpolated(executor, make_run):
    spec = job(
        "a",
        action("echo-env", with_={"var": "TEMPLATE"}),
        action("echo-env", with_={"var": "GREETING"}),
        env={"GREETING": "hi-${{ trigger.branch }}"},
    )
    run = make_run(pipeline("p", spec))
    inst = run.jobs["a"]
    resolver = EnvironmentResolver(passthrough={"TEMPLATE": "${{ trigger.ref }}", "BROKEN": "${{ == }}"})
    executor.run(run, inst, resolver.resolve(JobScope.for_job(run, "a")), CancellationToken())
    assert [s.output for s in inst.steps] == ["${{ trigger.ref }}", "hi-main"]
