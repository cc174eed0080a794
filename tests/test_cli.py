import os
import re
import shutil
from pathlib import Path
from textwrap import dedent

import pytest
from click.testing import CliRunner

from relayci.cli import cli

PIPELINES = Path(__file__).resolve().parent.parent / "pipelines"

needs_shell = pytest.mark.skipif(
    os.name != "posix" or shutil.which("bash") is None, reason="needs a POSIX shell"
)


@pytest.fixture
def runner():
    return CliRunner()


def _write(tmp_path, name, text):
    p = tmp_path / name
    p.write_text(dedent(text))
    return str(p)


def test_plan(runner):
    result = runner.invoke(cli, ["plan", str(PIPELINES / "release.yaml")])
    assert result.exit_code == 0, result.output
    assert "Pipeline: release" in result.output
    assert "build-docs, release-plz-pr, release-plz-release" in result.output
    assert "2. deploy-docs" in result.output


def test_plan_rejects_cycles(runner, tmp_path):
    path = _write(tmp_path, "cycle.yaml", """
        on: push
        jobs:
          a: {needs: b, steps: [{run: "true"}]}
          b: {needs: a, steps: [{run: "true"}]}
    """)
    result = runner.invoke(cli, ["plan", path])
    assert result.exit_code == 2


@needs_shell
def test_run_then_status(runner, tmp_path):
    path = _write(tmp_path, "ci.yaml", """
        on:
          push:
            branches: [main]
        jobs:
          build:
            steps:
              - run: echo building
          test:
            needs: build
            steps:
              - run: echo "deploying with $TOKEN"
                env:
                  TOKEN: ${{ secrets.TOKEN }}
            secrets: [TOKEN]
    """)
    secrets = _write(tmp_path, "secrets.yaml", "secrets:\n  TOKEN: hunter2\n")
    state = str(tmp_path / "state")

    result = runner.invoke(cli, ["run", path, "--ref", "main", "--secrets-file", secrets, "--state-dir", state])
    assert result.exit_code == 0, result.output
    assert "RESULTS (SUCCEEDED)" in result.output
    assert "hunter2" not in result.output

    run_id = re.search(r"Run ID: (\w+)", result.output).group(1)
    status = runner.invoke(cli, ["status", run_id, "--state-dir", state])
    assert status.exit_code == 0
    assert "build: SUCCEEDED" in status.output
    assert "test: SUCCEEDED" in status.output


@needs_shell
def test_failed_run_exits_1(runner, tmp_path):
    path = _write(tmp_path, "ci.yaml", """
        on: push
        jobs:
          a:
            steps:
              - run: echo "broken build"; exit 4
          b:
            needs: a
            steps:
              - run: "true"
    """)
    result = runner.invoke(cli, ["run", path, "--ref", "main", "--state-dir", str(tmp_path / "state")])
    assert result.exit_code == 1
    assert "JOB FAILED: a" in result.output
    assert "broken build" in result.output
    assert "b: SKIPPED" in result.output


def test_event_without_matching_pipeline_is_a_noop(runner, tmp_path):
    result = runner.invoke(
        cli, ["run", str(PIPELINES / "release.yaml"), "--ref", "main", "--state-dir", str(tmp_path / "state")]
    )
    assert result.exit_code == 0
    assert "nothing to run" in result.output


def test_invalid_pipeline_exits_2(runner, tmp_path):
    path = _write(tmp_path, "bad.yaml", "on: push\njobs:\n  a:\n    steps: []\n")
    result = runner.invoke(cli, ["run", path, "--ref", "main", "--state-dir", str(tmp_path / "state")])
    assert result.exit_code == 2


def test_unknown_run_status(runner, tmp_path):
    result = runner.invoke(cli, ["status", "deadbeef", "--state-dir", str(tmp_path / "state")])
    assert result.exit_code == 1


def test_prune(runner, tmp_path):
    result = runner.invoke(cli, ["prune", "--state-dir", str(tmp_path / "state")])
    assert result.exit_code == 0
    assert "Pruned 0 artifact(s) and 0 run(s)." in result.output
