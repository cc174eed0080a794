# dsl.py
from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from .model import (
    CacheSpec,
    ConcurrencyGroupSpec,
    EnvironmentSpec,
    JobSpec,
    PipelineDefinition,
    StepSpec,
    TriggerRule,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: str | None = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,
    continue_on_error: bool = False,
    when: str | None = None,
    timeout_minutes: float | None = None,
) -> StepSpec:
    """Create a shell step."""
    return StepSpec(
        name=name,
        run=cmd,
        id=id,
        env=env or {},
        working_directory=cwd,
        continue_on_error=continue_on_error,
        condition=when,
        timeout_minutes=timeout_minutes,
    )


def action(
    uses: str,
    name: str | None = None,
    *,
    id: str | None = None,
    with_: Optional[Dict[str, str]] = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    when: str | None = None,
) -> StepSpec:
    """Create a `uses:` step, e.g. action("upload-artifact", with_={"name": "docs", "path": "site"})."""
    return StepSpec(
        name=name or uses,
        uses=uses,
        id=id,
        with_={k: str(v) for k, v in (with_ or {}).items()},
        env=env or {},
        continue_on_error=continue_on_error,
        condition=when,
    )


# ---------------------------------------------------------------------
# Job helper
# ---------------------------------------------------------------------

def job(
    id: str,
    *steps: StepSpec,  # allow: job("x", sh(...), sh(...))
    needs: Optional[Iterable[str]] = None,
    name: str = "",
    runs_on: str = "local",
    when: str | None = None,
    env: Optional[Dict[str, str]] = None,
    secrets: Optional[Iterable[str]] = None,
    concurrency: str | None = None,
    cancel_in_progress: bool = False,
    environment: str | None = None,
    cache_paths: Optional[List[str]] = None,
    cache_key: str = "",
    tolerate_failure_of: Optional[Iterable[str]] = None,
) -> JobSpec:
    if not steps:
        raise ValueError(f"job({id!r}) must have at least one step")

    return JobSpec(
        id=id,
        name=name or id,
        steps=tuple(steps),
        needs=tuple(needs or ()),
        runs_on=runs_on,
        condition=when,
        env=env or {},
        secrets=frozenset(secrets or ()),
        concurrency=ConcurrencyGroupSpec(concurrency, cancel_in_progress) if concurrency else None,
        environment=EnvironmentSpec(environment) if environment else None,
        cache=CacheSpec(tuple(cache_paths), cache_key) if cache_paths else None,
        tolerate_failure_of=frozenset(tolerate_failure_of or ()),
    )


# ---------------------------------------------------------------------
# Triggers + pipeline
# ---------------------------------------------------------------------

def on_push(*branches: str) -> TriggerRule:
    return TriggerRule(event="push", branches=tuple(branches))


def on_pull_request(*branches: str) -> TriggerRule:
    return TriggerRule(event="pull_request", branches=tuple(branches))


def pipeline(
    name: str,
    *jobs: JobSpec,
    on: Iterable[TriggerRule] = (),
    env: Optional[Dict[str, str]] = None,
    concurrency: str | None = None,
    cancel_in_progress: bool = False,
) -> PipelineDefinition:
    """
    Pipeline definition helper for .py pipeline files:

        from relayci.dsl import pipeline, job, sh, on_push

        PIPELINE = pipeline(
            "ci",
            job("lint", sh("ruff", "ruff check .")),
            job("test", sh("pytest", "pytest -q"), needs=["lint"]),
            on=[on_push("main")],
        )
    """
    by_id: Dict[str, JobSpec] = {}
    for j in jobs:
        if j.id in by_id:
            raise ValueError(f"Duplicate job id: {j.id}")
        by_id[j.id] = j
    return PipelineDefinition(
        name=name,
        triggers=tuple(on),
        jobs=by_id,
        env=env or {},
        concurrency=ConcurrencyGroupSpec(concurrency, cancel_in_progress) if concurrency else None,
    )
