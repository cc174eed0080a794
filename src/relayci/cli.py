# cli.py
from __future__ import annotations

import logging
import sys
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

import click
import yaml

from relayci.artifacts import ArtifactStore
from relayci.cache import CacheStore
from relayci.dag import validate_graph
from relayci.errors import DefinitionError, RelayError
from relayci.history import RunHistory
from relayci.loader import load_pipeline
from relayci.model import JobState, RunStatus, TriggerEvent
from relayci.runner import JobExecutor, StepRunner
from relayci.scheduler import Scheduler
from relayci.secrets import EnvironmentResolver
from relayci.settings import Settings
from relayci.triggers import TriggerEvaluator
from relayci.ui.console import Console, get_console, set_console

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_DEFINITION = 2


def load_secrets_file(path: str | Path) -> EnvironmentResolver:
    """
    Build a resolver from a YAML (or JSON) secrets file:

        secrets:
          CARGO_REGISTRY_TOKEN: ...
        environments:
          github-pages:
            PAGES_TOKEN: ...

    A file without a `secrets:` key is read as a flat name -> value mapping.
    """
    p = Path(path)
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise DefinitionError(f"could not read secrets file {p}: {e}") from e
    if not isinstance(doc, dict):
        raise DefinitionError(f"secrets file {p} must be a mapping")

    environments = doc.get("environments") or {}
    if "secrets" in doc:
        secrets = doc["secrets"] or {}
    else:
        secrets = {k: v for k, v in doc.items() if k != "environments"}
    if not isinstance(secrets, dict) or not isinstance(environments, dict):
        raise DefinitionError(f"secrets file {p}: 'secrets' and 'environments' must be mappings")

    return EnvironmentResolver(
        {str(k): str(v) for k, v in secrets.items()},
        environment_secrets={
            str(env): {str(k): str(v) for k, v in (values or {}).items()}
            for env, values in environments.items()
        },
    )


def _settings(ctx: click.Context, state_dir: str | None) -> Settings:
    settings: Settings = ctx.obj["settings"]
    if state_dir:
        root = Path(state_dir).resolve()
        settings = replace(settings, state_dir=root, history_url=f"sqlite:///{root / 'history.db'}")
    return settings


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """relayci: trigger-driven pipeline orchestrator."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = Settings.from_env()


@cli.command()
@click.argument("pipeline_file", type=click.Path(dir_okay=False))
@click.option("--event", default="push", show_default=True, help="Trigger event kind (push, pull_request)")
@click.option("--ref", required=True, help="Branch or ref the event targets (e.g. main, refs/heads/main)")
@click.option("--actor", default="", help="Who triggered the event")
@click.option("--sha", default="", help="Commit SHA")
@click.option("--base-ref", default=None, help="Target branch of a pull request")
@click.option("--workers", default=None, type=int, help="Number of parallel job workers")
@click.option("--secrets-file", default=None, type=click.Path(exists=True, dir_okay=False), help="YAML/JSON secrets")
@click.option("--source-dir", default=".", show_default=True, type=click.Path(file_okay=False), help="Tree used by checkout")
@click.option("--state-dir", default=None, help="Artifacts, cache and history location")
@click.pass_context
def run(ctx, pipeline_file, event, ref, actor, sha, base_ref, workers, secrets_file, source_dir, state_dir):
    """Run a pipeline for one trigger event."""
    console = get_console()
    settings = _settings(ctx, state_dir)

    try:
        pipeline = load_pipeline(pipeline_file)
        resolver = load_secrets_file(secrets_file) if secrets_file else EnvironmentResolver()
    except DefinitionError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(EXIT_DEFINITION)

    trigger = TriggerEvent(kind=event, ref=ref, actor=actor, sha=sha, base_ref=base_ref)
    runs = TriggerEvaluator([pipeline]).admit(trigger)
    if not runs:
        console.print_no_runs(event, ref)
        sys.exit(EXIT_OK)

    retention = timedelta(days=settings.artifact_retention_days)
    executor = JobExecutor(
        StepRunner(output_tail=settings.output_tail, kill_grace=settings.kill_grace_seconds),
        artifacts=ArtifactStore(settings.artifact_dir, default_retention=retention),
        cache=CacheStore(settings.cache_dir),
        source_dir=source_dir,
        workspace_root=settings.workspace_dir,
    )
    executor.on_step_complete(console.print_step)
    scheduler = Scheduler(
        executor,
        resolver=resolver,
        max_workers=workers or settings.max_workers,
        history=RunHistory(settings.history_url),
    )
    scheduler.add_listener(console.print_job_event)

    exit_code = EXIT_OK
    for r in runs:
        console.print_run_started(r)
        try:
            handle = scheduler.submit(r)
        except DefinitionError as e:
            console.print_error("Run rejected", str(e))
            sys.exit(EXIT_DEFINITION)
        try:
            handle.wait()
        except KeyboardInterrupt:
            handle.cancel("interrupted by user")
            handle.wait()
            console.print_info("\nInterrupted by user")
        for inst in r.jobs.values():
            if inst.error and inst.state is JobState.FAILED:
                console.print_failure(inst)
        console.print_results(r)
        if r.status is not RunStatus.SUCCEEDED:
            exit_code = EXIT_FAILED
    sys.exit(exit_code)


@cli.command()
@click.argument("run_id")
@click.option("--state-dir", default=None, help="Artifacts, cache and history location")
@click.pass_context
def status(ctx, run_id, state_dir):
    """Show a recorded run."""
    console = get_console()
    settings = _settings(ctx, state_dir)
    summary = RunHistory(settings.history_url).get(run_id)
    if summary is None:
        console.print_error("Unknown run", f"No run with id {run_id} in {settings.history_url}")
        sys.exit(EXIT_FAILED)
    console.print_history(summary)


@cli.command()
@click.argument("pipeline_file", type=click.Path(dir_okay=False))
def plan(pipeline_file):
    """Validate a pipeline and print its parallel stages."""
    console = get_console()
    try:
        pipeline = load_pipeline(pipeline_file)
        levels = validate_graph(pipeline)
    except DefinitionError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(EXIT_DEFINITION)
    console.print_info(f"Pipeline: {pipeline.name}")
    console.print_info("Triggers: " + ", ".join(
        t.event + (f" ({', '.join(t.branches)})" if t.branches else "") for t in pipeline.triggers
    ))
    console.print_plan(levels)


@cli.command()
@click.option("--state-dir", default=None, help="Artifacts, cache and history location")
@click.pass_context
def prune(ctx, state_dir):
    """Delete expired artifacts and old run history."""
    console = get_console()
    settings = _settings(ctx, state_dir)
    try:
        artifacts = ArtifactStore(settings.artifact_dir).prune()
        runs = RunHistory(settings.history_url).prune(timedelta(days=settings.history_retention_days))
    except RelayError as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)
    console.print_info(f"Pruned {artifacts} artifact(s) and {runs} run(s).")


if __name__ == "__main__":
    cli()
