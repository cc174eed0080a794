"""Console output formatting utilities for relayci."""

from __future__ import annotations

import sys
import traceback
from typing import Iterable, Optional

from ..model import JobInstance, JobState, Run, StepResult
from ..scheduler import JobEvent


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(self, run: Run) -> None:
        """Print run start information."""
        ctx = run.context
        print("\nRUN STARTED")
        print(f"Pipeline: {run.pipeline.name}")
        print(f"Run ID: {run.id}")
        print(f"Trigger: {ctx.event} on {ctx.ref}")
        print(f"Jobs: {len(run.jobs)}")
        print()

    def print_no_runs(self, event: str, ref: str) -> None:
        print(f"No pipeline admits {event} on {ref}; nothing to run.")

    def print_job_event(self, event: JobEvent) -> None:
        """Print a job state transition."""
        if event.state is JobState.RUNNING:
            print(f"JOB STARTED: {event.job_id}")
        elif event.state is JobState.BLOCKED:
            print(f"JOB BLOCKED: {event.job_id} (waiting for concurrency group)")
        elif event.state.terminal:
            print(f"JOB {event.state.value.upper()}: {event.job_id}")

    def print_step(self, instance: JobInstance, result: StepResult) -> None:
        """Print step completion message."""
        print(f"  [{instance.job_id}] STEP: {result.name} -> {result.outcome.value} ({result.duration_ms} ms)")

    def print_failure(self, instance: JobInstance) -> None:
        """
        Print the failing job's error and the tail of its output.

        Output is already masked by the step runner.
        """
        print(f"JOB FAILED: {instance.job_id}")
        if instance.error:
            if self.debug:
                print(f"Error details: {instance.error}")
            else:
                print(f"Error: {instance.error.splitlines()[0]}")
        tail = instance.output_tail
        if tail:
            lines = tail.rstrip().splitlines()
            shown = lines if self.debug else lines[-20:]
            for line in shown:
                print(f"  | {line}")

    def print_results(self, run: Run) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print(f"RESULTS ({run.status.value.upper()})")
        print("=" * 40)
        for job_id, inst in run.jobs.items():
            duration = f" {inst.duration_ms / 1000:.1f}s" if inst.started_at is not None else ""
            print(f"  {job_id}: {inst.display_status.upper()}{duration}")

    def print_plan(self, levels: Iterable[Iterable[str]]) -> None:
        """Print the job graph, one dependency level per line."""
        print("PLAN")
        for i, level in enumerate(levels, start=1):
            print(f"  {i}. {', '.join(level)}")

    def print_history(self, summary) -> None:
        """Print a recorded run (history.RunSummary)."""
        print(f"Run {summary.id}: {summary.status.upper()}")
        print(f"Pipeline: {summary.pipeline}")
        print(f"Trigger: {summary.event} on {summary.ref}")
        print(f"Created: {summary.created_at.isoformat()}")
        for job in summary.jobs:
            print(f"  {job.job_id}: {job.state.upper()} ({job.duration_ms} ms)")
            if job.error:
                print(f"    {job.error.splitlines()[0]}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
