# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class RelayError(Exception):
    """Base class for every error raised by the engine."""


# ----------------------------------------------------------------------
# Definition errors: reject the whole Run before any job starts
# ----------------------------------------------------------------------

class DefinitionError(RelayError):
    """The pipeline definition itself is invalid."""


@dataclass
class CyclicGraphError(DefinitionError):
    cycle: list[str]

    def __str__(self) -> str:
        return f"job graph has a cycle: {' -> '.join(self.cycle)}"


@dataclass
class UnknownDependencyError(DefinitionError):
    job: str
    missing: str
    known: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"job '{self.job}' needs missing job '{self.missing}'. "
            f"Known jobs: {sorted(self.known)}"
        )


class ExpressionError(DefinitionError):
    """An `${{ }}` expression or `if:` condition could not be parsed."""


# ----------------------------------------------------------------------
# Job-local errors: fail (or cancel) only the job that raised them
# ----------------------------------------------------------------------

@dataclass
class ScopeDeniedError(RelayError):
    job: str
    denied: list[str]
    reason: str = "outside the job's declared secret scope"

    def __str__(self) -> str:
        return f"[{self.job}] secrets {sorted(self.denied)} denied: {self.reason}"


@dataclass
class StepExecutionError(RelayError):
    job: str
    step: str
    exit_code: int
    output: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code})"


@dataclass
class ConcurrencyPreemptedError(RelayError):
    key: str
    holder: str
    preempted_by: str

    def __str__(self) -> str:
        return (
            f"'{self.holder}' cancelled: concurrency group '{self.key}' "
            f"taken over by '{self.preempted_by}'"
        )


class RunCancelledError(RelayError):
    """The Run (or one of its jobs) was aborted from outside."""


@dataclass
class ArtifactNotFoundError(RelayError):
    run_id: str
    name: str
    reason: str = "not found"

    def __str__(self) -> str:
        return f"artifact '{self.name}' (run {self.run_id}): {self.reason}"


@dataclass
class DuplicateArtifactError(RelayError):
    run_id: str
    name: str

    def __str__(self) -> str:
        return f"artifact '{self.name}' already exists for run {self.run_id}"
