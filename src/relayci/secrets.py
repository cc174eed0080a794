# secrets.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Set

from .errors import ScopeDeniedError
from .expressions import references
from .model import JobSpec, Run

logger = logging.getLogger(__name__)

MASK = "***"


@dataclass(frozen=True)
class JobScope:
    """Everything a job could reference: its spec plus the pipeline-level env."""
    job: JobSpec
    pipeline_env: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def for_job(cls, run: Run, job_id: str) -> "JobScope":
        return cls(job=run.pipeline.jobs[job_id], pipeline_env=run.pipeline.env)

    def texts(self) -> Iterable[str]:
        """Every string of the job that may carry `${{ }}` interpolation."""
        yield from self.pipeline_env.values()
        yield from self.job.env.values()
        if self.job.concurrency:
            yield self.job.concurrency.group
        if self.job.cache:
            yield self.job.cache.key
        for step in self.job.steps:
            if step.run:
                yield step.run
            yield from step.with_.values()
            yield from step.env.values()

    def referenced_secrets(self) -> Set[str]:
        found: Set[str] = set()
        for text in self.texts():
            found |= references(text, "secrets")
        return found


@dataclass(frozen=True)
class EnvMap:
    """
    Resolved environment for one job.

    `variables` become process environment; `secrets` are only reachable
    through `${{ secrets.NAME }}` and are masked wherever output is shown.
    """
    variables: Mapping[str, str]
    secrets: Mapping[str, str] = field(default_factory=dict, repr=False)

    def mask(self, text: str) -> str:
        if not text:
            return text
        for value in sorted(self.secrets.values(), key=len, reverse=True):
            if value:
                text = text.replace(value, MASK)
        return text

    def contains_secret(self, payload: bytes) -> bool:
        return any(value and value.encode("utf-8") in payload for value in self.secrets.values())


class EnvironmentResolver:
    """
    Supplies scoped variables and secrets to jobs.

    `secrets` is the repository-wide store; `environment_secrets` holds
    per-deployment-environment stores, visible only to jobs that declare
    that environment. Resolution fails closed.
    """

    def __init__(
        self,
        secrets: Optional[Mapping[str, str]] = None,
        *,
        environment_secrets: Optional[Mapping[str, Mapping[str, str]]] = None,
        passthrough: Optional[Mapping[str, str]] = None,
    ):
        self._secrets = dict(secrets or {})
        self._environment_secrets = {k: dict(v) for k, v in (environment_secrets or {}).items()}
        self._passthrough = passthrough

    def _store_for(self, job: JobSpec) -> Dict[str, str]:
        store = dict(self._secrets)
        if job.environment is not None:
            store.update(self._environment_secrets.get(job.environment.name, {}))
        return store

    def resolve(self, scope: JobScope) -> EnvMap:
        job = scope.job
        referenced = scope.referenced_secrets()

        outside = referenced - set(job.secrets)
        if outside:
            raise ScopeDeniedError(job=job.id, denied=sorted(outside))

        store = self._store_for(job)
        undefined = {name for name in referenced if name not in store}
        if undefined:
            raise ScopeDeniedError(job=job.id, denied=sorted(undefined), reason="not defined")

        granted = {name: store[name] for name in job.secrets if name in store}

        variables: Dict[str, str] = dict(os.environ if self._passthrough is None else self._passthrough)
        variables.update(scope.pipeline_env)
        variables.update(job.env)

        logger.debug("job %s: resolved %d variables, %d secrets", job.id, len(variables), len(granted))
        return EnvMap(variables=MappingProxyType(variables), secrets=MappingProxyType(granted))
