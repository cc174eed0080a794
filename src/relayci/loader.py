"""
Pipeline document loading.

YAML documents use GitHub-Actions-style keys and are validated with pydantic
before being turned into immutable `PipelineDefinition`s. Python pipeline
files are executed with runpy and must define `PIPELINE` or `pipeline()`.
"""

from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .dag import validate_graph
from .dsl import pipeline as dsl_pipeline
from .errors import DefinitionError
from .expressions import check_interpolations, parse
from .model import (
    CacheSpec,
    ConcurrencyGroupSpec,
    EnvironmentSpec,
    JobSpec,
    PipelineDefinition,
    StepSpec,
    TriggerRule,
)
from .secrets import JobScope


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


def _str_map(value: Any) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("expected a mapping")
    return {str(k): _scalar(v) for k, v in value.items()}


def _str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


class _Doc(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class StepDoc(_Doc):
    name: Optional[str] = None
    id: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, str] = Field(default_factory=dict, alias="with")
    env: Dict[str, str] = Field(default_factory=dict)
    continue_on_error: bool = Field(False, alias="continue-on-error")
    if_: Optional[str] = Field(None, alias="if")
    working_directory: Optional[str] = Field(None, alias="working-directory")
    timeout_minutes: Optional[float] = Field(None, alias="timeout-minutes")

    @field_validator("with_", "env", mode="before")
    @classmethod
    def _maps(cls, v: Any) -> Dict[str, str]:
        return _str_map(v)

    @field_validator("if_", mode="before")
    @classmethod
    def _condition_text(cls, v: Any) -> Optional[str]:
        return None if v is None else _scalar(v)

    @model_validator(mode="after")
    def _run_or_uses(self) -> "StepDoc":
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        return self

    def to_spec(self) -> StepSpec:
        name = self.name or self.uses or next(iter((self.run or "").strip().splitlines()), "step")
        return StepSpec(
            name=name,
            run=self.run,
            uses=self.uses,
            with_=self.with_,
            env=self.env,
            continue_on_error=self.continue_on_error,
            id=self.id,
            condition=self.if_,
            working_directory=self.working_directory,
            timeout_minutes=self.timeout_minutes,
        )


class ConcurrencyDoc(_Doc):
    group: str
    cancel_in_progress: bool = Field(False, alias="cancel-in-progress")

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, v: Any) -> Any:
        return {"group": v} if isinstance(v, str) else v

    def to_spec(self) -> ConcurrencyGroupSpec:
        return ConcurrencyGroupSpec(group=self.group, cancel_in_progress=self.cancel_in_progress)


class EnvironmentDoc(_Doc):
    name: str
    url: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, v: Any) -> Any:
        return {"name": v} if isinstance(v, str) else v


class CacheDoc(_Doc):
    paths: List[str]
    key: str = ""

    @field_validator("paths", mode="before")
    @classmethod
    def _paths(cls, v: Any) -> List[str]:
        return _str_list(v)


def _permissions(value: Any) -> Dict[str, str]:
    if isinstance(value, str):
        return {"*": value}
    return _str_map(value)


class JobDoc(_Doc):
    name: Optional[str] = None
    runs_on: str = Field("local", alias="runs-on")
    needs: List[str] = Field(default_factory=list)
    if_: Optional[str] = Field(None, alias="if")
    concurrency: Optional[ConcurrencyDoc] = None
    env: Dict[str, str] = Field(default_factory=dict)
    secrets: List[str] = Field(default_factory=list)
    permissions: Optional[Dict[str, str]] = None
    environment: Optional[EnvironmentDoc] = None
    cache: Optional[CacheDoc] = None
    tolerate_failure_of: List[str] = Field(default_factory=list, alias="tolerate-failure-of")
    steps: List[StepDoc] = Field(min_length=1)

    @field_validator("needs", "secrets", "tolerate_failure_of", mode="before")
    @classmethod
    def _lists(cls, v: Any) -> List[str]:
        return _str_list(v)

    @field_validator("env", mode="before")
    @classmethod
    def _env(cls, v: Any) -> Dict[str, str]:
        return _str_map(v)

    @field_validator("permissions", mode="before")
    @classmethod
    def _perms(cls, v: Any) -> Optional[Dict[str, str]]:
        return None if v is None else _permissions(v)

    @field_validator("runs_on", mode="before")
    @classmethod
    def _runs_on(cls, v: Any) -> str:
        return ",".join(_str_list(v)) if isinstance(v, list) else _scalar(v)

    @field_validator("if_", mode="before")
    @classmethod
    def _condition_text(cls, v: Any) -> Optional[str]:
        return None if v is None else _scalar(v)


class TriggerDoc(_Doc):
    branches: List[str] = Field(default_factory=list)
    branches_ignore: List[str] = Field(default_factory=list, alias="branches-ignore")

    @field_validator("branches", "branches_ignore", mode="before")
    @classmethod
    def _lists(cls, v: Any) -> List[str]:
        return _str_list(v)


class PipelineDoc(_Doc):
    name: Optional[str] = None
    on: Dict[str, Optional[TriggerDoc]]
    env: Dict[str, str] = Field(default_factory=dict)
    permissions: Optional[Dict[str, str]] = None
    concurrency: Optional[ConcurrencyDoc] = None
    jobs: Dict[str, JobDoc] = Field(min_length=1)

    @field_validator("env", mode="before")
    @classmethod
    def _env(cls, v: Any) -> Dict[str, str]:
        return _str_map(v)

    @field_validator("permissions", mode="before")
    @classmethod
    def _perms(cls, v: Any) -> Optional[Dict[str, str]]:
        return None if v is None else _permissions(v)

    @field_validator("on", mode="before")
    @classmethod
    def _triggers(cls, v: Any) -> Any:
        # on: push | on: [push, pull_request] | on: {push: {branches: [...]}}
        if isinstance(v, str):
            return {v: None}
        if isinstance(v, list):
            return {str(kind): None for kind in v}
        return v


def _to_definition(doc: PipelineDoc, default_name: str) -> PipelineDefinition:
    jobs: Dict[str, JobSpec] = {}
    for job_id, jd in doc.jobs.items():
        permissions = jd.permissions if jd.permissions is not None else (doc.permissions or {})
        jobs[job_id] = JobSpec(
            id=job_id,
            name=jd.name or job_id,
            steps=tuple(s.to_spec() for s in jd.steps),
            needs=tuple(jd.needs),
            runs_on=jd.runs_on,
            concurrency=jd.concurrency.to_spec() if jd.concurrency else None,
            condition=jd.if_,
            env=jd.env,
            secrets=frozenset(jd.secrets),
            permissions=permissions,
            environment=EnvironmentSpec(name=jd.environment.name, url=jd.environment.url) if jd.environment else None,
            cache=CacheSpec(paths=tuple(jd.cache.paths), key=jd.cache.key) if jd.cache else None,
            tolerate_failure_of=frozenset(jd.tolerate_failure_of),
        )
    triggers = tuple(
        TriggerRule(
            event=kind,
            branches=tuple(td.branches) if td else (),
            branches_ignore=tuple(td.branches_ignore) if td else (),
        )
        for kind, td in doc.on.items()
    )
    return PipelineDefinition(
        name=doc.name or default_name,
        triggers=triggers,
        jobs=jobs,
        env=doc.env,
        concurrency=doc.concurrency.to_spec() if doc.concurrency else None,
    )


def check_pipeline(pipeline: PipelineDefinition) -> PipelineDefinition:
    """Graph and expression checks shared by every loading path."""
    validate_graph(pipeline)
    for spec in pipeline.jobs.values():
        for dep in spec.tolerate_failure_of:
            if dep not in spec.needs:
                raise DefinitionError(f"job '{spec.id}' tolerates failure of '{dep}', which it does not need")
        for expr in [spec.condition] + [s.condition for s in spec.steps]:
            if expr:
                parse(expr)
        for text in JobScope(spec, pipeline.env).texts():
            check_interpolations(text)
    if pipeline.concurrency is not None:
        check_interpolations(pipeline.concurrency.group)
    return pipeline


def parse_pipeline(document: Any, default_name: str = "pipeline") -> PipelineDefinition:
    """Validate a parsed document (dict) and build a PipelineDefinition."""
    if not isinstance(document, dict):
        raise DefinitionError("pipeline document must be a mapping")
    document = dict(document)
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in document:
        document["on"] = document.pop(True)
    try:
        doc = PipelineDoc.model_validate(document)
        pipeline = _to_definition(doc, default_name)
    except ValidationError as e:
        raise DefinitionError(f"invalid pipeline '{default_name}':\n{e}") from e
    except ValueError as e:
        raise DefinitionError(f"invalid pipeline '{default_name}': {e}") from e
    return check_pipeline(pipeline)


def load_pipeline(path: str | Path) -> PipelineDefinition:
    """
    Load a pipeline from a .yml/.yaml document or a .py file.

    A .py file must define either:
      - PIPELINE = PipelineDefinition | dict
      - pipeline() -> PipelineDefinition | dict
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise DefinitionError(f"pipeline file not found: {p}")

    if p.suffix in (".yml", ".yaml"):
        try:
            document = yaml.safe_load(p.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise DefinitionError(f"could not parse {p.name}: {e}") from e
        return parse_pipeline(document, default_name=p.stem)

    if p.suffix == ".py":
        globals_dict = runpy.run_path(str(p), run_name=f"relayci_pipeline_{p.stem}")
        factory = globals_dict.get("pipeline")
        if "PIPELINE" in globals_dict:
            loaded = globals_dict["PIPELINE"]
        elif callable(factory) and factory is not dsl_pipeline:
            loaded = factory()
        else:
            raise DefinitionError(f"{p.name} must define pipeline() or PIPELINE")
        if isinstance(loaded, PipelineDefinition):
            return check_pipeline(loaded)
        return parse_pipeline(loaded, default_name=p.stem)

    raise DefinitionError(f"unsupported pipeline file type: {p.name}")
