# triggers.py
from __future__ import annotations

import logging
import re
import uuid
from functools import lru_cache
from typing import Callable, Iterable, List, Optional, Sequence

from .model import PipelineDefinition, Run, TriggerContext, TriggerEvent, TriggerRule, branch_name

logger = logging.getLogger(__name__)

_EVENT_ALIASES = {
    "pull-request": "pull_request",
    "pullrequest": "pull_request",
    "pr": "pull_request",
}


def normalize_event(kind: str) -> str:
    kind = kind.strip().lower()
    return _EVENT_ALIASES.get(kind, kind)


@lru_cache(maxsize=256)
def _glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """`*` matches within one path segment, `**` crosses `/`, `?` is one char."""
    out = []
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if pattern.startswith("**", i):
            out.append(".*")
            i += 2
            continue
        if c == "*":
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("".join(out) + r"\Z")


def branch_matches(branch: str, patterns: Iterable[str]) -> bool:
    return any(_glob_to_regex(p).match(branch) for p in patterns)


def matches(rule: TriggerRule, event: TriggerEvent) -> bool:
    """
    Does `event` satisfy `rule`?

    Pull requests are filtered on their base (target) branch when the event
    carries one, as the filter names the branch being merged into.
    """
    if normalize_event(rule.event) != normalize_event(event.kind):
        return False

    if normalize_event(event.kind) == "pull_request" and event.base_ref:
        branch = branch_name(event.base_ref)
    else:
        branch = event.branch

    if rule.branches and not branch_matches(branch, rule.branches):
        return False
    if rule.branches_ignore and branch_matches(branch, rule.branches_ignore):
        return False
    return True


def _new_run_id() -> str:
    return uuid.uuid4().hex[:12]


class TriggerEvaluator:
    """Decides which pipelines an event activates and creates their Runs."""

    def __init__(
        self,
        pipelines: Sequence[PipelineDefinition],
        *,
        run_id_factory: Callable[[], str] = _new_run_id,
    ):
        self.pipelines = list(pipelines)
        self._new_id = run_id_factory

    def context_for(self, pipeline: PipelineDefinition, event: TriggerEvent, run_id: str) -> TriggerContext:
        return TriggerContext(
            event=normalize_event(event.kind),
            ref=event.ref,
            branch=event.branch,
            run_id=run_id,
            pipeline=pipeline.name,
            actor=event.actor,
            sha=event.sha,
            base_ref=event.base_ref,
        )

    def admit_pipeline(self, pipeline: PipelineDefinition, event: TriggerEvent) -> Optional[Run]:
        if not any(matches(rule, event) for rule in pipeline.triggers):
            logger.debug("pipeline %s: %s on %s not admitted", pipeline.name, event.kind, event.ref)
            return None
        run_id = self._new_id()
        logger.info("pipeline %s: admitted %s on %s as run %s", pipeline.name, event.kind, event.ref, run_id)
        return Run(id=run_id, pipeline=pipeline, context=self.context_for(pipeline, event, run_id))

    def admit(self, event: TriggerEvent) -> List[Run]:
        """One independent Run per pipeline whose trigger filter admits `event`."""
        runs = []
        for pipeline in self.pipelines:
            run = self.admit_pipeline(pipeline, event)
            if run is not None:
                runs.append(run)
        return runs
