import pytest

from relayci.dsl import action, job, on_pull_request, on_push, pipeline
from relayci.model import TriggerEvent, TriggerRule
from relayci.triggers import TriggerEvaluator, branch_matches, matches, normalize_event


def _pipeline(name, *rules):
    return pipeline(name, job("build", action("ok")), on=rules)


@pytest.mark.parametrize(
    "branch, patterns, expected",
    [
        ("main", ["main"], True),
        ("release", ["main"], False),
        ("release/1.0", ["release/*"], True),
        ("release/1.0/hotfix", ["release/*"], False),
        ("release/1.0/hotfix", ["release/**"], True),
        ("v1", ["v?"], True),
        ("feature.x", ["feature.x"], True),
        ("featureAx", ["feature.x"], False),
    ],
)
def test_branch_globs(branch, patterns, expected):
    assert branch_matches(branch, patterns) is expected


def test_event_aliases():
    assert normalize_event("Pull-Request") == "pull_request"
    assert normalize_event("push") == "push"


def test_push_filters_on_pushed_branch():
    rule = on_push("release")
    assert matches(rule, TriggerEvent("push", "refs/heads/release"))
    assert not matches(rule, TriggerEvent("push", "refs/heads/main"))
    assert not matches(rule, TriggerEvent("pull_request", "refs/heads/release"))


def test_pull_request_filters_on_base_branch():
    rule = on_pull_request("main")
    assert matches(rule, TriggerEvent("pull_request", "refs/heads/feature", base_ref="main"))
    assert not matches(rule, TriggerEvent("pull_request", "refs/heads/main", base_ref="develop"))
    assert matches(rule, TriggerEvent("pr", "main"))


def test_branches_ignore():
    rule = TriggerRule("push", branches_ignore=("wip/**",))
    assert matches(rule, TriggerEvent("push", "main"))
    assert not matches(rule, TriggerEvent("push", "wip/a/b"))


def test_unfiltered_rule_admits_every_branch():
    assert matches(TriggerRule("push"), TriggerEvent("push", "refs/heads/anything"))


def test_admit_creates_independent_runs():
    ids = iter(["r1", "r2", "r3"])
    ci = _pipeline("ci", on_pull_request("main"), on_push("main"))
    release = _pipeline("release", on_push("release"))
    docs = _pipeline("docs", on_push("main", "release"))
    evaluator = TriggerEvaluator([ci, release, docs], run_id_factory=lambda: next(ids))

    runs = evaluator.admit(TriggerEvent("push", "refs/heads/main", actor="dev", sha="abc"))

    assert [r.pipeline.name for r in runs] == ["ci", "docs"]
    assert [r.id for r in runs] == ["r1", "r2"]
    ctx = runs[0].context
    assert (ctx.event, ctx.ref, ctx.branch, ctx.actor, ctx.sha) == ("push", "refs/heads/main", "main", "dev", "abc")
    assert runs[0].jobs is not runs[1].jobs
    assert all(inst.state.value == "pending" for r in runs for inst in r.jobs.values())


def test_admit_nothing():
    evaluator = TriggerEvaluator([_pipeline("release", on_push("release"))])
    assert evaluator.admit(TriggerEvent("push", "refs/heads/main")) == []
