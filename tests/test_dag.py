import pytest

from relayci.dag import build_dag, topo_levels, validate_graph
from relayci.dsl import action, job, pipeline
from relayci.errors import CyclicGraphError, DefinitionError, UnknownDependencyError


def _jobs(edges):
    """edges: {job: [needs...]}"""
    return {name: job(name, action("ok"), needs=needs) for name, needs in edges.items()}


def test_levels_group_independent_jobs():
    adj, indeg = build_dag(_jobs({"lint": [], "unit": [], "build": ["lint", "unit"], "deploy": ["build"]}))
    assert topo_levels(adj, indeg) == [["lint", "unit"], ["build"], ["deploy"]]


def test_duplicate_needs_count_once():
    adj, indeg = build_dag(_jobs({"a": [], "b": ["a", "a"]}))
    assert indeg["b"] == 1
    assert adj["a"] == {"b"}


def test_unknown_dependency():
    with pytest.raises(UnknownDependencyError) as exc:
        build_dag(_jobs({"deploy": ["build"]}))
    assert exc.value.missing == "build"
    assert isinstance(exc.value, DefinitionError)


def test_cycle_is_reported_with_its_path():
    jobs = _jobs({"a": ["c"], "b": ["a"], "c": ["b"], "d": []})
    with pytest.raises(CyclicGraphError) as exc:
        validate_graph(pipeline("p", *jobs.values()))
    cycle = exc.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert "->" in str(exc.value)


def test_cycle_found_when_downstream_jobs_are_stuck_too():
    jobs = _jobs({"a": ["b"], "b": ["a"], "c": ["a"], "d": ["c"]})
    adj, indeg = build_dag(jobs)
    with pytest.raises(CyclicGraphError) as exc:
        topo_levels(adj, indeg)
    assert set(exc.value.cycle) == {"a", "b"}


def test_self_dependency_is_a_cycle():
    with pytest.raises(CyclicGraphError):
        validate_graph(pipeline("p", *_jobs({"a": ["a"]}).values()))
