from datetime import datetime, timedelta, timezone

from relayci.dsl import action, job, pipeline
from relayci.history import RunHistory, sqlite_url
from relayci.model import JobState, RunStatus


def _finished_run(make_run, created_at=None):
    p = pipeline("ci", job("lint", action("ok")), job("test", action("fail"), needs=["lint"]))
    run = make_run(p)
    run.jobs["lint"].state = JobState.SUCCEEDED
    run.jobs["lint"].with_warnings = True
    run.jobs["test"].state = JobState.FAILED
    run.jobs["test"].error = "[test] step 'fail' failed (exit=1)"
    run.status = RunStatus.FAILED
    if created_at is not None:
        run.created_at = created_at
    run.finished_at = datetime.now(timezone.utc)
    return run


def test_record_and_get(tmp_path, make_run):
    history = RunHistory(sqlite_url(tmp_path / "state" / "history.db"))
    run = _finished_run(make_run)
    history.record(run)

    summary = history.get(run.id)
    assert summary.status == "failed"
    assert summary.pipeline == "ci"
    assert summary.ref == "refs/heads/main"
    assert [(j.job_id, j.state) for j in summary.jobs] == [
        ("lint", "succeeded-with-warnings"),
        ("test", "failed"),
    ]
    assert summary.jobs[1].error.startswith("[test]")
    assert history.get("unknown") is None


def test_record_twice_updates(tmp_path, make_run):
    history = RunHistory(sqlite_url(tmp_path / "h.db"))
    run = _finished_run(make_run)
    history.record(run)
    run.status = RunStatus.CANCELLED
    history.record(run)
    summary = history.get(run.id)
    assert summary.status == "cancelled"
    assert len(summary.jobs) == 2


def test_recent_and_prune(tmp_path, make_run):
    history = RunHistory(sqlite_url(tmp_path / "h.db"))
    now = datetime.now(timezone.utc)
    old = _finished_run(make_run, created_at=now - timedelta(days=500))
    new = _finished_run(make_run, created_at=now)
    history.record(old)
    history.record(new)

    assert [s.id for s in history.recent()] == [new.id, old.id]
    assert history.prune(timedelta(days=400), now=now) == 1
    assert history.get(old.id) is None
    assert history.get(new.id) is not None
