from relayci.cache import CacheStore, compute_cache_key
from relayci.dsl import job, sh


def _job(key="deps-v1"):
    return job("test", sh("t", "cargo test"), cache_paths=["target"], cache_key=key)


def test_cache_key_depends_on_user_key_and_steps():
    ctx = {"trigger": {"branch": "main"}}
    base = compute_cache_key("ci", _job(), ctx)
    assert base == compute_cache_key("ci", _job(), ctx)
    assert base != compute_cache_key("ci", _job("deps-v2"), ctx)
    assert base != compute_cache_key("other", _job(), ctx)
    assert base != compute_cache_key("ci", job("test", sh("t", "cargo test --all"), cache_paths=["target"], cache_key="deps-v1"), ctx)


def test_cache_key_interpolates_context():
    spec = _job("cargo-${{ trigger.branch }}")
    assert compute_cache_key("ci", spec, {"trigger": {"branch": "main"}}) != compute_cache_key(
        "ci", spec, {"trigger": {"branch": "release"}}
    )


def test_save_then_restore(tmp_path):
    store = CacheStore(tmp_path / "cache")
    spec = _job()
    ws1 = tmp_path / "ws1"
    (ws1 / "target" / "debug").mkdir(parents=True)
    (ws1 / "target" / "debug" / "app").write_text("binary")

    assert store.restore("ci", spec, ws1, {}).hit is False
    key = store.save("ci", spec, ws1, {})
    assert key

    ws2 = tmp_path / "ws2"
    ws2.mkdir()
    hit = store.restore("ci", spec, ws2, {})
    assert hit.hit and hit.key == key
    assert (ws2 / "target" / "debug" / "app").read_text() == "binary"


def test_job_without_cache_is_a_noop(tmp_path):
    store = CacheStore(tmp_path / "cache")
    spec = job("lint", sh("l", "ruff check ."))
    assert store.save("ci", spec, tmp_path, {}) is None
    assert store.restore("ci", spec, tmp_path, {}).reason == "no cache configured"


def test_prune_keeps_newest(tmp_path):
    store = CacheStore(tmp_path / "cache")
    for i in range(5):
        store.archive_path("test", f"k{i}").write_bytes(b"x")
    store.prune("test", keep=2)
    assert len(list((tmp_path / "cache" / "test").glob("*.tar.gz"))) == 2
