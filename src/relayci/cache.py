# cache.py
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from .archive import pack, unpack
from .expressions import interpolate
from .model import JobSpec

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Job workspaces are fresh for every job. A job that declares `cache:`
# gets its cache paths restored before the first step and saved after
# the job succeeds.
#
#   cache_key = sha256(
#       pipeline name,
#       job id,
#       step commands / action refs,
#       interpolated user key,
#   )
# ---------------------------------------------------------------------

DEFAULT_CACHE_DIR = ".relayci/cache"


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_cache_key(pipeline: str, job: JobSpec, context: Mapping[str, Any]) -> str:
    steps = [{"name": s.name, "run": s.run, "uses": s.uses} for s in job.steps]
    payload = {
        "v": 1,  # bump this if you change hashing format
        "pipeline": pipeline,
        "job": job.id,
        "steps": steps,
        "key": interpolate(job.cache.key, context) if job.cache else "",
    }
    return _sha256_str(_json_dumps_stable(payload))


class CacheStore:
    """
    File-based cache store:
      root/
        <job_id>/
          <key>.tar.gz
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _job_dir(self, job_id: str) -> Path:
        d = self.root / job_id
        d.mkdir(parents=True, exist_ok=True)
        return d

    def archive_path(self, job_id: str, key: str) -> Path:
        return self._job_dir(job_id) / f"{key}.tar.gz"

    def restore(self, pipeline: str, job: JobSpec, workspace: Path, context: Mapping[str, Any]) -> CacheHit:
        if job.cache is None:
            return CacheHit(hit=False, key="", reason="no cache configured")

        key = compute_cache_key(pipeline, job, context)
        art = self.archive_path(job.id, key)
        if not art.exists():
            return CacheHit(hit=False, key=key, reason="cache miss")

        try:
            unpack(art.read_bytes(), workspace)
        except (OSError, ValueError) as e:
            logger.warning("job %s: cache restore failed: %s", job.id, e)
            return CacheHit(hit=False, key=key, reason=f"cache exists but restore failed: {e}")
        return CacheHit(hit=True, key=key, reason="cache hit: restored")

    def save(self, pipeline: str, job: JobSpec, workspace: Path, context: Mapping[str, Any]) -> Optional[str]:
        if job.cache is None:
            return None
        key = compute_cache_key(pipeline, job, context)
        art = self.archive_path(job.id, key)
        tmp = art.with_suffix(".tmp")
        try:
            tmp.write_bytes(pack(workspace, list(job.cache.paths)))
            tmp.replace(art)
        finally:
            tmp.unlink(missing_ok=True)
        return key

    def prune(self, job_id: str, keep: int = 3) -> None:
        """
        Keep only the newest N archives for a job.
        Uses file mtime as "newest".
        """
        d = self._job_dir(job_id)
        tars = sorted(d.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)
        for p in tars[keep:]:
            p.unlink(missing_ok=True)

