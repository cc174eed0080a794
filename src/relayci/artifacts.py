# artifacts.py
from __future__ import annotations

import hashlib
import json
import logging
import shutil
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import ArtifactNotFoundError, DuplicateArtifactError
from .model import ArtifactRef

logger = logging.getLogger(__name__)

DEFAULT_ARTIFACT_DIR = ".relayci/artifacts"

# ---------------------------------------------------------------------
# Layout:
#   root/
#     <run_id>/
#       <name>/
#         payload.bin
#         manifest.json   (producer, sha256, size, created_at, expires_at)
#
# An artifact is write-once per (run_id, name). The manifest is written
# last, so an artifact without a manifest does not exist yet.
# ---------------------------------------------------------------------


def _validate_name(kind: str, value: str) -> None:
    if not value or value in (".", "..") or "/" in value or "\\" in value:
        raise ValueError(f"invalid artifact {kind}: {value!r}")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ArtifactStore:
    """File-based, write-once store for payloads handed between jobs."""

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR, *, default_retention: Optional[timedelta] = None):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.default_retention = default_retention
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}

    def _lock_for(self, run_id: str, name: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault((run_id, name), threading.Lock())

    def _dir(self, run_id: str, name: str) -> Path:
        _validate_name("run id", run_id)
        _validate_name("name", name)
        return self.root / run_id / name

    def put(
        self,
        run_id: str,
        name: str,
        payload: bytes,
        producer: str,
        retention: Optional[timedelta] = None,
    ) -> ArtifactRef:
        d = self._dir(run_id, name)
        retention = retention if retention is not None else self.default_retention
        with self._lock_for(run_id, name):
            if (d / "manifest.json").exists():
                raise DuplicateArtifactError(run_id=run_id, name=name)

            d.mkdir(parents=True, exist_ok=True)
            created = _now()
            ref = ArtifactRef(
                run_id=run_id,
                name=name,
                producer=producer,
                size=len(payload),
                sha256=hashlib.sha256(payload).hexdigest(),
                created_at=created,
                expires_at=created + retention if retention is not None else None,
            )

            # write to tmp, then atomic rename
            tmp = d / "payload.bin.tmp"
            tmp.write_bytes(payload)
            tmp.replace(d / "payload.bin")
            tmp = d / "manifest.json.tmp"
            tmp.write_text(json.dumps(_ref_to_dict(ref), sort_keys=True, indent=2), encoding="utf-8")
            tmp.replace(d / "manifest.json")

        logger.info("artifact %s/%s stored (%d bytes) by %s", run_id, name, ref.size, producer)
        return ref

    def stat(self, run_id: str, name: str, *, now: Optional[datetime] = None) -> ArtifactRef:
        d = self._dir(run_id, name)
        man = d / "manifest.json"
        if not man.exists():
            raise ArtifactNotFoundError(run_id=run_id, name=name)
        ref = _ref_from_dict(json.loads(man.read_text(encoding="utf-8")))
        if ref.expires_at is not None and ref.expires_at <= (now or _now()):
            raise ArtifactNotFoundError(run_id=run_id, name=name, reason="expired")
        return ref

    def get(self, run_id: str, name: str, *, now: Optional[datetime] = None) -> bytes:
        with self._lock_for(run_id, name):
            ref = self.stat(run_id, name, now=now)
            payload = (self._dir(run_id, name) / "payload.bin").read_bytes()
        if hashlib.sha256(payload).hexdigest() != ref.sha256:
            raise ArtifactNotFoundError(run_id=run_id, name=name, reason="checksum mismatch")
        return payload

    def list(self, run_id: str) -> List[ArtifactRef]:
        _validate_name("run id", run_id)
        run_dir = self.root / run_id
        if not run_dir.is_dir():
            return []
        refs = []
        for man in sorted(run_dir.glob("*/manifest.json")):
            refs.append(_ref_from_dict(json.loads(man.read_text(encoding="utf-8"))))
        return refs

    def prune(self, now: Optional[datetime] = None) -> int:
        """Delete expired artifacts. Returns how many were removed."""
        now = now or _now()
        removed = 0
        for man in sorted(self.root.glob("*/*/manifest.json")):
            ref = _ref_from_dict(json.loads(man.read_text(encoding="utf-8")))
            if ref.expires_at is None or ref.expires_at > now:
                continue
            with self._lock_for(ref.run_id, ref.name):
                shutil.rmtree(man.parent, ignore_errors=True)
            with self._guard:
                self._locks.pop((ref.run_id, ref.name), None)
            removed += 1
            run_dir = man.parent.parent
            if run_dir.is_dir() and not any(run_dir.iterdir()):
                run_dir.rmdir()
        if removed:
            logger.info("pruned %d expired artifacts", removed)
        return removed


def _ref_to_dict(ref: ArtifactRef) -> dict:
    return {
        "run_id": ref.run_id,
        "name": ref.name,
        "producer": ref.producer,
        "size": ref.size,
        "sha256": ref.sha256,
        "created_at": ref.created_at.isoformat(),
        "expires_at": ref.expires_at.isoformat() if ref.expires_at else None,
    }


def _ref_from_dict(data: dict) -> ArtifactRef:
    return ArtifactRef(
        run_id=data["run_id"],
        name=data["name"],
        producer=data["producer"],
        size=data["size"],
        sha256=data["sha256"],
        created_at=datetime.fromisoformat(data["created_at"]),
        expires_at=datetime.fromisoformat(data["expires_at"]) if data.get("expires_at") else None,
    )
