# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional


@dataclass(frozen=True)
class Settings:
    state_dir: Path
    history_url: str
    max_workers: Optional[int]
    artifact_retention_days: float
    history_retention_days: float
    output_tail: int
    kill_grace_seconds: float

    @property
    def artifact_dir(self) -> Path:
        return self.state_dir / "artifacts"

    @property
    def cache_dir(self) -> Path:
        return self.state_dir / "cache"

    @property
    def workspace_dir(self) -> Path:
        return self.state_dir / "workspaces"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        state_dir = Path(env.get("RELAYCI_STATE_DIR", ".relayci")).resolve()
        workers = int(env.get("RELAYCI_MAX_WORKERS", "0"))
        return cls(
            state_dir=state_dir,
            history_url=env.get("RELAYCI_HISTORY_URL") or f"sqlite:///{state_dir / 'history.db'}",
            max_workers=workers or None,
            artifact_retention_days=float(env.get("RELAYCI_ARTIFACT_RETENTION_DAYS", "90")),
            history_retention_days=float(env.get("RELAYCI_HISTORY_RETENTION_DAYS", "400")),
            output_tail=int(env.get("RELAYCI_OUTPUT_TAIL", "4000")),
            kill_grace_seconds=float(env.get("RELAYCI_KILL_GRACE_SECONDS", "5")),
        )
