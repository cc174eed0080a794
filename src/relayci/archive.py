# archive.py
# tar.gz packing shared by the artifact actions and the workspace cache.
from __future__ import annotations

import io
import tarfile
from pathlib import Path
from typing import Iterable, List


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def pack(root: Path, entries: List[str]) -> bytes:
    """
    Pack files/dirs (relative to root) into a tar.gz, keeping relative paths.
    Missing entries are ignored.
    """
    root = root.resolve()
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for entry in entries:
            src = (root / entry).resolve()
            if not src.exists():
                continue
            files = [src] if src.is_file() else list(_iter_files_under(src))
            for f in files:
                tar.add(str(f), arcname=_relpath(f, root), recursive=False)
    return buf.getvalue()


def unpack(payload: bytes, dest: Path) -> List[str]:
    """Extract a tar.gz produced by `pack` into dest; returns the member names."""
    dest = dest.resolve()
    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(payload), mode="r:gz") as tar:
        members = tar.getmembers()
        for m in members:
            target = (dest / m.name).resolve()
            if target != dest and dest not in target.parents:
                raise ValueError(f"archive member escapes destination: {m.name}")
        if hasattr(tarfile, "data_filter"):
            tar.extractall(path=str(dest), filter="data")
        else:
            tar.extractall(path=str(dest))
    return [m.name for m in members]
