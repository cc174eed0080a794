# actions.py
# Built-in actions for `uses:` steps.
from __future__ import annotations

import shutil
from datetime import timedelta
from pathlib import Path

from .archive import pack, unpack
from .errors import ScopeDeniedError
from .runner import ActionContext, ActionRegistry

CHECKOUT_IGNORE = (".git", ".relayci", "__pycache__")


def _inside(workspace: Path, rel: str) -> Path:
    target = (workspace / rel).resolve()
    if target != workspace.resolve() and workspace.resolve() not in target.parents:
        raise ValueError(f"path escapes the workspace: {rel}")
    return target


def checkout(ctx: ActionContext) -> int:
    """Copy the configured source tree into the job's workspace."""
    src = ctx.env.source_dir
    if src is None or not src.is_dir():
        ctx.log("checkout: no source directory configured")
        return 1
    dest = _inside(ctx.env.workspace, ctx.inputs.get("path", "."))
    shutil.copytree(src, dest, dirs_exist_ok=True, ignore=shutil.ignore_patterns(*CHECKOUT_IGNORE))
    ctx.log(f"checked out {src} into {dest}")
    return 0


def upload_artifact(ctx: ActionContext) -> int:
    store = ctx.env.artifacts
    if store is None:
        ctx.log("upload-artifact: no artifact store configured")
        return 1
    name = ctx.inputs.get("name", "artifact")
    rel = ctx.inputs.get("path")
    if not rel:
        ctx.log("upload-artifact: 'path' is required")
        return 1

    workspace = ctx.env.workspace
    target = _inside(workspace, rel)
    if not target.exists():
        ctx.log(f"upload-artifact: nothing at {rel}")
        return 1

    # Secrets never leave the job through the artifact store.
    env_map = ctx.env.env_map
    if env_map is not None and env_map.secrets:
        files = [target] if target.is_file() else [p for p in target.rglob("*") if p.is_file()]
        if any(env_map.contains_secret(f.read_bytes()) for f in files):
            raise ScopeDeniedError(
                job=ctx.env.job_id,
                denied=[name],
                reason="artifact payload contains secret values",
            )

    retention = None
    if ctx.inputs.get("retention-days"):
        retention = timedelta(days=float(ctx.inputs["retention-days"]))

    payload = pack(workspace, [str(target.relative_to(workspace.resolve()))])
    ref = store.put(ctx.env.run_id, name, payload, producer=f"{ctx.env.run_id}:{ctx.env.job_id}", retention=retention)
    ctx.outputs["artifact-name"] = ref.name
    ctx.outputs["sha256"] = ref.sha256
    ctx.log(f"uploaded artifact '{name}' ({ref.size} bytes)")
    return 0


def download_artifact(ctx: ActionContext) -> int:
    store = ctx.env.artifacts
    if store is None:
        ctx.log("download-artifact: no artifact store configured")
        return 1
    name = ctx.inputs.get("name", "artifact")
    run_id = ctx.inputs.get("run-id") or ctx.env.run_id
    payload = store.get(run_id, name)
    dest = _inside(ctx.env.workspace, ctx.inputs.get("path", "."))
    members = unpack(payload, dest)
    ctx.outputs["download-path"] = str(dest)
    ctx.log(f"downloaded artifact '{name}' ({len(members)} files) into {dest}")
    return 0


def default_registry() -> ActionRegistry:
    registry = ActionRegistry()
    registry.register("checkout", checkout)
    registry.register("upload-artifact", upload_artifact)
    registry.register("download-artifact", download_artifact)
    return registry
