"""Copy-tree snapshots and root-confined writes on a plain directory.

A snapshot copies the configured snapshot roots plus every fix target that
lies outside them. Targets that did not exist yet are recorded as absent, so
a restore removes whatever the fix created.
"""
from __future__ import annotations

import asyncio
import logging
import shutil
import time
import uuid
from pathlib import Path
from typing import Iterable

import config
from artifacts import ArtifactChange, ArtifactError, confine
from utils import atomic_write, atomic_write_json, load_json, utc_now

log = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "auto-fix-"
_MANIFEST = ".snapshot.json"
_EXTRA_DIR = "_targets"


class FilesystemMutator:
    def __init__(
        self,
        root: str | Path | None = None,
        *,
        backup_dir: str | Path | None = None,
        snapshot_roots: list[str] | None = None,
        prune_max_age_days: int | None = None,
    ):
        self.root = Path(root or config.ARTIFACT_ROOT)
        self.backup_dir = Path(backup_dir or config.BACKUP_DIR)
        self.snapshot_roots = list(
            snapshot_roots if snapshot_roots is not None else config.SNAPSHOT_ROOTS
        )
        self.prune_max_age_days = prune_max_age_days or config.MAINTENANCE_LOG_MAX_AGE_DAYS

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def snapshot(self, targets: Iterable[str] = ()) -> str:
        return await asyncio.to_thread(self._snapshot_sync, list(targets))

    async def restore(self, ref: str) -> None:
        await asyncio.to_thread(self._restore_sync, ref)

    async def prune_snapshots(self, keep: int) -> int:
        return await asyncio.to_thread(self._prune_snapshots_sync, keep)

    def list_snapshots(self) -> list[Path]:
        if not self.backup_dir.is_dir():
            return []
        return sorted(
            p for p in self.backup_dir.iterdir()
            if p.is_dir() and p.name.startswith(SNAPSHOT_PREFIX)
        )

    def _covered(self, target: str) -> bool:
        path = confine(self.root, target)
        for name in self.snapshot_roots:
            base = confine(self.root, name)
            if path == base or base in path.parents:
                return True
        return False

    def _snapshot_sync(self, targets: list[str]) -> str:
        stamp = utc_now().strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        dest = self.backup_dir / f"{SNAPSHOT_PREFIX}{stamp}-{uuid.uuid4().hex[:6]}"
        captured: list[str] = []
        try:
            dest.mkdir(parents=True, exist_ok=False)
            for name in self.snapshot_roots:
                source = confine(self.root, name)
                if source.is_dir():
                    shutil.copytree(source, dest / name)
                    captured.append(name)
                elif source.is_file():
                    (dest / name).parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(source, dest / name)
                    captured.append(name)
            extras = capture_paths(
                self.root,
                dest / _EXTRA_DIR,
                [t for t in targets if not self._covered(t)],
            )
            atomic_write_json(
                dest / _MANIFEST,
                {"roots": captured, "targets": extras, "created_at": stamp},
            )
        except (OSError, ArtifactError) as exc:
            shutil.rmtree(dest, ignore_errors=True)
            raise ArtifactError(f"snapshot failed: {exc}") from exc

        log.info(
            "Created snapshot %s (%d root(s), %d extra target(s))",
            dest.name, len(captured), len(extras),
        )
        return str(dest)

    def _restore_sync(self, ref: str) -> None:
        source = Path(ref)
        if not source.is_absolute():
            source = self.backup_dir / ref
        manifest = load_json(source / _MANIFEST, default={})
        if not source.is_dir() or "roots" not in manifest:
            raise ArtifactError(f"snapshot not found or incomplete: {ref}")

        captured = set(manifest["roots"])
        try:
            for name in self.snapshot_roots:
                live = confine(self.root, name)
                remove_path(live)
                if name in captured:
                    saved = source / name
                    if saved.is_dir():
                        shutil.copytree(saved, live)
                    else:
                        live.parent.mkdir(parents=True, exist_ok=True)
                        shutil.copy2(saved, live)
            restore_paths(self.root, source / _EXTRA_DIR, manifest.get("targets") or {})
        except OSError as exc:
            raise ArtifactError(f"restore from {source.name} failed: {exc}") from exc

        log.warning("Restored artifact tree from snapshot %s", source.name)

    def _prune_snapshots_sync(self, keep: int) -> int:
        snapshots = self.list_snapshots()
        excess = snapshots[:-keep] if keep > 0 else snapshots
        removed = 0
        for path in excess:
            try:
                shutil.rmtree(path)
                removed += 1
            except OSError:
                log.debug("Failed to delete snapshot %s", path, exc_info=True)
        if removed:
            log.info("Pruned %d old snapshot(s)", removed)
        return removed

    # ------------------------------------------------------------------
    # Changes
    # ------------------------------------------------------------------

    async def apply(self, change: ArtifactChange) -> bool:
        return await asyncio.to_thread(self._apply_sync, change)

    def _apply_sync(self, change: ArtifactChange) -> bool:
        return apply_change(self.root, change, prune_max_age_days=self.prune_max_age_days)


def apply_change(root: Path, change: ArtifactChange, *, prune_max_age_days: int) -> bool:
    """Apply one change under ``root``; False when the change had no effect."""
    target = confine(root, change.target)

    if change.op == "write":
        if change.content is None:
            raise ArtifactError(f"write without content: {change.target}")
        atomic_write(target, change.content)
        log.info("Wrote %s", change.target)
        return True

    if change.op == "delete":
        if not target.is_file():
            log.warning("Delete target missing: %s", change.target)
            return False
        target.unlink()
        log.info("Deleted %s", change.target)
        return True

    if change.op == "prune":
        removed = _prune_older_than(target, change.max_age_days or prune_max_age_days)
        log.info("Pruned %d file(s) from %s", removed, change.target)
        return True

    raise ArtifactError(f"unsupported change op: {change.op}")


def _prune_older_than(directory: Path, max_age_days: int) -> int:
    if not directory.is_dir():
        return 0
    cutoff = time.time() - max_age_days * 86400
    removed = 0
    for path in directory.iterdir():
        if not path.is_file():
            continue
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except OSError:
            log.debug("Failed to prune %s", path, exc_info=True)
    return removed


# ---------------------------------------------------------------------------
# Target capture
# ---------------------------------------------------------------------------

def remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


def capture_paths(root: Path, dest: Path, targets: Iterable[str]) -> dict[str, bool]:
    """Copy each target under ``root`` into ``dest``.

    Returns ``{relative path: existed}``; absent targets are recorded so a restore
    can remove what a fix created.
    """
    root_resolved = root.resolve()
    state: dict[str, bool] = {}
    for target in targets:
        live = confine(root, target)
        if live == root_resolved:
            raise ArtifactError("refusing to snapshot the whole artifact root as a target")
        key = live.relative_to(root_resolved).as_posix()
        if key in state:
            continue
        saved = dest / key
        if live.is_dir():
            shutil.copytree(live, saved)
            state[key] = True
        elif live.exists():
            saved.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(live, saved)
            state[key] = True
        else:
            state[key] = False
    return state


def restore_paths(root: Path, source: Path, state: dict[str, bool]) -> None:
    for target, existed in state.items():
        live = confine(root, target)
        remove_path(live)
        if not existed:
            continue
        saved = source / target
        if saved.is_dir():
            shutil.copytree(saved, live)
        else:
            live.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(saved, live)
