"""Git-backed snapshots for an artifact tree that is a git working copy.

A snapshot is a commit of the whole working tree, tracked and untracked
files alike, built through a throwaway index so neither the real index nor
the stash is touched. Each one is pinned under ``refs/sparkheal/snapshots/``
so it survives gc until pruned. Fix targets that git ignores are copied
aside next to the snapshot, since no commit can hold them.

The artifact root must be the top level of the work tree.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import subprocess
import uuid
from pathlib import Path
from typing import Iterable

import config
from artifacts import ArtifactChange, ArtifactError, confine
from artifacts.filesystem import apply_change, capture_paths, remove_path, restore_paths
from utils import atomic_write_json, load_json, utc_now

log = logging.getLogger(__name__)

SNAPSHOT_REF_PREFIX = "refs/sparkheal/snapshots/"
_SIDE_DIR = "sparkheal-snapshots"
_IGNORED_MANIFEST = "ignored.json"

_GIT_AUTHOR_ENV = {
    "GIT_AUTHOR_NAME": "sparkheal",
    "GIT_AUTHOR_EMAIL": "sparkheal@local",
    "GIT_COMMITTER_NAME": "sparkheal",
    "GIT_COMMITTER_EMAIL": "sparkheal@local",
}


async def _agit(
    args: list[str],
    cwd: str | Path | None = None,
    timeout: int = 30,
    *,
    env: dict[str, str] | None = None,
    ok_codes: tuple[int, ...] = (0,),
) -> str:
    """Run a git command asynchronously and return stdout."""
    proc = await asyncio.create_subprocess_exec(
        "git", *args,
        stdout=subprocess.PIPE, stderr=subprocess.PIPE,
        cwd=cwd, env={**os.environ, **_GIT_AUTHOR_ENV, **(env or {})},
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        log.warning("Git command timed out, killing process: git %s (timeout=%ss)", " ".join(args), timeout)
        proc.kill()
        raise ArtifactError(f"git {' '.join(args)} timed out after {timeout}s")
    if proc.returncode not in ok_codes:
        raise ArtifactError(f"git {' '.join(args)} failed: {stderr.decode().strip()}")
    return stdout.decode().strip()


class GitMutator:
    def __init__(
        self,
        root: str | Path | None = None,
        *,
        prune_max_age_days: int | None = None,
        timeout: int = 30,
    ):
        self.root = Path(root or config.ARTIFACT_ROOT)
        self.prune_max_age_days = prune_max_age_days or config.MAINTENANCE_LOG_MAX_AGE_DAYS
        self.timeout = timeout
        self._side: Path | None = None

    async def _git(self, *args: str, env: dict[str, str] | None = None, ok_codes=(0,)) -> str:
        return await _agit(list(args), cwd=self.root, timeout=self.timeout, env=env, ok_codes=ok_codes)

    async def _side_root(self) -> Path:
        if self._side is None:
            toplevel = Path(await self._git("rev-parse", "--show-toplevel"))
            if toplevel.resolve() != self.root.resolve():
                raise ArtifactError(f"{self.root} is not the top level of its git work tree ({toplevel})")
            self._side = Path(await self._git("rev-parse", "--absolute-git-dir")) / _SIDE_DIR
        return self._side

    async def _stage_worktree(self, index: Path, base: str | None) -> str:
        """Stage the whole work tree into ``index`` on top of ``base``; return the tree id."""
        env = {"GIT_INDEX_FILE": str(index)}
        if base:
            await self._git("read-tree", base, env=env)
        else:
            await self._git("read-tree", "--empty", env=env)
        await self._git("add", "-A", env=env)
        return await self._git("write-tree", env=env)

    async def _ignored(self, targets: list[str]) -> list[str]:
        if not targets:
            return []
        for target in targets:
            confine(self.root, target)
        out = await self._git("check-ignore", "--", *targets, ok_codes=(0, 1))
        ignored = {line.strip() for line in out.splitlines() if line.strip()}
        return [t for t in targets if t in ignored]

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def snapshot(self, targets: Iterable[str] = ()) -> str:
        targets = list(targets)
        side = await self._side_root()
        side.mkdir(parents=True, exist_ok=True)
        name = f"{utc_now().strftime('%Y%m%dT%H%M%S%fZ')}-{uuid.uuid4().hex[:6]}"

        head = await self._git("rev-parse", "--verify", "-q", "HEAD", ok_codes=(0, 1)) or None
        index = side / f"{name}.index"
        try:
            tree = await self._stage_worktree(index, head)
        finally:
            index.unlink(missing_ok=True)
        parents = ["-p", head] if head else []
        commit = await self._git("commit-tree", tree, *parents, "-m", "sparkheal auto-fix snapshot")
        ref = f"{SNAPSHOT_REF_PREFIX}{name}"
        await self._git("update-ref", ref, commit)

        ignored = await self._ignored(targets)
        if ignored:
            saved = side / name
            try:
                state = await asyncio.to_thread(capture_paths, self.root, saved / "files", ignored)
                atomic_write_json(saved / _IGNORED_MANIFEST, state)
            except OSError as exc:
                raise ArtifactError(f"snapshot of ignored targets failed: {exc}") from exc

        log.info("Created git snapshot %s (%s, %d ignored target(s))", name, commit[:12], len(ignored))
        return ref

    async def restore(self, ref: str) -> None:
        commit = await self._git("rev-parse", "--verify", f"{ref}^{{commit}}")
        side = await self._side_root()
        name = ref.rsplit("/", 1)[-1]
        index = side / f"{name}.restore.index"
        env = {"GIT_INDEX_FILE": str(index)}
        try:
            await self._stage_worktree(index, commit)
            added = await self._git(
                "diff", "--cached", "--name-only", "-z", "--no-renames", "--diff-filter=A", commit,
                env=env,
            )
            for path in added.split("\0"):
                if path:
                    await asyncio.to_thread(remove_path, confine(self.root, path))
            await self._git("read-tree", commit, env=env)
            await self._git("checkout-index", "-a", "-f", env=env)
        finally:
            index.unlink(missing_ok=True)

        saved = side / name
        state = load_json(saved / _IGNORED_MANIFEST, default={})
        if state:
            try:
                await asyncio.to_thread(restore_paths, self.root, saved / "files", state)
            except OSError as exc:
                raise ArtifactError(f"restore of ignored targets failed: {exc}") from exc
        log.warning("Restored working tree from %s", name)

    async def apply(self, change: ArtifactChange) -> bool:
        return await asyncio.to_thread(
            apply_change, self.root, change, prune_max_age_days=self.prune_max_age_days,
        )

    async def list_snapshot_refs(self) -> list[str]:
        out = await self._git(
            "for-each-ref", "--sort=refname", "--format=%(refname)", SNAPSHOT_REF_PREFIX,
        )
        return [line for line in out.splitlines() if line.strip()]

    async def prune_snapshots(self, keep: int) -> int:
        refs = await self.list_snapshot_refs()
        excess = refs[:-keep] if keep > 0 else refs
        side = await self._side_root() if excess else None
        for ref in excess:
            await self._git("update-ref", "-d", ref)
            shutil.rmtree(side / ref.rsplit("/", 1)[-1], ignore_errors=True)
        if excess:
            log.info("Pruned %d old git snapshot ref(s)", len(excess))
        return len(excess)
