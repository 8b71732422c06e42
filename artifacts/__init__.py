"""Artifact mutation backends used by remediation.

A mutator owns the artifact tree a fix is allowed to touch. It can snapshot
the tree, restore a snapshot, apply one ``ArtifactChange`` and prune old
snapshots. Nothing else in the project writes to the artifact tree.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Protocol

import config

log = logging.getLogger(__name__)

CHANGE_OPS = ("write", "delete", "prune")


class ArtifactError(Exception):
    """A snapshot, restore or apply could not be carried out."""


@dataclass(frozen=True)
class ArtifactChange:
    """One concrete change against the artifact tree.

    ``write`` replaces ``target`` with ``content``; ``delete`` removes it;
    ``prune`` removes files under the ``target`` directory older than
    ``max_age_days``.
    """
    target: str
    op: str = "write"
    content: str | None = None
    max_age_days: int | None = None
    rationale: str = ""

    def describe(self) -> str:
        if self.op == "prune":
            return f"Pruned files older than {self.max_age_days}d in {self.target}"
        verb = "Updated" if self.op == "write" else "Deleted"
        suffix = f": {self.rationale}" if self.rationale else ""
        return f"{verb} {self.target}{suffix}"

    @classmethod
    def from_spec(cls, target: str, spec: Any, rationale: str = "") -> "ArtifactChange":
        """Build a change from an oracle ``changeSpec`` (text or op object)."""
        if isinstance(spec, dict):
            op = str(spec.get("op", "write")).strip().lower()
            if op not in CHANGE_OPS:
                raise ArtifactError(f"unsupported change op {op!r} for {target}")
            content = spec.get("content")
            max_age = spec.get("max_age_days", spec.get("maxAgeDays"))
            if max_age is not None:
                try:
                    max_age = int(max_age)
                except (TypeError, ValueError) as exc:
                    raise ArtifactError(f"invalid max_age_days {max_age!r} for {target}") from exc
                if max_age < 1:
                    raise ArtifactError(f"max_age_days must be >= 1 for {target}, got {max_age}")
            return cls(
                target=target,
                op=op,
                content=None if content is None else str(content),
                max_age_days=max_age,
                rationale=rationale,
            )
        if spec is None:
            raise ArtifactError(f"no change content for {target}")
        return cls(target=target, op="write", content=str(spec), rationale=rationale)


class ArtifactMutator(Protocol):
    async def snapshot(self, targets: Iterable[str] = ()) -> str:
        """Capture the tree, including every path in ``targets``, before a fix."""
        ...

    async def restore(self, ref: str) -> None:
        ...

    async def apply(self, change: ArtifactChange) -> bool:
        ...

    async def prune_snapshots(self, keep: int) -> int:
        ...


def confine(root: Path, target: str) -> Path:
    """Resolve ``target`` under ``root``; refuse anything that escapes it."""
    root = root.resolve()
    candidate = (root / target).resolve()
    if candidate != root and root not in candidate.parents:
        raise ArtifactError(f"change target escapes artifact root: {target}")
    return candidate


def build_mutator(backend: str | None = None, **kwargs) -> ArtifactMutator:
    """Construct the mutator named by config (``filesystem`` or ``git``)."""
    name = (backend or config.ARTIFACT_BACKEND).strip().lower()
    if name == "filesystem":
        from artifacts.filesystem import FilesystemMutator
        return FilesystemMutator(**kwargs)
    if name == "git":
        from artifacts.git import GitMutator
        return GitMutator(**kwargs)
    raise ValueError(f"unsupported artifact backend: {name!r}")


__all__ = [
    "ArtifactChange",
    "ArtifactError",
    "ArtifactMutator",
    "build_mutator",
    "confine",
]
