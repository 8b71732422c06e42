from __future__ import annotations

import asyncio
import os
import shutil
import subprocess
import sys
import tempfile
import time
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from artifacts import ArtifactChange, ArtifactError, build_mutator, confine
from artifacts.filesystem import FilesystemMutator
from artifacts.git import SNAPSHOT_REF_PREFIX, GitMutator


class TestArtifactChange(unittest.TestCase):
    def test_text_spec_is_a_write(self):
        change = ArtifactChange.from_spec("server/a.ts", "export {};", "cleanup")
        self.assertEqual((change.op, change.content), ("write", "export {};"))
        self.assertEqual(change.describe(), "Updated server/a.ts: cleanup")

    def test_op_object(self):
        change = ArtifactChange.from_spec("logs", {"op": "prune", "maxAgeDays": 3})
        self.assertEqual((change.op, change.max_age_days), ("prune", 3))

    def test_rejects_unknown_op_and_empty_spec(self):
        with self.assertRaises(ArtifactError):
            ArtifactChange.from_spec("x", {"op": "chmod"})
        with self.assertRaises(ArtifactError):
            ArtifactChange.from_spec("x", None)

    def test_rejects_malformed_max_age(self):
        for bad in ("soon", [3], 0):
            with self.subTest(max_age_days=bad):
                with self.assertRaises(ArtifactError):
                    ArtifactChange.from_spec("logs", {"op": "prune", "max_age_days": bad})

    def test_confine_blocks_escape(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            self.assertEqual(confine(root, "server/a.ts"), (root / "server" / "a.ts").resolve())
            with self.assertRaises(ArtifactError):
                confine(root, "../outside.txt")

    def test_build_mutator(self):
        self.assertIsInstance(build_mutator("filesystem", root="/tmp/app"), FilesystemMutator)
        self.assertIsInstance(build_mutator("git", root="/tmp/app"), GitMutator)
        with self.assertRaises(ValueError):
            build_mutator("s3")


class TestFilesystemMutator(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        base = Path(self._tmp.name)
        self.root = base / "app"
        (self.root / "server").mkdir(parents=True)
        (self.root / "server" / "routes.ts").write_text("v1")
        (self.root / "logs").mkdir()
        self.mutator = FilesystemMutator(
            self.root,
            backup_dir=base / "backups",
            snapshot_roots=["server", "client"],
        )

    def tearDown(self):
        self._tmp.cleanup()

    def test_snapshot_apply_restore(self):
        async def _run():
            ref = await self.mutator.snapshot()
            ok = await self.mutator.apply(ArtifactChange("server/routes.ts", content="v2"))
            self.assertTrue(ok)
            await self.mutator.apply(ArtifactChange("client/App.tsx", content="new client"))
            self.assertEqual((self.root / "server" / "routes.ts").read_text(), "v2")
            await self.mutator.restore(ref)

        asyncio.run(_run())
        self.assertEqual((self.root / "server" / "routes.ts").read_text(), "v1")
        # client/ did not exist at snapshot time
        self.assertFalse((self.root / "client").exists())

    def test_targets_outside_roots_are_captured(self):
        (self.root / "package.json").write_text('{"name": "app"}')

        async def _run():
            ref = await self.mutator.snapshot(["package.json", "config/new.env", "server/routes.ts"])
            await self.mutator.apply(ArtifactChange("package.json", content="broken"))
            await self.mutator.apply(ArtifactChange("config/new.env", content="X=1"))
            await self.mutator.restore(ref)

        asyncio.run(_run())
        self.assertEqual((self.root / "package.json").read_text(), '{"name": "app"}')
        self.assertFalse((self.root / "config" / "new.env").exists())

    def test_pruned_directory_comes_back(self):
        old = self.root / "logs" / "old.log"
        old.write_text("old")
        stale = time.time() - 30 * 86400
        os.utime(old, (stale, stale))

        async def _run():
            ref = await self.mutator.snapshot(["logs"])
            await self.mutator.apply(ArtifactChange("logs", op="prune", max_age_days=14))
            self.assertFalse(old.exists())
            await self.mutator.restore(ref)

        asyncio.run(_run())
        self.assertEqual(old.read_text(), "old")

    def test_whole_root_is_not_a_target(self):
        with self.assertRaises(ArtifactError):
            asyncio.run(self.mutator.snapshot(["."]))

    def test_restore_unknown_ref_fails(self):
        with self.assertRaises(ArtifactError):
            asyncio.run(self.mutator.restore("auto-fix-missing"))

    def test_apply_outside_root_fails(self):
        with self.assertRaises(ArtifactError):
            asyncio.run(self.mutator.apply(ArtifactChange("../escape.txt", content="x")))

    def test_delete_missing_returns_false(self):
        self.assertFalse(asyncio.run(self.mutator.apply(ArtifactChange("server/nope.ts", op="delete"))))
        self.assertTrue(asyncio.run(self.mutator.apply(ArtifactChange("server/routes.ts", op="delete"))))
        self.assertFalse((self.root / "server" / "routes.ts").exists())

    def test_prune_removes_old_files_only(self):
        old = self.root / "logs" / "old.log"
        fresh = self.root / "logs" / "fresh.log"
        old.write_text("old")
        fresh.write_text("fresh")
        stale = time.time() - 30 * 86400
        os.utime(old, (stale, stale))

        ok = asyncio.run(self.mutator.apply(ArtifactChange("logs", op="prune", max_age_days=14)))
        self.assertTrue(ok)
        self.assertFalse(old.exists())
        self.assertTrue(fresh.exists())

    def test_prune_snapshots_keeps_newest(self):
        async def _run():
            refs = [await self.mutator.snapshot() for _ in range(4)]
            removed = await self.mutator.prune_snapshots(2)
            return refs, removed

        refs, removed = asyncio.run(_run())
        self.assertEqual(removed, 2)
        remaining = [str(p) for p in self.mutator.list_snapshots()]
        self.assertEqual(remaining, sorted(refs)[-2:])


@unittest.skipUnless(shutil.which("git"), "git not installed")
class TestGitMutator(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        env = {
            **os.environ,
            "GIT_AUTHOR_NAME": "t", "GIT_AUTHOR_EMAIL": "t@t",
            "GIT_COMMITTER_NAME": "t", "GIT_COMMITTER_EMAIL": "t@t",
        }
        (self.root / "app.ts").write_text("v1")
        for args in (["init", "-q"], ["add", "."], ["commit", "-q", "-m", "init"]):
            subprocess.run(["git", *args], cwd=self.root, check=True, env=env, capture_output=True)
        self.mutator = GitMutator(self.root)

    def tearDown(self):
        self._tmp.cleanup()

    def test_snapshot_and_restore(self):
        async def _run():
            ref = await self.mutator.snapshot()
            await self.mutator.apply(ArtifactChange("app.ts", content="v2"))
            self.assertEqual((self.root / "app.ts").read_text(), "v2")
            await self.mutator.restore(ref)
            return ref

        asyncio.run(_run())
        self.assertEqual((self.root / "app.ts").read_text(), "v1")

    def test_snapshot_captures_uncommitted_edits(self):
        (self.root / "app.ts").write_text("work in progress")

        async def _run():
            ref = await self.mutator.snapshot()
            await self.mutator.apply(ArtifactChange("app.ts", content="broken"))
            await self.mutator.restore(ref)

        asyncio.run(_run())
        self.assertEqual((self.root / "app.ts").read_text(), "work in progress")

    def test_restore_removes_files_created_after_snapshot(self):
        async def _run():
            ref = await self.mutator.snapshot(["src/new.ts"])
            await self.mutator.apply(ArtifactChange("src/new.ts", content="added"))
            await self.mutator.restore(ref)

        asyncio.run(_run())
        self.assertFalse((self.root / "src" / "new.ts").exists())
        self.assertEqual((self.root / "app.ts").read_text(), "v1")

    def test_untracked_file_is_restored(self):
        (self.root / "draft.ts").write_text("untracked draft")

        async def _run():
            ref = await self.mutator.snapshot(["draft.ts"])
            await self.mutator.apply(ArtifactChange("draft.ts", content="overwritten"))
            await self.mutator.restore(ref)

        asyncio.run(_run())
        self.assertEqual((self.root / "draft.ts").read_text(), "untracked draft")

    def test_deleted_file_is_restored(self):
        async def _run():
            ref = await self.mutator.snapshot(["app.ts"])
            await self.mutator.apply(ArtifactChange("app.ts", op="delete"))
            self.assertFalse((self.root / "app.ts").exists())
            await self.mutator.restore(ref)

        asyncio.run(_run())
        self.assertEqual((self.root / "app.ts").read_text(), "v1")

    def test_ignored_targets_are_copied_aside(self):
        (self.root / ".gitignore").write_text("*.env\n")
        (self.root / "local.env").write_text("TOKEN=abc")

        async def _run():
            ref = await self.mutator.snapshot(["local.env", "fresh.env"])
            await self.mutator.apply(ArtifactChange("local.env", content="TOKEN=broken"))
            await self.mutator.apply(ArtifactChange("fresh.env", content="NEW=1"))
            await self.mutator.restore(ref)

        asyncio.run(_run())
        self.assertEqual((self.root / "local.env").read_text(), "TOKEN=abc")
        self.assertFalse((self.root / "fresh.env").exists())

    def test_snapshot_ref_is_pinned(self):
        async def _run():
            ref = await self.mutator.snapshot()
            return ref, await self.mutator.list_snapshot_refs()

        ref, refs = asyncio.run(_run())
        self.assertTrue(ref.startswith(SNAPSHOT_REF_PREFIX))
        self.assertEqual(refs, [ref])

    def test_root_must_be_work_tree_top_level(self):
        (self.root / "sub").mkdir()
        nested = GitMutator(self.root / "sub")
        with self.assertRaises(ArtifactError):
            asyncio.run(nested.snapshot())

    def test_prune_snapshot_refs(self):
        async def _run():
            for _ in range(3):
                await self.mutator.snapshot()
            removed = await self.mutator.prune_snapshots(1)
            return removed, await self.mutator.list_snapshot_refs()

        removed, refs = asyncio.run(_run())
        self.assertEqual(removed, 2)
        self.assertEqual(len(refs), 1)


if __name__ == "__main__":
    unittest.main()
