"""Remediation executor — applies an Analysis as guarded, reversible changes.

Every attempt follows the same path: skip or defer, reserve a slot, build
the changes through the category strategy, snapshot everything they touch,
apply, verify, roll back once on failure, release the slot, record. A
cancelled attempt is rolled back and recorded before the cancellation
propagates. Categories map to strategies through a closed table; anything
unrecognized gets the generic strategy.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable

import config
from artifacts import ArtifactChange, ArtifactError, ArtifactMutator
from diagnosis import Analysis, Category
from monitoring._base import FIXES_CAPACITY, FixRecord
from utils import utc_now

log = logging.getLogger(__name__)

VERIFY_FAILED_ERROR = "Fix caused system issues, rolled back"


class RemediationError(Exception):
    """Base class for failures inside a remediation attempt."""


class RemediationApplyFailure(RemediationError):
    """A change could not be applied; the attempt is rolled back."""


class RollbackFailure(RemediationError):
    """Restoring a snapshot failed; the artifact tree needs a human."""


# ---------------------------------------------------------------------------
# Strategy table
# ---------------------------------------------------------------------------

Housekeeping = Callable[[Analysis], list[ArtifactChange]]


def _maintenance_housekeeping(analysis: Analysis) -> list[ArtifactChange]:
    return [
        ArtifactChange(
            target="logs",
            op="prune",
            max_age_days=config.MAINTENANCE_LOG_MAX_AGE_DAYS,
            rationale="routine log cleanup",
        )
    ]


@dataclass(frozen=True)
class RemediationStrategy:
    action_kind: str
    label: str
    housekeeping: Housekeeping | None = None

    def build_changes(self, analysis: Analysis, *, limit: int) -> list[ArtifactChange]:
        changes: list[ArtifactChange] = []
        if self.housekeeping is not None:
            changes.extend(self.housekeeping(analysis))
        for proposed in analysis.proposed_changes:
            try:
                changes.append(
                    ArtifactChange.from_spec(
                        proposed.target, proposed.change_spec, proposed.rationale,
                    )
                )
            except ArtifactError as exc:
                log.warning("Ignoring proposed change for %s: %s", proposed.target, exc)
        return changes[:max(0, limit)]


GENERIC_STRATEGY = RemediationStrategy("generic_fix", "Generic fix")

STRATEGIES: dict[Category, RemediationStrategy] = {
    Category.PERFORMANCE: RemediationStrategy("performance_optimization", "Performance optimization"),
    Category.BUG: RemediationStrategy("bug_fix", "Bug fix"),
    Category.SECURITY: RemediationStrategy("security_fix", "Security fix"),
    Category.MAINTENANCE: RemediationStrategy(
        "maintenance", "Maintenance update", housekeeping=_maintenance_housekeeping,
    ),
    Category.ENHANCEMENT: RemediationStrategy("enhancement", "Enhancement"),
    Category.CONTENT_PIPELINE: RemediationStrategy("content_pipeline_fix", "Content pipeline fix"),
    Category.PUBLISHING: RemediationStrategy("publishing_fix", "Publishing fix"),
    Category.PAYMENTS: RemediationStrategy("payments_fix", "Payments fix"),
    Category.WORKFLOW: RemediationStrategy("workflow_fix", "Workflow fix"),
}


def strategy_for(category: str) -> RemediationStrategy:
    parsed = Category.parse(category)
    if parsed is None:
        return GENERIC_STRATEGY
    return STRATEGIES.get(parsed, GENERIC_STRATEGY)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class RemediationExecutor:
    def __init__(
        self,
        monitor,
        mutator: ArtifactMutator,
        *,
        max_concurrent_fixes: int = config.MAX_CONCURRENT_FIXES,
        max_files_per_fix: int = config.MAX_FILES_PER_FIX,
        backup_before_fix: bool = config.BACKUP_BEFORE_FIX,
        test_after_fix: bool = config.TEST_AFTER_FIX,
        verify_timeout_seconds: float = config.VERIFY_TIMEOUT,
        history_capacity: int = FIXES_CAPACITY,
        now=utc_now,
    ):
        self.monitor = monitor
        self.mutator = mutator
        self.max_concurrent_fixes = max_concurrent_fixes
        self.max_files_per_fix = max_files_per_fix
        self.backup_before_fix = backup_before_fix
        self.test_after_fix = test_after_fix
        self.verify_timeout_seconds = verify_timeout_seconds
        self.active_fixes: set[str] = set()
        self.unresolved_rollbacks: deque[dict[str, Any]] = deque(maxlen=history_capacity)
        self._history: deque[FixRecord] = deque(maxlen=history_capacity)
        self._now = now

    def update_limits(self, **limits: Any) -> None:
        for key, value in limits.items():
            if not hasattr(self, key) or key.startswith("_"):
                raise AttributeError(f"unknown executor limit: {key}")
            setattr(self, key, value)

    def clear_active(self) -> None:
        self.active_fixes.clear()

    @property
    def active_fix_count(self) -> int:
        return len(self.active_fixes)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, analysis: Analysis) -> FixRecord:
        strategy = strategy_for(analysis.category)

        if not analysis.auto_fixable:
            return self._record(FixRecord(
                success=False,
                action_kind="skip",
                description="Issue marked as not auto-fixable",
                timestamp=self._now(),
            ))

        # check-and-reserve: no await between the test and the add
        if len(self.active_fixes) >= self.max_concurrent_fixes:
            log.warning(
                "Fix deferred, %d/%d slots busy: %s",
                len(self.active_fixes), self.max_concurrent_fixes, analysis.summary,
            )
            return self._record(FixRecord(
                success=False,
                action_kind="deferred",
                description=analysis.summary,
                timestamp=self._now(),
                error="Concurrent fix limit reached",
            ))

        fix_id = uuid.uuid4().hex[:12]
        self.active_fixes.add(fix_id)
        try:
            record = await self._attempt(fix_id, strategy, analysis)
        finally:
            self.active_fixes.discard(fix_id)
        return self._record(record)

    async def _attempt(
        self,
        fix_id: str,
        strategy: RemediationStrategy,
        analysis: Analysis,
    ) -> FixRecord:
        log.info("Executing %s [%s]: %s", strategy.label, fix_id, analysis.summary)

        try:
            changes = strategy.build_changes(analysis, limit=self.max_files_per_fix)
        except Exception as exc:
            log.error("Could not build changes for fix %s: %s", fix_id, exc, exc_info=True)
            return self._failure(fix_id, strategy, analysis, error=f"Could not build changes: {exc}")

        rollback_ref: str | None = None
        if self.backup_before_fix:
            try:
                rollback_ref = await self.mutator.snapshot([change.target for change in changes])
            except asyncio.CancelledError:
                log.warning("Fix %s cancelled while snapshotting, nothing applied", fix_id)
                self._record(self._failure(fix_id, strategy, analysis, error="Fix cancelled"))
                raise
            except Exception as exc:
                log.error("Snapshot failed, aborting fix %s: %s", fix_id, exc, exc_info=True)
                return self._failure(
                    fix_id, strategy, analysis,
                    action_kind="backup_failed", error=f"Backup failed: {exc}",
                )

        applied: list[str] = []
        failure: str | None = None
        try:
            for change in changes:
                if not await self.mutator.apply(change):
                    raise RemediationApplyFailure(f"change to {change.target} was not applied")
                applied.append(change.describe())
            if self.test_after_fix:
                healthy, detail = await self._verify()
                if not healthy:
                    log.error("Fix %s failed verification (%s), rolling back", fix_id, detail)
                    failure = VERIFY_FAILED_ERROR
        except asyncio.CancelledError:
            log.warning("Fix %s cancelled before it was verified, rolling back", fix_id)
            self._record(await self._rolled_back(
                fix_id, strategy, analysis, applied, rollback_ref, "Fix cancelled",
            ))
            raise
        except Exception as exc:
            failure = str(exc if isinstance(exc, RemediationApplyFailure) else RemediationApplyFailure(str(exc)))
            log.error("Fix %s failed while applying: %s", fix_id, failure, exc_info=True)

        if failure is not None:
            return await self._rolled_back(fix_id, strategy, analysis, applied, rollback_ref, failure)

        log.info("Fix %s succeeded with %d change(s)", fix_id, len(applied))
        return FixRecord(
            success=True,
            action_kind=strategy.action_kind,
            description=analysis.summary,
            timestamp=self._now(),
            changes_applied=tuple(applied),
            rollback_ref=rollback_ref,
            fix_id=fix_id,
        )

    def _failure(
        self,
        fix_id: str,
        strategy: RemediationStrategy,
        analysis: Analysis,
        *,
        error: str,
        action_kind: str | None = None,
    ) -> FixRecord:
        return FixRecord(
            success=False,
            action_kind=action_kind or strategy.action_kind,
            description=analysis.summary,
            timestamp=self._now(),
            error=error,
            fix_id=fix_id,
        )

    async def _rolled_back(
        self,
        fix_id: str,
        strategy: RemediationStrategy,
        analysis: Analysis,
        applied: list[str],
        rollback_ref: str | None,
        error: str,
    ) -> FixRecord:
        rolled_back, rollback_error = await self._rollback(fix_id, rollback_ref)
        return FixRecord(
            success=False,
            action_kind=strategy.action_kind,
            description=analysis.summary,
            timestamp=self._now(),
            changes_applied=tuple(applied),
            error=_join_errors(error, rollback_error),
            rollback_ref=rollback_ref,
            rolled_back=rolled_back,
            fix_id=fix_id,
        )

    async def _verify(self) -> tuple[bool, str]:
        async def _probe():
            await self.monitor.sample_metrics()
            return self.monitor.status()

        try:
            status = await asyncio.wait_for(_probe(), timeout=self.verify_timeout_seconds)
        except asyncio.TimeoutError:
            return False, f"verification timed out after {self.verify_timeout_seconds}s"
        except Exception as exc:
            return False, f"verification probe failed: {exc}"
        return status.status != "critical", f"system status {status.status}"

    async def _rollback(self, fix_id: str, ref: str | None) -> tuple[bool, str | None]:
        """Restore ``ref`` once. Returns ``(rolled_back, error)``."""
        if ref is None:
            log.warning("No snapshot for fix %s, nothing to roll back to", fix_id)
            return False, None
        try:
            await self.mutator.restore(ref)
        except Exception as exc:
            failure = RollbackFailure(f"rollback to {ref} failed: {exc}")
            log.error("UNRESOLVED: fix %s left the artifact tree modified: %s", fix_id, failure, exc_info=True)
            self.unresolved_rollbacks.append({
                "fix_id": fix_id,
                "rollback_ref": ref,
                "error": str(failure),
                "timestamp": self._now().isoformat(),
            })
            return False, str(failure)
        log.info("Rolled back fix %s to %s", fix_id, ref)
        return True, None

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def _record(self, record: FixRecord) -> FixRecord:
        self._history.append(record)
        return record

    def history(self) -> list[FixRecord]:
        return list(self._history)

    def successful_fixes(self) -> list[FixRecord]:
        return [fix for fix in self._history if fix.success]

    def recent_fixes(self, hours: float = 24) -> list[FixRecord]:
        cutoff = self._now() - timedelta(hours=hours)
        return [fix for fix in self._history if fix.timestamp > cutoff]

    def success_rate(self, hours: float = 24) -> float:
        recent = self.recent_fixes(hours)
        if not recent:
            return 1.0
        return sum(1 for fix in recent if fix.success) / len(recent)


def _join_errors(primary: str, rollback_error: str | None) -> str:
    if rollback_error:
        return f"{primary}; {rollback_error}"
    return primary
