"""In-memory stand-ins for the orchestrator's collaborators."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from diagnosis import Analysis, ProposedChange
from monitoring._base import SystemStatus


def make_analysis(**overrides) -> Analysis:
    values = dict(
        severity="high",
        category="bug",
        summary="Null check missing in publisher",
        detailed_analysis="Publisher crashes when caption is empty",
        recommended_actions=["Add a null check"],
        urgency=8,
        auto_fixable=True,
        proposed_changes=[
            ProposedChange(target="server/publisher.ts", change_spec="export const ok = true;\n"),
        ],
    )
    values.update(overrides)
    return Analysis(**values)


def make_status(state: str = "healthy") -> SystemStatus:
    return SystemStatus(
        status=state,
        metrics=None,
        critical_issues=1 if state == "critical" else 0,
        recent_issues=0,
        uptime=state != "critical",
    )


class FakeProbe:
    def __init__(
        self,
        statuses=None,
        storage_ms: float = 5.0,
        *,
        endpoint_error: Exception | None = None,
        storage_error: Exception | None = None,
        users: int = 3,
        memory_mb: float = 120.0,
    ):
        self.statuses = statuses if statuses is not None else [("/api/auth/me", 401), ("/api/dashboard/stats", 200)]
        self.storage_ms = storage_ms
        self.endpoint_error = endpoint_error
        self.storage_error = storage_error
        self.users = users
        self.memory_mb = memory_mb

    async def endpoint_statuses(self):
        if self.endpoint_error is not None:
            raise self.endpoint_error
        return list(self.statuses)

    async def storage_latency(self):
        if self.storage_error is not None:
            raise self.storage_error
        return self.storage_ms

    async def active_users(self):
        return self.users

    def memory_usage_mb(self):
        return self.memory_mb


class FakeVerifyMonitor:
    """Just enough monitor for the executor's post-fix verification."""

    def __init__(self, state: str = "healthy", *, error: Exception | None = None, delay: float = 0.0):
        self.state = state
        self.error = error
        self.delay = delay
        self.samples = 0

    async def sample_metrics(self):
        self.samples += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return None

    def status(self):
        return make_status(self.state)


class FakeOracle:
    def __init__(self, analysis: Analysis | None = None, *, error: Exception | None = None, delay: float = 0.0):
        self.analysis = analysis or make_analysis()
        self.error = error
        self.delay = delay
        self.contexts = []

    async def analyze(self, context):
        self.contexts.append(context)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.analysis


class FakeMutator:
    def __init__(
        self,
        *,
        apply_results=None,
        apply_error: Exception | None = None,
        snapshot_error: Exception | None = None,
        restore_error: Exception | None = None,
        apply_gate: asyncio.Event | None = None,
        snapshot_gate: asyncio.Event | None = None,
    ):
        self.calls: list[tuple] = []
        self.apply_results = list(apply_results or [])
        self.apply_error = apply_error
        self.snapshot_error = snapshot_error
        self.restore_error = restore_error
        self.apply_gate = apply_gate
        self.snapshot_gate = snapshot_gate
        self.snapshot_targets: list[list[str]] = []
        self._count = 0

    @property
    def restores(self):
        return [c for c in self.calls if c[0] == "restore"]

    @property
    def applied(self):
        return [c[1] for c in self.calls if c[0] == "apply"]

    async def snapshot(self, targets=()):
        self.snapshot_targets.append(list(targets))
        if self.snapshot_gate is not None:
            await self.snapshot_gate.wait()
        if self.snapshot_error is not None:
            raise self.snapshot_error
        self._count += 1
        ref = f"snap-{self._count}"
        self.calls.append(("snapshot", ref))
        return ref

    async def restore(self, ref):
        self.calls.append(("restore", ref))
        if self.restore_error is not None:
            raise self.restore_error

    async def apply(self, change):
        if self.apply_gate is not None:
            await self.apply_gate.wait()
        self.calls.append(("apply", change))
        if self.apply_error is not None:
            raise self.apply_error
        if self.apply_results:
            return self.apply_results.pop(0)
        return True

    async def prune_snapshots(self, keep):
        self.calls.append(("prune_snapshots", keep))
        return 0


class ManualTicker:
    def __init__(self, seconds, fn, name):
        self.seconds = seconds
        self.fn = fn
        self.name = name
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualClock:
    """Clock whose time only moves when a test says so; ticks fire on demand."""

    def __init__(self, now: datetime | None = None):
        self.current = now or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
        self.tickers: list[ManualTicker] = []

    def now(self):
        return self.current

    def set_time(self, hour: int, minute: int = 0):
        self.current = self.current.replace(hour=hour, minute=minute)

    def every(self, seconds, fn, *, name=""):
        ticker = ManualTicker(seconds, fn, name)
        self.tickers.append(ticker)
        return ticker

    def live(self):
        return {t.name: t for t in self.tickers if not t.cancelled}

    async def fire(self, name: str):
        await self.live()[name].fn()
