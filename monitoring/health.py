"""Health Monitor — samples the application and keeps bounded histories.

The monitor owns two FIFO buffers (metrics and issues). Probe failures are
never raised to the caller: they become Issues and a ``False`` check result.
"""
from __future__ import annotations

import logging
import time
from collections import deque
from datetime import timedelta
from typing import Any

from monitoring._base import (
    EXPECTED_UNAUTHENTICATED_STATUS,
    HIGH_MEMORY_MB,
    ISSUES_CAPACITY,
    METRICS_CAPACITY,
    SLOW_STORAGE_MS,
    HealthMetric,
    Issue,
    SystemStatus,
)
from monitoring.probes import Probe
from utils import utc_now

log = logging.getLogger(__name__)

_ONE_HOUR = timedelta(hours=1)


class HealthMonitor:
    def __init__(
        self,
        probe: Probe,
        *,
        metrics_capacity: int = METRICS_CAPACITY,
        issues_capacity: int = ISSUES_CAPACITY,
        now=utc_now,
    ):
        self.probe = probe
        self._metrics: deque[HealthMetric] = deque(maxlen=metrics_capacity)
        self._issues: deque[Issue] = deque(maxlen=issues_capacity)
        self._now = now
        self._running = False

    # ------------------------------------------------------------------
    # Monitoring switch
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._running = True
        log.info("Health monitor started")

    def stop(self) -> None:
        self._running = False
        log.info("Health monitor stopped")

    @property
    def is_active(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def check_reachability(self) -> bool:
        try:
            statuses = await self.probe.endpoint_statuses()
        except Exception as exc:
            self.add_issue(
                kind="error",
                severity="critical",
                component="api",
                description=f"API health check failed: {exc}",
            )
            return False

        for endpoint, status_code in statuses:
            ok = 200 <= status_code < 400
            if not ok and status_code != EXPECTED_UNAUTHENTICATED_STATUS:
                self.add_issue(
                    kind="error",
                    severity="high",
                    component="api",
                    description=f"API endpoint {endpoint} returned {status_code}",
                    metrics={"endpoint": endpoint, "status": status_code},
                )
                return False
        return True

    async def check_storage_latency(self) -> tuple[bool, int | None]:
        """Return ``(healthy, round_trip_ms)``; the latency is None on failure."""
        try:
            elapsed_ms = int(round(await self.probe.storage_latency()))
        except Exception as exc:
            self.add_issue(
                kind="error",
                severity="critical",
                component="database",
                description=f"Database health check failed: {exc}",
            )
            return False, None

        if elapsed_ms > SLOW_STORAGE_MS:
            self.add_issue(
                kind="performance",
                severity="medium",
                component="database",
                description=f"Database query slow: {elapsed_ms}ms",
                metrics={"response_time_ms": elapsed_ms},
            )
        return True, elapsed_ms

    async def sample_metrics(self) -> HealthMetric:
        started = time.monotonic()
        api_healthy = await self.check_reachability()
        storage_healthy, storage_ms = await self.check_storage_latency()
        wall_ms = int((time.monotonic() - started) * 1000)

        memory_mb = self._memory_usage_mb()
        try:
            active_users = int(await self.probe.active_users())
        except Exception:
            log.debug("Active user probe failed", exc_info=True)
            active_users = 0

        metric = HealthMetric(
            timestamp=self._now(),
            api_healthy=api_healthy,
            storage_healthy=storage_healthy,
            response_time_ms=storage_ms if storage_ms is not None else wall_ms,
            error_count=self._recent_error_count(),
            memory_usage_mb=memory_mb,
            active_user_count=active_users,
        )

        if memory_mb > HIGH_MEMORY_MB:
            self.add_issue(
                kind="performance",
                severity="medium",
                component="system",
                description=f"High memory usage: {memory_mb:.2f}MB",
                metrics={"memory_usage_mb": memory_mb},
            )

        self._metrics.append(metric)
        return metric

    def status(self) -> SystemStatus:
        latest = self.latest_metrics()
        critical = self.critical_issues()
        recent = self.recent_issues(hours=1)

        if critical:
            state = "critical"
        elif any(issue.severity == "high" for issue in recent):
            state = "warning"
        else:
            state = "healthy"

        return SystemStatus(
            status=state,
            metrics=latest,
            critical_issues=len(critical),
            recent_issues=len(recent),
            uptime=bool(latest and latest.api_healthy and latest.storage_healthy),
        )

    # ------------------------------------------------------------------
    # Buffers
    # ------------------------------------------------------------------

    def add_issue(
        self,
        *,
        kind: str,
        severity: str,
        component: str,
        description: str,
        metrics: dict[str, Any] | None = None,
    ) -> Issue:
        issue = Issue(
            kind=kind,
            severity=severity,
            component=component,
            description=description,
            timestamp=self._now(),
            metrics=metrics,
        )
        self._issues.append(issue)
        level = logging.ERROR if severity in ("high", "critical") else logging.WARNING
        log.log(level, "%s: %s", severity.upper(), description)
        return issue

    def recent_issues(self, hours: float = 24) -> list[Issue]:
        now = self._now()
        window = timedelta(hours=hours)
        return [issue for issue in self._issues if issue.within(window, now=now)]

    def critical_issues(self) -> list[Issue]:
        now = self._now()
        return [
            issue for issue in self._issues
            if issue.severity == "critical" and issue.within(_ONE_HOUR, now=now)
        ]

    def latest_metrics(self) -> HealthMetric | None:
        return self._metrics[-1] if self._metrics else None

    def all_metrics(self) -> list[HealthMetric]:
        return list(self._metrics)

    def all_issues(self) -> list[Issue]:
        return list(self._issues)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _recent_error_count(self) -> int:
        now = self._now()
        return sum(
            1 for issue in self._issues
            if issue.kind == "error" and issue.within(_ONE_HOUR, now=now)
        )

    def _memory_usage_mb(self) -> float:
        try:
            return float(self.probe.memory_usage_mb())
        except Exception:
            log.debug("Memory probe failed", exc_info=True)
            return 0.0
