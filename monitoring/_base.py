"""Shared types, constants, and helpers for health monitoring and remediation."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

from utils import isoformat_or_none, utc_now

log = logging.getLogger(__name__)

IssueKind = Literal["error", "warning", "performance"]
Severity = Literal["low", "medium", "high", "critical"]
HealthState = Literal["healthy", "warning", "critical"]

ISSUE_KINDS: tuple[str, ...] = ("error", "warning", "performance")
SEVERITIES: tuple[str, ...] = ("low", "medium", "high", "critical")
_SEVERITY_RANK = {name: rank for rank, name in enumerate(SEVERITIES)}

METRICS_CAPACITY = 100
ISSUES_CAPACITY = 1000
ANALYSES_CAPACITY = 50
FIXES_CAPACITY = 100

SLOW_STORAGE_MS = 1000
HIGH_MEMORY_MB = 500.0
# 401 from a capability endpoint means "reachable, just not logged in".
EXPECTED_UNAUTHENTICATED_STATUS = 401

_STATUS_EMOJI = {"healthy": "🟢", "warning": "🟡", "critical": "🔴"}


def severity_rank(severity: str) -> int:
    return _SEVERITY_RANK.get(str(severity or "").lower(), -1)


def _status_emoji(status: str) -> str:
    return _STATUS_EMOJI.get(status, "⚪")


@dataclass(frozen=True)
class HealthMetric:
    timestamp: datetime
    api_healthy: bool
    storage_healthy: bool
    response_time_ms: int
    error_count: int
    memory_usage_mb: float
    active_user_count: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "api_healthy": self.api_healthy,
            "storage_healthy": self.storage_healthy,
            "response_time_ms": self.response_time_ms,
            "error_count": self.error_count,
            "memory_usage_mb": round(self.memory_usage_mb, 2),
            "active_user_count": self.active_user_count,
        }


@dataclass(frozen=True)
class Issue:
    kind: IssueKind
    severity: Severity
    component: str
    description: str
    timestamp: datetime = field(default_factory=utc_now)
    metrics: dict[str, Any] | None = None
    issue_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def within(self, window: timedelta, *, now: datetime | None = None) -> bool:
        return self.timestamp > (now or utc_now()) - window

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.issue_id,
            "type": self.kind,
            "severity": self.severity,
            "component": self.component,
            "description": self.description,
            "timestamp": self.timestamp.isoformat(),
            "metrics": dict(self.metrics) if self.metrics else None,
        }


@dataclass(frozen=True)
class SystemStatus:
    status: HealthState
    metrics: HealthMetric | None
    critical_issues: int
    recent_issues: int
    uptime: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "metrics": self.metrics.as_dict() if self.metrics else None,
            "critical_issues": self.critical_issues,
            "recent_issues": self.recent_issues,
            "uptime": self.uptime,
        }


@dataclass(frozen=True)
class FixRecord:
    success: bool
    action_kind: str
    description: str
    timestamp: datetime = field(default_factory=utc_now)
    changes_applied: tuple[str, ...] = ()
    error: str | None = None
    rollback_ref: str | None = None
    rolled_back: bool = False
    fix_id: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "fix_id": self.fix_id,
            "success": self.success,
            "action": self.action_kind,
            "description": self.description,
            "timestamp": isoformat_or_none(self.timestamp),
            "changes": list(self.changes_applied),
            "error": self.error,
            "rollback_ref": self.rollback_ref,
            "rolled_back": self.rolled_back,
        }
