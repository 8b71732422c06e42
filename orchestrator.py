"""Orchestrator — the self-healing control loop.

Owns the task table and decides when to diagnose and when to remediate:

  - health_check: sample + status; a critical status escalates immediately
  - diagnosis: periodic oracle analysis, remediated above the urgency threshold
  - maintenance: full analysis, daily report, routine fixes, retention pruning
  - emergency: targeted analysis of each unhandled critical issue

Key design decisions:
  - Every collaborator is injected (monitor, oracle, mutator, clock)
  - Schedules are human-readable ("5m", "24h") and parsed once at start
  - The oracle never takes a task down: failures become fallback analyses
  - Quiet hours suppress routine remediation, never the emergency path
"""
from __future__ import annotations

import asyncio
import enum
import logging
import re
from collections import deque
from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime, time, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable

import yaml

import config
from artifacts import ArtifactMutator
from clock import AsyncioClock, Clock, Ticker
from diagnosis import Analysis, Category, Oracle, build_context, fallback_analysis, summarize
from monitoring._base import ANALYSES_CAPACITY, ISSUES_CAPACITY, Issue, severity_rank
from monitoring.health import HealthMonitor
from monitoring.maintenance import build_daily_report, prune_reports, write_daily_report
from monitoring.remediation import RemediationExecutor

log = logging.getLogger(__name__)


class ConfigValidationError(ValueError):
    """An orchestrator configuration value is invalid."""


class UnknownTaskError(KeyError):
    """No task with this name is registered."""


# ---------------------------------------------------------------------------
# Schedules and quiet hours
# ---------------------------------------------------------------------------

_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
_INTERVAL_PART = re.compile(r"(\d+(?:\.\d+)?)([smhd])")
_BARE_NUMBER = re.compile(r"\d+(?:\.\d+)?")
_HHMM = re.compile(r"([01]?\d|2[0-3]):([0-5]\d)")


def parse_interval(value: str | int | float) -> float:
    """Resolve ``"5m"``, ``"24h"``, ``"1h30m"`` or a bare number to seconds."""
    if isinstance(value, bool):
        raise ConfigValidationError(f"invalid interval: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip().lower().replace(" ", "")
        if _BARE_NUMBER.fullmatch(text):
            seconds = float(text)
        else:
            parts = _INTERVAL_PART.findall(text)
            if not parts or "".join(num + unit for num, unit in parts) != text:
                raise ConfigValidationError(f"invalid interval: {value!r}")
            seconds = sum(float(num) * _UNIT_SECONDS[unit] for num, unit in parts)
    if seconds <= 0:
        raise ConfigValidationError(f"interval must be positive: {value!r}")
    return seconds


def parse_hhmm(value: str) -> time:
    match = _HHMM.fullmatch(str(value).strip())
    if not match:
        raise ConfigValidationError(f"expected HH:MM, got {value!r}")
    return time(int(match.group(1)), int(match.group(2)))


def is_quiet_hours(now: datetime | time, start: str, end: str) -> bool:
    """Minute resolution; a window with start > end wraps midnight."""
    current = now.time() if isinstance(now, datetime) else now
    cur = current.hour * 60 + current.minute
    s_t, e_t = parse_hhmm(start), parse_hhmm(end)
    s = s_t.hour * 60 + s_t.minute
    e = e_t.hour * 60 + e_t.minute
    if s > e:
        return cur >= s or cur <= e
    return s <= cur <= e


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

_INTERVAL_FIELDS = (
    "health_check_interval",
    "diagnosis_interval",
    "maintenance_interval",
    "emergency_interval",
)
_POSITIVE_INT_FIELDS = ("max_concurrent_fixes", "max_files_per_fix", "snapshot_retention")
_THRESHOLD_FIELDS = ("urgency_threshold", "emergency_urgency_threshold")
_BOOL_FIELDS = (
    "emergency_response_enabled",
    "backup_before_fix",
    "test_after_fix",
    "default_auto_fix_on_uncertainty",
)
_TIMEOUT_FIELDS = ("oracle_timeout_seconds", "verify_timeout_seconds")


@dataclass
class OrchestratorConfig:
    health_check_interval: str = config.HEALTH_CHECK_INTERVAL
    diagnosis_interval: str = config.DIAGNOSIS_INTERVAL
    maintenance_interval: str = config.MAINTENANCE_INTERVAL
    emergency_interval: str = config.EMERGENCY_INTERVAL
    emergency_response_enabled: bool = config.EMERGENCY_RESPONSE_ENABLED
    max_concurrent_fixes: int = config.MAX_CONCURRENT_FIXES
    urgency_threshold: int = config.URGENCY_THRESHOLD
    emergency_urgency_threshold: int = config.EMERGENCY_URGENCY_THRESHOLD
    quiet_hours_start: str = config.QUIET_HOURS_START
    quiet_hours_end: str = config.QUIET_HOURS_END
    max_files_per_fix: int = config.MAX_FILES_PER_FIX
    backup_before_fix: bool = config.BACKUP_BEFORE_FIX
    test_after_fix: bool = config.TEST_AFTER_FIX
    default_auto_fix_on_uncertainty: bool = config.DEFAULT_AUTO_FIX_ON_UNCERTAINTY
    oracle_timeout_seconds: float = config.ORACLE_TIMEOUT
    verify_timeout_seconds: float = config.VERIFY_TIMEOUT
    snapshot_retention: int = config.SNAPSHOT_RETENTION

    def validate(self) -> None:
        """Raise ConfigValidationError on the first invalid field."""
        for name in _INTERVAL_FIELDS:
            parse_interval(getattr(self, name))
        for name in _POSITIVE_INT_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigValidationError(f"{name} must be an integer >= 1, got {value!r}")
        for name in _THRESHOLD_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 10:
                raise ConfigValidationError(f"{name} must be an integer in 1..10, got {value!r}")
        for name in _BOOL_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, bool):
                raise ConfigValidationError(f"{name} must be a boolean, got {value!r}")
        for name in _TIMEOUT_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise ConfigValidationError(f"{name} must be a positive number, got {value!r}")
        parse_hhmm(self.quiet_hours_start)
        parse_hhmm(self.quiet_hours_end)

    def merged(self, **partial: Any) -> "OrchestratorConfig":
        """Return a validated copy with ``partial`` applied; self is untouched."""
        known = {f.name for f in fields(self)}
        unknown = sorted(set(partial) - known)
        if unknown:
            raise ConfigValidationError(f"unknown config key(s): {', '.join(unknown)}")
        candidate = replace(self, **partial)
        candidate.validate()
        return candidate

    def interval_seconds(self, name: str) -> float:
        return parse_interval(getattr(self, name))

    def executor_limits(self) -> dict[str, Any]:
        return {
            "max_concurrent_fixes": self.max_concurrent_fixes,
            "max_files_per_fix": self.max_files_per_fix,
            "backup_before_fix": self.backup_before_fix,
            "test_after_fix": self.test_after_fix,
            "verify_timeout_seconds": self.verify_timeout_seconds,
        }

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_orchestrator_config(path: str | Path | None = None) -> OrchestratorConfig:
    """Environment defaults, overlaid with the YAML file when one is configured."""
    base = OrchestratorConfig()
    base.validate()
    source = path or config.CONFIG_FILE
    if not source:
        return base
    source = Path(source).expanduser()
    try:
        data = yaml.safe_load(source.read_text()) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigValidationError(f"cannot read config file {source}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigValidationError(f"config file {source} must contain a mapping")
    data = data.get("orchestrator", data)
    log.info("Loaded orchestrator overrides from %s", source)
    return base.merged(**data)


# ---------------------------------------------------------------------------
# Task table
# ---------------------------------------------------------------------------

class OrchestratorState(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"


@dataclass
class ScheduledTask:
    name: str
    schedule: str
    interval_seconds: float
    last_run: datetime | None = None
    next_run: datetime | None = None
    is_running: bool = False
    run_count: int = 0
    error_count: int = 0

    @property
    def success_rate(self) -> float:
        if self.run_count == 0:
            return 1.0
        return (self.run_count - self.error_count) / self.run_count

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "schedule": self.schedule,
            "interval_seconds": self.interval_seconds,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "is_running": self.is_running,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "success_rate": round(self.success_rate, 4),
        }


_TASK_INTERVAL_FIELD = {
    "health_check": "health_check_interval",
    "diagnosis": "diagnosis_interval",
    "maintenance": "maintenance_interval",
    "emergency": "emergency_interval",
}


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class Orchestrator:
    def __init__(
        self,
        monitor: HealthMonitor,
        oracle: Oracle,
        mutator: ArtifactMutator,
        config: OrchestratorConfig | None = None,
        clock: Clock | None = None,
        *,
        executor: RemediationExecutor | None = None,
        report_dir: Path | None = None,
    ):
        self.config = config or load_orchestrator_config()
        self.config.validate()
        self.monitor = monitor
        self.oracle = oracle
        self.mutator = mutator
        self.clock = clock or AsyncioClock()
        self.executor = executor or RemediationExecutor(
            monitor, mutator, **self.config.executor_limits(),
        )
        self.report_dir = report_dir
        self.state = OrchestratorState.STOPPED
        self.tasks: dict[str, ScheduledTask] = {}
        self._tickers: dict[str, Ticker] = {}
        self._analyses: deque[Analysis] = deque(maxlen=ANALYSES_CAPACITY)
        self._handled_issue_ids: deque[str] = deque(maxlen=ISSUES_CAPACITY)
        self._bodies: dict[str, Callable[[], Awaitable[None]]] = {
            "health_check": self._health_check,
            "diagnosis": self._diagnosis,
            "maintenance": self._maintenance,
            "emergency": self._emergency,
        }

    @property
    def is_active(self) -> bool:
        return self.state == OrchestratorState.ACTIVE

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _enabled_tasks(self) -> list[str]:
        names = ["health_check", "diagnosis", "maintenance"]
        if self.config.emergency_response_enabled:
            names.append("emergency")
        return names

    def start(self) -> None:
        if self.state in (OrchestratorState.ACTIVE, OrchestratorState.STARTING):
            log.info("Orchestrator already %s", self.state.value)
            return

        self.state = OrchestratorState.STARTING
        self.executor.update_limits(**self.config.executor_limits())
        if hasattr(self.oracle, "auto_fix_on_uncertainty"):
            self.oracle.auto_fix_on_uncertainty = self.config.default_auto_fix_on_uncertainty

        try:
            now = self.clock.now()
            for name in self._enabled_tasks():
                field_name = _TASK_INTERVAL_FIELD[name]
                seconds = self.config.interval_seconds(field_name)
                self.tasks[name] = ScheduledTask(
                    name=name,
                    schedule=str(getattr(self.config, field_name)),
                    interval_seconds=seconds,
                    next_run=now + timedelta(seconds=seconds),
                )
                self._tickers[name] = self.clock.every(seconds, self._tick(name), name=name)
        except Exception:
            log.error("Orchestrator failed to start", exc_info=True)
            self._teardown()
            raise

        self.monitor.start()
        self.state = OrchestratorState.ACTIVE
        log.info(
            "Orchestrator active with %d task(s): %s",
            len(self.tasks), ", ".join(f"{t.name}={t.schedule}" for t in self.tasks.values()),
        )

    def stop(self) -> None:
        if self.state == OrchestratorState.STOPPED:
            return
        self.state = OrchestratorState.STOPPING
        self._teardown()
        log.info("Orchestrator stopped")

    def _teardown(self) -> None:
        for ticker in self._tickers.values():
            ticker.cancel()
        self._tickers.clear()
        self.tasks.clear()
        self.executor.clear_active()
        self.monitor.stop()
        self.state = OrchestratorState.STOPPED

    def update_config(self, **partial: Any) -> OrchestratorConfig:
        new_config = self.config.merged(**partial)
        restart = self.state == OrchestratorState.ACTIVE
        self.config = new_config
        self.executor.update_limits(**new_config.executor_limits())
        log.info("Orchestrator configuration updated: %s", ", ".join(sorted(partial)))
        if restart:
            self.stop()
            self.start()
        return new_config

    # ------------------------------------------------------------------
    # Task execution
    # ------------------------------------------------------------------

    def _tick(self, name: str) -> Callable[[], Awaitable[None]]:
        async def _run() -> None:
            await self._run_task(name)
        return _run

    async def _run_task(self, name: str, task: ScheduledTask | None = None) -> bool:
        task = task or self.tasks.get(name)
        if task is None:
            return False
        if task.is_running:
            log.info("Task %s still running, skipping this trigger", name)
            return False

        task.is_running = True
        task.last_run = self.clock.now()
        try:
            await self._bodies[name]()
        except asyncio.CancelledError:
            raise
        except Exception:
            task.error_count += 1
            log.error("Task %s failed", name, exc_info=True)
        finally:
            task.is_running = False
            task.run_count += 1
            task.next_run = self.clock.now() + timedelta(seconds=task.interval_seconds)
        return True

    async def trigger_now(self, task_name: str) -> bool:
        """Run one task immediately. False if it is already running."""
        if task_name not in self._enabled_tasks():
            raise UnknownTaskError(task_name)
        task = self.tasks.get(task_name)
        if task is None:
            # not started: run against a throwaway table entry
            field_name = _TASK_INTERVAL_FIELD[task_name]
            task = ScheduledTask(
                name=task_name,
                schedule=str(getattr(self.config, field_name)),
                interval_seconds=self.config.interval_seconds(field_name),
            )
        log.info("Manual trigger: %s", task_name)
        return await self._run_task(task_name, task)

    # ------------------------------------------------------------------
    # Task bodies
    # ------------------------------------------------------------------

    def in_quiet_hours(self) -> bool:
        return is_quiet_hours(
            self.clock.now(), self.config.quiet_hours_start, self.config.quiet_hours_end,
        )

    async def _health_check(self) -> None:
        await self.monitor.sample_metrics()
        status = self.monitor.status()
        if status.status == "critical":
            log.warning("System status critical, handling critical issues now")
            await self._handle_critical_issues()

    async def _diagnosis(self) -> None:
        if self.in_quiet_hours():
            log.info("Quiet hours, skipping diagnosis")
            return
        analysis = await self.diagnose()
        if analysis.auto_fixable and analysis.urgency >= self.config.urgency_threshold:
            await self.executor.execute(analysis)

    async def _maintenance(self) -> None:
        failed: list[str] = []
        analysis = await self.diagnose()

        try:
            self._write_daily_report(analysis)
        except Exception:
            log.error("Daily report failed", exc_info=True)
            failed.append("daily_report")

        if (
            analysis.category == Category.MAINTENANCE.value
            and analysis.auto_fixable
            and not self.in_quiet_hours()
        ):
            await self.executor.execute(analysis)

        try:
            prune_reports(today=self.clock.now().date(), report_dir=self.report_dir)
        except OSError:
            log.error("Report pruning failed", exc_info=True)
            failed.append("prune_reports")

        try:
            await self.mutator.prune_snapshots(self.config.snapshot_retention)
        except Exception:
            log.error("Snapshot pruning failed", exc_info=True)
            failed.append("prune_snapshots")

        if failed:
            raise RuntimeError(f"maintenance step(s) failed: {', '.join(failed)}")

    async def _emergency(self) -> None:
        await self._handle_critical_issues()

    async def _handle_critical_issues(self) -> None:
        for issue in self.monitor.critical_issues():
            if issue.issue_id in self._handled_issue_ids:
                continue
            self._handled_issue_ids.append(issue.issue_id)
            log.warning("Emergency response for %s: %s", issue.component, issue.description)
            analysis = await self.diagnose(issue=issue)
            if analysis.auto_fixable and analysis.urgency >= self.config.emergency_urgency_threshold:
                await self.executor.execute(analysis)

    async def diagnose(self, issue: Issue | None = None) -> Analysis:
        """Ask the oracle; never raises, degrading to a fallback analysis."""
        context = build_context(self.monitor, issue=issue)
        try:
            analysis = await asyncio.wait_for(
                self.oracle.analyze(context),
                timeout=self.config.oracle_timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("Diagnosis failed, using fallback analysis: %s", str(exc) or type(exc).__name__, exc_info=True)
            analysis = fallback_analysis(
                exc,
                auto_fix_on_uncertainty=self.config.default_auto_fix_on_uncertainty,
                issue=issue,
            )
        self._analyses.append(analysis)
        log.info(
            "Analysis [%s/%s urgency=%d auto_fixable=%s]: %s",
            analysis.severity, analysis.category, analysis.urgency,
            analysis.auto_fixable, analysis.summary,
        )
        return analysis

    def _write_daily_report(self, analysis: Analysis) -> Path:
        now = self.clock.now()
        markdown = build_daily_report(
            generated_at=now,
            status=self.monitor.status(),
            analysis=analysis,
            tasks={name: task.as_dict() for name, task in self.tasks.items()},
            fixes_applied=len(self.executor.recent_fixes(24)),
            success_rate=self.executor.success_rate(24),
            unresolved_rollbacks=len(self.executor.unresolved_rollbacks),
        )
        return write_daily_report(markdown, day=now.date(), report_dir=self.report_dir)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def analysis_history(self) -> list[Analysis]:
        return list(self._analyses)

    def critical_analyses(self) -> list[Analysis]:
        critical = severity_rank("critical")
        return [a for a in self._analyses if severity_rank(a.severity) >= critical or a.urgency >= 8]

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "is_active": self.is_active,
            "tasks": {name: task.as_dict() for name, task in self.tasks.items()},
            "active_fixes": self.executor.active_fix_count,
            "config": self.config.as_dict(),
            "quiet_hours": self.in_quiet_hours(),
            "system_health": self.monitor.status().as_dict(),
            "recent_metrics": [m.as_dict() for m in self.monitor.all_metrics()[-10:]],
            "recent_issues": [i.as_dict() for i in self.monitor.recent_issues(hours=24)[-20:]],
            "recent_analyses": [a.as_dict() for a in list(self._analyses)[-5:]],
            "analysis_categories": summarize(self._analyses),
            "recent_fixes": [f.as_dict() for f in self.executor.recent_fixes(24)[-10:]],
            "fix_success_rate": round(self.executor.success_rate(24), 4),
            "unresolved_rollbacks": len(self.executor.unresolved_rollbacks),
        }
