"""Daily maintenance report and retention helpers.

Reports are markdown files named ``YYYY-MM-DD.md`` with the structured data
embedded at the end as ``<!-- HEALTH_DATA: {...} -->`` so later tooling can
read them back without parsing the prose.
"""
from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any

import config
from monitoring._base import SystemStatus, _status_emoji
from utils import atomic_write, utc_now

log = logging.getLogger(__name__)

_DATA_MARKER = "<!-- HEALTH_DATA:"


def build_daily_report(
    *,
    generated_at: datetime,
    status: SystemStatus,
    analysis,
    tasks: dict[str, dict[str, Any]],
    fixes_applied: int,
    success_rate: float,
    unresolved_rollbacks: int = 0,
) -> str:
    lines = [
        f"# 📊 Daily System Report — {generated_at.strftime('%Y-%m-%d %H:%M %Z')}",
        "",
        f"{_status_emoji(status.status)} System status: **{status.status}**",
        f"- Critical issues (1h): {status.critical_issues}",
        f"- Recent issues (1h): {status.recent_issues}",
        f"- Uptime: {'yes' if status.uptime else 'no'}",
        "",
        "## Analysis",
        f"- Summary: {analysis.summary}",
        f"- Severity: {analysis.severity} / category: {analysis.category} / urgency: {analysis.urgency}",
        f"- Source: {analysis.source}",
    ]
    if analysis.recommended_actions:
        lines.append("")
        lines.append("### Recommended actions")
        lines.extend(f"- {action}" for action in analysis.recommended_actions)
    lines.append("")

    lines.append("## Tasks")
    lines.append("| Task | Runs | Errors | Success rate |")
    lines.append("|------|------|--------|--------------|")
    for name, row in tasks.items():
        lines.append(
            f"| {name} | {row.get('run_count', 0)} | {row.get('error_count', 0)} "
            f"| {float(row.get('success_rate', 1.0)) * 100:.1f}% |"
        )
    lines.append("")

    lines.append(f"## Fixes: {fixes_applied} in the last 24h, success rate {success_rate * 100:.1f}%")
    if unresolved_rollbacks:
        lines.append(f"⚠️ {unresolved_rollbacks} unresolved rollback(s) need attention")
    lines.append("")

    payload = {
        "generated_at": utc_now().isoformat(),
        "status": status.as_dict(),
        "analysis": analysis.as_dict(),
        "tasks": tasks,
        "fixes_applied": fixes_applied,
        "success_rate": round(success_rate, 4),
        "unresolved_rollbacks": unresolved_rollbacks,
    }
    lines.append(f"{_DATA_MARKER} {json.dumps(payload, ensure_ascii=True, default=str)} -->")
    return "\n".join(lines).rstrip() + "\n"


def write_daily_report(markdown: str, *, day: date, report_dir: Path | None = None) -> Path:
    report_dir = Path(report_dir or config.REPORT_DIR)
    path = report_dir / f"{day.isoformat()}.md"
    atomic_write(path, markdown)
    log.info("Wrote daily report %s", path)
    return path


def extract_report_data(report_text: str) -> dict[str, Any]:
    idx = report_text.rfind(_DATA_MARKER)
    if idx < 0:
        return {}
    end = report_text.find("-->", idx)
    if end < 0:
        return {}
    raw = report_text[idx + len(_DATA_MARKER):end].strip()
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return payload if isinstance(payload, dict) else {}


def prune_reports(
    *,
    today: date,
    report_dir: Path | None = None,
    retention_days: int | None = None,
) -> int:
    report_dir = Path(report_dir or config.REPORT_DIR)
    if not report_dir.is_dir():
        return 0
    cutoff = today - timedelta(days=max(1, retention_days or config.REPORT_RETENTION_DAYS))
    removed = 0
    for path in report_dir.glob("????-??-??.md"):
        try:
            day = date.fromisoformat(path.stem)
        except ValueError:
            continue
        if day < cutoff:
            path.unlink(missing_ok=True)
            removed += 1
    if removed:
        log.info("Pruned %d daily report(s) older than %s", removed, cutoff)
    return removed
