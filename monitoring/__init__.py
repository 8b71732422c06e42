"""Monitoring package — health sampling, reports, and remediation.

``monitoring.remediation`` is not re-exported here: it depends on
``diagnosis``, which itself imports ``monitoring._base``.
"""

from monitoring._base import (  # noqa: F401
    ANALYSES_CAPACITY,
    FIXES_CAPACITY,
    ISSUES_CAPACITY,
    METRICS_CAPACITY,
    FixRecord,
    HealthMetric,
    Issue,
    SystemStatus,
    severity_rank,
)

from monitoring.health import HealthMonitor  # noqa: F401

from monitoring.maintenance import (  # noqa: F401
    build_daily_report,
    extract_report_data,
    prune_reports,
    write_daily_report,
)

from monitoring.probes import ApplicationProbe, Probe, ProbeFailure  # noqa: F401

__all__ = [
    "ANALYSES_CAPACITY",
    "ApplicationProbe",
    "FIXES_CAPACITY",
    "FixRecord",
    "HealthMetric",
    "HealthMonitor",
    "ISSUES_CAPACITY",
    "Issue",
    "METRICS_CAPACITY",
    "Probe",
    "ProbeFailure",
    "SystemStatus",
    "build_daily_report",
    "extract_report_data",
    "prune_reports",
    "severity_rank",
    "write_daily_report",
]
