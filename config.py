import json
import logging as _logging
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path.home() / ".sparkheal" / ".env")

_log = _logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_number(name: str, default, *, cast=int, minimum=None):
    """Read ``name`` as ``cast``; a malformed value logs and keeps ``default``."""
    raw = os.getenv(name, "").strip()
    value = default
    if raw:
        try:
            value = cast(raw)
        except ValueError:
            _log.warning("%s=%r is not a valid %s, using %s", name, raw, cast.__name__, default)
    if minimum is not None and value < minimum:
        value = minimum
    return value


def _env_list(name: str, default: list[str]) -> list[str]:
    """Comma-separated, or a JSON array when the value starts with ``[``."""
    raw = os.getenv(name, "").strip()
    if not raw:
        return list(default)
    if not raw.startswith("["):
        return [part.strip() for part in raw.split(",") if part.strip()]
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        data = None
    if not isinstance(data, list):
        _log.warning("%s is not a valid JSON list, using defaults", name)
        return list(default)
    return [str(item).strip() for item in data if str(item).strip()]


# Identity
SERVICE_NAME = os.getenv("SPARKHEAL_SERVICE_NAME", "sparkheal")
TIMEZONE = os.getenv("SPARKHEAL_TIMEZONE", "UTC")

# Paths
PROJECT_ROOT = Path(__file__).parent
WORKSPACE = Path(
    os.getenv("SPARKHEAL_WORKSPACE", str(Path.home() / ".sparkheal" / "workspace"))
).expanduser()
LOG_DIR = Path(
    os.getenv("SPARKHEAL_LOG_DIR", str(Path.home() / ".sparkheal" / "logs"))
).expanduser()
REPORT_DIR = WORKSPACE / "reports"
REPORT_RETENTION_DAYS = _env_number("SPARKHEAL_REPORT_RETENTION_DAYS", 30, minimum=1)
CONFIG_FILE = os.getenv("SPARKHEAL_CONFIG_FILE", "").strip()

# Probed application (the SaaS being kept healthy)
APP_BASE_URL = os.getenv("SPARKHEAL_APP_BASE_URL", "http://localhost:5000").rstrip("/")
PROBE_ENDPOINTS = _env_list(
    "SPARKHEAL_PROBE_ENDPOINTS",
    ["/api/auth/me", "/api/dashboard/stats", "/api/content-ideas"],
)
PROBE_TIMEOUT = _env_number("SPARKHEAL_PROBE_TIMEOUT", 10.0, cast=float)
STORAGE_DATABASE_PATH = Path(
    os.getenv("SPARKHEAL_STORAGE_DATABASE", str(WORKSPACE / "store" / "app.db"))
).expanduser()
STORAGE_PROBE_QUERY = os.getenv("SPARKHEAL_STORAGE_PROBE_QUERY", "SELECT 1")
ACTIVE_USERS_QUERY = os.getenv("SPARKHEAL_ACTIVE_USERS_QUERY", "SELECT COUNT(*) FROM users")

# Diagnosis service
ORACLE_BACKEND = os.getenv("SPARKHEAL_ORACLE_BACKEND", "claude").strip().lower()
CLAUDE_MODEL = os.getenv("SPARKHEAL_CLAUDE_MODEL", "sonnet").strip()
ORACLE_API_KEY = os.getenv("SPARKHEAL_ORACLE_API_KEY", os.getenv("OPENAI_API_KEY", ""))
ORACLE_BASE_URL = os.getenv("SPARKHEAL_ORACLE_BASE_URL", "https://api.openai.com/v1").rstrip("/")
ORACLE_MODEL = os.getenv("SPARKHEAL_ORACLE_MODEL", "gpt-4o").strip()

# Remediation backend
ARTIFACT_BACKEND = os.getenv("SPARKHEAL_ARTIFACT_BACKEND", "filesystem").strip().lower()
ARTIFACT_ROOT = Path(
    os.getenv("SPARKHEAL_ARTIFACT_ROOT", str(WORKSPACE / "app"))
).expanduser()
SNAPSHOT_ROOTS = _env_list("SPARKHEAL_SNAPSHOT_ROOTS", ["server", "client", "shared"])
BACKUP_DIR = Path(
    os.getenv("SPARKHEAL_BACKUP_DIR", str(WORKSPACE / "backups"))
).expanduser()
MAINTENANCE_LOG_MAX_AGE_DAYS = _env_number("SPARKHEAL_MAINTENANCE_LOG_MAX_AGE_DAYS", 14, minimum=1)

# Orchestrator defaults (overridable at runtime via Orchestrator.update_config)
HEALTH_CHECK_INTERVAL = os.getenv("SPARKHEAL_HEALTH_CHECK_INTERVAL", "5m")
DIAGNOSIS_INTERVAL = os.getenv("SPARKHEAL_DIAGNOSIS_INTERVAL", "15m")
MAINTENANCE_INTERVAL = os.getenv("SPARKHEAL_MAINTENANCE_INTERVAL", "24h")
EMERGENCY_INTERVAL = os.getenv("SPARKHEAL_EMERGENCY_INTERVAL", "2m")
EMERGENCY_RESPONSE_ENABLED = _env_bool("SPARKHEAL_EMERGENCY_RESPONSE_ENABLED", True)
MAX_CONCURRENT_FIXES = _env_number("SPARKHEAL_MAX_CONCURRENT_FIXES", 3, minimum=1)
URGENCY_THRESHOLD = _env_number("SPARKHEAL_URGENCY_THRESHOLD", 7, minimum=1)
EMERGENCY_URGENCY_THRESHOLD = _env_number("SPARKHEAL_EMERGENCY_URGENCY_THRESHOLD", 8, minimum=1)
QUIET_HOURS_START = os.getenv("SPARKHEAL_QUIET_HOURS_START", "23:00")
QUIET_HOURS_END = os.getenv("SPARKHEAL_QUIET_HOURS_END", "07:00")
MAX_FILES_PER_FIX = _env_number("SPARKHEAL_MAX_FILES_PER_FIX", 5, minimum=1)
BACKUP_BEFORE_FIX = _env_bool("SPARKHEAL_BACKUP_BEFORE_FIX", True)
TEST_AFTER_FIX = _env_bool("SPARKHEAL_TEST_AFTER_FIX", True)
# Remediate when the diagnosis is uncertain (oracle down, autoFixable missing).
DEFAULT_AUTO_FIX_ON_UNCERTAINTY = _env_bool("SPARKHEAL_DEFAULT_AUTO_FIX_ON_UNCERTAINTY", True)
ORACLE_TIMEOUT = _env_number("SPARKHEAL_ORACLE_TIMEOUT", 60.0, cast=float)
VERIFY_TIMEOUT = _env_number("SPARKHEAL_VERIFY_TIMEOUT", 30.0, cast=float)
SNAPSHOT_RETENTION = _env_number("SPARKHEAL_SNAPSHOT_RETENTION", 20, minimum=1)

if ORACLE_BACKEND == "http" and not ORACLE_API_KEY:
    _log.warning("SPARKHEAL_ORACLE_API_KEY is empty — diagnosis will degrade to fallback analyses")
