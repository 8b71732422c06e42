import functools
import json
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def atomic_write(path: str | Path, payload: str | bytes) -> None:
    """Atomically write text/bytes by writing a sibling temp file then rename."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)

    tmp_name = f".{target.name}.{os.getpid()}.tmp"
    tmp_path = target.with_name(tmp_name)

    if isinstance(payload, bytes):
        tmp_path.write_bytes(payload)
    else:
        tmp_path.write_text(payload, encoding="utf-8")

    os.replace(tmp_path, target)


def atomic_write_json(path: str | Path, data: Any, *, indent: int = 2) -> None:
    atomic_write(path, json.dumps(data, indent=indent, default=str))


def load_json(path: str | Path, default: Any = None) -> Any:
    target = Path(path)
    if not target.exists():
        return {} if default is None else default
    try:
        return json.loads(target.read_text())
    except (json.JSONDecodeError, OSError):
        return {} if default is None else default


# ---------------------------------------------------------------------------
# Latency tracking utilities
# ---------------------------------------------------------------------------

class LatencyTracker:
    """``async with`` block timer; sets ``elapsed_ms`` and logs it to ``latency.<service>``."""

    __slots__ = ("service", "operation", "elapsed_ms", "_start")

    def __init__(self, service: str, operation: str):
        self.service = service
        self.operation = operation
        self.elapsed_ms: float = 0.0
        self._start: float = 0.0

    async def __aenter__(self) -> "LatencyTracker":
        self._start = time.monotonic()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.elapsed_ms = _log_latency(self.service, self.operation, self._start)


def _log_latency(service: str, operation: str, start: float) -> float:
    elapsed = (time.monotonic() - start) * 1000
    logging.getLogger(f"latency.{service}").debug("%s.%s latency=%.1fms", service, operation, elapsed)
    return elapsed


def track_latency(service: str, operation: str | None = None):
    """Decorate a coroutine function so each call logs its latency."""

    def decorator(fn: Any) -> Any:
        op = operation or fn.__name__

        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.monotonic()
            try:
                return await fn(*args, **kwargs)
            finally:
                _log_latency(service, op, start)

        return wrapper

    return decorator
