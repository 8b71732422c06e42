"""Read-only probes against the running application.

The HealthMonitor only talks to the ``Probe`` protocol below, so tests and
alternative deployments can substitute their own implementation.
``ApplicationProbe`` is the production one: httpx for the capability
endpoints, a sqlite round trip for storage, psutil for process memory.
"""
from __future__ import annotations

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Protocol

import httpx
import psutil

import config
from utils import LatencyTracker

log = logging.getLogger(__name__)


class ProbeFailure(Exception):
    """A probe could not reach the component it checks."""


class Probe(Protocol):
    async def endpoint_statuses(self) -> list[tuple[str, int]]:
        """Return ``(endpoint, http_status)`` per capability endpoint; raise on transport failure."""
        ...

    async def storage_latency(self) -> float:
        """Return one storage round trip in milliseconds; raise on connection failure."""
        ...

    async def active_users(self) -> int:
        ...

    def memory_usage_mb(self) -> float:
        ...


class ApplicationProbe:
    def __init__(
        self,
        base_url: str | None = None,
        endpoints: list[str] | None = None,
        *,
        database_path: str | Path | None = None,
        storage_query: str | None = None,
        active_users_query: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or config.APP_BASE_URL).rstrip("/")
        self.endpoints = list(endpoints if endpoints is not None else config.PROBE_ENDPOINTS)
        self.database_path = Path(database_path or config.STORAGE_DATABASE_PATH)
        self.storage_query = storage_query or config.STORAGE_PROBE_QUERY
        self.active_users_query = active_users_query or config.ACTIVE_USERS_QUERY
        self.timeout = float(timeout if timeout is not None else config.PROBE_TIMEOUT)
        self._transport = transport
        self._process = psutil.Process()

    async def endpoint_statuses(self) -> list[tuple[str, int]]:
        results: list[tuple[str, int]] = []
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                for endpoint in self.endpoints:
                    resp = await client.get(
                        endpoint,
                        headers={"Content-Type": "application/json"},
                    )
                    results.append((endpoint, resp.status_code))
        except httpx.HTTPError as exc:
            raise ProbeFailure(f"{type(exc).__name__}: {exc}") from exc
        return results

    async def storage_latency(self) -> float:
        async with LatencyTracker("storage", "round_trip") as lt:
            await asyncio.to_thread(self._query_one, self.storage_query)
        return lt.elapsed_ms

    async def active_users(self) -> int:
        try:
            row = await asyncio.to_thread(self._query_one, self.active_users_query)
        except ProbeFailure:
            log.debug("Active user count unavailable", exc_info=True)
            return 0
        try:
            return int(row[0]) if row else 0
        except (TypeError, ValueError):
            return 0

    def memory_usage_mb(self) -> float:
        return self._process.memory_info().rss / 1024 / 1024

    def _query_one(self, sql: str) -> tuple | None:
        # mode=rw: a missing database is a failure, not a fresh empty file
        uri = f"file:{self.database_path}?mode=rw"
        conn = None
        try:
            conn = sqlite3.connect(uri, uri=True, timeout=self.timeout)
            return conn.execute(sql).fetchone()
        except sqlite3.Error as exc:
            raise ProbeFailure(f"storage query failed: {exc}") from exc
        finally:
            if conn is not None:
                conn.close()
