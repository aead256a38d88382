"""Replica liveness polling.

A replica is *responsive* when its container is running and GitHub reports the
runner online. Each replica gets ``health_grace`` seconds, counted from the
last responsive check or from when it was first tracked, before it is
reported as expired.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Iterator

import structlog

from src.common.config import PoolConfig
from src.common.errors import RegistrationError
from src.common.logging import get_json_file_logger
from src.pool.registration import RegistrationClient
from src.pool.runtime import Runtime


@dataclass(frozen=True)
class HealthStatus:
    replica_id: str
    container_running: bool
    online: bool | None          # None when the hosting API could not be reached
    busy: bool
    checked_at: float
    unresponsive_for: float = 0.0
    expired: bool = False

    @property
    def responsive(self) -> bool:
        return self.container_running and self.online is not False


class HealthMonitor:
    """Polls tracked replicas; one ``poll()`` call is one finite cycle.

    Usage::

        monitor.track("runner-pool-3f9a1c2e")
        for replica_id, status in monitor.poll():
            ...
    """

    def __init__(self, runtime: Runtime, registration: RegistrationClient,
                 config: PoolConfig) -> None:
        self._runtime = runtime
        self._registration = registration
        self._config = config
        self._lock = threading.Lock()
        self._since: dict[str, float] = {}
        self._last_seen: dict[str, float] = {}
        self._console = structlog.get_logger("health")
        self._file_log = get_json_file_logger(config.log_dir / "health.jsonl",
                                              pool=config.name_prefix)

    def track(self, replica_id: str, since: float | None = None) -> None:
        with self._lock:
            self._since.setdefault(replica_id, time.time() if since is None else since)

    def forget(self, replica_id: str) -> None:
        with self._lock:
            self._since.pop(replica_id, None)
            self._last_seen.pop(replica_id, None)

    @property
    def tracked(self) -> list[str]:
        with self._lock:
            return list(self._since)

    def _runners(self) -> dict[str, dict] | None:
        try:
            return self._registration.list_runners()
        except RegistrationError as exc:
            self._console.warning("health_runner_list_failed", error=str(exc))
            return None

    def _status(self, replica_id: str, running: bool, runners: dict | None,
                now: float) -> HealthStatus:
        runner = runners.get(replica_id) if runners is not None else None
        online = None if runners is None else (
            runner is not None and runner.get("status") == "online"
        )
        busy = bool(runner and runner.get("busy"))
        responsive = running and online is not False

        with self._lock:
            if responsive:
                self._last_seen[replica_id] = now
            since = self._last_seen.get(replica_id, self._since.get(replica_id, now))

        unresponsive_for = 0.0 if responsive else max(0.0, now - since)
        status = HealthStatus(
            replica_id=replica_id,
            container_running=running,
            online=online,
            busy=busy,
            checked_at=now,
            unresponsive_for=round(unresponsive_for, 1),
            expired=unresponsive_for > self._config.health_grace,
        )

        event = {
            "replica_id": replica_id,
            "running": running,
            "online": online,
            "busy": busy,
            "unresponsive_for": status.unresponsive_for,
        }
        if status.expired:
            self._console.warning("replica_expired", **event)
            self._file_log.warning("replica_expired", **event)
        else:
            self._console.debug("healthcheck", **event)
            self._file_log.info("healthcheck", **event)
        return status

    def poll(self) -> Iterator[tuple[str, HealthStatus]]:
        """Yield ``(replica_id, HealthStatus)`` for every tracked replica.

        Container probes run in parallel, each bounded by ``health_timeout``;
        a probe that does not answer in time counts as not running.
        """
        targets = self.tracked
        if not targets:
            return

        runners = self._runners()
        now = time.time()
        pool = ThreadPoolExecutor(
            max_workers=min(len(targets), self._config.max_workers),
            thread_name_prefix="health",
        )
        try:
            futures = {pool.submit(self._runtime.is_running, rid): rid for rid in targets}
            pending = dict(futures)
            try:
                for future in as_completed(futures, timeout=self._config.health_timeout):
                    rid = pending.pop(future)
                    yield rid, self._status(rid, self._probe_result(rid, future), runners, now)
            except FuturesTimeout:
                for future, rid in pending.items():
                    if future.done():
                        running = self._probe_result(rid, future)
                    else:
                        self._console.warning("health_probe_timeout", replica_id=rid)
                        running = False
                    yield rid, self._status(rid, running, runners, now)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _probe_result(self, replica_id: str, future) -> bool:
        try:
            return bool(future.result())
        except Exception as exc:
            self._console.warning("health_probe_failed", replica_id=replica_id, error=str(exc))
            return False
