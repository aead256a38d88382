"""Pool manager: reconciles the replica set against a desired count.

Architecture:
  1. Refresh replica states from one health poll (Registered -> Idle/Busy,
     expired replicas torn down or drained)
  2. Terminate draining replicas that went idle or ran out of drain time
  3. Scale:
     a. up   -> issue tokens + launch containers in parallel, all-or-nothing
     b. down -> remove non-busy replicas oldest first; busy ones only drain
  4. Retry the pass with exponential backoff until the active count matches

PoolState is only ever replaced inside ``self._lock``. Every phase works on a
staged copy and commits what the engine actually did. A failed scale-up tears
its launches down again, so the pool is left unchanged.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable

import structlog

from src.common.config import PoolConfig, ProfileConfig
from src.common.errors import (
    OrchestrationError,
    RegistrationError,
    RunnerPoolError,
    ScaleError,
)
from src.common.logging import get_json_file_logger
from src.pool.health import HealthMonitor
from src.pool.registration import RegistrationClient
from src.pool.replica import (
    SCALE_DOWN_ORDER,
    DrainLedger,
    LifecycleState,
    PoolState,
    ReplicaDescriptor,
    new_replica_id,
)
from src.pool.runtime import Runtime

S = LifecycleState

# Engine states of containers that will never run again.
_DEAD_CONTAINER_STATES = ("exited", "dead", "removing")

Transition = tuple[str, LifecycleState | None, LifecycleState]


class PoolManager:
    """Owns PoolState for one pool (one name prefix)."""

    def __init__(
        self,
        config: PoolConfig,
        runtime: Runtime,
        registration: RegistrationClient,
        monitor: HealthMonitor | None = None,
        *,
        history: Callable[[dict], object] | None = None,
        stop: threading.Event | None = None,
    ) -> None:
        self._config = config
        self._runtime = runtime
        self._registration = registration
        self._monitor = monitor or HealthMonitor(runtime, registration, config)
        self._history = history
        self._state = PoolState()
        self._profiles = ProfileConfig()
        self._lock = threading.Lock()
        self._stop = stop if stop is not None else threading.Event()
        self.transitions: deque[Transition] = deque(maxlen=1000)
        self._log = structlog.get_logger("pool_manager")
        self._audit = get_json_file_logger(config.log_dir / "reconcile.jsonl")
        self._drains = DrainLedger(config.log_dir / "draining.json")

    # ── read side ───────────────────────────────────────────────────────────

    @property
    def state(self) -> PoolState:
        """Snapshot of the committed pool state."""
        return self._state.copy()

    @property
    def profiles(self) -> ProfileConfig:
        return self._profiles

    @property
    def monitor(self) -> HealthMonitor:
        return self._monitor

    # ── reconciliation ──────────────────────────────────────────────────────

    def reconcile(self, desired_count: int,
                  profile_set: ProfileConfig | None = None) -> PoolState:
        """Bring the number of active replicas to *desired_count*.

        Raises ScaleError when another reconciliation is running, when the
        count is negative, or when the retry budget runs out.
        """
        if desired_count < 0:
            raise ScaleError(f"Desired replica count must be >= 0, got {desired_count}")
        if not self._lock.acquire(blocking=False):
            raise ScaleError(
                f"A reconciliation is already running for pool {self._config.name_prefix}"
            )
        try:
            if profile_set is not None:
                self._profiles = profile_set
            return self._reconcile_locked(desired_count)
        finally:
            self._lock.release()

    def _reconcile_locked(self, desired: int) -> PoolState:
        attempts = self._config.max_attempts
        started = time.time()
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                self._pass(desired)
            except (OrchestrationError, RegistrationError) as exc:
                last_error = exc
                self._log.warning(
                    "reconcile_pass_failed",
                    attempt=attempt,
                    attempts=attempts,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            else:
                active = self._state.active_count
                if active == desired:
                    self._record("converged", desired, attempt, started)
                    return self.state
                last_error = ScaleError(f"{active} active replicas after pass, want {desired}")

            if attempt < attempts:
                delay = min(self._config.backoff_base * 2 ** (attempt - 1),
                            self._config.backoff_cap)
                if self._stop.wait(delay):
                    self._record("cancelled", desired, attempt, started, last_error)
                    raise ScaleError("Reconciliation cancelled") from last_error

        self._record("failed", desired, attempts, started, last_error)
        raise ScaleError(
            f"Could not reach {desired} replicas after {attempts} attempts: {last_error}"
        ) from last_error

    def _pass(self, desired: int) -> None:
        self._state.desired_count = desired
        observed = self._health_phase()
        self._drain_phase(observed, self._config.drain_timeout)

        delta = desired - self._state.active_count
        if delta > 0:
            self._scale_up(delta)
        elif delta < 0:
            self._scale_down(-delta)

    # ── health + draining ───────────────────────────────────────────────────

    def _health_phase(self) -> dict[str, bool]:
        """Apply one health poll; returns replica id -> observed busy flag."""
        staged = self._state.copy()
        transitions: list[Transition] = []
        observed: dict[str, bool] = {}
        doomed: list[ReplicaDescriptor] = []

        for rid, status in self._monitor.poll():
            replica = staged.replicas.get(rid)
            if replica is None:
                continue
            state = replica.lifecycle_state

            if status.expired:
                if state == S.BUSY:
                    self._transition(replica, S.DRAINING, transitions)
                    replica.drain_started_at = time.time()
                elif state != S.DRAINING:
                    doomed.append(replica)
                else:
                    observed[rid] = False
                continue

            if not status.container_running or not status.online:
                continue
            observed[rid] = status.busy
            if state == S.DRAINING:
                continue
            target = S.BUSY if status.busy else S.IDLE
            if state != target:
                self._transition(replica, target, transitions)
                replica.registration_token = ""

        if doomed:
            self._log.warning("replicas_unresponsive", replica_ids=[r.id for r in doomed])
            self._teardown_all(staged, doomed, transitions, reason="unresponsive")
        else:
            self._commit(staged, transitions)
        return observed

    def _drain_phase(self, observed: dict[str, bool], drain_timeout: float) -> None:
        staged = self._state.copy()
        now = time.time()
        finished = []
        for replica in staged.in_state(S.DRAINING):
            # Unknown activity is treated as still busy.
            busy = observed.get(replica.id, True)
            started = replica.drain_started_at or now
            if not busy or now - started >= drain_timeout:
                finished.append(replica)
        if finished:
            self._teardown_all(staged, finished, [], reason="drained")

    # ── scale up ────────────────────────────────────────────────────────────

    def _label_set(self) -> tuple[str, ...]:
        labels = tuple(self._config.labels)
        if self._profiles.enhanced and "enhanced" not in labels:
            labels += ("enhanced",)
        return labels

    def _runner_env(self, replica: ReplicaDescriptor, token: str) -> dict[str, str]:
        return {
            "RUNNER_URL": self._config.scope_url,
            "RUNNER_TOKEN": token,
            "RUNNER_NAME": replica.id,
            "RUNNER_LABELS": ",".join(replica.desired_label_set),
            "RUNNER_GROUP": self._config.runner_group,
            "RUNNER_DISABLE_UPDATE": "1" if self._config.disable_auto_update else "",
        }

    def _provision(self, replica: ReplicaDescriptor) -> str:
        token = self._registration.issue_token(replica.id)
        replica.registration_token = token
        return self._runtime.launch(replica, replica.image, self._runner_env(replica, token))

    def _scale_up(self, count: int) -> None:
        staged = self._state.copy()
        transitions: list[Transition] = []
        image = self._config.image_for(self._profiles)
        batch = [
            ReplicaDescriptor(
                id=new_replica_id(self._config.name_prefix),
                desired_label_set=self._label_set(),
                image=image,
            )
            for _ in range(count)
        ]
        for replica in batch:
            staged.replicas[replica.id] = replica
            transitions.append((replica.id, None, S.PROVISIONING))

        self._log.info("scale_up", count=count, image=image)
        failures: list[tuple[ReplicaDescriptor, Exception]] = []
        try:
            with ThreadPoolExecutor(
                max_workers=min(count, self._config.max_workers),
                thread_name_prefix="provision",
            ) as pool:
                futures = {pool.submit(self._provision, r): r for r in batch}
                _, pending = wait(futures, timeout=self._config.launch_timeout)
                for future, replica in futures.items():
                    if future in pending:
                        future.cancel()
                        failures.append((replica, OrchestrationError(
                            f"Launching {replica.id} timed out after {self._config.launch_timeout}s"
                        )))
                        continue
                    exc = future.exception()
                    if exc is None:
                        replica.container_id = future.result()
                    elif isinstance(exc, RunnerPoolError):
                        failures.append((replica, exc))
                    else:
                        raise exc
        except BaseException:
            # Interrupted mid-batch: nothing from this batch may outlive the pass.
            self._rollback(batch, failures)
            raise

        if failures:
            self._rollback(batch, failures)
            raise failures[0][1]

        for replica in batch:
            self._transition(replica, S.REGISTERED, transitions)
            self._monitor.track(replica.id, replica.created_at)
        self._commit(staged, transitions)

    def _rollback(self, batch: list[ReplicaDescriptor],
                  failures: list[tuple[ReplicaDescriptor, Exception]]) -> None:
        self._log.warning(
            "scale_up_rolled_back",
            failed=len(failures),
            batch=len(batch),
            errors=[f"{r.id}: {exc}" for r, exc in failures],
        )
        for replica in batch:
            try:
                self._runtime.terminate(replica.id)
            except OrchestrationError as exc:
                self._log.error("rollback_terminate_failed", replica_id=replica.id, error=str(exc))
            self._registration.revoke_token(replica.id)

    # ── scale down ──────────────────────────────────────────────────────────

    def _scale_down(self, count: int) -> None:
        staged = self._state.copy()
        transitions: list[Transition] = []
        order = {state: i for i, state in enumerate(SCALE_DOWN_ORDER)}
        candidates = sorted(
            (r for r in staged.replicas.values() if r.lifecycle_state.removable),
            key=lambda r: (order[r.lifecycle_state], r.created_at),
        )
        victims = candidates[:count]

        shortfall = count - len(victims)
        if shortfall > 0:
            busy = sorted(staged.in_state(S.BUSY), key=lambda r: r.created_at)[:shortfall]
            now = time.time()
            for replica in busy:
                self._transition(replica, S.DRAINING, transitions)
                replica.drain_started_at = now
            if busy:
                self._log.info("replicas_draining", replica_ids=[r.id for r in busy])

        self._log.info("scale_down", count=count, terminating=len(victims))
        self._teardown_all(staged, victims, transitions, reason="scale_down")

    # ── teardown ────────────────────────────────────────────────────────────

    def _teardown(self, replica_id: str) -> None:
        self._runtime.terminate(replica_id)
        self._registration.revoke_token(replica_id)

    def _teardown_all(self, staged: PoolState, replicas: list[ReplicaDescriptor],
                      transitions: list[Transition], *, reason: str) -> None:
        """Terminate *replicas* in parallel and commit *staged*.

        Replicas whose termination failed stay in the pool; the first failure
        is re-raised after the commit.
        """
        for replica in replicas:
            if replica.lifecycle_state == S.BUSY:
                raise ScaleError(f"Refusing to terminate busy replica {replica.id}")

        errors: list[OrchestrationError] = []
        if replicas:
            with ThreadPoolExecutor(
                max_workers=min(len(replicas), self._config.max_workers),
                thread_name_prefix="teardown",
            ) as pool:
                futures = {pool.submit(self._teardown, r.id): r for r in replicas}
                for future, replica in futures.items():
                    try:
                        future.result()
                    except OrchestrationError as exc:
                        errors.append(exc)
                        self._log.error("terminate_failed", replica_id=replica.id, error=str(exc))
                        continue
                    self._transition(replica, S.TERMINATED, transitions)
                    del staged.replicas[replica.id]
                    self._monitor.forget(replica.id)
                    self._log.info("replica_terminated", replica_id=replica.id, reason=reason)

        self._commit(staged, transitions)
        if errors:
            raise errors[0]

    # ── state plumbing ──────────────────────────────────────────────────────

    def _transition(self, replica: ReplicaDescriptor, target: LifecycleState,
                    transitions: list[Transition]) -> None:
        transitions.append((replica.id, replica.lifecycle_state, target))
        replica.lifecycle_state = target

    def _commit(self, staged: PoolState, transitions: list[Transition]) -> None:
        self._state = staged
        try:
            self._drains.save(staged)
        except OSError as exc:
            self._log.warning("drain_ledger_write_failed", path=str(self._drains.path), error=str(exc))
        for rid, before, after in transitions:
            self._log.debug(
                "replica_transition",
                replica_id=rid,
                before=before.value if before else None,
                after=after.value,
            )
        self.transitions.extend(transitions)

    def _record(self, outcome: str, desired: int, attempts: int, started: float,
                error: Exception | None = None) -> None:
        record = {
            "pool": self._config.name_prefix,
            "outcome": outcome,
            "desired_count": desired,
            "active_count": self._state.active_count,
            "attempts": attempts,
            "profiles": str(self._profiles),
            "states": self._state.counts(),
            "replicas": self._state.to_dict()["replicas"],
            "duration_seconds": round(time.time() - started, 2),
            "timestamp_unix": time.time(),
            "error": str(error) if error else "",
        }
        if outcome == "converged":
            self._log.info("reconciled", desired=desired, attempts=attempts)
            self._audit.info("reconcile", **record)
        else:
            self._log.error("reconcile_" + outcome, desired=desired, error=record["error"])
            self._audit.error("reconcile", **record)

        if self._history is not None:
            try:
                self._history(record)
            except Exception as exc:
                self._log.warning("history_store_failed", error=str(exc))

    # ── lifecycle helpers ───────────────────────────────────────────────────

    def sync(self) -> PoolState:
        """Rebuild PoolState from the engine's container records.

        Replicas listed in the drain ledger come back as Draining with their
        original drain start, so a later pass still terminates them.
        """
        with self._lock:
            records = self._runtime.list_replicas()
            try:
                draining = self._drains.load()
            except (OSError, ValueError) as exc:
                self._log.warning("drain_ledger_unreadable", path=str(self._drains.path),
                                  error=str(exc))
                draining = {}
            staged = self._state.copy()
            transitions: list[Transition] = []
            seen = set()
            dead = []

            for record in records:
                if record.state in _DEAD_CONTAINER_STATES:
                    dead.append(record.replica_id)
                    continue
                seen.add(record.replica_id)
                if record.replica_id in staged.replicas:
                    continue
                if record.replica_id in draining:
                    state = S.DRAINING
                else:
                    state = S.REGISTERED if record.running else S.PROVISIONING
                replica = ReplicaDescriptor(
                    id=record.replica_id,
                    desired_label_set=record.labels or tuple(self._config.labels),
                    lifecycle_state=state,
                    drain_started_at=draining.get(record.replica_id),
                    container_id=record.container_id,
                    image=record.image,
                )
                staged.replicas[replica.id] = replica
                transitions.append((replica.id, None, state))
                self._monitor.track(replica.id)

            for rid in [rid for rid in staged.replicas if rid not in seen]:
                transitions.append((rid, staged.replicas[rid].lifecycle_state, S.TERMINATED))
                del staged.replicas[rid]
                self._monitor.forget(rid)

            if any(r.image == self._config.enhanced_image for r in staged.replicas.values()):
                self._profiles = ProfileConfig(
                    cache=self._profiles.cache,
                    monitoring=self._profiles.monitoring,
                    enhanced=True,
                )
            if not staged.desired_count:
                staged.desired_count = staged.active_count
            self._commit(staged, transitions)

            for rid in dead:
                self._log.info("replica_reaped", replica_id=rid)
                self._teardown(rid)

        self.refresh()
        return self.state

    def refresh(self) -> PoolState:
        """Apply one health poll without scaling."""
        with self._lock:
            observed = self._health_phase()
            self._drain_phase(observed, self._config.drain_timeout)
        return self.state

    def wait_for_registration(self, timeout: float, interval: float = 5.0) -> bool:
        """Wait until no replica is still Provisioning or Registered."""
        deadline = time.time() + timeout
        while True:
            state = self.refresh()
            if not state.in_state(S.PROVISIONING, S.REGISTERED):
                return True
            remaining = deadline - time.time()
            if remaining <= 0 or self._stop.wait(min(interval, remaining)):
                return False

    def shutdown(self, drain_timeout: float | None = None, interval: float = 5.0) -> None:
        """Terminate every replica; busy ones drain for up to *drain_timeout*."""
        drain_timeout = self._config.drain_timeout if drain_timeout is None else drain_timeout
        with self._lock:
            self._state.desired_count = 0
            observed = self._health_phase()
            staged = self._state.copy()
            transitions: list[Transition] = []
            now = time.time()
            for replica in staged.in_state(S.BUSY):
                self._transition(replica, S.DRAINING, transitions)
                replica.drain_started_at = now
            removable = [r for r in staged.replicas.values() if r.lifecycle_state.removable]
            self._teardown_all(staged, removable, transitions, reason="shutdown")
            self._drain_phase(observed, drain_timeout)

        self.wait_for_drain(drain_timeout, interval)
        with self._lock:
            self._drain_phase({}, 0)
        self._log.info("pool_shutdown", pool=self._config.name_prefix)

    def wait_for_drain(self, drain_timeout: float | None = None, interval: float = 5.0) -> bool:
        """Poll until no replica is Draining.

        Returns False when *drain_timeout* ran out or :meth:`stop` was called
        first; the replicas left over stay Draining.
        """
        drain_timeout = self._config.drain_timeout if drain_timeout is None else drain_timeout
        deadline = time.time() + drain_timeout
        while self._state.in_state(S.DRAINING):
            remaining = deadline - time.time()
            if remaining <= 0 or self._stop.wait(min(interval, remaining)):
                return False
            with self._lock:
                observed = self._health_phase()
                self._drain_phase(observed, drain_timeout)
        return True

    def run_forever(self, desired_count: int, profile_set: ProfileConfig | None = None,
                    interval: float | None = None) -> None:
        """Reconcile on a fixed interval until :meth:`stop` is called."""
        interval = self._config.reconcile_interval if interval is None else interval
        self._stop.clear()
        self._log.info("controller_started", desired=desired_count, interval=interval)
        while not self._stop.is_set():
            try:
                self.reconcile(desired_count, profile_set)
            except RunnerPoolError as exc:
                self._log.error("reconcile_giving_up", error_type=type(exc).__name__,
                                error=str(exc))
            if self._stop.wait(interval):
                break
        self._log.info("controller_stopped")

    def stop(self) -> None:
        self._stop.set()
