"""Replica and pool data model."""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path


class LifecycleState(str, Enum):
    PROVISIONING = "provisioning"
    REGISTERED = "registered"
    BUSY = "busy"
    IDLE = "idle"
    DRAINING = "draining"
    TERMINATED = "terminated"

    @property
    def active(self) -> bool:
        """Counts toward the desired replica count."""
        return self in _ACTIVE

    @property
    def removable(self) -> bool:
        """May be terminated right away on scale-down."""
        return self in _REMOVABLE


_ACTIVE = frozenset({
    LifecycleState.PROVISIONING,
    LifecycleState.REGISTERED,
    LifecycleState.BUSY,
    LifecycleState.IDLE,
})
_REMOVABLE = frozenset({
    LifecycleState.PROVISIONING,
    LifecycleState.REGISTERED,
    LifecycleState.IDLE,
})

# Scale-down picks victims in this order; BUSY never appears here.
SCALE_DOWN_ORDER = (
    LifecycleState.PROVISIONING,
    LifecycleState.REGISTERED,
    LifecycleState.IDLE,
)


def new_replica_id(prefix: str) -> str:
    """Replica ids double as container and runner names."""
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


@dataclass
class ReplicaDescriptor:
    """One runner container, as the pool manager sees it."""

    id: str                                  # e.g. "runner-pool-3f9a1c2e"
    desired_label_set: tuple[str, ...]
    registration_token: str = ""             # single-use, cleared once consumed
    lifecycle_state: LifecycleState = LifecycleState.PROVISIONING
    created_at: float = field(default_factory=time.time)
    drain_started_at: float | None = None
    container_id: str = ""
    image: str = ""

    @property
    def active(self) -> bool:
        return self.lifecycle_state.active

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "labels": list(self.desired_label_set),
            "state": self.lifecycle_state.value,
            "created_at": self.created_at,
            "drain_started_at": self.drain_started_at,
            "container_id": self.container_id,
            "image": self.image,
        }


@dataclass
class PoolState:
    """Desired count plus every replica the pool currently owns."""

    desired_count: int = 0
    replicas: dict[str, ReplicaDescriptor] = field(default_factory=dict)

    @property
    def active(self) -> list[ReplicaDescriptor]:
        return [r for r in self.replicas.values() if r.active]

    @property
    def active_count(self) -> int:
        return len(self.active)

    def in_state(self, *states: LifecycleState) -> list[ReplicaDescriptor]:
        return [r for r in self.replicas.values() if r.lifecycle_state in states]

    def counts(self) -> dict[str, int]:
        out = {s.value: 0 for s in LifecycleState}
        for r in self.replicas.values():
            out[r.lifecycle_state.value] += 1
        return out

    def copy(self) -> PoolState:
        """Deep enough copy for staging a reconciliation pass."""
        return PoolState(
            desired_count=self.desired_count,
            replicas={rid: replace(r) for rid, r in self.replicas.items()},
        )

    def to_dict(self) -> dict:
        return {
            "desired_count": self.desired_count,
            "active_count": self.active_count,
            "replicas": [r.to_dict() for r in self.replicas.values()],
        }


class DrainLedger:
    """Drain start times of Draining replicas, kept in a JSON file.

    The engine has no way to relabel a running container, so a replica that
    started draining in one process is only recognisable as such in the next
    one through this file.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._saved: dict[str, float] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, float]:
        """Return ``{replica_id: drain_started_at}``; raises ValueError if garbled."""
        try:
            data = json.loads(self._path.read_text())
        except FileNotFoundError:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"{self._path} does not hold a JSON object")
        return {str(rid): float(started) for rid, started in data.items()}

    def save(self, state: PoolState) -> None:
        """Rewrite the file when the set of draining replicas changed."""
        draining = {
            r.id: r.drain_started_at if r.drain_started_at is not None else time.time()
            for r in state.in_state(LifecycleState.DRAINING)
        }
        if draining == self._saved:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps(draining, indent=2, sort_keys=True))
        tmp.replace(self._path)
        self._saved = draining
