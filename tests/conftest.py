"""Pytest configuration and shared fixtures."""

import threading
import time

import pytest

from src.common.config import PoolConfig
from src.common.constants import RUNNER_IMAGE
from src.common.errors import AuthError, OrchestrationError, RegistrationError
from src.pool.manager import PoolManager
from src.pool.runtime import ReplicaRecord, Runtime


class FakeRuntime(Runtime):
    """In-memory container engine."""

    def __init__(self, registration=None):
        self.containers = {}
        self.launched = []
        self.terminated = []
        self.services = []
        self.fail_launches = 0
        self.slow_launches = 0
        self.launch_delay = 0.0
        self.interrupt_launches = 0
        self.fail_terminate = set()
        self.registration = registration
        self._lock = threading.Lock()

    def add(self, replica_id, *, state="running", image=RUNNER_IMAGE,
            labels=("self-hosted", "linux", "x64")):
        self.containers[replica_id] = {"state": state, "image": image, "labels": tuple(labels)}

    def launch(self, descriptor, image, env):
        with self._lock:
            if self.interrupt_launches > 0:
                self.interrupt_launches -= 1
                raise KeyboardInterrupt
            if self.fail_launches > 0:
                self.fail_launches -= 1
                raise OrchestrationError(f"launch of {descriptor.id} failed")
            slow = self.slow_launches > 0
            if slow:
                self.slow_launches -= 1
        if slow:
            time.sleep(self.launch_delay)
        with self._lock:
            self.launched.append((descriptor.id, image, dict(env)))
            self.containers[descriptor.id] = {
                "state": "running",
                "image": image,
                "labels": descriptor.desired_label_set,
            }
        if self.registration is not None:
            self.registration.set_runner(descriptor.id)
        return f"cid-{descriptor.id}"

    def terminate(self, replica_id):
        if replica_id in self.fail_terminate:
            raise OrchestrationError(f"terminate of {replica_id} failed")
        with self._lock:
            self.terminated.append(replica_id)
            self.containers.pop(replica_id, None)

    def list_replicas(self):
        return [
            ReplicaRecord(
                replica_id=rid,
                container_id=f"cid-{rid}",
                state=c["state"],
                labels=c["labels"],
                image=c["image"],
            )
            for rid, c in self.containers.items()
        ]

    def is_running(self, replica_id):
        c = self.containers.get(replica_id)
        return c is not None and c["state"] == "running"

    def ensure_service(self, service):
        self.services.append(service.name)

    def remove_service(self, name):
        if name in self.services:
            self.services.remove(name)

    def list_services(self):
        return list(self.services)


class FakeRegistration:
    """Stands in for RegistrationClient; runners are keyed by name."""

    def __init__(self):
        self.runners = {}
        self.issued = {}
        self.issue_calls = []
        self.revoked = []
        self.fail_list = False
        self.credentials_ok = True

    def set_runner(self, name, *, status="online", busy=False):
        runner_id = self.runners.get(name, {}).get("id", len(self.runners) + 1)
        self.runners[name] = {"id": runner_id, "name": name, "status": status, "busy": busy}

    def issue_token(self, replica_id):
        self.issue_calls.append(replica_id)
        return self.issued.setdefault(replica_id, f"tok-{replica_id}")

    def revoke_token(self, replica_id):
        self.revoked.append(replica_id)
        self.issued.pop(replica_id, None)
        self.runners.pop(replica_id, None)

    def validate_credentials(self):
        if not self.credentials_ok:
            raise AuthError("Credentials rejected (401)", status=401)

    def list_runners(self):
        if self.fail_list:
            raise RegistrationError("GitHub unavailable")
        return {name: dict(runner) for name, runner in self.runners.items()}


@pytest.fixture
def config(tmp_path):
    """Fast-retrying configuration that logs into a temp dir."""
    return PoolConfig(
        owner="octo-org",
        token="ghp_test",
        repository="widgets",
        log_dir=tmp_path / "logs",
        max_attempts=3,
        backoff_base=0.0,
        launch_timeout=10,
        health_timeout=5,
        health_grace=600,
        drain_timeout=600,
    )


@pytest.fixture
def registration():
    return FakeRegistration()


@pytest.fixture
def runtime(registration):
    """Runtime whose launched replicas come online right away."""
    return FakeRuntime(registration)


@pytest.fixture
def manager(config, runtime, registration):
    return PoolManager(config, runtime, registration)


@pytest.fixture
def seeded_pool(runtime, registration):
    """Five running replicas: four idle, one busy."""
    ids = [f"runner-pool-0000000{i}" for i in range(5)]
    for rid in ids:
        runtime.add(rid)
        registration.set_runner(rid)
    registration.set_runner(ids[4], busy=True)
    return ids
