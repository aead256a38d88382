"""Container engine client: a typed interface over the docker CLI.

Every pool-managed container carries ``runner-pool.*`` labels so the pool can
be rebuilt from the engine alone:

- ``runner-pool.pool``     the pool (name prefix) it belongs to
- ``runner-pool.role``     ``replica`` or ``service``
- ``runner-pool.replica``  replica id (replicas only)
- ``runner-pool.labels``   runner labels, ``;``-separated
"""

from __future__ import annotations

import json
import os
import subprocess
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from src.common import constants
from src.common.config import PoolConfig, ProfileConfig
from src.common.errors import ConfigurationError, OrchestrationError
from src.pool.replica import ReplicaDescriptor

NS = constants.LABEL_NAMESPACE

# Runs inside the upstream actions-runner image. Secrets arrive via --env-file.
RUNNER_ENTRYPOINT = (
    './config.sh --unattended --replace --url "$RUNNER_URL" --token "$RUNNER_TOKEN" '
    '--name "$RUNNER_NAME" --labels "$RUNNER_LABELS" --work _work '
    '${RUNNER_GROUP:+--runnergroup "$RUNNER_GROUP"} '
    "${RUNNER_DISABLE_UPDATE:+--disableupdate} "
    "&& exec ./run.sh"
)

DOCKER_SOCKET = "/var/run/docker.sock"


@dataclass
class ReplicaRecord:
    """A managed container as reported by the engine."""

    replica_id: str
    container_id: str
    state: str                   # created | running | exited | ...
    created_at: str = ""
    labels: tuple[str, ...] = ()
    image: str = ""

    @property
    def running(self) -> bool:
        return self.state == "running"


@dataclass(frozen=True)
class ServiceSpec:
    """An auxiliary container enabled by a profile."""

    name: str
    image: str
    ports: tuple[str, ...] = ()
    volumes: tuple[str, ...] = ()
    env: dict = field(default_factory=dict)


def profile_services(profiles: ProfileConfig) -> list[ServiceSpec]:
    """Auxiliary services a profile set asks for."""
    services = []
    if profiles.cache:
        services.append(ServiceSpec(
            name="cache",
            image=constants.CACHE_IMAGE,
            ports=(f"{constants.CACHE_PORT}:5000",),
            volumes=("registry-cache:/var/lib/registry",),
            env={"REGISTRY_PROXY_REMOTEURL": "https://registry-1.docker.io"},
        ))
    if profiles.monitoring:
        services.append(ServiceSpec(
            name="monitoring",
            image=constants.MONITORING_IMAGE,
            ports=(f"{constants.MONITORING_PORT}:9000",),
            volumes=(f"{DOCKER_SOCKET}:{DOCKER_SOCKET}", "portainer-data:/data"),
        ))
    return services


def _write_env_file(env: dict[str, str]) -> str:
    """Write Docker env vars to a temp file (avoids leaking secrets via ps)."""
    fd, path = tempfile.mkstemp(prefix="runner-pool-env-", suffix=".env")
    with os.fdopen(fd, "w") as f:
        for key, value in env.items():
            f.write(f"{key}={value}\n")
    os.chmod(path, 0o600)
    return path


def _parse_labels(raw: str) -> dict[str, str]:
    """Parse docker's ``k=v,k=v`` label column."""
    labels = {}
    for pair in raw.split(","):
        key, sep, value = pair.partition("=")
        if sep:
            labels[key.strip()] = value.strip()
    return labels


_print_lock = threading.Lock()


def _relay_lines(name: str, stream) -> None:
    """Print every line of *stream* prefixed with the container name."""
    for raw_line in stream:
        line = raw_line.decode("utf-8", errors="replace").rstrip("\n")
        with _print_lock:
            print(f"{name} | {line}", flush=True)


class Runtime(ABC):
    """What the pool manager needs from a container engine."""

    @abstractmethod
    def launch(self, descriptor: ReplicaDescriptor, image: str, env: dict[str, str]) -> str:
        """Start a replica container and return its container id."""

    @abstractmethod
    def terminate(self, replica_id: str) -> None:
        """Remove a replica container. Missing containers count as removed."""

    @abstractmethod
    def list_replicas(self) -> list[ReplicaRecord]:
        ...

    @abstractmethod
    def is_running(self, replica_id: str) -> bool:
        ...

    @abstractmethod
    def ensure_service(self, service: ServiceSpec) -> None:
        ...

    @abstractmethod
    def remove_service(self, name: str) -> None:
        ...

    def list_services(self) -> list[str]:
        return []

    def ensure_image(self, tag: str, dockerfile: Path) -> bool:
        """Make *tag* available to the engine; True when it had to be built."""
        return False

    def stats(self) -> str:
        return ""

    def logs(self, name: str | None = None, follow: bool = True) -> int:
        return 0

    def clean(self) -> None:
        """Remove every pool container and unused volumes."""


class DockerRuntime(Runtime):
    """Runtime backed by the ``docker`` CLI."""

    def __init__(self, pool: str, *, timeout: float = constants.LAUNCH_TIMEOUT_SECS) -> None:
        self.pool = pool
        self.timeout = timeout
        self._log = structlog.get_logger("runtime")

    # ── plumbing ────────────────────────────────────────────────────────────

    def _docker(self) -> list[str]:
        return ["docker"]

    def _run(self, args: list[str], *, timeout: float | None = None,
             check: bool = True) -> subprocess.CompletedProcess:
        cmd = self._docker() + args
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise OrchestrationError(
                f"docker {args[0]} timed out after {exc.timeout}s", command=cmd,
            ) from exc
        except FileNotFoundError as exc:
            raise OrchestrationError("docker CLI not found on PATH", command=cmd) from exc

        if check and result.returncode != 0:
            raise OrchestrationError(
                f"docker {args[0]} failed: {result.stderr.strip() or result.stdout.strip()}",
                command=cmd,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result

    def _container_name(self, name: str) -> str:
        return name if name.startswith(f"{self.pool}-") else f"{self.pool}-{name}"

    def _run_flags(self) -> list[str]:
        return []

    def _ps(self, role: str | None = None) -> list[dict]:
        args = ["ps", "-a", "--no-trunc", "--filter", f"label={NS}.pool={self.pool}"]
        if role:
            args += ["--filter", f"label={NS}.role={role}"]
        args += ["--format", "{{json .}}"]
        out = self._run(args).stdout
        return [json.loads(line) for line in out.splitlines() if line.strip()]

    # ── replicas ────────────────────────────────────────────────────────────

    def launch(self, descriptor: ReplicaDescriptor, image: str, env: dict[str, str]) -> str:
        env_file = _write_env_file(env)
        cmd = [
            "run", "-d",
            "--name", descriptor.id,
            "--label", f"{NS}.pool={self.pool}",
            "--label", f"{NS}.role=replica",
            "--label", f"{NS}.replica={descriptor.id}",
            "--label", f"{NS}.labels={';'.join(descriptor.desired_label_set)}",
            "--env-file", env_file,
            "-v", f"{DOCKER_SOCKET}:{DOCKER_SOCKET}",
            *self._run_flags(),
            image,
            "bash", "-c", RUNNER_ENTRYPOINT,
        ]
        try:
            result = self._run(cmd)
        finally:
            os.unlink(env_file)

        container_id = result.stdout.strip()
        self._log.info("replica_launched", replica_id=descriptor.id,
                       container_id=container_id[:12], image=image)
        return container_id

    def terminate(self, replica_id: str) -> None:
        result = self._run(["rm", "-f", "-v", replica_id], check=False)
        if result.returncode != 0 and "No such container" not in result.stderr:
            raise OrchestrationError(
                f"docker rm failed for {replica_id}: {result.stderr.strip()}",
                command=self._docker() + ["rm", "-f", "-v", replica_id],
                returncode=result.returncode,
                stderr=result.stderr,
            )
        self._log.info("replica_removed", replica_id=replica_id)

    def list_replicas(self) -> list[ReplicaRecord]:
        records = []
        for row in self._ps(role="replica"):
            labels = _parse_labels(row.get("Labels", ""))
            replica_id = labels.get(f"{NS}.replica") or row.get("Names", "")
            runner_labels = labels.get(f"{NS}.labels", "")
            records.append(ReplicaRecord(
                replica_id=replica_id,
                container_id=row.get("ID", ""),
                state=row.get("State", "").lower(),
                created_at=row.get("CreatedAt", ""),
                labels=tuple(l for l in runner_labels.split(";") if l),
                image=row.get("Image", ""),
            ))
        return records

    def is_running(self, replica_id: str) -> bool:
        result = self._run(
            ["inspect", "-f", "{{.State.Running}}", replica_id],
            timeout=constants.HEALTH_CHECK_TIMEOUT_SECS,
            check=False,
        )
        return result.returncode == 0 and result.stdout.strip() == "true"

    # ── auxiliary services ──────────────────────────────────────────────────

    def ensure_service(self, service: ServiceSpec) -> None:
        name = self._container_name(service.name)
        existing = [row for row in self._ps(role="service") if row.get("Names") == name]
        if existing:
            if existing[0].get("State", "").lower() != "running":
                self._run(["start", name])
                self._log.info("service_started", service=service.name)
            return

        cmd = [
            "run", "-d",
            "--name", name,
            "--restart", "unless-stopped",
            "--label", f"{NS}.pool={self.pool}",
            "--label", f"{NS}.role=service",
        ]
        for port in service.ports:
            cmd += ["-p", port]
        for volume in service.volumes:
            cmd += ["-v", volume]
        for key, value in service.env.items():
            cmd += ["-e", f"{key}={value}"]
        cmd += [*self._run_flags(), service.image]
        self._run(cmd)
        self._log.info("service_created", service=service.name, image=service.image)

    def remove_service(self, name: str) -> None:
        self.terminate(self._container_name(name))

    def ensure_image(self, tag: str, dockerfile: Path) -> bool:
        if self._run(["image", "inspect", tag], check=False).returncode == 0:
            return False
        self._log.info("image_build_started", image=tag, dockerfile=str(dockerfile))
        self._run(["build", "-t", tag, "-f", str(dockerfile), str(dockerfile.parent)],
                  timeout=1800)
        self._log.info("image_built", image=tag)
        return True

    def list_services(self) -> list[str]:
        return [row.get("Names", "") for row in self._ps(role="service")]

    # ── operator views ──────────────────────────────────────────────────────

    def stats(self) -> str:
        ids = [row["ID"] for row in self._ps() if row.get("State", "").lower() == "running"]
        if not ids:
            return ""
        result = self._run([
            "stats", "--no-stream", "--format",
            "table {{.Name}}\t{{.CPUPerc}}\t{{.MemUsage}}\t{{.NetIO}}", *ids,
        ])
        return result.stdout

    def logs(self, name: str | None = None, follow: bool = True) -> int:
        """Stream logs for one container, or interleave those of every pool container.

        Without *name* each container gets its own ``docker logs`` process and
        lines are prefixed with the container name. Returns 130 on Ctrl-C.
        """
        if name:
            cmd = self._docker() + ["logs"] + (["-f"] if follow else []) + [self._resolve(name)]
            return subprocess.run(cmd).returncode

        args = ["logs", "--tail", "50"] + (["-f"] if follow else [])
        procs = []
        for row in self._ps():
            proc = subprocess.Popen(
                self._docker() + args + [row["ID"]],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
            relay = threading.Thread(
                target=_relay_lines,
                args=(row.get("Names", row["ID"]), proc.stdout),
                name=f"logs-{row.get('Names', row['ID'])}",
                daemon=True,
            )
            relay.start()
            procs.append((proc, relay))

        try:
            for proc, relay in procs:
                proc.wait()
                relay.join(timeout=5)
        except KeyboardInterrupt:
            for proc, _ in procs:
                proc.terminate()
            return 130
        return next((proc.returncode for proc, _ in procs if proc.returncode), 0)

    def _resolve(self, name: str) -> str:
        if name in ("cache", "monitoring"):
            return self._container_name(name)
        return name

    def clean(self) -> None:
        ids = [row["ID"] for row in self._ps()]
        if ids:
            self._run(["rm", "-f", "-v", *ids])
        self._run(["system", "prune", "-f"], timeout=600)
        self._run(["volume", "prune", "-f"], timeout=600)
        self._log.info("pool_cleaned", containers_removed=len(ids))


class LocalRuntime(DockerRuntime):
    """The docker engine on this host."""


class CloudRuntime(DockerRuntime):
    """A remote docker engine reached through a named docker context."""

    def __init__(self, pool: str, context: str, *,
                 timeout: float = constants.LAUNCH_TIMEOUT_SECS) -> None:
        super().__init__(pool, timeout=timeout)
        self.context = context

    def _docker(self) -> list[str]:
        return ["docker", "--context", self.context]

    def _run_flags(self) -> list[str]:
        # Remote engines must run the registry's current tag, not a stale cache.
        return ["--pull", "always"]


def build_runtime(config: PoolConfig) -> Runtime:
    """Pick the runtime backend named by the configuration."""
    if config.backend == "local":
        return LocalRuntime(config.name_prefix, timeout=config.launch_timeout)
    if config.backend == "cloud":
        if not config.docker_context:
            raise ConfigurationError("DOCKER_CONTEXT is required when RUNTIME_BACKEND=cloud")
        return CloudRuntime(config.name_prefix, config.docker_context,
                            timeout=config.launch_timeout)
    raise ConfigurationError(f"Invalid RUNTIME_BACKEND: {config.backend}")
