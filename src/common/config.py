"""Pool configuration: one explicit struct handed to every component."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from src.common import constants
from src.common.errors import ConfigurationError, UnknownCommandError

_TRUE = ("1", "true", "yes", "on")
_BACKENDS = ("local", "cloud")


def load_dotenv(env_path: Path = constants.ENV_FILE) -> bool:
    """Load variables from .env file into os.environ (no overwrite).

    Returns True when the file existed.
    """
    if not env_path.is_file():
        return False
    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            if key.startswith("export "):
                key = key[len("export "):].strip()
            value = value.strip().strip("\"'")
            os.environ.setdefault(key, value)
    return True


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class ProfileConfig:
    """Optional auxiliary services enabled for one run."""

    cache: bool = False
    monitoring: bool = False
    enhanced: bool = False

    @classmethod
    def parse(cls, raw: str | None) -> ProfileConfig:
        """Build from a comma-separated list such as ``"enhanced,cache"``."""
        enabled: set[str] = set()
        for name in _split_csv(raw or ""):
            name = name.lower()
            if name == "default":
                continue
            if name == "all":
                enabled.update(("cache", "monitoring", "enhanced"))
            elif name in ("cache", "monitoring", "enhanced"):
                enabled.add(name)
            else:
                raise UnknownCommandError(f"Unknown profile: {name}")
        return cls(
            cache="cache" in enabled,
            monitoring="monitoring" in enabled,
            enhanced="enhanced" in enabled,
        )

    @property
    def names(self) -> list[str]:
        names = [n for n in ("enhanced", "cache", "monitoring") if getattr(self, n)]
        return names or ["default"]

    def __str__(self) -> str:
        return ",".join(self.names)


@dataclass
class PoolConfig:
    """Everything the controller needs, resolved once at startup."""

    owner: str = ""
    token: str = ""
    repository: str = ""
    api_url: str = constants.GITHUB_API
    labels: tuple[str, ...] = constants.DEFAULT_LABELS
    name_prefix: str = constants.DEFAULT_NAME_PREFIX
    runner_group: str = ""
    disable_auto_update: bool = False

    image: str = constants.RUNNER_IMAGE
    enhanced_image: str = constants.ENHANCED_RUNNER_IMAGE
    backend: str = "local"
    docker_context: str = ""

    reconcile_interval: float = constants.RECONCILE_INTERVAL
    max_attempts: int = constants.MAX_SCALE_ATTEMPTS
    backoff_base: float = constants.BACKOFF_BASE
    backoff_cap: float = constants.BACKOFF_CAP
    launch_timeout: float = constants.LAUNCH_TIMEOUT_SECS
    health_timeout: float = constants.HEALTH_CHECK_TIMEOUT_SECS
    health_grace: float = constants.HEALTH_GRACE_SECS
    drain_timeout: float = constants.DRAIN_TIMEOUT_SECS
    token_ttl: float = constants.TOKEN_TTL_SECS
    api_timeout: int = 30
    max_workers: int = 8

    log_level: str = "INFO"
    log_dir: Path = field(default_factory=lambda: constants.LOG_DIR)

    redis_host: str = ""
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: str = ""

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> PoolConfig:
        """Read configuration from *environ* (defaults to ``os.environ``)."""
        env = os.environ if environ is None else environ

        def get(key: str, default: str = "") -> str:
            return env.get(key, default).strip()

        def number(key: str, default: float, cast=float):
            raw = get(key)
            if not raw:
                return default
            try:
                return cast(raw)
            except ValueError:
                raise ConfigurationError(f"{key} must be a number, got {raw!r}") from None

        labels = _split_csv(get("RUNNER_LABELS"))
        return cls(
            owner=get("GITHUB_OWNER"),
            token=get("GITHUB_TOKEN"),
            repository=get("GITHUB_REPOSITORY"),
            api_url=get("GITHUB_API_URL", constants.GITHUB_API).rstrip("/"),
            labels=labels or constants.DEFAULT_LABELS,
            name_prefix=get("RUNNER_NAME_PREFIX") or constants.DEFAULT_NAME_PREFIX,
            runner_group=get("RUNNER_GROUP"),
            disable_auto_update=get("RUNNER_DISABLE_AUTO_UPDATE").lower() in _TRUE,
            image=get("RUNNER_IMAGE") or constants.RUNNER_IMAGE,
            enhanced_image=get("RUNNER_ENHANCED_IMAGE") or constants.ENHANCED_RUNNER_IMAGE,
            backend=(get("RUNTIME_BACKEND") or "local").lower(),
            docker_context=get("DOCKER_CONTEXT"),
            reconcile_interval=number("RECONCILE_INTERVAL", constants.RECONCILE_INTERVAL),
            health_grace=number("HEALTH_GRACE_SECS", constants.HEALTH_GRACE_SECS),
            drain_timeout=number("DRAIN_TIMEOUT_SECS", constants.DRAIN_TIMEOUT_SECS),
            token_ttl=number("TOKEN_TTL_SECS", constants.TOKEN_TTL_SECS),
            log_level=get("LOG_LEVEL") or "INFO",
            log_dir=Path(get("LOG_DIR")) if get("LOG_DIR") else constants.LOG_DIR,
            redis_host=get("REDIS_HOST"),
            redis_port=number("REDIS_PORT", 6379, int),
            redis_db=number("REDIS_DB", 0, int),
            redis_password=get("REDIS_PASSWORD"),
        )

    @property
    def redis_enabled(self) -> bool:
        return bool(self.redis_host)

    @property
    def scope_url(self) -> str:
        """GitHub URL a runner registers against (repo or org level)."""
        if self.repository:
            return f"https://github.com/{self.owner}/{self.repository}"
        return f"https://github.com/{self.owner}"

    @property
    def runners_endpoint(self) -> str:
        """API prefix for the ``actions/runners`` resources."""
        if self.repository:
            return f"{self.api_url}/repos/{self.owner}/{self.repository}/actions/runners"
        return f"{self.api_url}/orgs/{self.owner}/actions/runners"

    def image_for(self, profiles: ProfileConfig) -> str:
        return self.enhanced_image if profiles.enhanced else self.image

    def validate(self) -> list[str]:
        """Return a list of configuration problems (empty when valid)."""
        errors = []
        if not self.owner:
            errors.append("GITHUB_OWNER is required")
        if not self.token:
            errors.append("GITHUB_TOKEN is required")
        if self.backend not in _BACKENDS:
            errors.append(f"Invalid RUNTIME_BACKEND: {self.backend} (must be 'local' or 'cloud')")
        if self.backend == "cloud" and not self.docker_context:
            errors.append("DOCKER_CONTEXT is required when RUNTIME_BACKEND=cloud")
        if self.max_attempts < 1:
            errors.append("max_attempts must be >= 1")
        return errors

    def require_valid(self) -> PoolConfig:
        errors = self.validate()
        if errors:
            raise ConfigurationError(errors)
        return self
