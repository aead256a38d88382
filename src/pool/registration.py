"""Registration tokens and runner records from the GitHub Actions API."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime

import structlog

from src.common import constants
from src.common import redis as redis_store
from src.common.config import PoolConfig
from src.common.errors import AuthError, RateLimitError, RegistrationError
from src.common.http import http_delete, http_get, http_post


@dataclass(frozen=True)
class RegistrationToken:
    token: str
    expires_at: float  # unix seconds

    def valid(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now < self.expires_at - constants.TOKEN_EXPIRY_MARGIN_SECS


def _parse_expiry(raw: str | None, ttl: float) -> float:
    """GitHub sends ISO-8601 ``expires_at``; fall back to the configured TTL."""
    fallback = time.time() + ttl
    if not raw:
        return fallback
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return fallback
    return min(parsed, fallback)


class MemoryTokenCache:
    """Per-process token cache."""

    def __init__(self) -> None:
        self._tokens: dict[str, RegistrationToken] = {}
        self._lock = threading.Lock()

    def get(self, replica_id: str) -> RegistrationToken | None:
        with self._lock:
            return self._tokens.get(replica_id)

    def put(self, replica_id: str, token: RegistrationToken) -> None:
        with self._lock:
            self._tokens[replica_id] = token

    def drop(self, replica_id: str) -> None:
        with self._lock:
            self._tokens.pop(replica_id, None)


class RedisTokenCache:
    """Token cache shared between controller processes; Redis expires entries."""

    def __init__(self, pool: str, client=None) -> None:
        self._pool = pool
        self._client = client

    def get(self, replica_id: str) -> RegistrationToken | None:
        hit = redis_store.peek_token(self._pool, replica_id, client=self._client)
        return RegistrationToken(*hit) if hit else None

    def put(self, replica_id: str, token: RegistrationToken) -> None:
        redis_store.store_token(self._pool, replica_id, token.token, token.expires_at,
                                client=self._client)

    def drop(self, replica_id: str) -> None:
        redis_store.drop_token(self._pool, replica_id, client=self._client)


def build_token_cache(config: PoolConfig):
    if config.redis_enabled:
        return RedisTokenCache(config.name_prefix, redis_store.get_redis(config))
    return MemoryTokenCache()


class RegistrationClient:
    """Issues and revokes per-replica registration tokens.

    ``issue_token`` is idempotent per replica id while the token is valid.
    Auth and rate-limit failures are retried with bounded exponential
    backoff before being re-raised. Setting *stop* cuts a backoff wait short
    and re-raises the error at hand. ``revoke_token`` never raises.
    """

    def __init__(self, config: PoolConfig, cache=None, *,
                 stop: threading.Event | None = None) -> None:
        self._config = config
        self._stop = stop if stop is not None else threading.Event()
        self._cache = cache if cache is not None else MemoryTokenCache()
        self._log = structlog.get_logger("registration")

    def _auth(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _with_backoff(self, what: str, call):
        attempts = self._config.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return call()
            except (AuthError, RateLimitError) as exc:
                if attempt >= attempts:
                    raise
                wait = min(self._config.backoff_base * 2 ** (attempt - 1),
                           self._config.backoff_cap)
                if isinstance(exc, RateLimitError) and exc.retry_after:
                    wait = max(wait, exc.retry_after)
                self._log.warning(
                    "registration_retry",
                    call=what,
                    error=type(exc).__name__,
                    attempt=attempt,
                    attempts=attempts,
                    wait_seconds=wait,
                )
                if self._stop.wait(wait):
                    raise
        raise RegistrationError(f"{what}: retry budget exhausted")  # unreachable

    def issue_token(self, replica_id: str) -> str:
        """Return a registration token for *replica_id*, reusing a valid one."""
        cached = self._cache.get(replica_id)
        if cached and cached.valid():
            return cached.token

        def fetch() -> dict:
            return http_post(
                f"{self._config.runners_endpoint}/registration-token",
                headers=self._auth(),
                timeout=self._config.api_timeout,
                retries=1,
            )

        data = self._with_backoff("issue_token", fetch)
        token = data.get("token") or ""
        if not token:
            raise RegistrationError(f"No token in registration response for {replica_id}")

        issued = RegistrationToken(token, _parse_expiry(data.get("expires_at"),
                                                        self._config.token_ttl))
        self._cache.put(replica_id, issued)
        self._log.info("token_issued", replica_id=replica_id,
                       expires_in=round(issued.expires_at - time.time()))
        return token

    def revoke_token(self, replica_id: str) -> None:
        """Drop the cached token and delete the runner registration (best-effort)."""
        try:
            self._cache.drop(replica_id)
            runner = self.list_runners().get(replica_id)
            if runner is not None:
                http_delete(
                    f"{self._config.runners_endpoint}/{runner['id']}",
                    headers=self._auth(),
                    timeout=self._config.api_timeout,
                    retries=1,
                )
            self._log.info("token_revoked", replica_id=replica_id,
                           runner_deleted=runner is not None)
        except Exception as exc:
            self._log.warning("token_revoke_failed", replica_id=replica_id, error=str(exc))

    def list_runners(self) -> dict[str, dict]:
        """Registered runners keyed by name (paginated)."""
        runners: dict[str, dict] = {}
        page = 1
        while True:
            data = self._with_backoff("list_runners", lambda: http_get(
                f"{self._config.runners_endpoint}?per_page=100&page={page}",
                headers=self._auth(),
                timeout=self._config.api_timeout,
                retries=1,
            ))
            batch = data.get("runners", [])
            for runner in batch:
                runners[runner.get("name", "")] = runner
            if len(batch) < 100:
                break
            page += 1
        return runners

    def validate_credentials(self) -> None:
        """Fail fast with AuthError when the token cannot manage runners."""
        http_get(f"{self._config.runners_endpoint}?per_page=1",
                 headers=self._auth(), timeout=self._config.api_timeout, retries=1)
