"""Redis connection and data-access helpers for the token cache and pool history."""

from __future__ import annotations

import json
import time

import redis

from src.common.config import PoolConfig

_client: redis.Redis | None = None


def get_redis(config: PoolConfig | None = None) -> redis.Redis:
    """Return a shared Redis client (lazy singleton)."""
    global _client
    if _client is None:
        config = config or PoolConfig.from_env()
        _client = redis.Redis(
            host=config.redis_host or "localhost",
            port=config.redis_port,
            db=config.redis_db,
            password=config.redis_password or None,
            decode_responses=True,
        )
    return _client


def reset_client() -> None:
    """Forget the shared client (tests, reconfiguration)."""
    global _client
    _client = None


# ── Registration tokens ──────────────────────────────────────────────────────


def _token_key(pool: str, replica_id: str) -> str:
    return f"pool:{pool}:token:{replica_id}"


def store_token(pool: str, replica_id: str, token: str, expires_at: float,
                client: redis.Redis | None = None) -> None:
    """Cache a registration token; Redis expires the key with the token."""
    ttl = max(1, int(expires_at - time.time()))
    r = client or get_redis()
    r.set(
        _token_key(pool, replica_id),
        json.dumps({"token": token, "expires_at": expires_at}),
        ex=ttl,
    )


def peek_token(pool: str, replica_id: str,
               client: redis.Redis | None = None) -> tuple[str, float] | None:
    """Return ``(token, expires_at)`` if a cached token exists."""
    raw = (client or get_redis()).get(_token_key(pool, replica_id))
    if not raw:
        return None
    data = json.loads(raw)
    return data["token"], float(data["expires_at"])


def drop_token(pool: str, replica_id: str, client: redis.Redis | None = None) -> None:
    (client or get_redis()).delete(_token_key(pool, replica_id))


# ── Reconciliation history ───────────────────────────────────────────────────


def store_reconcile(pool: str, record: dict, client: redis.Redis | None = None) -> str:
    """Persist one reconciliation record and add it to the chronological index."""
    r = client or get_redis()
    timestamp = float(record.get("timestamp_unix") or time.time())
    record_id = f"{timestamp:.6f}"
    r.hset(f"pool:{pool}:reconcile:{record_id}", mapping={
        k: json.dumps(v) if isinstance(v, (dict, list)) else str(v)
        for k, v in record.items()
    })
    r.zadd(f"pool:{pool}:reconciles", {record_id: timestamp})
    return record_id


def get_reconcile(pool: str, record_id: str, client: redis.Redis | None = None) -> dict:
    """Retrieve one reconciliation record."""
    raw = (client or get_redis()).hgetall(f"pool:{pool}:reconcile:{record_id}")
    result: dict = {}
    for k, v in raw.items():
        try:
            result[k] = json.loads(v)
        except (json.JSONDecodeError, TypeError):
            result[k] = v
    return result


def get_reconcile_history(pool: str, limit: int = 20,
                          client: redis.Redis | None = None) -> list[dict]:
    """Return the newest *limit* records, oldest first."""
    r = client or get_redis()
    ids = r.zrange(f"pool:{pool}:reconciles", -limit, -1) if limit > 0 else []
    return [get_reconcile(pool, record_id, client=r) for record_id in ids]
