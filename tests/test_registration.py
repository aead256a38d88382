"""Tests for the registration client."""

import json
import threading
import time
from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from src.common import http
from src.common.errors import AuthError, RateLimitError, RegistrationError
from src.pool import registration as reg
from src.pool.registration import (
    MemoryTokenCache,
    RedisTokenCache,
    RegistrationClient,
    RegistrationToken,
    _parse_expiry,
)

ENDPOINT = "https://api.github.com/repos/octo-org/widgets/actions/runners"


class _RecordedWaits:
    """Stands in for the stop event, recording each backoff wait."""

    def __init__(self):
        self.calls = []

    def wait(self, timeout=None):
        self.calls.append(timeout)
        return False


@pytest.fixture
def stop():
    return _RecordedWaits()


@pytest.fixture
def sleeps(stop):
    return stop.calls


@pytest.fixture
def post(monkeypatch):
    mock = MagicMock(return_value={"token": "AABBCC", "expires_at": None})
    monkeypatch.setattr(reg, "http_post", mock)
    return mock


@pytest.fixture
def client(config, stop):
    return RegistrationClient(config, stop=stop)


class TestIssueToken:
    """Token issuance."""

    def test_posts_to_registration_endpoint(self, client, post):
        """The token comes from the repo-level registration-token endpoint."""
        assert client.issue_token("runner-pool-a") == "AABBCC"

        url = post.call_args.args[0]
        assert url == f"{ENDPOINT}/registration-token"
        headers = post.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer ghp_test"

    def test_org_scope(self, config, post):
        """Without a repository the org endpoint is used."""
        RegistrationClient(replace(config, repository="")).issue_token("runner-pool-a")
        assert post.call_args.args[0] == (
            "https://api.github.com/orgs/octo-org/actions/runners/registration-token"
        )

    def test_idempotent_within_validity(self, client, post):
        """A second call for the same replica reuses the cached token."""
        first = client.issue_token("runner-pool-a")
        second = client.issue_token("runner-pool-a")

        assert first == second
        assert post.call_count == 1

    def test_distinct_replicas_get_own_tokens(self, client, post):
        """Each replica id gets its own issuance."""
        client.issue_token("runner-pool-a")
        client.issue_token("runner-pool-b")
        assert post.call_count == 2

    def test_reissued_after_expiry(self, config, post):
        """An expired cached token is replaced."""
        cache = MemoryTokenCache()
        cache.put("runner-pool-a", RegistrationToken("OLD", time.time() - 1))
        client = RegistrationClient(config, cache=cache)

        assert client.issue_token("runner-pool-a") == "AABBCC"
        assert cache.get("runner-pool-a").token == "AABBCC"

    def test_empty_token_is_an_error(self, client, post):
        """A response without a token raises RegistrationError."""
        post.return_value = {}
        with pytest.raises(RegistrationError):
            client.issue_token("runner-pool-a")


class TestBackoff:
    """Auth and rate-limit retries."""

    def test_auth_error_retried_then_raised(self, client, post, sleeps, config):
        """AuthError is retried max_attempts times, then surfaces."""
        post.side_effect = AuthError("bad credentials", status=401)

        with pytest.raises(AuthError):
            client.issue_token("runner-pool-a")

        assert post.call_count == config.max_attempts
        assert len(sleeps) == config.max_attempts - 1

    def test_rate_limit_then_success(self, client, post, sleeps):
        """A transient rate limit honours Retry-After and then succeeds."""
        post.side_effect = [
            RateLimitError("slow down", status=429, retry_after=7),
            {"token": "LATER"},
        ]

        assert client.issue_token("runner-pool-a") == "LATER"
        assert sleeps == [7]

    def test_other_errors_not_retried(self, client, post, sleeps):
        """A plain RegistrationError propagates immediately."""
        post.side_effect = RegistrationError("HTTP 500", status=500)

        with pytest.raises(RegistrationError):
            client.issue_token("runner-pool-a")
        assert post.call_count == 1
        assert sleeps == []

    def test_backoff_is_capped(self, config, post, stop, sleeps):
        """Waits grow exponentially but never exceed the cap."""
        client = RegistrationClient(replace(config, max_attempts=5, backoff_base=2,
                                            backoff_cap=5), stop=stop)
        post.side_effect = AuthError("no", status=403)

        with pytest.raises(AuthError):
            client.issue_token("runner-pool-a")
        assert sleeps == [2, 4, 5, 5]

    def test_stop_cuts_backoff_short(self, config, post):
        """Once the stop event is set the pending error is raised without retrying."""
        stop = threading.Event()
        stop.set()
        client = RegistrationClient(replace(config, backoff_base=30), stop=stop)
        post.side_effect = AuthError("bad credentials", status=401)

        started = time.time()
        with pytest.raises(AuthError):
            client.issue_token("runner-pool-a")

        assert post.call_count == 1
        assert time.time() - started < 5

    def test_network_timeout_is_registration_error(self, client, monkeypatch):
        """A timeout inside urlopen reaches callers as RegistrationError."""
        monkeypatch.setattr(http, "urlopen", MagicMock(
            side_effect=TimeoutError("The read operation timed out")
        ))
        with pytest.raises(RegistrationError, match="timed out"):
            client.issue_token("runner-pool-a")



class TestRevokeAndList:
    """Runner listing and best-effort revocation."""

    def test_list_runners_paginates(self, client, monkeypatch):
        """Pages are fetched until one comes back short."""
        page1 = {"runners": [{"id": i, "name": f"r{i}"} for i in range(100)]}
        page2 = {"runners": [{"id": 100, "name": "r100"}]}
        get = MagicMock(side_effect=[page1, page2])
        monkeypatch.setattr(reg, "http_get", get)

        runners = client.list_runners()

        assert len(runners) == 101
        assert runners["r100"]["id"] == 100
        assert get.call_args_list[1].args[0].endswith("page=2")

    def test_revoke_deletes_runner(self, client, post, monkeypatch):
        """Revocation drops the cached token and deletes the runner."""
        client.issue_token("runner-pool-a")
        monkeypatch.setattr(reg, "http_get", MagicMock(
            return_value={"runners": [{"id": 42, "name": "runner-pool-a"}]}
        ))
        delete = MagicMock(return_value={})
        monkeypatch.setattr(reg, "http_delete", delete)

        client.revoke_token("runner-pool-a")

        assert delete.call_args.args[0] == f"{ENDPOINT}/42"
        client.issue_token("runner-pool-a")
        assert post.call_count == 2

    def test_revoke_unknown_runner_skips_delete(self, client, monkeypatch):
        """A runner that never registered only loses its cached token."""
        monkeypatch.setattr(reg, "http_get", MagicMock(return_value={"runners": []}))
        delete = MagicMock()
        monkeypatch.setattr(reg, "http_delete", delete)

        client.revoke_token("runner-pool-a")
        delete.assert_not_called()

    def test_validate_credentials(self, client, monkeypatch):
        """Rejected credentials surface as AuthError without retries."""
        get = MagicMock(side_effect=AuthError("bad credentials", status=401))
        monkeypatch.setattr(reg, "http_get", get)

        with pytest.raises(AuthError):
            client.validate_credentials()
        assert get.call_args.kwargs["retries"] == 1

    def test_revoke_never_raises(self, client, monkeypatch):
        """API failures during revocation are logged, not raised."""
        monkeypatch.setattr(reg, "http_get", MagicMock(
            side_effect=RegistrationError("HTTP 502", status=502)
        ))
        client.revoke_token("runner-pool-a")


class TestTokenCache:
    """Cache backends and expiry parsing."""

    def test_parse_expiry_uses_earlier_of_iso_and_ttl(self):
        """The server expiry wins when it is sooner than the TTL."""
        soon = time.time() + 120
        iso = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(soon))
        assert abs(_parse_expiry(iso, 3600) - soon) < 2

    def test_parse_expiry_fallback(self):
        """Missing or garbled expiries fall back to the TTL."""
        now = time.time()
        assert abs(_parse_expiry(None, 100) - (now + 100)) < 2
        assert abs(_parse_expiry("not a date", 100) - (now + 100)) < 2

    def test_token_validity_margin(self):
        """Tokens stop being reused shortly before they expire."""
        now = time.time()
        assert RegistrationToken("t", now + 3600).valid(now)
        assert not RegistrationToken("t", now + 30).valid(now)

    def test_redis_cache_round_trip(self):
        """RedisTokenCache stores JSON under a per-pool key with a TTL."""
        client = MagicMock()
        cache = RedisTokenCache("runner-pool", client)
        expires = time.time() + 600

        cache.put("runner-pool-a", RegistrationToken("AABBCC", expires))
        key, payload = client.set.call_args.args
        assert key == "pool:runner-pool:token:runner-pool-a"
        assert 0 < client.set.call_args.kwargs["ex"] <= 600

        client.get.return_value = payload
        assert cache.get("runner-pool-a") == RegistrationToken("AABBCC", expires)

        client.get.return_value = None
        assert cache.get("runner-pool-a") is None

        cache.drop("runner-pool-a")
        client.delete.assert_called_once_with(key)
        assert json.loads(payload)["token"] == "AABBCC"
