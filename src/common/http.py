"""Lightweight HTTP helpers (stdlib only)."""

from __future__ import annotations

import json
import time
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import structlog

from src.common.errors import AuthError, RateLimitError, RegistrationError

_UA = "RunnerPool/1.0"
_MAX_RETRIES = 5
_BACKOFF_BASE = 2.0  # seconds; doubles each retry

_log = structlog.get_logger("http")


def _retry_after(exc: HTTPError) -> float | None:
    value = exc.headers.get("Retry-After") if exc.headers else None
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def _translate(exc: HTTPError, url: str) -> RegistrationError:
    """Map an HTTPError onto the registration error taxonomy."""
    headers = exc.headers or {}
    if exc.code == 429 or (
        exc.code == 403 and headers.get("X-RateLimit-Remaining") == "0"
    ):
        return RateLimitError(
            f"Rate limited by {url}", status=exc.code, retry_after=_retry_after(exc),
        )
    if exc.code in (401, 403):
        return AuthError(f"Credentials rejected by {url} ({exc.code})", status=exc.code)
    return RegistrationError(f"HTTP {exc.code} from {url}: {exc.reason}", status=exc.code)


def _request(
    url: str,
    *,
    method: str = "GET",
    data: bytes | None = None,
    headers: dict | None = None,
    timeout: int = 15,
    retries: int = _MAX_RETRIES,
) -> dict:
    """Core request with User-Agent and retry-on-429.

    HTTP failures surface as :class:`RegistrationError` subclasses once the
    retry budget is spent.
    """
    hdr = {"Accept": "application/json", "User-Agent": _UA, **(headers or {})}
    req = Request(url, method=method, data=data, headers=hdr)
    for attempt in range(1, retries + 1):
        try:
            with urlopen(req, timeout=timeout) as resp:
                body = resp.read().decode()
                return json.loads(body) if body else {}
        except HTTPError as exc:
            err = _translate(exc, url)
            if isinstance(err, RateLimitError) and attempt < retries:
                wait = err.retry_after or _BACKOFF_BASE ** attempt
                _log.warning(
                    "http_rate_limited",
                    url=url,
                    wait_seconds=wait,
                    attempt=attempt,
                    retries=retries,
                )
                time.sleep(wait)
                continue
            raise err from exc
        except URLError as exc:
            raise RegistrationError(f"Cannot reach {url}: {exc.reason}") from exc
        except (OSError, ValueError) as exc:
            raise RegistrationError(f"Request to {url} failed: {exc}") from exc
    return {}  # unreachable, keeps mypy happy


def http_get(url: str, headers: dict | None = None, timeout: int = 15,
             retries: int = _MAX_RETRIES) -> dict:
    """Perform a GET request and return the parsed JSON body."""
    return _request(url, method="GET", headers=headers, timeout=timeout, retries=retries)


def http_post(
    url: str,
    headers: dict | None = None,
    body: bytes | None = None,
    timeout: int = 15,
    retries: int = _MAX_RETRIES,
) -> dict:
    """Perform a POST request and return the parsed JSON body."""
    return _request(
        url, method="POST", data=body if body is not None else b"",
        headers=headers, timeout=timeout, retries=retries,
    )


def http_delete(url: str, headers: dict | None = None, timeout: int = 15,
                retries: int = _MAX_RETRIES) -> dict:
    """Perform a DELETE request; GitHub answers 204 with an empty body."""
    return _request(url, method="DELETE", headers=headers, timeout=timeout, retries=retries)
