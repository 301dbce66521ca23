"""Bounded retry and per-call timeout for collaborator calls.

Semantics:
- every call runs under a fixed timeout; expiry is a transient failure
- retryable failures: network errors, HTTP 408/429/5xx, and TransientError
- backoff: backoff_s * 2**(attempt-1) between attempts
- AccessDenied and every other ImpactError propagate immediately
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx

from .errors import (
    IMP_E_TIMEOUT,
    IMP_E_UPSTREAM,
    AccessDenied,
    TransientError,
    impact_error,
)

logger = logging.getLogger("impact_gateway.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_s: float = 0.5
    timeout_s: float = 10.0

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            max_attempts=int(settings.retry_attempts),
            backoff_s=float(settings.retry_backoff_seconds),
            timeout_s=float(settings.http_timeout_seconds),
        )


def is_retryable_status(status: int) -> bool:
    return status in (408, 429) or (500 <= status <= 599)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    op: str = "call",
) -> T:
    """Run ``fn`` with a per-attempt timeout, retrying transient failures only."""
    attempts = max(1, int(policy.max_attempts))
    last: Optional[TransientError] = None
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(fn(), timeout=policy.timeout_s)
        except asyncio.TimeoutError:
            last = TransientError(f"{op} timed out", code=IMP_E_TIMEOUT, http_status=504, timeout_s=policy.timeout_s)
        except TransientError as e:
            last = e
        if attempt < attempts:
            delay = policy.backoff_s * (2 ** (attempt - 1))
            logger.debug("%s attempt %d/%d failed (%s); retrying in %.2fs", op, attempt, attempts, last, delay)
            await asyncio.sleep(delay)
    assert last is not None
    last.details.setdefault("attempts", attempts)
    raise last


def raise_for_response(resp: httpx.Response, *, op: str) -> None:
    """Map an HTTP response status onto the error taxonomy."""
    status = resp.status_code
    if 200 <= status <= 299:
        return
    if status in (401, 403):
        raise AccessDenied(f"{op} refused access (HTTP {status})", http_status=status)
    if is_retryable_status(status):
        raise TransientError(f"{op} failed with HTTP {status}", http_status=status)
    raise impact_error(IMP_E_UPSTREAM, f"{op} failed with HTTP {status}", http_status=502, upstream_status=status)


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    op: str,
    **kwargs: Any,
) -> Dict[str, Any]:
    """Send one request and return the decoded JSON object.

    Single attempt: callers wrap collaborator calls in ``call_with_retry``.
    """
    try:
        resp = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise TransientError(f"{op} timed out", code=IMP_E_TIMEOUT, http_status=504) from e
    except httpx.TransportError as e:
        raise TransientError(f"{op} network error: {e}") from e
    raise_for_response(resp, op=op)
    try:
        data = resp.json()
    except ValueError as e:
        raise impact_error(IMP_E_UPSTREAM, f"{op} returned invalid JSON", http_status=502) from e
    if not isinstance(data, dict):
        raise impact_error(IMP_E_UPSTREAM, f"{op} returned a non-object body", http_status=502)
    return data
