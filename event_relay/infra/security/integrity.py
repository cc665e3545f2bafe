"""Signature, freshness and replay checks for the public landing endpoint.

The landing site signs every submission with a shared secret:

    signature = hex(HMAC-SHA256(secret, f"{METHOD}|{path}|{raw_body}|{timestamp_ms}"))

and sends it with three headers:

- ``x-anti-spam-token``: identifies the signer, must equal ``INTEGRITY_TOKEN``
- ``x-anti-spam-timestamp``: Unix epoch milliseconds at signing time
- ``x-anti-spam-signature``: the hex digest above

Rejections:
- 401 ``UnauthorizedException``: a header is missing, the token is wrong, the
  timestamp is not an integer, or the signature does not match
- 403 ``ReplayDetectedException``: the signature is valid but the timestamp
  is outside the window, or the same signature was already accepted within
  the replay TTL
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from functools import lru_cache
from typing import TYPE_CHECKING, Protocol

from fastapi import Depends, Request
from redis.asyncio import Redis

from event_relay.core.exceptions import (
    ReplayDetectedException,
    ServiceUnavailableException,
    UnauthorizedException,
)
from event_relay.core.settings import get_integrity_settings

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from event_relay.core.settings import IntegritySettings

logger = logging.getLogger(__name__)

TOKEN_HEADER = "x-anti-spam-token"
TIMESTAMP_HEADER = "x-anti-spam-timestamp"
SIGNATURE_HEADER = "x-anti-spam-signature"


def compute_signature(
    secret: str | bytes,
    method: str,
    path: str,
    body: bytes | str,
    timestamp: str | int,
) -> str:
    """Hex HMAC-SHA256 over ``METHOD|path|body|timestamp``.

    Args:
        secret: Shared secret.
        method: HTTP method; upper-cased before signing.
        path: Request path without query string.
        body: Raw request body exactly as sent.
        timestamp: Unix epoch milliseconds, as sent in the header.
    """
    key = secret.encode() if isinstance(secret, str) else secret
    raw = body.encode() if isinstance(body, str) else body
    message = f"{method.upper()}|{path}|".encode() + raw + f"|{timestamp}".encode()
    return hmac.new(key, message, hashlib.sha256).hexdigest()


# =============================================================================
# Replay caches
# =============================================================================


class ReplayCache(Protocol):
    async def remember(self, key: str, ttl_seconds: int) -> bool:
        """Store ``key`` for ``ttl_seconds``; False if it was already present."""
        ...


class InMemoryReplayCache:
    """Per-process replay cache; expired markers are pruned on access."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expires: dict[str, float] = {}

    def __len__(self) -> int:
        self._prune(self._clock())
        return len(self._expires)

    def _prune(self, now: float) -> None:
        expired = [key for key, expires_at in self._expires.items() if expires_at <= now]
        for key in expired:
            del self._expires[key]

    async def remember(self, key: str, ttl_seconds: int) -> bool:
        now = self._clock()
        self._prune(now)
        if key in self._expires:
            return False
        self._expires[key] = now + ttl_seconds
        return True


class RedisReplayCache:
    """Replay cache shared by every replica (``SET key 1 NX EX ttl``)."""

    def __init__(self, client: Redis, key_prefix: str = "landing:replay:") -> None:
        self._client = client
        self._key_prefix = key_prefix

    async def remember(self, key: str, ttl_seconds: int) -> bool:
        stored = await self._client.set(f"{self._key_prefix}{key}", "1", nx=True, ex=ttl_seconds)
        return bool(stored)

    async def close(self) -> None:
        await self._client.aclose()


# =============================================================================
# Guard
# =============================================================================


class IntegrityGuard:
    """Verifies signed landing submissions."""

    def __init__(
        self,
        settings: IntegritySettings | None = None,
        replay_cache: ReplayCache | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_integrity_settings()
        self.replay_cache = replay_cache or InMemoryReplayCache()
        self._clock = clock

    async def verify(
        self,
        method: str,
        path: str,
        body: bytes,
        headers: Mapping[str, str],
        now_ms: int | None = None,
    ) -> None:
        """Accept the request or raise.

        Raises:
            ServiceUnavailableException: Secret or token not configured.
            UnauthorizedException: Missing headers, wrong token, malformed
                timestamp or bad signature.
            ReplayDetectedException: Stale timestamp or signature already used.
        """
        if not self.settings.is_configured:
            logger.error("Landing integrity secret or token is not configured")
            raise ServiceUnavailableException("Landing submissions are not accepted right now")

        token = _header(headers, TOKEN_HEADER)
        timestamp = _header(headers, TIMESTAMP_HEADER)
        signature = _header(headers, SIGNATURE_HEADER)
        if not token or not timestamp or not signature:
            raise UnauthorizedException("Missing landing signature headers", type="missing-signature")

        if not _same(token, self.settings.token):
            logger.warning("Landing request with unknown token", extra={"path": path})
            raise UnauthorizedException("Invalid landing token", type="invalid-signature")

        try:
            timestamp_ms = int(timestamp)
        except ValueError:
            raise UnauthorizedException("Malformed landing timestamp", type="invalid-signature") from None

        expected = compute_signature(
            self.settings.secret.get_secret_value(), method, path, body, timestamp
        )
        if not _same(signature.lower(), expected):
            logger.warning("Landing request with invalid signature", extra={"path": path})
            raise UnauthorizedException("Invalid landing signature", type="invalid-signature")

        if now_ms is None:
            now_ms = int(self._clock() * 1000)
        skew_ms = abs(now_ms - timestamp_ms)
        if skew_ms > self.settings.window_seconds * 1000:
            logger.warning(
                "Landing request outside time window",
                extra={"path": path, "skew_ms": skew_ms, "window_seconds": self.settings.window_seconds},
            )
            raise ReplayDetectedException(
                "Request timestamp is outside the allowed window",
                extra={"window_seconds": self.settings.window_seconds},
            )

        if not await self.replay_cache.remember(expected, self.settings.replay_ttl_seconds):
            logger.warning("Landing request replay detected", extra={"path": path})
            raise ReplayDetectedException()


def _same(received: str, expected: str) -> bool:
    """Constant-time comparison that also accepts non-ASCII header text."""
    return hmac.compare_digest(received.encode(), expected.encode())


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        # Plain dicts are case-sensitive, Starlette headers are not
        for key, candidate in headers.items():
            if key.lower() == name:
                return candidate.strip()
        return None
    return value.strip()


# =============================================================================
# FastAPI dependency
# =============================================================================


@lru_cache(maxsize=1)
def get_integrity_guard() -> IntegrityGuard:
    """Process-wide guard built from ``IntegritySettings``."""
    settings = get_integrity_settings()
    cache: ReplayCache
    if settings.replay_backend == "redis":
        cache = RedisReplayCache(
            Redis.from_url(settings.redis_url, decode_responses=True),
            key_prefix=settings.replay_key_prefix,
        )
    else:
        cache = InMemoryReplayCache()
    logger.info("Integrity guard ready", extra={"replay_backend": settings.replay_backend})
    return IntegrityGuard(settings, cache)


async def verify_landing_request(
    request: Request,
    guard: IntegrityGuard = Depends(get_integrity_guard),
) -> None:
    """Reject the request unless it carries a fresh, valid, unseen signature."""
    body = await request.body()
    await guard.verify(request.method, request.url.path, body, request.headers)


__all__ = [
    "SIGNATURE_HEADER",
    "TIMESTAMP_HEADER",
    "TOKEN_HEADER",
    "InMemoryReplayCache",
    "IntegrityGuard",
    "RedisReplayCache",
    "ReplayCache",
    "compute_signature",
    "get_integrity_guard",
    "verify_landing_request",
]
