from __future__ import annotations

import hashlib
import hmac
import logging
import time
from collections import defaultdict, deque
from typing import Any

from fastapi import HTTPException, Request, Security, status
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader

from service.logging_config import current_actor

logger = logging.getLogger(__name__)

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def parse_api_keys(raw: str) -> dict[str, str]:
    """Parse ``actor:key,actor:key``; a bare key is attributed to ``api``."""
    keys: dict[str, str] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        actor, sep, key = item.partition(":")
        if not sep:
            actor, key = "api", actor
        if key.strip():
            keys[key.strip()] = actor.strip() or "api"
    return keys


class APIKeyAuth:
    """Resolve the calling actor from the X-API-Key header.

    Keys are stored as SHA-256 hashes to avoid plaintext in memory.
    Disabled when no keys are configured (development mode).
    """

    def __init__(self, allowed_keys: dict[str, str] | None = None) -> None:
        self._enabled = bool(allowed_keys)
        self._actors: dict[str, str] = {
            self._hash(key): actor for key, actor in (allowed_keys or {}).items()
        }

    @staticmethod
    def _hash(key: str) -> str:
        return hashlib.sha256(key.encode()).hexdigest()

    def resolve(self, api_key: str | None) -> str | None:
        if api_key is None:
            return None
        candidate = self._hash(api_key)
        for known, actor in self._actors.items():
            if hmac.compare_digest(candidate, known):
                return actor
        return None

    async def __call__(self, api_key: str | None = Security(_api_key_header)) -> str | None:
        if not self._enabled:
            return None
        actor = self.resolve(api_key)
        if actor is None:
            logger.warning("Rejected request with invalid API key")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or missing API key",
            )
        current_actor.set(actor)
        return actor


class RateLimiter:
    """Sliding-window limiter keyed by API key when one is sent, else by client IP.

    Bidders share one anonymous budget per address; back-office callers get a
    budget per key. Liveness and readiness probes are never limited.
    """

    EXEMPT_PATHS = frozenset({"/health", "/ready"})

    def __init__(self, requests_per_minute: int = 60, window_seconds: float = 60.0) -> None:
        self.rpm = requests_per_minute
        self.window_seconds = window_seconds
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._enabled = requests_per_minute > 0

    @staticmethod
    def client_key(request: Request) -> str:
        api_key = request.headers.get("X-API-Key")
        if api_key:
            return "key:" + hashlib.sha256(api_key.encode()).hexdigest()[:16]
        return "ip:" + (request.client.host if request.client else "unknown")

    def check(self, key: str, now: float | None = None) -> bool:
        if not self._enabled:
            return True
        now = time.monotonic() if now is None else now
        hits = self._hits[key]
        while hits and hits[0] <= now - self.window_seconds:
            hits.popleft()
        if len(hits) >= self.rpm:
            return False
        hits.append(now)
        return True

    async def middleware(self, request: Request, call_next: Any) -> Any:
        if not self._enabled or request.url.path in self.EXEMPT_PATHS:
            return await call_next(request)

        key = self.client_key(request)
        if not self.check(key):
            logger.warning("Rate limit exceeded for %s on %s", key, request.url.path)
            # Raising inside middleware bypasses the exception handlers.
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"kind": "rate_limited", "message": "Rate limit exceeded"},
                headers={"Retry-After": str(int(self.window_seconds))},
            )
        return await call_next(request)
