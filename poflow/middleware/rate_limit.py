# poflow/middleware/rate_limit.py
"""
Fixed-window rate limiting via Upstash Redis.

Public invoice uploads are limited per client IP; everything else per user
(bearer subject) or IP. Without Upstash credentials an in-process window is
used, which only holds for a single instance. Cache errors also fall back to
the in-process window, so a broken cache never blocks requests.
"""

import time
from dataclasses import dataclass

from fastapi import Request
from fastapi.responses import JSONResponse
import structlog

from poflow.config import settings
from poflow.services.auth_service import unverified_subject
from poflow.services.cache import cache

logger = structlog.get_logger()

SKIP_PATHS = {"/health"}
PUBLIC_UPLOAD_PATH = "/api/v1/public/invoice-upload"


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_ms: int


def _limits(category: str) -> tuple[int, int]:
    if category == "public_upload":
        return settings.PUBLIC_UPLOAD_RATE_LIMIT, settings.PUBLIC_UPLOAD_RATE_WINDOW
    return settings.API_RATE_LIMIT, settings.API_RATE_WINDOW


def _now_ms() -> int:
    return int(time.time() * 1000)


class InMemoryWindow:
    def __init__(self):
        self._windows: dict[str, tuple[int, int]] = {}

    def hit(self, key: str, limit: int, window: int, now_ms: int) -> RateLimitResult:
        count, reset_ms = self._windows.get(key, (0, 0))
        if reset_ms <= now_ms:
            self._prune(now_ms)
            count, reset_ms = 0, now_ms + window * 1000
        count += 1
        self._windows[key] = (count, reset_ms)
        return RateLimitResult(
            allowed=count <= limit,
            limit=limit,
            remaining=max(limit - count, 0),
            reset_ms=reset_ms,
        )

    def _prune(self, now_ms: int):
        expired = [k for k, (_, reset) in self._windows.items() if reset <= now_ms]
        for k in expired:
            del self._windows[k]

    def clear(self):
        self._windows.clear()


_local = InMemoryWindow()


async def check_rate_limit(category: str, identity: str) -> RateLimitResult:
    limit, window = _limits(category)
    key = f"rl:{category}:{identity}"
    now_ms = _now_ms()

    if not cache.configured:
        return _local.hit(key, limit, window, now_ms)

    try:
        results = await cache.pipeline([
            ["INCR", key],
            ["EXPIRE", key, window, "NX"],
            ["PTTL", key],
        ])
        current = int(results[0].get("result", 0))
        ttl_ms = int(results[2].get("result", -1))
    except Exception as e:
        logger.warning("rate_limit_cache_error", error=str(e), key=key)
        return _local.hit(key, limit, window, now_ms)

    if ttl_ms < 0:
        ttl_ms = window * 1000
    return RateLimitResult(
        allowed=current <= limit,
        limit=limit,
        remaining=max(limit - current, 0),
        reset_ms=now_ms + ttl_ms,
    )


def client_ip(request: Request) -> str:
    """
    Caller address as seen by the outermost trusted proxy.

    Each trusted proxy appends the address it received the request from, so
    the client is the entry TRUSTED_PROXY_HOPS from the right. Anything to
    the left of it was supplied by the client and is ignored.
    """
    peer = request.client.host if request.client else "unknown"
    hops = settings.TRUSTED_PROXY_HOPS
    if hops <= 0:
        return peer
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        chain = [part.strip() for part in forwarded_for.split(",") if part.strip()]
        if chain:
            return chain[-hops] if len(chain) >= hops else chain[0]
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return peer


def _identity(request: Request, category: str) -> str:
    ip = client_ip(request)
    if category == "public_upload":
        return f"ip:{ip}"
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        subject = unverified_subject(auth_header.split(" ", 1)[1])
        if subject:
            return f"user:{subject}"
    return f"ip:{ip}"


def _path_category(request: Request) -> str:
    if request.url.path == PUBLIC_UPLOAD_PATH and request.method == "POST":
        return "public_upload"
    return "default"


def rate_limit_headers(result: RateLimitResult) -> dict:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_ms),
    }


async def rate_limit_middleware(request: Request, call_next):
    path = request.url.path
    if path in SKIP_PATHS or request.method == "OPTIONS":
        return await call_next(request)

    category = _path_category(request)
    identity = _identity(request, category)
    result = await check_rate_limit(category, identity)
    headers = rate_limit_headers(result)

    if not result.allowed:
        retry_after = max((result.reset_ms - _now_ms() + 999) // 1000, 1)
        logger.warning(
            "rate_limited",
            identity=identity,
            path=path,
            category=category,
            limit=result.limit,
        )
        headers["Retry-After"] = str(retry_after)
        # Raising here would bypass the exception handlers
        return JSONResponse(
            status_code=429,
            content={
                "error": {
                    "code": "RATE_LIMITED",
                    "message": "Too many requests. Please try again later.",
                }
            },
            headers=headers,
        )

    response = await call_next(request)
    response.headers.update(headers)
    return response
