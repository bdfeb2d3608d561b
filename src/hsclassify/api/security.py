from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Header, HTTPException, Request

from hsclassify.classification.kv_store import KeyValueStore, get_default_kv_store


def _parse_api_keys(raw: str | None) -> set[str]:
    if not raw:
        return set()
    return {key.strip() for key in raw.split(",") if key.strip()}


def allowed_api_keys() -> set[str]:
    """Return the configured API keys from env or fallback to a dev key."""

    keys = _parse_api_keys(os.getenv("HSC_API_KEYS"))
    if not keys:
        keys = {"dev-key"}
    return keys


class RateLimiter:
    """Fixed-window rate limiter keyed by (api_key, route) over a key/value store."""

    def __init__(
        self,
        rate_per_minute: int = 60,
        window_seconds: int | None = None,
        store: KeyValueStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.rate_per_minute = max(1, rate_per_minute)
        self.window_seconds = max(1, window_seconds or int(os.getenv("HSC_RATE_WINDOW_SEC", "60")))
        self.store = store or get_default_kv_store()
        self._clock = clock

    def _current_window(self) -> int:
        return int(self._clock() // self.window_seconds)

    def check(self, api_key: str, route: str) -> None:
        key = f"ratelimit:{api_key}:{route}:{self._current_window()}"
        count = self.store.incr(key, ttl=self.window_seconds)
        if count > self.rate_per_minute:
            raise HTTPException(
                status_code=429,
                detail={
                    "message": "Rate limit exceeded",
                    "limit_per_minute": self.rate_per_minute,
                    "route": route,
                },
            )


rate_limiter = RateLimiter(rate_per_minute=int(os.getenv("HSC_RATE_LIMIT_PER_MINUTE", "60")))


def require_api_key(request: Request, x_api_key: Optional[str] = Header(None)) -> str:
    """Validate the provided API key and enforce per-route rate limits."""

    keys = allowed_api_keys()
    if not x_api_key:
        raise HTTPException(status_code=401, detail={"message": "Missing API key"})
    if x_api_key not in keys:
        raise HTTPException(status_code=401, detail={"message": "Invalid API key"})

    route = request.url.path
    rate_limiter.check(x_api_key, route)
    return x_api_key


def set_rate_limit(limit: int, store: KeyValueStore | None = None) -> None:
    """Utility hook for tests to reconfigure the limiter."""

    global rate_limiter
    rate_limiter = RateLimiter(
        rate_per_minute=max(1, int(limit)),
        window_seconds=int(os.getenv("HSC_RATE_WINDOW_SEC", "60")),
        store=store,
    )
