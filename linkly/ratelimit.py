"""Fixed-window request limits kept in Redis, per client IP or per user."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any

import redis

from linkly.state import AppState, ServiceError, Settings

_INTERNAL = HTTPStatus.INTERNAL_SERVER_ERROR


def check_rate_limit(redis_client: Any, key: str, limit: int, window_secs: int) -> None:
    """Count a request under `key` and raise once the window's limit is passed."""
    try:
        count = redis_client.incr(key, 1)
    except redis.RedisError as exc:
        raise ServiceError(_INTERNAL, f"Redis Incr err: {exc}") from exc
    if count == 1:
        try:
            redis_client.expire(key, window_secs)
        except redis.RedisError as exc:
            raise ServiceError(_INTERNAL, f"Redis Expire err: {exc}") from exc
    if count > limit:
        raise ServiceError(HTTPStatus.TOO_MANY_REQUESTS, "Too many requests")


def _settings(state: AppState) -> Settings:
    if state.settings is None:
        raise ServiceError(_INTERNAL, "Settings not configured")
    return state.settings


def ip_rate_limit(state: AppState, ip: str) -> None:
    """Apply the per-IP request limit."""
    settings = _settings(state)
    check_rate_limit(
        state.redis(),
        f"rate_limit:ip:{ip}",
        settings.ip_rate_limit,
        settings.ip_rate_limit_window,
    )


def user_rate_limit(state: AppState, user_id: int) -> None:
    """Apply the per-user request limit."""
    settings = _settings(state)
    check_rate_limit(
        state.redis(),
        f"rate_limit:user:{user_id}",
        settings.user_rate_limit,
        settings.user_rate_limit_window,
    )