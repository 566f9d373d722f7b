"""Shared application state, settings and connection factories."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any

import redis
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine


class ServiceError(Exception):
    """An error carrying the HTTP status it should be reported with."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = HTTPStatus(status)
        self.message = message

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"ServiceError({int(self.status)}, {self.message!r})"


@dataclass
class Settings:
    """Runtime settings of the service."""

    database_url: str
    redis_url: str
    addr: str
    jwt_secret: str
    shortlink_min_ttl: int = 3600
    shortlink_max_ttl: int = 30 * 24 * 3600
    redis_max_ttl: int = 24 * 3600
    redis_min_cache_ttl: int = 60
    ip_rate_limit: int = 60
    ip_rate_limit_window: int = 60
    user_rate_limit: int = 120
    user_rate_limit_window: int = 60
    max_stats_days: int = 90


@dataclass
class AppState:
    """Database engine, a pool of Redis clients and the settings."""

    engine: Engine
    redis_clients: list[Any] = field(default_factory=list)
    settings: Settings | None = None

    def redis(self) -> Any:
        """Return one of the Redis clients, chosen at random."""
        if not self.redis_clients:
            raise ServiceError(HTTPStatus.INTERNAL_SERVER_ERROR, "No Redis manager")
        return random.choice(self.redis_clients)


def new_engine(database_url: str) -> Engine:
    """Create a database engine with a pool of at most five connections."""
    return create_engine(database_url, pool_size=5, max_overflow=0)


def new_redis_client(redis_url: str) -> redis.Redis:
    """Create a Redis client for the given URL; no connection is opened yet."""
    return redis.Redis.from_url(redis_url, decode_responses=True)