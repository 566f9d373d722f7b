"""User records and login/registration attempt counters."""

from __future__ import annotations

from dataclasses import dataclass
from http import HTTPStatus
from typing import Any

import redis
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from linkly.state import ServiceError

_INTERNAL = HTTPStatus.INTERNAL_SERVER_ERROR


@dataclass
class User:
    """A registered user."""

    id: int
    email: str
    nickname: str | None
    password: str
    status: int


def exists_by_email(engine: Engine, email: str) -> bool:
    """Tell whether a user with this e-mail address is registered."""
    try:
        with engine.connect() as conn:
            row = conn.execute(
                text("SELECT 1 FROM users WHERE email = :email LIMIT 1"),
                {"email": email},
            ).first()
    except SQLAlchemyError as exc:
        raise ServiceError(_INTERNAL, f"DB select error: {exc}") from exc
    return row is not None


def create_user(engine: Engine, nickname: str, password: str, email: str) -> None:
    """Insert a new user."""
    try:
        with engine.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO users (nickname, password, email) "
                    "VALUES (:nickname, :password, :email)"
                ),
                {"nickname": nickname, "password": password, "email": email},
            )
    except SQLAlchemyError as exc:
        raise ServiceError(_INTERNAL, f"DB insert error: {exc}") from exc


def find_user(engine: Engine, user_id: int | None, email: str | None) -> User | None:
    """Look a user up by id or by e-mail address; exactly one must be given."""
    columns = "SELECT id, email, nickname, password, status FROM users"
    if user_id is not None and email is None:
        sql, params = f"{columns} WHERE id = :id LIMIT 1", {"id": user_id}
    elif user_id is None and email is not None:
        sql, params = f"{columns} WHERE email = :email LIMIT 1", {"email": email}
    else:
        raise ServiceError(
            HTTPStatus.BAD_REQUEST, "Invalid parameters: require either id or email"
        )
    try:
        with engine.connect() as conn:
            row = conn.execute(text(sql), params).first()
    except SQLAlchemyError as exc:
        raise ServiceError(_INTERNAL, f"DB select error: {exc}") from exc
    return None if row is None else User(**row._mapping)


def _read_count(redis_client: Any, key: str) -> int:
    try:
        value = redis_client.get(key)
    except redis.RedisError as exc:
        raise ServiceError(_INTERNAL, f"Redis get error: {exc}") from exc
    return 0 if value is None else int(value)


def _limit_reached(redis_client: Any, key: str, limit: int) -> bool:
    return _read_count(redis_client, key) >= limit


def _incr_count(redis_client: Any, key: str, ttl: int) -> None:
    try:
        count = redis_client.incr(key, 1)
    except redis.RedisError as exc:
        raise ServiceError(_INTERNAL, f"Redis Incr err: {exc}") from exc
    if count == 1:
        try:
            redis_client.expire(key, ttl)
        except redis.RedisError as exc:
            raise ServiceError(_INTERNAL, f"Redis Expire err: {exc}") from exc


def can_login(
    redis_client: Any,
    user_login_fail_limit: int,
    ip_user_login_fail_limit: int,
    user_fail_key: str,
    ip_user_fail_key: str,
) -> None:
    """Raise if the account or this device has too many failed logins."""
    if _limit_reached(redis_client, user_fail_key, user_login_fail_limit):
        raise ServiceError(
            HTTPStatus.TOO_MANY_REQUESTS,
            "Account temporarily locked due to multiple failed login attempts",
        )
    if _limit_reached(redis_client, ip_user_fail_key, ip_user_login_fail_limit):
        raise ServiceError(
            HTTPStatus.TOO_MANY_REQUESTS,
            "Too many login attempts from this device, please try again later",
        )


def record_login_fail(
    redis_client: Any,
    user_fail_key: str,
    ip_user_fail_key: str,
    user_login_fail_ttl: int,
    ip_user_login_fail_ttl: int,
) -> None:
    """Count a failed login for the account and for the device."""
    _incr_count(redis_client, user_fail_key, user_login_fail_ttl)
    _incr_count(redis_client, ip_user_fail_key, ip_user_login_fail_ttl)


def login_success(redis_client: Any, user_fail_key: str, ip_user_fail_key: str) -> None:
    """Clear the failed-login counters."""
    for key in (user_fail_key, ip_user_fail_key):
        try:
            redis_client.delete(key)
        except redis.RedisError as exc:
            raise ServiceError(_INTERNAL, f"Redis Del err: {exc}") from exc


def can_register(redis_client: Any, ip_register_limit: int, ip_register_key: str) -> None:
    """Raise if this device has registered too many times."""
    if _limit_reached(redis_client, ip_register_key, ip_register_limit):
        raise ServiceError(
            HTTPStatus.TOO_MANY_REQUESTS,
            "Too many registration attempts from this device, please try again later",
        )


def record_register(redis_client: Any, ip_register_key: str, ip_register_ttl: int) -> None:
    """Count a registration from this device."""
    _incr_count(redis_client, ip_register_key, ip_register_ttl)