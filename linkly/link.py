"""Short link storage in the database and in Redis."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from http import HTTPStatus
from typing import Any

import redis
from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    delete,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from linkly.state import ServiceError

logger = logging.getLogger(__name__)

_INTERNAL = HTTPStatus.INTERNAL_SERVER_ERROR
_CLICK_PREFIX = "shortlink_click:"
_URL_PREFIX = "shortlink:"
_VISIT_STREAM = "visit_log"
_VISIT_FIELDS = ("short_code", "long_url", "ip", "user_agent", "referer", "visit_time")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _aware_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


_Id = BigInteger().with_variant(Integer, "sqlite")

metadata = MetaData()

links_table = Table(
    "links",
    metadata,
    Column("id", _Id, primary_key=True, autoincrement=True),
    Column("user_id", _Id, nullable=False),
    Column("short_code", String(64), unique=True),
    Column("long_url", Text, nullable=False),
    Column("click_count", _Id, nullable=False, default=0),
    Column("expire_at", DateTime),
    Column("created_at", DateTime, nullable=False, default=_utcnow),
)

visit_logs_table = Table(
    "visit_logs",
    metadata,
    Column("id", _Id, primary_key=True, autoincrement=True),
    Column("short_code", String(64), nullable=False),
    Column("long_url", Text, nullable=False),
    Column("ip", String(64), nullable=False),
    Column("user_agent", Text, nullable=False),
    Column("referer", Text, nullable=False),
    Column("visit_time", DateTime, nullable=False),
)


@dataclass
class LinkRecord:
    """A stored short link; times are in UTC."""

    id: int
    user_id: int
    short_code: str | None
    long_url: str
    click_count: int
    expire_at: datetime | None
    created_at: datetime


@dataclass
class LinkQuery:
    """Filters and paging for listing links."""

    user_id: int | None = None
    short_code: str | None = None
    long_url: str | None = None
    click_count: int | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    limit: int = 10
    offset: int = 0

    def __post_init__(self) -> None:
        if not 1 <= self.limit <= 100:
            raise ServiceError(HTTPStatus.BAD_REQUEST, "Limit must be between 1 and 100")
        if self.offset < 0:
            raise ServiceError(HTTPStatus.BAD_REQUEST, "Offset must not be negative")


def insert_long_url(conn: Connection, long_url: str, expire_at: datetime, user_id: int) -> int:
    """Insert a link without a short code and return its new id."""
    try:
        result = conn.execute(
            insert(links_table).values(
                long_url=long_url, expire_at=_naive_utc(expire_at), user_id=user_id
            )
        )
    except SQLAlchemyError as exc:
        raise ServiceError(_INTERNAL, f"DB insert error: {exc}") from exc
    return int(result.inserted_primary_key[0])


def update_short_code(conn: Connection, link_id: int, short_code: str) -> None:
    """Give a link its short code; a taken code raises with status 409."""
    try:
        conn.execute(
            update(links_table)
            .where(links_table.c.id == link_id)
            .values(short_code=short_code)
        )
    except IntegrityError as exc:
        raise ServiceError(HTTPStatus.CONFLICT, "Short code already exists") from exc
    except SQLAlchemyError as exc:
        raise ServiceError(_INTERNAL, f"DB update error: {exc}") from exc


def set_shortlink(redis_client: Any, short_code: str, long_url: str, ttl: int) -> None:
    """Cache the short code to long URL mapping for ttl seconds."""
    try:
        redis_client.set(f"{_URL_PREFIX}{short_code}", long_url, ex=int(ttl))
    except redis.RedisError as exc:
        raise ServiceError(_INTERNAL, f"Redis set_ex error: {exc}") from exc


def set_click_count(redis_client: Any, short_code: str, click_ttl: int) -> None:
    """Start the click counter at zero unless it already exists."""
    try:
        redis_client.set(f"{_CLICK_PREFIX}{short_code}", 0, nx=True, ex=int(click_ttl))
    except redis.RedisError as exc:
        raise ServiceError(_INTERNAL, f"Redis SET NX EX error: {exc}") from exc


def incr_click_count(redis_client: Any, short_code: str) -> None:
    """Add one click; failures are logged, not raised."""
    try:
        redis_client.incr(f"{_CLICK_PREFIX}{short_code}", 1)
    except redis.RedisError as exc:
        logger.error("Redis INCR error: %s", exc)


def log_visit_to_stream(
    redis_client: Any,
    short_code: str,
    long_url: str,
    ip: str,
    user_agent: str,
    referer: str,
) -> None:
    """Append a visit to the visit log stream; failures are logged, not raised."""
    entry = {
        "short_code": short_code,
        "long_url": long_url,
        "ip": ip,
        "user_agent": user_agent,
        "referer": referer,
        "visit_time": datetime.now(timezone.utc).isoformat(),
    }
    try:
        redis_client.xadd(_VISIT_STREAM, entry)
    except redis.RedisError as exc:
        logger.error("Redis xadd error: %s", exc)


def get_long_url_from_redis(redis_client: Any, short_code: str) -> str | None:
    """Return the cached long URL, or None on a cache miss."""
    try:
        return redis_client.get(f"{_URL_PREFIX}{short_code}")
    except redis.RedisError as exc:
        raise ServiceError(_INTERNAL, f"Redis get error: {exc}") from exc


def get_long_url_from_db(engine: Engine, short_code: str) -> tuple[str, datetime | None]:
    """Return the long URL and its naive UTC expiry time from the database."""
    stmt = select(links_table.c.long_url, links_table.c.expire_at).where(
        links_table.c.short_code == short_code
    )
    try:
        with engine.connect() as conn:
            row = conn.execute(stmt).first()
    except SQLAlchemyError as exc:
        raise ServiceError(_INTERNAL, f"DB select error: {exc}") from exc
    if row is None:
        raise ServiceError(HTTPStatus.NOT_FOUND, "Short code not found")
    expire_at = row.expire_at
    return row.long_url, None if expire_at is None else _naive_utc(expire_at)


def sync_click_counts(engine: Engine, redis_client: Any, batch: int) -> None:
    """Move the click counts held in Redis into the database."""
    cursor = 0
    while True:
        try:
            cursor, keys = redis_client.scan(
                cursor=cursor, match=f"{_CLICK_PREFIX}*", count=batch
            )
        except redis.RedisError as exc:
            raise ServiceError(_INTERNAL, f"Redis scan error: {exc}") from exc

        for key in keys:
            if not key.startswith(_CLICK_PREFIX):
                continue
            code = key[len(_CLICK_PREFIX):]
            try:
                value = redis_client.get(key)
            except redis.RedisError as exc:
                raise ServiceError(_INTERNAL, f"Redis get error: {exc}") from exc
            if value is None or int(value) <= 0:
                continue
            clicks = int(value)
            try:
                with engine.begin() as conn:
                    conn.execute(
                        update(links_table)
                        .where(links_table.c.short_code == code)
                        .values(click_count=links_table.c.click_count + clicks)
                    )
            except SQLAlchemyError as exc:
                raise ServiceError(_INTERNAL, f"DB update error: {exc}") from exc
            try:
                redis_client.set(key, 0)
            except redis.RedisError as exc:
                raise ServiceError(_INTERNAL, f"Redis set error: {exc}") from exc

        if int(cursor) == 0:
            break


def _parse_visit_time(value: str) -> datetime | None:
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = re.sub(r"(\.\d{6})\d+", r"\1", text)
    try:
        return _naive_utc(datetime.fromisoformat(text))
    except ValueError as exc:
        raise ServiceError(_INTERNAL, f"DB insert error: invalid visit time {value!r}") from exc


def sync_visit_logs(engine: Engine, redis_client: Any, batch: int) -> None:
    """Move visit log entries from the Redis stream into the database."""
    while True:
        try:
            entries = redis_client.xrange(_VISIT_STREAM, min="-", max="+", count=batch)
        except redis.RedisError as exc:
            raise ServiceError(_INTERNAL, f"Redis XRANGE error: {exc}") from exc
        if not entries:
            break

        for entry_id, fields in entries:
            visit = {name: fields.get(name, "") for name in _VISIT_FIELDS}
            visit["visit_time"] = _parse_visit_time(visit["visit_time"])
            try:
                with engine.begin() as conn:
                    conn.execute(insert(visit_logs_table).values(**visit))
            except SQLAlchemyError as exc:
                raise ServiceError(_INTERNAL, f"DB insert error: {exc}") from exc
            try:
                redis_client.xdel(_VISIT_STREAM, entry_id)
            except redis.RedisError as exc:
                raise ServiceError(_INTERNAL, f"Redis XDEL error: {exc}") from exc


def _filters(query: LinkQuery, now: datetime) -> list[Any]:
    c = links_table.c
    conditions: list[Any] = []
    if query.user_id is not None:
        conditions.append(c.user_id == query.user_id)
    if query.short_code is not None:
        conditions.append(c.short_code.like(f"%{query.short_code}%"))
    if query.long_url is not None:
        conditions.append(c.long_url.like(f"%{query.long_url}%"))
    if query.click_count is not None:
        conditions.append(c.click_count == query.click_count)
    if query.date_from is not None:
        conditions.append(c.created_at >= _naive_utc(query.date_from))
    if query.date_to is not None:
        conditions.append(c.created_at <= _naive_utc(query.date_to))
    conditions.append(or_(c.expire_at.is_(None), c.expire_at > now))
    return conditions


def find_links(
    engine: Engine, query: LinkQuery, limit: int, offset: int
) -> tuple[list[LinkRecord], int]:
    """Return one page of unexpired links matching the query, newest first, and the total."""
    conditions = _filters(query, _utcnow())
    data_stmt = (
        select(links_table)
        .where(*conditions)
        .order_by(links_table.c.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    count_stmt = select(func.count()).select_from(links_table).where(*conditions)
    try:
        with engine.connect() as conn:
            rows = conn.execute(data_stmt).all()
            total = conn.execute(count_stmt).scalar_one()
    except SQLAlchemyError as exc:
        raise ServiceError(_INTERNAL, f"DB select error: {exc}") from exc
    links = [
        LinkRecord(
            id=row.id,
            user_id=row.user_id,
            short_code=row.short_code,
            long_url=row.long_url,
            click_count=row.click_count,
            expire_at=_aware_utc(row.expire_at),
            created_at=_aware_utc(row.created_at),
        )
        for row in rows
    ]
    return links, int(total)


def delete_links(
    engine: Engine, redis_client: Any, link_ids: Iterable[int], user_id: int
) -> None:
    """Delete the user's links with these ids and drop their cached entries."""
    ids = list(link_ids)
    owned = (links_table.c.user_id == user_id, links_table.c.id.in_(ids))
    try:
        with engine.connect() as conn:
            codes = conn.execute(select(links_table.c.short_code).where(*owned)).scalars().all()
    except SQLAlchemyError as exc:
        raise ServiceError(_INTERNAL, f"DB select error: {exc}") from exc
    try:
        with engine.begin() as conn:
            conn.execute(delete(links_table).where(*owned))
    except SQLAlchemyError as exc:
        raise ServiceError(_INTERNAL, f"DB Delete error: {exc}") from exc

    codes = [code for code in codes if code is not None]
    if not codes:
        return
    try:
        pipe = redis_client.pipeline(transaction=True)
        for code in codes:
            pipe.unlink(f"{_URL_PREFIX}{code}")
            pipe.unlink(f"{_CLICK_PREFIX}{code}")
        pipe.execute()
    except redis.RedisError as exc:
        raise ServiceError(_INTERNAL, f"Redis unlink error: {exc}") from exc


def delete_expired_links(engine: Engine) -> int:
    """Delete every link whose expiry time has passed; return how many went."""
    try:
        with engine.begin() as conn:
            result = conn.execute(
                delete(links_table).where(links_table.c.expire_at < _utcnow())
            )
    except SQLAlchemyError as exc:
        raise ServiceError(_INTERNAL, f"DB Delete error: {exc}") from exc
    return result.rowcount


def count_daily_visits_by_code(
    engine: Engine, short_code: str, user_id: int, days: int
) -> list[tuple[str, int]]:
    """Return (yyyy-mm-dd, visits) for `days` consecutive days in ascending order.

    The range starts `days` days before today (UTC); days without visits count zero.
    """
    owner_stmt = select(links_table.c.id).where(
        links_table.c.short_code == short_code, links_table.c.user_id == user_id
    )
    start_date = datetime.now(timezone.utc).date() - timedelta(days=days)
    day = func.date(visit_logs_table.c.visit_time).label("day")
    stats_stmt = (
        select(day, func.count().label("cnt"))
        .where(
            visit_logs_table.c.short_code == short_code,
            visit_logs_table.c.visit_time >= datetime.combine(start_date, time.min),
        )
        .group_by(day)
        .order_by(day)
    )
    try:
        with engine.connect() as conn:
            if conn.execute(owner_stmt).first() is None:
                raise ServiceError(HTTPStatus.NOT_FOUND, "Short code not found")
            rows = conn.execute(stats_stmt).all()
    except SQLAlchemyError as exc:
        raise ServiceError(_INTERNAL, f"DB select error: {exc}") from exc

    day_map = {str(row.day)[:10]: int(row.cnt) for row in rows if row.day is not None}
    result = []
    for offset in range(days):
        label = (start_date + timedelta(days=offset)).isoformat()
        result.append((label, day_map.get(label, 0)))
    return result