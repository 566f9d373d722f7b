"""Short link operations: creation, resolution, listing, deletion and statistics."""

from __future__ import annotations

import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from http import HTTPStatus
from urllib.parse import urlsplit

from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from linkly.link import (
    LinkQuery,
    LinkRecord,
    count_daily_visits_by_code,
    delete_links,
    find_links,
    get_long_url_from_db,
    get_long_url_from_redis,
    incr_click_count,
    insert_long_url,
    log_visit_to_stream,
    set_click_count,
    set_shortlink,
    update_short_code,
)
from linkly.state import AppState, ServiceError, Settings

_BASE62 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
_MAX_CODE_ATTEMPTS = 100
_INTERNAL = HTTPStatus.INTERNAL_SERVER_ERROR


def encode_base62(value: int) -> str:
    """Encode a non-negative integer with the digits 0-9, A-Z, a-z."""
    if value < 0:
        raise ValueError("value must not be negative")
    digits = []
    while value > 0:
        value, remainder = divmod(value, 62)
        digits.append(_BASE62[remainder])
    return "".join(reversed(digits)) or "0"


def _is_valid_url(url: str) -> bool:
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return bool(parts.scheme) and parts.scheme[0].isalpha() and bool(parts.netloc)


class ShortlinkService:
    """Operations on short links backed by the application state."""

    def __init__(self, state: AppState) -> None:
        self.state = state

    @property
    def _settings(self) -> Settings:
        if self.state.settings is None:
            raise ServiceError(_INTERNAL, "Settings not configured")
        return self.state.settings

    def create(
        self,
        long_url: str,
        user_id: int,
        ttl: int | None = None,
        short_code: str | None = None,
    ) -> str:
        """Create a short link and return its full short URL."""
        if not _is_valid_url(long_url):
            raise ServiceError(HTTPStatus.BAD_REQUEST, "Validation error: url: Invalid URL")

        settings = self._settings
        min_ttl, max_ttl = settings.shortlink_min_ttl, settings.shortlink_max_ttl
        if ttl is None:
            ttl = min_ttl
        elif not min_ttl <= ttl <= max_ttl:
            raise ServiceError(
                HTTPStatus.BAD_REQUEST, f"TTL must be between {min_ttl} and {max_ttl}"
            )

        expire_at = datetime.now(timezone.utc) + timedelta(seconds=ttl)
        try:
            with self.state.engine.begin() as conn:
                link_id = insert_long_url(conn, long_url, expire_at, user_id)
                code = self._assign_code(conn, link_id, short_code)
        except SQLAlchemyError as exc:
            raise ServiceError(_INTERNAL, f"DB Commit error: {exc}") from exc

        redis_client = self.state.redis()
        cache_ttl = min(ttl, settings.redis_max_ttl)
        set_shortlink(redis_client, code, long_url, cache_ttl)
        set_click_count(redis_client, code, ttl)
        return f"{settings.addr.rstrip('/')}/{code}"

    @staticmethod
    def _assign_code(conn: Connection, link_id: int, short_code: str | None) -> str:
        if short_code is not None:
            try:
                update_short_code(conn, link_id, short_code)
            except ServiceError as exc:
                if exc.status == HTTPStatus.CONFLICT:
                    raise ServiceError(
                        HTTPStatus.BAD_REQUEST, "Short code already exists"
                    ) from exc
                raise
            return short_code

        for step in range(_MAX_CODE_ATTEMPTS):
            candidate = encode_base62(link_id + step)
            try:
                update_short_code(conn, link_id, candidate)
            except ServiceError as exc:
                if exc.status == HTTPStatus.CONFLICT:
                    continue
                raise
            return candidate
        raise ServiceError(_INTERNAL, "Unable to generate unique short code")

    def get_long_url(
        self, short_code: str, ip: str, user_agent: str, referer: str = ""
    ) -> str:
        """Resolve a short code, counting the click and logging the visit."""
        redis_client = self.state.redis()

        cached = get_long_url_from_redis(redis_client, short_code)
        if cached is not None:
            self._record_visit(redis_client, short_code, cached, ip, user_agent, referer)
            return cached

        long_url, expire_at = get_long_url_from_db(self.state.engine, short_code)
        if expire_at is not None:
            expire_ts = int(expire_at.replace(tzinfo=timezone.utc).timestamp())
            remaining = expire_ts - int(time.time())
            if remaining <= 0:
                raise ServiceError(HTTPStatus.NOT_FOUND, "Link expired")
            if remaining > self._settings.redis_min_cache_ttl:
                set_shortlink(redis_client, short_code, long_url, remaining)

        self._record_visit(redis_client, short_code, long_url, ip, user_agent, referer)
        return long_url

    @staticmethod
    def _record_visit(
        redis_client, short_code: str, long_url: str, ip: str, user_agent: str, referer: str
    ) -> None:
        log_visit_to_stream(redis_client, short_code, long_url, ip, user_agent, referer)
        incr_click_count(redis_client, short_code)

    def list_links(self, query: LinkQuery, user_id: int) -> tuple[list[LinkRecord], int]:
        """Return one page of the user's links and the total that match."""
        own_query = replace(query, user_id=user_id)
        return find_links(self.state.engine, own_query, own_query.limit, own_query.offset)

    def delete_links(self, link_ids: list[int], user_id: int) -> None:
        """Delete the user's links with these ids."""
        redis_client = self.state.redis()
        delete_links(self.state.engine, redis_client, link_ids, user_id)

    def get_link_stats(
        self, short_code: str, user_id: int, days: int = 30
    ) -> list[tuple[str, int]]:
        """Return daily visit counts for one of the user's links."""
        if not 0 <= days <= 255:
            raise ServiceError(HTTPStatus.BAD_REQUEST, "Invalid days")
        if days > self._settings.max_stats_days:
            raise ServiceError(HTTPStatus.BAD_REQUEST, "Days exceeds maximum allowed")
        return count_daily_visits_by_code(self.state.engine, short_code, user_id, days)