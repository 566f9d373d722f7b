"""Login sessions kept in Redis, at most three per user."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any

import redis

from linkly.state import ServiceError

# Stores the token, appends it to the user's session list and, once the list
# grows past three entries, evicts the oldest token together with its key.
_STORE_AND_EVICT = """
local sessions = KEYS[2]
redis.call('SET', KEYS[1], '1', 'EX', tonumber(ARGV[1]))
local count = redis.call('RPUSH', sessions, ARGV[2])
if count > 3 then
    local evicted = redis.call('LPOP', sessions)
    if evicted then
        redis.call('DEL', 'session:' .. evicted)
    end
end
return 1
"""


def create_session(redis_client: Any, user_id: int, expire_secs: int, jti: str) -> None:
    """Store a session token and evict the oldest one beyond three per user."""
    token_key = f"session:{jti}"
    sessions_key = f"user_sessions:{user_id}"
    try:
        redis_client.eval(_STORE_AND_EVICT, 2, token_key, sessions_key, expire_secs, jti)
    except redis.RedisError as exc:
        raise ServiceError(HTTPStatus.INTERNAL_SERVER_ERROR, f"Redis error: {exc}") from exc