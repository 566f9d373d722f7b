from http import HTTPStatus

import pytest
import redis

from linkly.session import create_session
from linkly.state import ServiceError


class RecordingRedis:
    def __init__(self):
        self.calls = []

    def eval(self, script, numkeys, *keys_and_args):
        self.calls.append((script, numkeys, keys_and_args))
        return 1


class BrokenRedis:
    def eval(self, script, numkeys, *keys_and_args):
        raise redis.RedisError("connection lost")


def test_create_session_passes_keys_and_args():
    client = RecordingRedis()
    create_session(client, 42, 3600, "abc-def")
    assert len(client.calls) == 1
    _, numkeys, rest = client.calls[0]
    assert numkeys == 2
    assert rest == ("session:abc-def", "user_sessions:42", 3600, "abc-def")


def test_create_session_script_uses_both_keys():
    client = RecordingRedis()
    create_session(client, 1, 10, "j")
    script = client.calls[0][0]
    assert "KEYS[1]" in script and "KEYS[2]" in script


def test_create_session_wraps_redis_errors():
    with pytest.raises(ServiceError) as info:
        create_session(BrokenRedis(), 1, 10, "j")
    assert info.value.status == HTTPStatus.INTERNAL_SERVER_ERROR
    assert info.value.message.startswith("Redis error: ")
    assert "connection lost" in info.value.message