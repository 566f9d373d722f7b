from datetime import datetime, timedelta, timezone
from http import HTTPStatus

import pytest
from sqlalchemy import create_engine, func, insert, select

from linkly.link import LinkQuery, links_table, metadata, visit_logs_table
from linkly.service import ShortlinkService, encode_base62
from linkly.state import AppState, ServiceError, Settings


class _Pipe:
    def __init__(self, store):
        self.store = store
        self.keys = []

    def unlink(self, key):
        self.keys.append(key)

    def execute(self):
        for key in self.keys:
            self.store.data.pop(key, None)
        return [1] * len(self.keys)


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.stream = []

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ex=None, nx=False):
        if nx and key in self.data:
            return None
        self.data[key] = str(value)
        if ex is not None:
            self.ttls[key] = ex
        return True

    def incr(self, key, amount=1):
        value = int(self.data.get(key, "0")) + amount
        self.data[key] = str(value)
        return value

    def xadd(self, name, fields):
        self.stream.append(dict(fields))
        return f"{len(self.stream)}-0"

    def pipeline(self, transaction=True):
        return _Pipe(self)


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'links.db'}")
    metadata.create_all(eng)
    return eng


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def service(engine, fake_redis):
    settings = Settings(
        database_url="sqlite://",
        redis_url="redis://localhost",
        addr="http://sho.rt/",
        jwt_secret="secret",
    )
    return ShortlinkService(AppState(engine=engine, redis_clients=[fake_redis], settings=settings))


def test_encode_base62_source_cases():
    assert encode_base62(1) == "1"
    assert encode_base62(62) == "10"
    assert encode_base62(62 * 62) == "100"


def test_encode_base62_zero():
    assert encode_base62(0) == "0"


def test_encode_base62_negative():
    with pytest.raises(ValueError):
        encode_base62(-1)


def test_create_default_ttl(service, fake_redis):
    url = service.create("https://example.com/page", user_id=1)
    assert url == "http://sho.rt/1"
    assert fake_redis.data["shortlink:1"] == "https://example.com/page"
    assert fake_redis.data["shortlink_click:1"] == "0"
    assert fake_redis.ttls["shortlink:1"] == 3600


def test_create_caps_cache_ttl(service, fake_redis):
    ttl = 7 * 24 * 3600
    service.create("https://example.com/a", user_id=1, ttl=ttl)
    assert fake_redis.ttls["shortlink:1"] == service.state.settings.redis_max_ttl
    assert fake_redis.ttls["shortlink_click:1"] == ttl


def test_create_invalid_url(service):
    with pytest.raises(ServiceError) as info:
        service.create("not a url", user_id=1)
    assert info.value.status == HTTPStatus.BAD_REQUEST


def test_create_ttl_out_of_range(service):
    with pytest.raises(ServiceError) as info:
        service.create("https://example.com/", user_id=1, ttl=10)
    assert info.value.status == HTTPStatus.BAD_REQUEST
    assert str(info.value) == "TTL must be between 3600 and 2592000"


def test_create_custom_code_and_duplicate(service, engine):
    assert service.create("https://example.com/x", 1, short_code="mine") == "http://sho.rt/mine"
    with pytest.raises(ServiceError) as info:
        service.create("https://example.com/y", 1, short_code="mine")
    assert info.value.status == HTTPStatus.BAD_REQUEST
    assert str(info.value) == "Short code already exists"
    with engine.connect() as conn:
        assert conn.execute(select(func.count()).select_from(links_table)).scalar_one() == 1


def test_create_skips_taken_generated_code(service):
    service.create("https://example.com/x", 1, short_code="2")
    assert service.create("https://example.com/y", 1) == "http://sho.rt/3"


def test_get_long_url_from_cache(service, fake_redis):
    service.create("https://example.com/c", 1)
    result = service.get_long_url("1", "10.0.0.1", "agent", "https://example.com/ref")
    assert result == "https://example.com/c"
    assert fake_redis.data["shortlink_click:1"] == "1"
    assert fake_redis.stream[0]["ip"] == "10.0.0.1"
    assert fake_redis.stream[0]["referer"] == "https://example.com/ref"


def test_get_long_url_from_database_recaches(service, fake_redis):
    service.create("https://example.com/d", 1)
    fake_redis.data.clear()
    assert service.get_long_url("1", "10.0.0.1", "agent") == "https://example.com/d"
    assert fake_redis.data["shortlink:1"] == "https://example.com/d"
    assert len(fake_redis.stream) == 1


def test_get_long_url_expired(service, engine):
    past = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(hours=1)
    with engine.begin() as conn:
        conn.execute(
            insert(links_table).values(
                user_id=1, short_code="old", long_url="https://example.com/o", expire_at=past
            )
        )
    with pytest.raises(ServiceError) as info:
        service.get_long_url("old", "10.0.0.1", "agent")
    assert info.value.status == HTTPStatus.NOT_FOUND
    assert str(info.value) == "Link expired"


def test_get_long_url_unknown(service):
    with pytest.raises(ServiceError) as info:
        service.get_long_url("nope", "10.0.0.1", "agent")
    assert info.value.status == HTTPStatus.NOT_FOUND


def test_list_links_only_own(service):
    service.create("https://example.com/1", 1)
    service.create("https://example.com/2", 1)
    service.create("https://example.com/3", 2)
    links, count = service.list_links(LinkQuery(user_id=2), user_id=1)
    assert count == 2
    assert {link.user_id for link in links} == {1}


def test_delete_links(service, engine, fake_redis):
    service.create("https://example.com/1", 1)
    service.create("https://example.com/2", 1)
    service.delete_links([1], user_id=1)
    assert "shortlink:1" not in fake_redis.data
    assert "shortlink_click:1" not in fake_redis.data
    assert "shortlink:2" in fake_redis.data
    with engine.connect() as conn:
        ids = conn.execute(select(links_table.c.id)).scalars().all()
    assert ids == [2]


def test_get_link_stats_too_many_days(service):
    service.create("https://example.com/1", 1)
    with pytest.raises(ServiceError) as info:
        service.get_link_stats("1", 1, days=91)
    assert info.value.status == HTTPStatus.BAD_REQUEST
    assert str(info.value) == "Days exceeds maximum allowed"


def test_get_link_stats_counts(service, engine):
    service.create("https://example.com/1", 1)
    yesterday = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=1)
    with engine.begin() as conn:
        conn.execute(
            insert(visit_logs_table).values(
                short_code="1",
                long_url="https://example.com/1",
                ip="10.0.0.1",
                user_agent="agent",
                referer="",
                visit_time=yesterday,
            )
        )
    stats = service.get_link_stats("1", 1, days=3)
    assert len(stats) == 3
    assert [day for day, _ in stats] == sorted(day for day, _ in stats)
    assert stats[-1] == (yesterday.date().isoformat(), 1)
    assert sum(count for _, count in stats) == 1


def test_get_link_stats_not_owner(service):
    service.create("https://example.com/1", 1)
    with pytest.raises(ServiceError) as info:
        service.get_link_stats("1", 2, days=3)
    assert info.value.status == HTTPStatus.NOT_FOUND