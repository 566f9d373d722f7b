from http import HTTPStatus

import pytest

from linkly.state import AppState, ServiceError, Settings, new_engine, new_redis_client


def _settings():
    return Settings(
        database_url="sqlite://",
        redis_url="redis://localhost:6379/0",
        addr="http://localhost:8080",
        jwt_secret="secret",
    )


def test_service_error_carries_status_and_message():
    err = ServiceError(404, "Short code not found")
    assert err.status is HTTPStatus.NOT_FOUND
    assert err.message == "Short code not found"
    assert str(err) == "Short code not found"


def test_redis_without_clients_raises():
    state = AppState(engine=new_engine("sqlite://"), redis_clients=[], settings=_settings())
    with pytest.raises(ServiceError) as info:
        state.redis()
    assert info.value.status == HTTPStatus.INTERNAL_SERVER_ERROR
    assert info.value.message == "No Redis manager"


def test_redis_picks_from_pool():
    clients = [object(), object(), object()]
    state = AppState(engine=new_engine("sqlite://"), redis_clients=clients, settings=_settings())
    for _ in range(20):
        assert any(state.redis() is c for c in clients)


def test_redis_single_client_always_returned():
    client = object()
    state = AppState(engine=new_engine("sqlite://"), redis_clients=[client])
    assert state.redis() is client


def test_new_engine_pool_size(tmp_path):
    engine = new_engine(f"sqlite:///{tmp_path / 'db.sqlite'}")
    assert engine.pool.size() == 5
    engine.dispose()


def test_new_redis_client_parses_url():
    client = new_redis_client("redis://localhost:6379/0")
    kwargs = client.connection_pool.connection_kwargs
    assert kwargs["host"] == "localhost"
    assert kwargs["port"] == 6379


def test_new_redis_client_rejects_bad_scheme():
    with pytest.raises(ValueError):
        new_redis_client("ftp://localhost")


def test_settings_is_mutable():
    settings = _settings()
    settings.max_stats_days = 7
    assert settings.max_stats_days == 7