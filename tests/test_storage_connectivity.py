from __future__ import annotations

import pytest
from sqlalchemy import select

import src.storage.db as db_module
import src.storage.redis_client as redis_module
from src.core.config import get_settings
from src.storage.models import Profile


@pytest.fixture()
def fresh_storage_caches():
    db_module.get_engine.cache_clear()
    db_module.get_session_factory.cache_clear()
    redis_module.get_client.cache_clear()
    yield
    db_module.get_engine.cache_clear()
    db_module.get_session_factory.cache_clear()
    redis_module.get_client.cache_clear()


def test_database_health_check_reports_reachable_sqlite(monkeypatch, tmp_path, fresh_storage_caches) -> None:
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'health.sqlite'}")
    get_settings.cache_clear()

    ok, error = db_module.test_connection()

    assert ok is True
    assert error is None


def test_database_health_check_reports_unreachable_database(monkeypatch, tmp_path, fresh_storage_caches) -> None:
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'missing-dir' / 'health.sqlite'}")
    get_settings.cache_clear()

    ok, error = db_module.test_connection()

    assert ok is False
    assert error


def test_server_engine_reserves_connections_for_reconciler_workers(monkeypatch, fresh_storage_caches) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg2://app:password@db:5432/snapstage")
    monkeypatch.setenv("DB_POOL_SIZE", "3")
    monkeypatch.setenv("RECONCILER_MAX_WORKERS", "6")
    get_settings.cache_clear()

    engine = db_module.get_engine()

    assert engine.pool.size() == 9
    engine.dispose()


def test_session_scope_rolls_back_on_error(session_factory) -> None:
    with pytest.raises(RuntimeError):
        with db_module.session_scope(session_factory) as db_session:
            db_session.add(Profile(id="user-9", email="user-9@example.com", credits_remaining=3))
            db_session.flush()
            raise RuntimeError("boom")

    with session_factory() as db_session:
        assert db_session.scalar(select(Profile).where(Profile.id == "user-9")) is None


def test_regen_counter_key_is_namespaced_per_user() -> None:
    assert redis_module.regen_counter_key("user-1") == "snapstage:ratelimit:regen:user-1"
    assert redis_module.regen_counter_key("user-1") != redis_module.regen_counter_key("user-2")


def test_redis_health_check_reports_ping_failure(monkeypatch) -> None:
    class _UnreachableRedis:
        def ping(self):
            raise ConnectionError("Connection refused")

    monkeypatch.setattr(redis_module, "get_client", lambda: _UnreachableRedis())

    ok, error = redis_module.test_connection()

    assert ok is False
    assert error == "Connection refused"
