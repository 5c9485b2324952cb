"""Tests for the dual-mode storage backend."""

from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine

from syncvault.errors import ConfigurationError, DatabaseConnectionError
from syncvault.storage.database import Database, connect_with_retry
from syncvault.sync.models import SyncRecord


class TestSqlite:

    def test_init_creates_tables(self, database):
        rows = database.query("SELECT name FROM sqlite_master WHERE type = 'table'")
        names = {row["name"] for row in rows}
        assert {"sync_store", "automation_store"} <= names
        assert database.is_healthy

    def test_init_is_idempotent(self, database):
        engine = database.engine
        database.init()
        assert database.engine is engine

    def test_raw_sql_helpers(self, database):
        inserted = database.run(
            "INSERT INTO sync_store (key, value, token, updated_at) "
            "VALUES (:key, :value, :token, CURRENT_TIMESTAMP)",
            {"key": "id-1", "value": "{}", "token": "t"},
        )
        assert inserted == 1
        assert database.get("SELECT token FROM sync_store WHERE key = :key", {"key": "id-1"}) == {"token": "t"}
        assert database.get("SELECT token FROM sync_store WHERE key = :key", {"key": "nope"}) is None
        assert database.run("DELETE FROM sync_store WHERE key = :key", {"key": "id-1"}) == 1

    def test_session_rolls_back_on_error(self, database):
        with pytest.raises(RuntimeError):
            with database.session() as db:
                db.add(SyncRecord(key="id-2", value="{}", token="t"))
                db.flush()
                raise RuntimeError("abort")
        with database.session() as db:
            assert db.get(SyncRecord, "id-2") is None

    def test_health_check(self, database):
        assert database.health_check() is True
        database.close()
        assert database.health_check() is False
        assert not database.is_healthy

    def test_use_before_init(self, config):
        db = Database(config)
        with pytest.raises(DatabaseConnectionError):
            db.query("SELECT 1")


class TestRetry:

    def test_backoff_then_success(self):
        delays = []
        attempts = []

        def connect():
            attempts.append(1)
            if len(attempts) < 5:
                raise OSError("connection refused")

        connect_with_retry(connect, max_retries=5, base_delay=1.0, sleep=delays.append)
        assert len(attempts) == 5
        assert delays == [1.0, 2.0, 4.0, 8.0]

    def test_fatal_after_max_retries(self):
        delays = []

        def connect():
            raise OSError("connection refused")

        with pytest.raises(DatabaseConnectionError):
            connect_with_retry(connect, max_retries=5, base_delay=1.0, sleep=delays.append)
        assert delays == [1.0, 2.0, 4.0, 8.0]


class TestPostgres:

    def test_missing_url_is_a_configuration_error(self, config):
        config = config.model_copy(update={"db_type": "postgres", "database_url": None})
        with pytest.raises(ConfigurationError):
            Database(config).init()

    def test_unreachable_server_fails_after_retries(self, config, monkeypatch):
        config = config.model_copy(update={
            "db_type": "postgres",
            "database_url": "postgresql://nobody@127.0.0.1:1/none",
        })
        delays = []
        db = Database(config, sleep=delays.append)
        monkeypatch.setattr(db, "_create_postgres_engine", lambda: create_engine("sqlite://"))

        def refuse():
            raise OSError("connection refused")

        monkeypatch.setattr(db, "_ping", refuse)

        with pytest.raises(DatabaseConnectionError):
            db.init()
        assert delays == [1.0, 2.0, 4.0, 8.0]
        assert db.engine is None
        assert not db.is_healthy

    def test_pool_disconnect_marks_unhealthy(self, database):
        database._on_engine_error(SimpleNamespace(is_disconnect=True, original_exception=OSError("reset")))
        assert not database.is_healthy

    def test_other_engine_errors_keep_health(self, database):
        database._on_engine_error(SimpleNamespace(is_disconnect=False, original_exception=ValueError()))
        assert database.is_healthy
