"""
Dual-mode storage backend.

sqlite   — embedded single-file store, opened directly, no retries.
postgres — pooled networked store, connection retried with exponential backoff
           at boot; pool errors flip the health flag instead of crashing.
"""

import logging
import time
from contextlib import contextmanager
from typing import Any, Callable, Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker, Session

from syncvault.config.settings import Settings, settings as default_settings
from syncvault.errors import ConfigurationError, DatabaseConnectionError

logger = logging.getLogger(__name__)

Base = declarative_base()


def connect_with_retry(
    connect: Callable[[], None],
    max_retries: int = 5,
    base_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Call ``connect`` until it succeeds, sleeping 1s, 2s, 4s... between attempts.

    Raises DatabaseConnectionError once ``max_retries`` attempts have failed.
    """
    last_error: Optional[Exception] = None
    for attempt in range(1, max_retries + 1):
        try:
            connect()
            return
        except (SQLAlchemyError, OSError) as e:
            last_error = e
            logger.warning("Connection attempt %d/%d failed: %s", attempt, max_retries, e)
            if attempt < max_retries:
                delay = base_delay * 2 ** (attempt - 1)
                logger.info("Retrying in %.0fs...", delay)
                sleep(delay)
    raise DatabaseConnectionError(
        f"Failed to connect after {max_retries} attempts: {last_error}"
    )


class Database:
    """Storage handle. Build once at process start and pass it to whoever needs it."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._settings = config or default_settings
        self._sleep = sleep
        self.backend = self._settings.db_type
        self.engine: Optional[Engine] = None
        self.SessionLocal: Optional[sessionmaker] = None
        self.is_healthy = False

    # ── Lifecycle ───────────────────────────────────────────────

    def init(self) -> None:
        """Open the backend and create tables. Idempotent."""
        if self.engine is not None:
            return

        if self.backend == "postgres":
            self.engine = self._create_postgres_engine()
            try:
                connect_with_retry(
                    self._ping,
                    max_retries=self._settings.db_max_retries,
                    base_delay=self._settings.db_retry_base_delay,
                    sleep=self._sleep,
                )
            except DatabaseConnectionError:
                self.close()
                raise
            logger.info("Connected to PostgreSQL.")
        else:
            path = self._settings.sqlite_path
            path.parent.mkdir(parents=True, exist_ok=True)
            logger.info("Using SQLite at %s", path)
            self.engine = create_engine(
                f"sqlite:///{path}",
                connect_args={"check_same_thread": False},  # SQLite specific
                echo=False,
            )

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

        import syncvault.sync.models  # noqa: F401  register models
        Base.metadata.create_all(bind=self.engine)
        self.is_healthy = True

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None
            self.SessionLocal = None
        self.is_healthy = False

    def health_check(self) -> bool:
        """Round-trip a trivial query. Never raises."""
        if self.engine is None:
            self.is_healthy = False
            return False
        try:
            self._ping()
        except SQLAlchemyError as e:
            logger.error("Health check failed: %s", e)
            self.is_healthy = False
            return False
        self.is_healthy = True
        return True

    # ── Sessions ────────────────────────────────────────────────

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        db = self._require_sessionmaker()()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ── Raw SQL (named :params on both backends) ────────────────

    def query(self, sql: str, params: Optional[dict] = None) -> list[dict[str, Any]]:
        with self._require_engine().connect() as conn:
            return [dict(row._mapping) for row in conn.execute(text(sql), params or {})]

    def get(self, sql: str, params: Optional[dict] = None) -> Optional[dict[str, Any]]:
        with self._require_engine().connect() as conn:
            row = conn.execute(text(sql), params or {}).first()
            return dict(row._mapping) if row is not None else None

    def run(self, sql: str, params: Optional[dict] = None) -> int:
        """Execute a write statement and return the affected row count."""
        with self._require_engine().begin() as conn:
            return conn.execute(text(sql), params or {}).rowcount

    def exec(self, sql: str) -> None:
        """Execute a single raw statement (DDL, pragmas)."""
        with self._require_engine().begin() as conn:
            conn.exec_driver_sql(sql)

    # ── Internal ────────────────────────────────────────────────

    def _create_postgres_engine(self) -> Engine:
        url = self._settings.database_url
        if not url:
            raise ConfigurationError("DATABASE_URL is missing but DB_TYPE is set to postgres")

        logger.info("Connecting to PostgreSQL (pool size %d)...", self._settings.db_pool_size)
        engine = create_engine(
            url,
            pool_size=self._settings.db_pool_size,
            max_overflow=0,
            pool_timeout=self._settings.db_connection_timeout,
            pool_recycle=int(self._settings.db_idle_timeout),
            pool_pre_ping=True,
            connect_args={"connect_timeout": int(self._settings.db_connection_timeout)},
            echo=False,
        )
        event.listen(engine, "handle_error", self._on_engine_error)
        return engine

    def _on_engine_error(self, context) -> None:
        if context.is_disconnect:
            logger.error("Unexpected pool error: %s", context.original_exception)
            self.is_healthy = False

    def _ping(self) -> None:
        with self._require_engine().connect() as conn:
            conn.execute(text("SELECT 1"))

    def _require_engine(self) -> Engine:
        if self.engine is None:
            raise DatabaseConnectionError("Database not initialized")
        return self.engine

    def _require_sessionmaker(self) -> sessionmaker:
        if self.SessionLocal is None:
            raise DatabaseConnectionError("Database not initialized")
        return self.SessionLocal
