"""
Database session management.

The engine is created on first use from configuration so importing the
package never opens a connection.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import Session, sessionmaker
from taskmail.common.exceptions import (
    ConfigurationError,
    RetrievalError,
    TaskmailError,
    TransactionError,
)
from taskmail.config.loader import get_config

HASH_PREFIX_LEN = 8

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]

_engine: Engine | None = None
_session_factory: sessionmaker | None = None
_engine_lock = threading.Lock()


def _hash_text(value: str) -> str:
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return digest[:HASH_PREFIX_LEN]


def _install_slow_query_listeners(engine: Engine, threshold_seconds: float) -> None:
    @event.listens_for(engine, "before_cursor_execute")
    def receive_before_cursor_execute(
        conn, cursor, statement, parameters, context, executemany
    ):
        conn.info.setdefault("query_start_time", []).append(time.perf_counter())

    @event.listens_for(engine, "after_cursor_execute")
    def receive_after_cursor_execute(
        conn, cursor, statement, parameters, context, executemany
    ):
        start_times = conn.info.get("query_start_time")
        if not start_times:
            return
        total_time = time.perf_counter() - start_times.pop()
        if total_time > threshold_seconds:
            statement_text = statement or ""
            logger.warning(
                "Slow query (%.2fs) hash=%s length=%s",
                total_time,
                _hash_text(str(statement_text)),
                len(statement_text),
            )

    @event.listens_for(engine, "handle_error")
    def receive_handle_error(exception_context):
        connection = getattr(exception_context, "connection", None)
        if connection is None:
            return
        start_times = connection.info.get("query_start_time")
        if start_times:
            start_times.pop()


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first call."""
    global _engine
    if _engine is not None:
        return _engine

    with _engine_lock:
        if _engine is None:
            db_config = get_config().database
            if not db_config.url:
                raise ConfigurationError(
                    "Database URL is required. Set TASKMAIL_DB_URL or DATABASE_URL.",
                    error_code="DB_URL_MISSING",
                )
            engine_args: dict[str, object] = {"pool_pre_ping": True}
            if make_url(db_config.url).get_backend_name() != "sqlite":
                engine_args["pool_size"] = db_config.pool_size
                engine_args["max_overflow"] = db_config.max_overflow
            engine = create_engine(db_config.url, **engine_args)
            _install_slow_query_listeners(engine, db_config.slow_query_seconds)
            _engine = engine
        return _engine


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(
            autocommit=False, autoflush=False, bind=get_engine()
        )
    return _session_factory


@contextmanager
def session_scope(
    factory: SessionFactory | None = None,
) -> Generator[Session, None, None]:
    """
    Transactional scope: commit on success, rollback on failure.

    Args:
        factory: Session factory; defaults to the configured engine's factory

    Yields:
        SQLAlchemy Session

    Raises:
        TransactionError: On failures that are not already TaskmailErrors
    """
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()

    except Exception as e:
        try:
            session.rollback()
        except Exception:
            logger.error("Rollback failed", exc_info=True)

        if not isinstance(e, TaskmailError):
            raise TransactionError(
                message="Database transaction failed",
                error_code="TRANSACTION_FAILED",
                context={"operation": "session_scope"},
            ) from e
        raise

    finally:
        session.close()


def dispose_engine() -> None:
    """Dispose the pooled engine (CLI shutdown and tests)."""
    global _engine, _session_factory
    with _engine_lock:
        if _engine is not None:
            _engine.dispose()
        _engine = None
        _session_factory = None


@contextmanager
def store_scope(
    factory: SessionFactory | None,
    operation: str,
    **context: object,
) -> Generator[Session, None, None]:
    """
    session_scope for index stores: database failures surface as RetrievalError.

    A store that cannot reach Postgres must fail the search call, so callers
    can tell "search is down" from "nothing matched".
    """
    try:
        with session_scope(factory) as session:
            yield session
    except TransactionError as exc:
        raise RetrievalError(
            f"Postgres {operation} failed",
            error_code="STORE_UNAVAILABLE",
            context={"error_type": type(exc.__cause__).__name__, **context},
        ) from exc
