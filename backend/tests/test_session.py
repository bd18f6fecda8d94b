"""
Unit tests for session management.
"""
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError
from taskmail.common.exceptions import (
    ConfigurationError,
    RetrievalError,
    TransactionError,
)
from taskmail.db import session as db_session
from taskmail.db.session import dispose_engine, get_engine, session_scope, store_scope


class TestSessionScope:
    def test_commits_and_closes(self):
        session = MagicMock()

        with session_scope(lambda: session) as s:
            s.execute("SELECT 1")

        session.commit.assert_called_once()
        session.close.assert_called_once()
        session.rollback.assert_not_called()

    def test_database_error_wrapped(self):
        session = MagicMock()

        with pytest.raises(TransactionError) as exc_info:
            with session_scope(lambda: session):
                raise OperationalError("SELECT", {}, Exception("down"))

        assert isinstance(exc_info.value.__cause__, OperationalError)
        session.rollback.assert_called_once()
        session.close.assert_called_once()

    def test_domain_errors_pass_through(self):
        session = MagicMock()

        with pytest.raises(RetrievalError):
            with session_scope(lambda: session):
                raise RetrievalError("not found", error_code="ENTITY_NOT_FOUND")

        session.rollback.assert_called_once()


class TestStoreScope:
    def test_outage_becomes_retrieval_error(self):
        session = MagicMock()
        session.execute.side_effect = OperationalError("SELECT", {}, Exception("down"))

        with pytest.raises(RetrievalError) as exc_info:
            with store_scope(lambda: session, "vector search", table="emails") as s:
                s.execute("SELECT 1")

        error = exc_info.value
        assert error.error_code == "STORE_UNAVAILABLE"
        assert error.context["error_type"] == "OperationalError"
        assert error.context["table"] == "emails"
        assert "vector search" in error.message

    def test_retrieval_errors_unchanged(self):
        original = RetrievalError("gone", error_code="ENTITY_NOT_FOUND")

        with pytest.raises(RetrievalError) as exc_info:
            with store_scope(MagicMock(), "write"):
                raise original

        assert exc_info.value is original


class TestEngine:
    def test_missing_url(self, monkeypatch):
        for key in ("TASKMAIL_DB_URL", "DB_URL", "TASKMAIL_DATABASE_URL", "DATABASE_URL"):
            monkeypatch.delenv(key, raising=False)
        dispose_engine()

        with pytest.raises(ConfigurationError) as exc_info:
            get_engine()

        assert exc_info.value.error_code == "DB_URL_MISSING"
        assert db_session._engine is None
