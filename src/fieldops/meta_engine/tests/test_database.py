from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from fieldops import database


def test_get_db_closes_session_after_request(monkeypatch):
    session = MagicMock()
    monkeypatch.setattr(database, "get_sessionmaker", lambda: lambda: session)

    gen = database.get_db()
    assert next(gen) is session
    session.close.assert_not_called()
    with pytest.raises(StopIteration):
        next(gen)
    session.close.assert_called_once()


def test_get_db_closes_session_when_request_fails(monkeypatch):
    session = MagicMock()
    monkeypatch.setattr(database, "get_sessionmaker", lambda: lambda: session)

    gen = database.get_db()
    next(gen)
    with pytest.raises(RuntimeError):
        gen.throw(RuntimeError("handler failed"))
    session.close.assert_called_once()


def test_in_memory_sqlite_engine_enforces_foreign_keys():
    engine = database.create_db_engine("sqlite:///:memory:")
    with engine.connect() as conn:
        assert conn.exec_driver_sql("PRAGMA foreign_keys").scalar() == 1
    engine.dispose()
