"""Tests for the datastore helpers."""

from __future__ import annotations

import asyncio

import psycopg
import pytest

from pendo.core import db
from pendo.core.errors import TransientStoreError


def test_get_database_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "  postgresql://pendo@db/pendo ")
    assert db.get_database_url() == "postgresql://pendo@db/pendo"

    monkeypatch.setenv("DATABASE_URL", "   ")
    assert db.get_database_url() is None


def test_connect_without_configuration(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)

    with pytest.raises(RuntimeError):
        asyncio.run(db.connect())


def test_with_retry_recovers_from_transient_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    """Connection-level errors are retried until the operation succeeds."""

    calls = 0

    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise psycopg.OperationalError("connection refused")
        return "ok"

    result = asyncio.run(db.with_retry(flaky, attempts=3, base_delay=0))

    assert result == "ok"
    assert calls == 3


def test_with_retry_gives_up_with_transient_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STORE_RETRY_ATTEMPTS", "2")
    monkeypatch.setenv("STORE_RETRY_BASE_DELAY", "0")
    calls = 0

    async def down() -> None:
        nonlocal calls
        calls += 1
        raise psycopg.OperationalError("server closed the connection")

    with pytest.raises(TransientStoreError):
        asyncio.run(db.with_retry(down, description="read queue"))

    assert calls == 2


def test_with_retry_does_not_retry_other_errors() -> None:
    calls = 0

    async def broken() -> None:
        nonlocal calls
        calls += 1
        raise psycopg.errors.UniqueViolation("duplicate key")

    with pytest.raises(psycopg.errors.UniqueViolation):
        asyncio.run(db.with_retry(broken, attempts=5, base_delay=0))

    assert calls == 1


def test_schema_script_is_idempotent() -> None:
    """Every DDL statement must be safe to re-run on start-up."""

    script = db.SCHEMA_PATH.read_text(encoding="utf-8")

    assert "CREATE TABLE IF NOT EXISTS conversations" in script
    assert "CREATE TABLE IF NOT EXISTS conversation_messages" in script
    assert "CREATE UNIQUE INDEX IF NOT EXISTS conversations_open_student_unique" in script
    for line in script.splitlines():
        statement = line.strip().upper()
        if statement.startswith("CREATE TABLE") or statement.startswith("CREATE INDEX"):
            assert "IF NOT EXISTS" in statement
        if statement.startswith("CREATE FUNCTION"):
            pytest.fail("functions must use CREATE OR REPLACE")
