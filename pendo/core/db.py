"""Database helpers for async psycopg connections."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import psycopg

from .errors import TransientStoreError

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "schema.sql"

T = TypeVar("T")


def get_database_url() -> str | None:
    """Return ``DATABASE_URL`` or ``None`` when the service runs in-memory."""

    url = os.getenv("DATABASE_URL", "").strip()
    return url or None


async def connect(
    database_url: str | None = None, *, autocommit: bool = False
) -> psycopg.AsyncConnection:
    """Open a new async connection to the configured database."""

    url = database_url or get_database_url()
    if not url:
        raise RuntimeError("DATABASE_URL is not configured.")
    return await psycopg.AsyncConnection.connect(url, autocommit=autocommit)


async def ensure_schema(
    conn: psycopg.AsyncConnection, schema_sql_path: Path = SCHEMA_PATH
) -> None:
    """Execute ``schema.sql``.

    The script only uses ``IF NOT EXISTS``/``OR REPLACE`` statements so it can
    run on every start-up.
    """

    async with conn.cursor() as cur:
        await cur.execute(schema_sql_path.read_text(encoding="utf-8"))
    await conn.commit()


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    description: str = "datastore operation",
    attempts: int | None = None,
    base_delay: float | None = None,
) -> T:
    """Run ``operation`` retrying connection-level failures with backoff.

    Only :class:`psycopg.OperationalError` is considered transient; integrity
    and programming errors propagate immediately. After the last attempt the
    failure is re-raised as :class:`TransientStoreError`.
    """

    max_attempts = attempts or int(os.getenv("STORE_RETRY_ATTEMPTS", "3"))
    delay = (
        base_delay
        if base_delay is not None
        else float(os.getenv("STORE_RETRY_BASE_DELAY", "0.2"))
    )

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except psycopg.OperationalError as exc:
            if attempt >= max_attempts:
                logger.error(
                    "%s failed after %d attempt(s): %s", description, attempt, exc
                )
                raise TransientStoreError(
                    f"{description} failed: datastore unavailable"
                ) from exc
            wait = delay * (2 ** (attempt - 1))
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                description,
                attempt,
                max_attempts,
                exc,
                wait,
            )
            await asyncio.sleep(wait)
    raise AssertionError("unreachable")  # pragma: no cover
