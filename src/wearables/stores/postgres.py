"""Postgres-backed token store on ``asyncpg``.

Expected table (migrations are owned by the host application)::

    CREATE TABLE wearable_tokens (
        user_id       TEXT        NOT NULL,
        provider      TEXT        NOT NULL,
        access_token  TEXT        NOT NULL,
        refresh_token TEXT,
        expires_at    TIMESTAMPTZ NOT NULL,
        scope         TEXT,
        token_type    TEXT        NOT NULL DEFAULT 'Bearer',
        updated_at    TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (user_id, provider)
    );

Writes are ``INSERT ... ON CONFLICT DO UPDATE`` so ``save`` is an atomic
upsert per (user_id, provider).
"""

from __future__ import annotations

import logging
import re
from typing import Any

import asyncpg

from src.wearables.base import TokenRecord

logger = logging.getLogger("wearables.stores.postgres")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

_COLUMNS = [
    "user_id",
    "provider",
    "access_token",
    "refresh_token",
    "expires_at",
    "scope",
    "token_type",
]
_KEY_COLUMNS = ["user_id", "provider"]


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    On conflict, updates the non-key columns and bumps ``updated_at``.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_columns)
        update_set += ", updated_at = NOW()"
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )


async def init_token_pool(dsn: str, min_size: int = 1, max_size: int = 10) -> asyncpg.Pool:
    """Create an asyncpg pool for the token store.  Call once at startup."""
    pool = await asyncpg.create_pool(
        dsn,
        min_size=min_size,
        max_size=max_size,
        command_timeout=30,
    )
    logger.info("Token store pool initialized (min=%d, max=%d)", min_size, max_size)
    return pool


class PostgresTokenStore:
    """``TokenStore`` backed by a Postgres table through an asyncpg pool.

    Usage::

        pool = await init_token_pool(settings.token_store_dsn)
        sdk = WearableSDK(providers, token_store=PostgresTokenStore(pool))
    """

    def __init__(self, pool: asyncpg.Pool, table: str = "wearable_tokens") -> None:
        """Initialize the store.

        Args:
            pool:  An asyncpg pool (or anything exposing execute/fetchrow/fetchval).
            table: Table name, optionally schema-qualified.
        """
        if not _IDENTIFIER.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        self._pool = pool
        self._table = table
        self._upsert_sql = build_upsert_query(table, _COLUMNS, _KEY_COLUMNS)

    async def save(self, subject_id: str, provider_id: str, record: TokenRecord) -> None:
        await self._pool.execute(
            self._upsert_sql,
            subject_id,
            provider_id,
            record.access_token,
            record.refresh_token,
            record.expires_at,
            record.scope,
            record.token_type,
        )

    async def get(self, subject_id: str, provider_id: str) -> TokenRecord | None:
        row = await self._pool.fetchrow(
            f"SELECT access_token, refresh_token, expires_at, scope, token_type "
            f"FROM {self._table} WHERE user_id = $1 AND provider = $2",
            subject_id,
            provider_id,
        )
        if row is None:
            return None
        return TokenRecord.from_dict(_row_to_dict(row))

    async def delete(self, subject_id: str, provider_id: str) -> None:
        status = await self._pool.execute(
            f"DELETE FROM {self._table} WHERE user_id = $1 AND provider = $2",
            subject_id,
            provider_id,
        )
        if status == "DELETE 0":
            logger.debug("No %s tokens to delete for %s", provider_id, subject_id)

    async def has(self, subject_id: str, provider_id: str) -> bool:
        count = await self._pool.fetchval(
            f"SELECT COUNT(*) FROM {self._table} WHERE user_id = $1 AND provider = $2",
            subject_id,
            provider_id,
        )
        return bool(count)


def _row_to_dict(row: Any) -> dict[str, Any]:
    return {key: row[key] for key in ("access_token", "refresh_token", "expires_at", "scope", "token_type")}
