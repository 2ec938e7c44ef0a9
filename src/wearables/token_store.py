"""Pluggable persistence contract for OAuth tokens.

The engine never caches a ``TokenRecord`` beyond a single call; every read
goes through a ``TokenStore``.  Implementations must make ``save`` an atomic
upsert keyed by (subject_id, provider_id).  Concurrent refreshes for the same
pair may race, last writer wins.

Built-in stores live in ``src.wearables.stores`` (memory, Postgres).
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from src.wearables.base import ConnectionHealth, ConnectionStatus, TokenRecord, utcnow


@runtime_checkable
class TokenStore(Protocol):
    """Interface every token store must implement."""

    async def save(self, subject_id: str, provider_id: str, record: TokenRecord) -> None:
        """Persist (upsert) tokens for a subject + provider pair."""
        ...

    async def get(self, subject_id: str, provider_id: str) -> TokenRecord | None:
        """Return the stored tokens, or None when the pair is not connected."""
        ...

    async def delete(self, subject_id: str, provider_id: str) -> None:
        """Remove tokens.  Deleting an absent record is not an error."""
        ...

    async def has(self, subject_id: str, provider_id: str) -> bool:
        """Return True if a record exists for the pair."""
        ...


def connection_health(
    record: TokenRecord | None,
    provider_id: str,
    subject_id: str,
    now: datetime | None = None,
) -> ConnectionHealth:
    """Derive a ``ConnectionHealth`` from a stored record.

    Works with any ``TokenStore`` implementation.

    Args:
        record:      Stored tokens, or None.
        provider_id: Provider slug.
        subject_id:  Subject identifier.
        now:         Reference time (defaults to the current UTC time).

    Returns:
        DISCONNECTED without a record, EXPIRED once ``expires_at`` has
        passed, ACTIVE otherwise.
    """
    if record is None:
        return ConnectionHealth(
            provider_id=provider_id,
            subject_id=subject_id,
            status=ConnectionStatus.DISCONNECTED,
        )

    expired = record.is_expired(now or utcnow())
    return ConnectionHealth(
        provider_id=provider_id,
        subject_id=subject_id,
        status=ConnectionStatus.EXPIRED if expired else ConnectionStatus.ACTIVE,
        token_expires_at=record.expires_at,
        error="Access token expired; refresh or reconnect." if expired else None,
    )
