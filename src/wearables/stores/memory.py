"""In-memory token store.

Tokens are lost when the process restarts.  Suitable for development and
tests; production deployments should use ``PostgresTokenStore`` or their own
``TokenStore``.
"""

from __future__ import annotations

from dataclasses import replace

from src.wearables.base import TokenRecord


class MemoryTokenStore:
    """Dict-backed ``TokenStore``.  Stores and returns copies, never shared references."""

    def __init__(self) -> None:
        self._records: dict[str, TokenRecord] = {}

    @staticmethod
    def _key(subject_id: str, provider_id: str) -> str:
        return f"{provider_id}::{subject_id}"

    async def save(self, subject_id: str, provider_id: str, record: TokenRecord) -> None:
        self._records[self._key(subject_id, provider_id)] = replace(record)

    async def get(self, subject_id: str, provider_id: str) -> TokenRecord | None:
        record = self._records.get(self._key(subject_id, provider_id))
        return replace(record) if record else None

    async def delete(self, subject_id: str, provider_id: str) -> None:
        self._records.pop(self._key(subject_id, provider_id), None)

    async def has(self, subject_id: str, provider_id: str) -> bool:
        return self._key(subject_id, provider_id) in self._records

    @property
    def size(self) -> int:
        return len(self._records)

    def clear(self) -> None:
        self._records.clear()
