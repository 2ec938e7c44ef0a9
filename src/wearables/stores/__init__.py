"""Built-in ``TokenStore`` implementations.

Available stores:
    MemoryTokenStore   — process-local dict (development and tests)
    PostgresTokenStore — asyncpg-backed, one row per (subject, provider)
"""

from src.wearables.stores.memory import MemoryTokenStore
from src.wearables.stores.postgres import PostgresTokenStore, init_token_pool

__all__ = [
    "MemoryTokenStore",
    "PostgresTokenStore",
    "init_token_pool",
]
