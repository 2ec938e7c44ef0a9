"""In-memory registry of pending OAuth authorization requests.

Maps an opaque request id (also sent to the provider as ``state``) to the
context needed to finish the flow at callback time.  Entries are single-use
and expire after a TTL (default 15 minutes).

This store is process-local.  Multi-instance deployments need a shared
TTL-capable store behind the same ``put`` / ``take_if_valid`` contract.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from src.wearables.base import AuthorizationContext, PendingAuthorization
from src.wearables.pkce import new_opaque_token

logger = logging.getLogger("wearables.state_registry")

DEFAULT_STATE_TTL_SECONDS = 900


class PendingStateRegistry:
    """Exactly-once, TTL-bounded map of request id → ``AuthorizationContext``.

    Usage::

        registry = PendingStateRegistry()
        request_id = registry.put(context)
        ...
        context = registry.take_if_valid(request_id)   # None on replay
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_STATE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the registry.

        Args:
            ttl_seconds: Age after which a pending entry is discarded.
            clock:       Monotonic seconds source (injectable for tests).
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._ttl = ttl_seconds
        self._clock = clock
        self._pending: dict[str, PendingAuthorization] = {}
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def put(self, context: AuthorizationContext) -> str:
        """Store a context under a freshly minted request id.

        Every write also prunes entries older than the TTL.

        Args:
            context: Flow context to hand back at callback time.

        Returns:
            The new request id.
        """
        now = self._clock()
        with self._lock:
            request_id = new_opaque_token()
            while request_id in self._pending:
                request_id = new_opaque_token()
            self._pending[request_id] = PendingAuthorization(
                request_id=request_id, context=context, created_at=now
            )
            removed = self._prune_locked(now)
        if removed:
            logger.debug("Pruned %d expired pending authorization(s)", removed)
        return request_id

    def take_if_valid(self, request_id: str) -> AuthorizationContext | None:
        """Atomically remove and return the context for ``request_id``.

        Returns None when the id is unknown, was already taken, or has
        outlived the TTL.  In every case the entry is gone afterwards.
        """
        if not request_id:
            return None
        with self._lock:
            entry = self._pending.pop(request_id, None)
        if entry is None:
            return None
        if entry.age(self._clock()) > self._ttl:
            return None
        return entry.context

    def prune(self) -> int:
        """Drop every entry older than the TTL.  Returns the number removed."""
        with self._lock:
            return self._prune_locked(self._clock())

    def _prune_locked(self, now: float) -> int:
        expired = [rid for rid, e in self._pending.items() if e.age(now) > self._ttl]
        for rid in expired:
            del self._pending[rid]
        return len(expired)

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending
