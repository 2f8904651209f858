"""Credential Pool: known upstream tokens and round-robin selection.

The enabled subset is recomputed on every ``next_enabled()`` call, so a
credential enabled or disabled between two calls can shift the cursor onto a
different position: entries may be skipped or repeated around such a change.
This is accepted behavior, not a fairness guarantee.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Protocol

from app.gateway.types import Credential

logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    """Durable side of the pool (implemented by the persistence layer)."""

    async def list_credentials(self) -> list[Credential]: ...

    async def add_credential(self, label: str, secret: str) -> Credential: ...

    async def update_credential(self, credential_id: int, patch: dict[str, Any]) -> Credential | None: ...

    async def delete_credential(self, credential_id: int) -> bool: ...


class CredentialPool:
    """In-memory view of upstream credentials with rotation.

    Usage:
        pool = CredentialPool(store)
        await pool.load_all()

        credential = pool.next_enabled()
        if credential is None:
            # nothing enabled
            ...
    """

    def __init__(self, store: CredentialStore):
        self._store = store
        self._credentials: list[Credential] = []
        self._cursor: int = 0
        self._lock = threading.Lock()

    async def load_all(self) -> int:
        """Reload all credentials from the store. Returns how many are known."""
        credentials = await self._store.list_credentials()
        with self._lock:
            self._credentials = list(credentials)
        logger.info(
            "Loaded %d credentials (%d enabled)",
            len(credentials),
            self.enabled_count(),
        )
        return len(credentials)

    async def add(self, label: str, secret: str) -> Credential:
        credential = await self._store.add_credential(label, secret)
        await self.load_all()
        logger.info("Added credential %d (%s)", credential.id, label)
        return credential

    async def update(self, credential_id: int, patch: dict[str, Any]) -> Credential | None:
        """Apply a partial update (label, secret, enabled). None if unknown."""
        credential = await self._store.update_credential(credential_id, patch)
        if credential is None:
            return None
        await self.load_all()
        logger.info("Updated credential %d: %s", credential_id, sorted(patch))
        return credential

    async def remove(self, credential_id: int) -> bool:
        removed = await self._store.delete_credential(credential_id)
        if removed:
            await self.load_all()
            logger.info("Removed credential %d", credential_id)
        return removed

    def all(self) -> list[Credential]:
        with self._lock:
            return list(self._credentials)

    def next_enabled(self) -> Credential | None:
        """Pick the next enabled credential in round-robin order."""
        with self._lock:
            enabled = [c for c in self._credentials if c.enabled]
            if not enabled:
                return None
            credential = enabled[self._cursor % len(enabled)]
            self._cursor = (self._cursor + 1) % len(enabled)
            return credential

    def enabled_count(self) -> int:
        with self._lock:
            return sum(1 for c in self._credentials if c.enabled)
