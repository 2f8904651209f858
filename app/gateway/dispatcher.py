"""Dispatcher: hands out an admitted credential or signals no capacity."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from app.core.metrics import ADMISSION_REJECTIONS, CREDENTIALS_IN_USE
from app.gateway.admission import AdmissionController
from app.gateway.credential_pool import CredentialPool
from app.gateway.errors import NO_CAPACITY, _NoCapacity
from app.gateway.types import Credential

logger = logging.getLogger(__name__)


class Dispatcher:
    """Composes the credential rotation with admission control.

    Usage:
        dispatcher = Dispatcher(pool, admission)

        credential = await dispatcher.acquire_any()
        if credential is NO_CAPACITY:
            ...  # backpressure, try again later
        try:
            ...
        finally:
            await dispatcher.release(credential.id)

        # or
        async with dispatcher.lease() as credential:
            ...
    """

    def __init__(self, pool: CredentialPool, admission: AdmissionController):
        self.pool = pool
        self.admission = admission

    async def refresh(self) -> None:
        """Reload credentials from the store, then resync admission tracking."""
        await self.pool.load_all()
        self.resync()

    def resync(self) -> None:
        """Track exactly the credentials currently in the pool."""
        self.admission.initialize(c.id for c in self.pool.all())
        self._sync_gauge()

    async def acquire_any(self) -> Credential | _NoCapacity:
        """Admit one credential, trying at most one full rotation cycle."""
        for _ in range(self.pool.enabled_count()):
            credential = self.pool.next_enabled()
            if credential is None:
                break
            if await self.admission.acquire(credential.id):
                self._sync_gauge()
                logger.debug("Admitted credential %d", credential.id)
                return credential

        ADMISSION_REJECTIONS.inc()
        logger.info(
            "No capacity: %d enabled credentials all at budget %d",
            self.pool.enabled_count(),
            self.admission.budget,
        )
        return NO_CAPACITY

    async def release(self, credential_id: int) -> None:
        try:
            await self.admission.release(credential_id)
        finally:
            self._sync_gauge()

    def _sync_gauge(self) -> None:
        CREDENTIALS_IN_USE.set(self.admission.in_use_total())

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[Credential | _NoCapacity]:
        """Acquire on entry, release exactly once on exit (if admitted)."""
        credential = await self.acquire_any()
        try:
            yield credential
        finally:
            if credential is not NO_CAPACITY:
                await self.release(credential.id)

    def stats(self) -> dict:
        return {
            "total": len(self.pool.all()),
            "enabled": self.pool.enabled_count(),
            "available": self.admission.available_count(),
            "budget": self.admission.budget,
        }
