"""Admission Controller: per-credential in-flight budget.

Tracks how many upstream calls each credential is currently serving and
admits a new one only while ``in_use < budget``. The check and the increment
happen under the credential's own asyncio.Lock, so concurrent acquires on the
same credential can never overshoot the budget.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from app.gateway.errors import AdmissionError
from app.gateway.types import AdmissionSlot

logger = logging.getLogger(__name__)

DEFAULT_BUDGET = 3


@dataclass
class _CredentialBucket:
    """Admission counters for a single credential."""

    budget: int
    in_use: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def has_room(self) -> bool:
        return self.in_use < self.budget


class AdmissionController:
    """Atomic admit/release accounting keyed by credential id.

    Usage:
        admission = AdmissionController()
        admission.initialize([1, 2, 3], default_budget=2)

        if await admission.acquire(credential_id):
            try:
                ...  # upstream call
            finally:
                await admission.release(credential_id)
    """

    def __init__(self, default_budget: int = DEFAULT_BUDGET):
        if default_budget <= 0:
            raise ValueError("Admission budget must be positive")
        self._default_budget = default_budget
        self._buckets: dict[int, _CredentialBucket] = {}

    @property
    def budget(self) -> int:
        return self._default_budget

    def initialize(self, credential_ids: Iterable[int], default_budget: int | None = None) -> None:
        """Synchronise tracked credentials with ``credential_ids``.

        Credentials already tracked keep their in-flight count, new ones start
        at zero, and ids no longer present are dropped.
        """
        if default_budget is not None:
            if default_budget <= 0:
                raise ValueError("Admission budget must be positive")
            self._default_budget = default_budget

        wanted = set(credential_ids)
        for stale in set(self._buckets) - wanted:
            bucket = self._buckets.pop(stale)
            if bucket.in_use:
                logger.warning(
                    "Credential %d dropped from admission with %d requests in flight",
                    stale,
                    bucket.in_use,
                )

        for credential_id in wanted:
            bucket = self._buckets.get(credential_id)
            if bucket is None:
                self._buckets[credential_id] = _CredentialBucket(budget=self._default_budget)
            else:
                bucket.budget = self._default_budget

        logger.debug("Admission tracking %d credentials (budget=%d)", len(self._buckets), self._default_budget)

    def can_admit(self, credential_id: int) -> bool:
        bucket = self._buckets.get(credential_id)
        return bucket.has_room if bucket else False

    async def acquire(self, credential_id: int) -> bool:
        """Reserve one slot. Returns False (and changes nothing) when full."""
        bucket = self._buckets.get(credential_id)
        if bucket is None:
            return False
        async with bucket.lock:
            if not bucket.has_room:
                return False
            bucket.in_use += 1
            return True

    async def release(self, credential_id: int) -> None:
        """Give back one slot.

        Raises:
            AdmissionError: unknown credential, or no slot was held.
        """
        bucket = self._buckets.get(credential_id)
        if bucket is None:
            logger.warning("Release for untracked credential %d", credential_id)
            raise AdmissionError(f"Credential {credential_id} is not tracked")
        async with bucket.lock:
            if bucket.in_use <= 0:
                logger.error("Release without acquire for credential %d", credential_id)
                raise AdmissionError(f"Credential {credential_id} has no slot in use")
            bucket.in_use -= 1

    def set_budget(self, budget: int) -> None:
        """Apply a new budget to every tracked credential (and future ones)."""
        if budget <= 0:
            raise ValueError("Admission budget must be positive")
        self._default_budget = budget
        for bucket in self._buckets.values():
            bucket.budget = budget
        logger.info("Admission budget set to %d per credential", budget)

    def available_count(self) -> int:
        return sum(1 for b in self._buckets.values() if b.has_room)

    def in_use_total(self) -> int:
        return sum(b.in_use for b in self._buckets.values())

    def snapshot(self) -> dict[int, AdmissionSlot]:
        return {cid: AdmissionSlot(in_use=b.in_use, budget=b.budget) for cid, b in self._buckets.items()}
