# milestone/model/dedup.py
"""
Processed-event markers and in-flight leases.

Keys:
  evt:<event_id>        marker, "already applied", retention TTL (14 days)
  evt:lease:<event_id>  short-lived claim while one delivery is applying

Both are written with an atomic insert-if-absent, so two concurrent
deliveries of one event can never both see "absent".
"""
from __future__ import annotations
import logging

from ..errors import StorageError
from ..infra.timings import timeit
from .kv import KVStore

logger = logging.getLogger(__name__)


# ---- keys
def k_marker(event_id: str) -> str: return f"evt:{event_id}"
def k_lease(event_id: str) -> str: return f"evt:lease:{event_id}"


class EventDeduplicator:
    def __init__(self, kv: KVStore, ttl_seconds: int, lease_seconds: int,
                 fail_open: bool = True) -> None:
        self.kv = kv
        self.ttl = ttl_seconds
        self.lease_ttl = lease_seconds
        self.fail_open = fail_open

    async def mark_if_new(self, event_id: str) -> bool:
        # True the first time, False on duplicate. Never fails open: a
        # marker that was not written must not be reported as written.
        async with timeit("dedup.mark"):
            return await self.kv.set_if_absent(
                k_marker(event_id), "1", ttl_seconds=self.ttl
            )

    async def is_processed(self, event_id: str) -> bool:
        try:
            async with timeit("dedup.check"):
                return await self.kv.get(k_marker(event_id)) is not None
        except StorageError:
            if not self.fail_open:
                raise
            logger.warning(
                "Store unavailable for dedup check, treating %s as new "
                "(fail-open)", event_id, exc_info=True,
            )
            return False

    async def acquire(self, event_id: str) -> bool:
        try:
            async with timeit("dedup.acquire"):
                return await self.kv.set_if_absent(
                    k_lease(event_id), "1", ttl_seconds=self.lease_ttl
                )
        except StorageError:
            if not self.fail_open:
                raise
            logger.warning(
                "Store unavailable for lease on %s, proceeding unleased "
                "(fail-open)", event_id, exc_info=True,
            )
            return True

    async def release(self, event_id: str) -> None:
        # best effort; the lease TTL covers us if this fails
        try:
            async with timeit("dedup.release"):
                await self.kv.delete(k_lease(event_id))
        except StorageError:
            logger.warning("Could not release lease for %s", event_id,
                           exc_info=True)
