# milestone/model/ledger.py
"""
Running total (integer minor units) and the "latest payment" slot.

The store has no atomic increment, so add_amount() is a compare-and-swap
loop: read, add, write only if the value is unchanged, retry on conflict.
The total only ever grows, so comparing by value has no ABA problem.
"""
from __future__ import annotations
import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Optional

from ..errors import ContentionError, StorageError
from ..infra.timings import timeit
from .kv import KVStore

logger = logging.getLogger(__name__)

TOTAL_KEY = "total_cents"
LATEST_KEY = "latest_payment"


@dataclass(frozen=True)
class LatestPayment:
    payer_name: str
    amount_minor_units: int
    occurred_at: str

    @classmethod
    def from_json(cls, raw: str) -> Optional["LatestPayment"]:
        try:
            v = json.loads(raw)
            return cls(
                payer_name=str(v.get("payer_name") or "Unknown"),
                amount_minor_units=max(0, int(v.get("amount_minor_units", 0))),
                occurred_at=str(v.get("occurred_at") or ""),
            )
        except (ValueError, TypeError, AttributeError):
            return None

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))


@dataclass(frozen=True)
class LedgerSnapshot:
    total_minor_units: int
    latest_payment: Optional[LatestPayment]
    initialized: bool
    stale: bool = False

    def as_dict(self) -> dict:
        return {
            "total_minor_units": self.total_minor_units,
            "latest_payment": (
                asdict(self.latest_payment) if self.latest_payment else None
            ),
            "initialized": self.initialized,
            "stale": self.stale,
        }


def _parse_total(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        raise StorageError(f"corrupt ledger total {raw!r}")


class LedgerStore:
    def __init__(self, kv: KVStore, max_attempts: int = 8,
                 fallback_total: Optional[int] = None,
                 deadline_seconds: Optional[float] = None) -> None:
        self.kv = kv
        self.max_attempts = max(1, max_attempts)
        # no new CAS attempt starts after this; keep it under the lease
        self.deadline_seconds = deadline_seconds
        self.fallback_total = fallback_total
        # display-only, never used to compute a write
        self._last_known: Optional[int] = None

    async def read_total(self) -> Optional[int]:
        """None means the total was never written."""
        async with timeit("ledger.read_total"):
            total = _parse_total(await self.kv.get(TOTAL_KEY))
        if total is not None:
            self._last_known = total
        return total

    async def add_amount(self, delta_minor_units: int) -> int:
        if delta_minor_units < 0:
            raise ValueError("ledger total never decreases")

        started = time.monotonic()
        for attempt in range(1, self.max_attempts + 1):
            if (attempt > 1 and self.deadline_seconds is not None
                    and time.monotonic() - started > self.deadline_seconds):
                raise ContentionError(
                    f"gave up adding {delta_minor_units} to {TOTAL_KEY} "
                    f"after {self.deadline_seconds}s ({attempt - 1} attempts)"
                )
            async with timeit("ledger.cas_read"):
                raw = await self.kv.get(TOTAL_KEY)
            current = _parse_total(raw) or 0
            if delta_minor_units == 0:
                return current
            new_total = current + delta_minor_units
            async with timeit("ledger.cas_write"):
                ok = await self.kv.compare_and_set(
                    TOTAL_KEY, raw, str(new_total)
                )
            if ok:
                self._last_known = new_total
                return new_total
            logger.debug("CAS conflict on %s (attempt %d/%d)",
                         TOTAL_KEY, attempt, self.max_attempts)

        raise ContentionError(
            f"could not add {delta_minor_units} to {TOTAL_KEY} after "
            f"{self.max_attempts} attempts"
        )

    async def record_latest_payment(self, payer_name: str,
                                    amount_minor_units: int,
                                    occurred_at: str) -> LatestPayment:
        latest = LatestPayment(payer_name, amount_minor_units, occurred_at)
        async with timeit("ledger.record_latest"):
            await self.kv.put(LATEST_KEY, latest.to_json())
        return latest

    async def get_latest_payment(self) -> Optional[LatestPayment]:
        async with timeit("ledger.get_latest"):
            raw = await self.kv.get(LATEST_KEY)
        if not raw:
            return None
        return LatestPayment.from_json(raw)

    async def clear_latest_payment(self) -> None:
        await self.kv.delete(LATEST_KEY)

    async def current_total(self) -> LedgerSnapshot:
        """Read path for the status page. Never raises on store trouble."""
        try:
            total = await self.read_total()
            latest = await self.get_latest_payment()
        except StorageError:
            logger.warning("Ledger read failed, serving last known total",
                           exc_info=True)
            if self._last_known is not None:
                fallback = self._last_known
            else:
                fallback = self.fallback_total or 0
            return LedgerSnapshot(fallback, None,
                                  initialized=self._last_known is not None,
                                  stale=True)

        if total is None:
            return LedgerSnapshot(self.fallback_total or 0, latest,
                                  initialized=False)
        return LedgerSnapshot(total, latest, initialized=True)

    get_ledger = current_total
