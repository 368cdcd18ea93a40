# milestone/ingest.py
"""
Webhook ingestion: verify -> parse -> lease -> dedup -> apply -> mark.

The ledger is written before the processed marker. A crash in between
leaves the event eligible for reprocessing (at worst one extra add) instead
of silently marking a payment "done" that was never counted.
"""
from __future__ import annotations
import enum
import logging
from dataclasses import dataclass
from typing import Optional

from .config import Settings
from .errors import (
    AuthenticationError, EventInFlight, StorageError, ValidationError
)
from .model.dedup import EventDeduplicator
from .model.events import (
    ApplyOutcome, EventApplier, InboundEvent, parse_event
)
from .model.kv import KVStore
from .model.ledger import LedgerStore
from .verifier import verify

logger = logging.getLogger(__name__)


class IngestOutcome(enum.Enum):
    APPLIED = "applied"
    RECORDED_ONLY = "recorded"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    STORAGE_ERROR = "storage_error"


_APPLY_TO_INGEST = {
    ApplyOutcome.APPLIED: IngestOutcome.APPLIED,
    ApplyOutcome.RECORDED_ONLY: IngestOutcome.RECORDED_ONLY,
    ApplyOutcome.IGNORED: IngestOutcome.IGNORED,
}


@dataclass(frozen=True)
class IngestResult:
    status_code: int
    outcome: IngestOutcome
    detail: str = ""
    event_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status_code == 200

    def as_dict(self) -> dict:
        d = {"ok": self.ok, "outcome": self.outcome.value}
        if self.detail:
            d["detail"] = self.detail
        if self.event_id:
            d["event_id"] = self.event_id
        return d


def _audit(result: IngestResult, event_type: str = "unknown") -> IngestResult:
    logger.info(
        "WEBHOOK event=%s id=%s outcome=%s status=%d",
        event_type, result.event_id or "-", result.outcome.value,
        result.status_code,
    )
    return result


class IngestService:
    def __init__(self, settings: Settings, ledger: LedgerStore,
                 dedup: EventDeduplicator) -> None:
        self.settings = settings
        self.ledger = ledger
        self.dedup = dedup
        self.applier = EventApplier(ledger)

    @classmethod
    def from_store(cls, settings: Settings, kv: KVStore) -> "IngestService":
        ledger = LedgerStore(kv, max_attempts=settings.cas_max_attempts,
                             fallback_total=settings.fallback_total_minor,
                             deadline_seconds=settings.apply_budget_seconds)
        dedup = EventDeduplicator(kv, settings.dedup_ttl_seconds,
                                  settings.dedup_lease_seconds,
                                  fail_open=settings.dedup_fail_open)
        return cls(settings, ledger, dedup)

    async def ingest(self, raw_body: bytes,
                     signature_header: Optional[str]) -> IngestResult:
        # Received -> Verified
        try:
            verify(raw_body, signature_header, self.settings.webhook_secret,
                   self.settings.signature_tolerance)
        except AuthenticationError as e:
            logger.warning("Webhook signature rejected: %s (%s)",
                           type(e).__name__, e)
            return _audit(IngestResult(400, IngestOutcome.REJECTED,
                                       type(e).__name__))

        # Verified -> Classified (pure, before touching the store)
        try:
            event = parse_event(raw_body, self.settings.target_currency)
        except ValidationError as e:
            logger.warning("Webhook payload rejected: %s (%s)",
                           type(e).__name__, e)
            return _audit(IngestResult(400, IngestOutcome.REJECTED,
                                       type(e).__name__))

        try:
            result = await self._process(event)
        except EventInFlight as e:
            result = IngestResult(409, IngestOutcome.IN_PROGRESS, str(e),
                                  event.id)
        except StorageError as e:
            logger.error("Store failure while applying %s: %s", event.id, e)
            result = IngestResult(500, IngestOutcome.STORAGE_ERROR,
                                  type(e).__name__, event.id)
        return _audit(result, event.event_type)

    async def _process(self, event: InboundEvent) -> IngestResult:
        if not await self.dedup.acquire(event.id):
            raise EventInFlight(event.id)
        try:
            # Deduplicated(duplicate): the first delivery was accepted
            if await self.dedup.is_processed(event.id):
                return IngestResult(200, IngestOutcome.DUPLICATE,
                                    event_id=event.id)

            # Deduplicated(new) -> Applied
            applied = await self.applier.apply(event)

            try:
                first = await self.dedup.mark_if_new(event.id)
            except StorageError:
                logger.warning(
                    "Ledger updated for %s but marker write failed; a "
                    "redelivery will apply it again", event.id,
                )
                raise
            if not first:
                # only possible when the lease was skipped (fail-open)
                logger.warning("Marker for %s appeared while applying",
                               event.id)
            return IngestResult(200, _APPLY_TO_INGEST[applied],
                                event_id=event.id)
        finally:
            await self.dedup.release(event.id)
