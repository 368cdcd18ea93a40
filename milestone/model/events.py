# milestone/model/events.py
"""
Parse a verified webhook body into a closed set of event kinds and apply
it to the ledger.

| processor type             | adds to total                 | latest payment |
|----------------------------|-------------------------------|----------------|
| charge.succeeded           | yes, if currency == target    | yes            |
| payment_intent.succeeded   | no (overlaps the charge)      | yes            |
| checkout.session.completed | no (overlaps the charge)      | yes            |
| anything else              | no                            | no             |
"""
from __future__ import annotations
import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from ..errors import MalformedPayload, MissingEventId
from ..helpers import now_ts, to_iso
from .ledger import LedgerStore

logger = logging.getLogger(__name__)

CHARGE_SUCCEEDED = "charge.succeeded"
PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"

MAX_PAYER_NAME = 120
UNKNOWN_PAYER = "Unknown"


class EventKind(enum.Enum):
    CONTRIBUTES_TO_TOTAL = "contributes_to_total"
    RECORD_ONLY = "record_only"
    IGNORED = "ignored"


class ApplyOutcome(enum.Enum):
    APPLIED = "applied"
    RECORDED_ONLY = "recorded"
    IGNORED = "ignored"


@dataclass(frozen=True)
class InboundEvent:
    id: str
    event_type: str
    kind: EventKind
    currency: str
    amount_minor_units: int
    payer_name: str
    occurred_at: str


def _name_at(obj: dict, *path: str) -> Optional[str]:
    cur: Any = obj
    for p in path:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(p)
    if isinstance(cur, str) and cur.strip():
        return cur.strip()
    return None


def _amount(value: Any) -> Optional[int]:
    if value is None:
        return None
    # bool is an int subclass; floats are not minor units
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MalformedPayload(f"bad amount {value!r}")
    return value


def _occurred_at(created: Any, received_at: float) -> str:
    if isinstance(created, (int, float)) and not isinstance(created, bool) \
            and created > 0:
        return to_iso(float(created))
    return to_iso(received_at)


def parse_event(raw_body: bytes, target_currency: str,
                received_at: Optional[float] = None) -> InboundEvent:
    received_at = now_ts() if received_at is None else received_at
    try:
        event = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError, RecursionError) as e:
        raise MalformedPayload(f"invalid JSON: {type(e).__name__}") from e
    if not isinstance(event, dict):
        raise MalformedPayload("event is not a JSON object")

    event_id = event.get("id")
    if not isinstance(event_id, str) or not event_id.strip():
        raise MissingEventId("event has no id")
    event_id = event_id.strip()

    event_type = event.get("type")
    event_type = event_type if isinstance(event_type, str) else ""
    occurred_at = _occurred_at(event.get("created"), received_at)

    if event_type not in (CHARGE_SUCCEEDED, PAYMENT_INTENT_SUCCEEDED,
                          CHECKOUT_SESSION_COMPLETED):
        return InboundEvent(event_id, event_type, EventKind.IGNORED, "",
                            0, UNKNOWN_PAYER, occurred_at)

    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise MalformedPayload(f"{event_type} without data.object")

    currency = obj.get("currency")
    currency = currency.strip().lower() if isinstance(currency, str) else ""

    if event_type == CHARGE_SUCCEEDED:
        amount = _amount(obj.get("amount"))
        if amount is None:
            raise MalformedPayload("charge without amount")
        payer = _name_at(obj, "billing_details", "name")
        kind = (EventKind.CONTRIBUTES_TO_TOTAL
                if currency == target_currency.lower()
                else EventKind.RECORD_ONLY)
    else:
        amount = _amount(obj.get("amount_total"))
        if amount is None:
            amount = _amount(obj.get("amount")) or 0
        payer = (_name_at(obj, "customer_details", "name")
                 or _name_at(obj, "billing_details", "name")
                 or _name_at(obj, "shipping", "name"))
        kind = EventKind.RECORD_ONLY

    return InboundEvent(
        id=event_id,
        event_type=event_type,
        kind=kind,
        currency=currency,
        amount_minor_units=amount,
        payer_name=(payer or UNKNOWN_PAYER)[:MAX_PAYER_NAME],
        occurred_at=occurred_at,
    )


class EventApplier:
    def __init__(self, ledger: LedgerStore) -> None:
        self.ledger = ledger

    async def apply(self, event: InboundEvent) -> ApplyOutcome:
        # latest first: it is an overwrite, so a retry after a failed total
        # write repeats it harmlessly and the total stays the last write
        if event.kind is EventKind.IGNORED:
            return ApplyOutcome.IGNORED

        await self.ledger.record_latest_payment(
            event.payer_name, event.amount_minor_units, event.occurred_at
        )
        if event.kind is EventKind.CONTRIBUTES_TO_TOTAL:
            total = await self.ledger.add_amount(event.amount_minor_units)
            logger.info("Added %d %s from %s, total now %d",
                        event.amount_minor_units, event.currency,
                        event.id, total)
            return ApplyOutcome.APPLIED
        if event.event_type == CHARGE_SUCCEEDED:
            logger.info("Charge %s in %r not counted (target currency "
                        "differs)", event.id, event.currency)
        return ApplyOutcome.RECORDED_ONLY
