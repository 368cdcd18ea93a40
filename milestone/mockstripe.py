# milestone/mockstripe.py
"""
Builds Stripe-shaped webhook events and delivers them signed, standing in
for the payment processor in local runs, the load client and tests.
"""
from __future__ import annotations
import json
import os
import time
import uuid
from typing import Optional

import httpx

from .verifier import SIGNATURE_HEADER, sign

MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)


def new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


def charge_succeeded(amount: int, currency: str = "aud",
                     payer: Optional[str] = "A. Payer",
                     event_id: Optional[str] = None,
                     created: Optional[int] = None) -> dict:
    return {
        "id": event_id or new_event_id(),
        "type": "charge.succeeded",
        "created": created or int(time.time()),
        "data": {"object": {
            "id": f"ch_{uuid.uuid4().hex[:24]}",
            "object": "charge",
            "amount": amount,
            "currency": currency,
            "billing_details": {"name": payer},
        }},
    }


def payment_intent_succeeded(amount: int, currency: str = "aud",
                             payer: Optional[str] = "A. Payer",
                             event_id: Optional[str] = None,
                             created: Optional[int] = None) -> dict:
    return {
        "id": event_id or new_event_id(),
        "type": "payment_intent.succeeded",
        "created": created or int(time.time()),
        "data": {"object": {
            "id": f"pi_{uuid.uuid4().hex[:24]}",
            "object": "payment_intent",
            "amount": amount,
            "currency": currency,
            "shipping": {"name": payer},
        }},
    }


def checkout_session_completed(amount: int, currency: str = "aud",
                               payer: Optional[str] = "A. Payer",
                               event_id: Optional[str] = None,
                               created: Optional[int] = None) -> dict:
    return {
        "id": event_id or new_event_id(),
        "type": "checkout.session.completed",
        "created": created or int(time.time()),
        "data": {"object": {
            "id": f"cs_{uuid.uuid4().hex[:24]}",
            "object": "checkout.session",
            "amount_total": amount,
            "currency": currency,
            "customer_details": {"name": payer},
        }},
    }


def encode(event: dict) -> bytes:
    return json.dumps(event, separators=(",", ":")).encode()


def signed_request(event: dict, secret: str,
                   timestamp: Optional[int] = None) -> tuple[bytes, dict]:
    payload = encode(event)
    headers = {
        SIGNATURE_HEADER: sign(payload, secret, timestamp),
        "content-type": "application/json",
    }
    return payload, headers


async def deliver(client: httpx.AsyncClient, event: dict, secret: str,
                  url: str = MOCK_WEBHOOK_URL) -> httpx.Response:
    payload, headers = signed_request(event, secret)
    return await client.post(url, content=payload, headers=headers)
