# milestone/verifier.py
"""
Stripe-style webhook signature verification.

Header format:  t=<unix-seconds>,v1=<hex hmac-sha256>[,v1=...][,v0=...]
Signed message: b"<t>." + raw request body (byte-exact, never re-serialized)
"""
from __future__ import annotations
import hashlib
import hmac
from typing import Dict, List, Optional, Tuple

from .errors import InvalidHeader, SignatureMismatch, StaleTimestamp
from .helpers import ct_equal, now_ts

DEFAULT_TOLERANCE = 1800
SIGNATURE_HEADER = "stripe-signature"


def parse_header(signature_header: Optional[str]) -> Tuple[int, List[str]]:
    parts: Dict[str, List[str]] = {}
    for item in (signature_header or "").split(","):
        kv = item.strip().split("=", 1)
        if len(kv) == 2:
            parts.setdefault(kv[0].strip(), []).append(kv[1].strip())

    ts_values = parts.get("t")
    sigs = [s for s in parts.get("v1", []) if s]
    if not ts_values or not sigs:
        raise InvalidHeader("signature header needs t and v1")
    try:
        timestamp = int(ts_values[0])
    except ValueError:
        raise InvalidHeader(f"bad timestamp: {ts_values[0]!r}")
    return timestamp, sigs


def compute_signature(raw_body: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode() + raw_body
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def sign(raw_body: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    ts = int(now_ts()) if timestamp is None else timestamp
    return f"t={ts},v1={compute_signature(raw_body, secret, ts)}"


def verify(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE,
    now: Optional[float] = None,
) -> int:
    """
    Returns the signed timestamp. Raises InvalidHeader, StaleTimestamp or
    SignatureMismatch. No side effects.
    """
    timestamp, sigs = parse_header(signature_header)

    now = now_ts() if now is None else now
    if abs(now - timestamp) > tolerance_seconds:
        raise StaleTimestamp(
            f"timestamp {timestamp} outside {tolerance_seconds}s tolerance"
        )

    if not secret:
        raise SignatureMismatch("no webhook secret configured")

    expected = compute_signature(raw_body, secret, timestamp)
    # check every candidate, no early exit on the first mismatch
    matched = False
    for sig in sigs:
        matched = ct_equal(expected, sig) or matched
    if not matched:
        raise SignatureMismatch("signature mismatch")
    return timestamp
