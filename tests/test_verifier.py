"""Signature verification: header parsing, tolerance window, tampering."""

from __future__ import annotations

import hashlib
import hmac

import pytest

from milestone.errors import InvalidHeader, SignatureMismatch, StaleTimestamp
from milestone.verifier import compute_signature, parse_header, sign, verify

SECRET = "whsec_verifier"
NOW = 1_760_000_000
BODY = b'{"id":"evt_1","type":"charge.succeeded","amount":5000}'


def _flip_bit(data: bytes, index: int, bit: int = 0) -> bytes:
    b = bytearray(data)
    b[index] ^= 1 << bit
    return bytes(b)


class TestHeaderParsing:
    def test_extracts_timestamp_and_signatures(self):
        ts, sigs = parse_header("t=123, v1=abc ,v0=zzz,v1=def")
        assert ts == 123
        assert sigs == ["abc", "def"]

    @pytest.mark.parametrize("header", [
        None, "", "v1=abc", f"t={NOW}", "t=,v1=abc", "t=abc,v1=def",
        "garbage", f"t={NOW},v1=",
    ])
    def test_missing_or_bad_parts_raise_invalid_header(self, header):
        with pytest.raises(InvalidHeader):
            verify(BODY, header, SECRET, 1800, now=NOW)


class TestSignature:
    def test_matches_reference_hmac(self):
        expected = hmac.new(
            SECRET.encode(), f"{NOW}.".encode() + BODY, hashlib.sha256
        ).hexdigest()
        assert compute_signature(BODY, SECRET, NOW) == expected
        assert sign(BODY, SECRET, NOW) == f"t={NOW},v1={expected}"

    def test_valid_signature_returns_timestamp(self):
        assert verify(BODY, sign(BODY, SECRET, NOW), SECRET, now=NOW) == NOW

    @pytest.mark.parametrize("index", [0, 7, len(BODY) // 2, len(BODY) - 1])
    def test_flipped_body_bit_mismatches(self, index):
        header = sign(BODY, SECRET, NOW)
        with pytest.raises(SignatureMismatch):
            verify(_flip_bit(BODY, index), header, SECRET, now=NOW)

    @pytest.mark.parametrize("index", [0, 31, 63])
    @pytest.mark.parametrize("bit", [0, 5])
    def test_flipped_digest_bit_mismatches(self, index, bit):
        digest = compute_signature(BODY, SECRET, NOW).encode()
        bad = _flip_bit(digest, index, bit).decode()
        with pytest.raises(SignatureMismatch):
            verify(BODY, f"t={NOW},v1={bad}", SECRET, now=NOW)

    def test_wrong_secret_mismatches(self):
        with pytest.raises(SignatureMismatch):
            verify(BODY, sign(BODY, "other", NOW), SECRET, now=NOW)

    def test_empty_secret_always_fails(self):
        with pytest.raises(SignatureMismatch):
            verify(BODY, sign(BODY, "", NOW), "", now=NOW)

    def test_signature_covers_timestamp(self):
        digest = compute_signature(BODY, SECRET, NOW)
        with pytest.raises(SignatureMismatch):
            verify(BODY, f"t={NOW + 1},v1={digest}", SECRET, now=NOW)

    def test_any_v1_may_match(self):
        good = compute_signature(BODY, SECRET, NOW)
        header = f"t={NOW},v1={'0' * 64},v1={good}"
        assert verify(BODY, header, SECRET, now=NOW) == NOW

    def test_reserialized_body_mismatches(self):
        spaced = b'{"id": "evt_1", "type": "charge.succeeded", "amount": 5000}'
        with pytest.raises(SignatureMismatch):
            verify(spaced, sign(BODY, SECRET, NOW), SECRET, now=NOW)


class TestTolerance:
    def test_signed_3601s_ago_is_stale(self):
        header = sign(BODY, SECRET, NOW - 3601)
        with pytest.raises(StaleTimestamp):
            verify(BODY, header, SECRET, 1800, now=NOW)

    def test_signed_1799s_ago_is_accepted(self):
        header = sign(BODY, SECRET, NOW - 1799)
        assert verify(BODY, header, SECRET, 1800, now=NOW) == NOW - 1799

    def test_boundary_is_inclusive(self):
        header = sign(BODY, SECRET, NOW - 1800)
        assert verify(BODY, header, SECRET, 1800, now=NOW) == NOW - 1800

    def test_future_timestamp_is_stale(self):
        header = sign(BODY, SECRET, NOW + 1801)
        with pytest.raises(StaleTimestamp):
            verify(BODY, header, SECRET, 1800, now=NOW)

    def test_stale_checked_before_signature(self):
        with pytest.raises(StaleTimestamp):
            verify(BODY, f"t={NOW - 5000},v1=deadbeef", SECRET, 1800, now=NOW)
