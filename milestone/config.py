# milestone/config.py
from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Optional

from .helpers import env_flag

DEFAULT_SIGNATURE_TOLERANCE = 1800           # seconds
DEFAULT_DEDUP_TTL = 14 * 24 * 3600           # sender's retry horizon
DEFAULT_DEDUP_LEASE = 60                     # must outlast APPLY_BUDGET
DEFAULT_APPLY_BUDGET = 30                    # seconds of CAS retrying
DEFAULT_CAS_ATTEMPTS = 8
DEFAULT_TARGET_TOTAL = 100_000_000           # A$1M in cents


@dataclass(frozen=True)
class Settings:
    webhook_secret: str = ""
    signature_tolerance: int = DEFAULT_SIGNATURE_TOLERANCE
    target_currency: str = "aud"
    target_total_minor: int = DEFAULT_TARGET_TOTAL

    dedup_ttl_seconds: int = DEFAULT_DEDUP_TTL
    dedup_lease_seconds: int = DEFAULT_DEDUP_LEASE
    dedup_fail_open: bool = True
    apply_budget_seconds: int = DEFAULT_APPLY_BUDGET

    cas_max_attempts: int = DEFAULT_CAS_ATTEMPTS
    fallback_total_minor: Optional[int] = None

    kv_backend: str = "redis"                # 'redis' | 'sql'
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 512
    database_url: Optional[str] = None
    db_pool_size: int = 10
    db_gate_limit: Optional[int] = None

    admin_token: Optional[str] = None
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        # an expired lease lets a redelivery apply the same event again
        if self.dedup_lease_seconds <= self.apply_budget_seconds:
            raise ValueError(
                f"DEDUP_LEASE_SECONDS ({self.dedup_lease_seconds}) must "
                f"exceed APPLY_BUDGET_SECONDS ({self.apply_budget_seconds})"
            )
        if self.dedup_ttl_seconds <= self.dedup_lease_seconds:
            raise ValueError("DEDUP_TTL_SECONDS must exceed the lease")

    @classmethod
    def from_env(cls) -> "Settings":
        fallback = os.environ.get("LEDGER_FALLBACK_TOTAL")
        gate = os.environ.get("DB_GATE_LIMIT")
        return cls(
            webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET", ""),
            signature_tolerance=int(os.environ.get(
                "SIGNATURE_TOLERANCE_SECONDS", DEFAULT_SIGNATURE_TOLERANCE
            )),
            target_currency=os.environ.get("TARGET_CURRENCY", "aud").lower(),
            target_total_minor=int(os.environ.get(
                "TARGET_TOTAL_MINOR", DEFAULT_TARGET_TOTAL
            )),
            dedup_ttl_seconds=int(os.environ.get(
                "DEDUP_TTL_SECONDS", DEFAULT_DEDUP_TTL
            )),
            dedup_lease_seconds=int(os.environ.get(
                "DEDUP_LEASE_SECONDS", DEFAULT_DEDUP_LEASE
            )),
            dedup_fail_open=env_flag(os.environ.get("DEDUP_FAIL_OPEN"), True),
            apply_budget_seconds=int(os.environ.get(
                "APPLY_BUDGET_SECONDS", DEFAULT_APPLY_BUDGET
            )),
            cas_max_attempts=int(os.environ.get(
                "LEDGER_CAS_ATTEMPTS", DEFAULT_CAS_ATTEMPTS
            )),
            fallback_total_minor=int(fallback) if fallback else None,
            kv_backend=os.environ.get("KV_BACKEND", "redis").lower(),
            redis_url=os.environ.get("REDIS_URL", "redis://127.0.0.1:6379"),
            redis_max_conn=int(os.environ.get("REDIS_MAX_CONN", "512")),
            database_url=os.environ.get("DATABASE_URL"),
            db_pool_size=int(os.environ.get("DB_POOL_SIZE", "10")),
            db_gate_limit=int(gate) if gate else None,
            admin_token=os.environ.get("ADMIN_TOKEN") or None,
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
