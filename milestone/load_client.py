#!/usr/bin/env python3
"""
Milestone webhook load client (async)

Plays the payment processor against a running server:
  1) GET /api/ledger  -> total before
  2) builds N charge.succeeded events in the target currency
  3) delivers every event K times concurrently (same body, fresh signature),
     the way an at-least-once sender retries
  4) GET /api/ledger  -> total after, must have moved by exactly sum(amounts)

Usage:
  python -m milestone.load_client --base http://localhost:8000 \
                                  --events 200 --deliveries 3 \
                                  --concurrency 50 --secret whsec_test
"""

import asyncio
import argparse
import random
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from .mockstripe import charge_succeeded, deliver


@dataclass
class Result:
    event_id: str
    status: int
    outcome: str  # applied/duplicate/in_progress/.../ERROR
    t: float = 0.0
    err: Optional[str] = None


@dataclass
class LoadReport:
    """What the server answered, and what the ledger did about it."""
    results: List[Result] = field(default_factory=list)
    expected: int = 0        # sum of distinct event amounts
    before: int = 0
    after: int = 0

    def add(self, r: Result):
        self.results.append(r)

    @property
    def drift(self) -> int:
        return (self.after - self.before) - self.expected

    def outcomes(self) -> Counter:
        return Counter(r.outcome for r in self.results)

    def applied_per_event(self) -> Counter:
        applied = Counter({r.event_id: 0 for r in self.results})
        applied.update(r.event_id for r in self.results
                       if r.outcome == "applied")
        return applied

    def over_applied(self) -> List[str]:
        return sorted(e for e, n in self.applied_per_event().items() if n > 1)

    def never_applied(self) -> List[str]:
        return sorted(e for e, n in self.applied_per_event().items() if n == 0)

    @property
    def ok(self) -> bool:
        return self.drift == 0 and not self.over_applied()

    def print(self, elapsed_s: float):
        outcomes = "   ".join(
            f"{k}: {v}" for k, v in sorted(self.outcomes().items())
        )
        slowest = max((r.t for r in self.results), default=0.0)
        print("\n=== Idempotency Check ===")
        print(f"Deliveries: {len(self.results)}   {outcomes}")
        print(f"Ledger: {self.before} -> {self.after}   "
              f"expected +{self.expected}   drift {self.drift:+d}")
        over, never = self.over_applied(), self.never_applied()
        if over:
            print(f"Applied more than once: {', '.join(over[:10])}")
        if never:
            print(f"Never applied ({len(never)}): {', '.join(never[:10])}")
        print(f"Wall time: {elapsed_s:.3f}s   slowest delivery "
              f"{slowest:.3f}s")


async def read_total(client: httpx.AsyncClient, base: str) -> int:
    resp = await client.get(f"{base}/api/ledger", timeout=10.0)
    resp.raise_for_status()
    return int(resp.json()["total_minor_units"])


async def one_delivery(
    client: httpx.AsyncClient,
    base: str,
    event: dict,
    secret: str,
    retry_in_progress: int,
) -> Result:
    r = Result(event_id=event["id"], status=0, outcome="ERROR")
    t0 = time.perf_counter()
    try:
        for _ in range(retry_in_progress + 1):
            # same body every time, signed afresh like a real retry
            resp = await deliver(
                client, event, secret, url=f"{base}/payments/webhook"
            )
            r.status = resp.status_code
            r.outcome = resp.json().get("outcome", "ERROR")
            # 409: another delivery holds the lease, come back like a
            # sender retry would
            if resp.status_code != 409:
                break
            await asyncio.sleep(0.05)
    except Exception as e:
        r.err = f"deliver: {e}"
        return r
    r.t = time.perf_counter() - t0
    return r


async def run_load(
    base: str,
    events: int,
    deliveries: int,
    concurrency: int,
    currency: str,
    secret: str,
    retry_in_progress: int,
) -> LoadReport:
    sem = asyncio.Semaphore(concurrency)
    report = LoadReport()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "MilestoneLoad/1.0"}
    ) as client:
        report.before = await read_total(client, base)

        batch = [
            charge_succeeded(random.randint(100, 50_000), currency=currency)
            for _ in range(events)
        ]
        report.expected = sum(e["data"]["object"]["amount"] for e in batch)

        async def worker(event: dict):
            async with sem:
                res = await one_delivery(
                    client, base, event, secret,
                    retry_in_progress,
                )
                report.add(res)

        tasks = [
            asyncio.create_task(worker(e))
            for e in batch for _ in range(deliveries)
        ]
        await asyncio.gather(*tasks)

        report.after = await read_total(client, base)

    return report


def main():
    ap = argparse.ArgumentParser(description="Milestone webhook load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--events", type=int, default=100,
                    help="Distinct events to send")
    ap.add_argument("--deliveries", type=int, default=2,
                    help="Deliveries per event (duplicates)")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent deliveries")
    ap.add_argument("--currency", default="aud",
                    help="Currency for generated charges")
    ap.add_argument("--secret", required=True,
                    help="Webhook signing secret the server expects")
    ap.add_argument("--retry-in-progress", type=int, default=20,
                    help="Retries for deliveries answered with 409")
    args = ap.parse_args()

    t_start = time.perf_counter()
    report = asyncio.run(run_load(
        base=args.base.rstrip("/"),
        events=args.events,
        deliveries=args.deliveries,
        concurrency=args.concurrency,
        currency=args.currency,
        secret=args.secret,
        retry_in_progress=args.retry_in_progress,
    ))
    elapsed = time.perf_counter() - t_start
    # drift is only meaningful while nothing else is posting to the server
    report.print(elapsed)
    if not report.ok:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
