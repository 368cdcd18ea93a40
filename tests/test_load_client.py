"""Load client: delivery retries on 409 and the idempotency report."""

from __future__ import annotations

import httpx

from milestone import mockstripe
from milestone.load_client import LoadReport, Result, one_delivery
from milestone.verifier import SIGNATURE_HEADER, verify

from tests.conftest import TEST_SECRET


async def test_one_delivery_retries_while_in_progress():
    answers = iter([(409, "in_progress"), (409, "in_progress"),
                    (200, "applied")])
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        sig = request.headers[SIGNATURE_HEADER]
        verify(request.content, sig, TEST_SECRET)
        seen.append(request.content)
        status, outcome = next(answers)
        return httpx.Response(status, json={"outcome": outcome})

    event = mockstripe.charge_succeeded(100)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as c:
        res = await one_delivery(c, "http://test", event, TEST_SECRET,
                                 retry_in_progress=5)

    assert res.status == 200
    assert res.outcome == "applied"
    assert len(seen) == 3
    assert len(set(seen)) == 1  # byte-identical body on every delivery


async def test_one_delivery_records_transport_errors():
    def handler(request):
        raise httpx.ConnectError("refused")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as c:
        res = await one_delivery(c, "http://test",
                                 mockstripe.charge_succeeded(1), TEST_SECRET,
                                 retry_in_progress=0)
    assert res.outcome == "ERROR"
    assert res.err.startswith("deliver:")


def test_report_passes_when_each_event_applied_once():
    report = LoadReport(expected=300, before=1000, after=1300)
    report.add(Result("evt_1", 200, "applied", t=0.1))
    report.add(Result("evt_1", 200, "duplicate", t=0.3))
    report.add(Result("evt_2", 200, "applied", t=0.2))
    report.add(Result("evt_2", 409, "in_progress"))
    assert report.drift == 0
    assert report.outcomes() == {"applied": 2, "duplicate": 1,
                                 "in_progress": 1}
    assert report.over_applied() == []
    assert report.never_applied() == []
    assert report.ok


def test_report_flags_double_application_and_drift():
    report = LoadReport(expected=300, before=0, after=500)
    report.add(Result("evt_1", 200, "applied"))
    report.add(Result("evt_1", 200, "applied"))
    report.add(Result("evt_2", 500, "storage_error"))
    assert report.drift == 200
    assert report.over_applied() == ["evt_1"]
    assert report.never_applied() == ["evt_2"]
    assert not report.ok
