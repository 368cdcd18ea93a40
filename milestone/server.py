from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse

from .config import Settings
from .errors import StorageError
from .helpers import ct_equal, minor_to_major, now_ts, to_iso
from .infra import timings
from .ingest import IngestService
from .model.kv import KVStore, new_store
from .verifier import SIGNATURE_HEADER

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    # ----------------------------
    # startup / shutdown
    # ----------------------------
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=settings.log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        if not settings.webhook_secret:
            logger.warning("STRIPE_WEBHOOK_SECRET is not set; every "
                           "webhook will be rejected")
        kv = await new_store(settings)
        app.state.kv = kv
        app.state.ingest = IngestService.from_store(settings, kv)
        logger.info("Milestone tracker starting, KV backend: %s, target "
                    "currency: %s", kv.backend, settings.target_currency)
        try:
            yield
        finally:
            timings.flush_to_log()
            await kv.close()
            app.state.kv = None
            app.state.ingest = None

    app = FastAPI(
        title="Milestone Tracker",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # ----------------------------
    # Helpers
    # ----------------------------
    def ingest_service(request: Request) -> IngestService:
        return request.app.state.ingest

    def kv_store(request: Request) -> KVStore:
        return request.app.state.kv

    def require_admin(token: str) -> None:
        expected = settings.admin_token
        if not expected or not token or not ct_equal(token, expected):
            raise HTTPException(status_code=401, detail="unauthorised")

    # ----------------------------
    # Webhook endpoint
    # ----------------------------
    async def _webhook(request: Request):
        payload = await request.body()
        sig = request.headers.get(SIGNATURE_HEADER)
        result = await ingest_service(request).ingest(payload, sig)
        return ORJSONResponse(result.as_dict(), status_code=result.status_code)

    app.add_api_route("/payments/webhook", _webhook, methods=["POST"])
    # path used by the original Stripe dashboard configuration
    app.add_api_route("/stripe-webhook", _webhook, methods=["POST"])

    # ----------------------------
    # Read API
    # ----------------------------
    @app.get("/api/ledger")
    async def get_ledger(request: Request):
        snap = await ingest_service(request).ledger.current_total()
        return snap.as_dict()

    @app.get("/api/status")
    async def get_status(request: Request):
        snap = await ingest_service(request).ledger.current_total()
        target = settings.target_total_minor
        total = snap.total_minor_units
        percent = min(100.0, total / target * 100) if target > 0 else 100.0
        latest = snap.latest_payment
        return {
            "currency": settings.target_currency,
            "total_major": minor_to_major(total),
            "target_major": minor_to_major(target),
            "remaining_major": minor_to_major(max(0, target - total)),
            "percent": round(percent, 2),
            "is_hit": total >= target,
            "latest_payment": None if latest is None else {
                "payer_name": latest.payer_name,
                "amount_major": minor_to_major(latest.amount_minor_units),
                "occurred_at": latest.occurred_at,
            },
            "stale": snap.stale,
        }

    @app.get("/latest-payment")
    async def latest_payment(request: Request):
        snap = await ingest_service(request).ledger.current_total()
        if snap.latest_payment is None:
            return {}
        return snap.as_dict()["latest_payment"]

    # ----------------------------
    # Diagnostics
    # ----------------------------
    @app.get("/__diag")
    async def diag(request: Request):
        try:
            await kv_store(request).ping()
        except StorageError as e:
            return ORJSONResponse({"ok": False, "error": str(e)},
                                  status_code=500)
        return {"ok": True}

    # ----------------------------
    # Admin (token in query string)
    # ----------------------------
    @app.get("/admin/set-latest")
    async def admin_set_latest(request: Request, token: str = "",
                               name: str = "Test", amount: int = 4200):
        require_admin(token)
        name = (name or "Test")[:120]
        amount = max(0, amount)
        await ingest_service(request).ledger.record_latest_payment(
            name, amount, to_iso(now_ts())
        )
        return {"ok": True, "payer_name": name, "amount_minor_units": amount}

    @app.get("/admin/reset-latest")
    async def admin_reset_latest(request: Request, token: str = ""):
        require_admin(token)
        await ingest_service(request).ledger.clear_latest_payment()
        return {"ok": True, "cleared": "latest_payment"}

    @app.get("/api/timings")
    async def api_timings(token: str = ""):
        require_admin(token)
        return timings.snapshot()

    return app


# uvicorn milestone.server:app
app = create_app()
