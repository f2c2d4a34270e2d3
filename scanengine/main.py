"""
Scan Engine - Main Application Entry Point

Runs the scheduled-scan pipeline in-process (APScheduler tick + queue
consumer) and exposes the HTTP surface:
- /billing/webhook: payment provider events (signature-verified)
- /billing/verify-checkout: client fallback when a webhook is late
- /scans/reserve, /scans: credit pre-check and charge-then-save for client scans
- /scheduler/tick: run one due-job tick on demand
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Security
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .archivist.storage import build_scan_record
from .billing.ledger import INSUFFICIENT_CREDITS, PROFILE_NOT_FOUND
from .billing.settlement import charge_then_save
from .billing.webhooks import WebhookProcessor
from .common.errors import (
    CheckoutOwnershipError,
    FulfillmentError,
    ProfileNotFoundError,
    UpstreamError,
    WebhookPayloadError,
    WebhookSignatureError,
)
from .config.settings import settings
from .scheduler import setup_scheduler, shutdown_scheduler
from .scheduler.engine import ScanEngine, build_engine
from .scheduler.jobs import run_due_scheduled_scans

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# ----- API Key Security -----

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: str = Security(api_key_header)):
    """Verify API key for internal endpoints."""
    if not api_key:
        raise HTTPException(status_code=401, detail="API key required")
    if api_key not in settings.valid_api_keys:
        raise HTTPException(status_code=403, detail="Invalid API key")
    return api_key


def get_engine(request: Request) -> ScanEngine:
    return request.app.state.engine


def get_webhook_processor(engine: ScanEngine = Depends(get_engine)) -> WebhookProcessor:
    return WebhookProcessor(engine.ledger, engine.idempotency, engine.payments)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info(f"Starting Scan Engine (storage={settings.storage_backend})")
    engine = build_engine()
    app.state.engine = engine

    if settings.storage_backend == "postgres":
        from .archivist.database import init_db

        try:
            await init_db()
        except Exception as e:
            logger.warning(f"Could not initialize database tables: {e}")

    try:
        setup_scheduler(engine)
    except Exception as e:
        logger.warning(f"Could not start scheduler: {e}")

    yield

    logger.info("Shutting down...")
    shutdown_scheduler()

    try:
        await engine.close()
    except Exception as e:
        logger.warning(f"Error closing provider clients: {e}")

    if settings.storage_backend == "postgres":
        from .archivist.database import close_db

        try:
            await close_db()
        except Exception as e:
            logger.warning(f"Error closing database: {e}")


app = FastAPI(
    title="Scan Engine",
    description="Scheduled social-feed scans with credit billing",
    version="0.1.0",
    lifespan=lifespan,
)


# ----- Request models -----

class VerifyCheckoutRequest(BaseModel):
    session_id: str = Field(min_length=1)
    tenant_id: str = Field(min_length=1)


class ReserveRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    accounts_count: int = Field(ge=1)
    range_days: int = Field(default=1, ge=1)
    model: Optional[str] = None


class SaveScanRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    accounts: list[str] = Field(min_length=1)
    range_days: int = Field(default=1, ge=1)
    model: Optional[str] = None
    signals: list[dict[str, Any]] = Field(default_factory=list)
    total_items: int = Field(default=0, ge=0)
    item_meta: dict[str, Any] = Field(default_factory=dict)


# ----- Endpoints -----

@app.get("/health")
async def health_check():
    return {"status": "ok", "storage": settings.storage_backend, "queue_enabled": settings.queue_enabled}


@app.post("/billing/webhook")
async def billing_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    payload = await request.body()
    try:
        return await processor.handle(payload, stripe_signature)
    except (WebhookSignatureError, WebhookPayloadError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except FulfillmentError as e:
        # 500 makes the provider redeliver
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/billing/verify-checkout")
async def verify_checkout(
    body: VerifyCheckoutRequest,
    processor: WebhookProcessor = Depends(get_webhook_processor),
    _: str = Depends(verify_api_key),
):
    try:
        return await processor.verify_checkout(body.session_id, body.tenant_id)
    except CheckoutOwnershipError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except WebhookPayloadError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UpstreamError as e:
        raise HTTPException(status_code=502, detail=f"Payment provider error: {e}")
    except FulfillmentError as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/scans/reserve")
async def reserve_scan(
    body: ReserveRequest,
    engine: ScanEngine = Depends(get_engine),
    _: str = Depends(verify_api_key),
):
    result = await engine.ledger.reserve(body.tenant_id, body.accounts_count, body.range_days, body.model)
    if not result.ok:
        status_code = 404 if result.code == PROFILE_NOT_FOUND else 403
        raise HTTPException(status_code=status_code, detail={"code": result.code, "message": result.message})
    return {
        "ok": True,
        "credits_needed": result.credits_needed,
        "balance": result.balance,
        "free_tier": result.free_tier,
    }


@app.post("/scans")
async def save_scan(
    body: SaveScanRequest,
    engine: ScanEngine = Depends(get_engine),
    _: str = Depends(verify_api_key),
):
    """Charge for a client-side scan, then persist it (refunded if the save fails)."""
    reservation = await engine.ledger.reserve(body.tenant_id, len(body.accounts), body.range_days, body.model)
    if not reservation.ok:
        status_code = 404 if reservation.code == PROFILE_NOT_FOUND else 403
        raise HTTPException(status_code=status_code, detail={"code": reservation.code, "message": reservation.message})

    scan = build_scan_record(
        user_id=body.tenant_id,
        accounts=body.accounts,
        days=body.range_days,
        signals=body.signals,
        total_items=body.total_items,
        credits_charged=reservation.credits_needed,
        free_tier=reservation.free_tier,
        item_meta=body.item_meta,
    )
    description = f"Scan: {len(body.accounts)} accounts x {body.range_days}d"
    try:
        settlement = await charge_then_save(
            engine.scans,
            engine.ledger,
            scan,
            reservation.credits_needed,
            description,
            {"accounts_count": len(body.accounts), "range_days": body.range_days},
        )
    except ProfileNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Scan save failed for {body.tenant_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to save scan")

    if settlement.insufficient:
        raise HTTPException(
            status_code=403,
            detail={"code": INSUFFICIENT_CREDITS, "message": "Insufficient credits"},
        )

    return {
        "id": settlement.scan.id,
        "credits_charged": settlement.charged,
        "credits_balance": settlement.new_balance,
        "signal_count": settlement.scan.signal_count,
    }


@app.post("/scheduler/tick")
async def scheduler_tick(
    engine: ScanEngine = Depends(get_engine),
    _: str = Depends(verify_api_key),
):
    return await run_due_scheduled_scans(engine)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("scanengine.main:app", host="0.0.0.0", port=8000)
