# Canonical webhook routes for billing events.
from __future__ import annotations

import json
import logging
import time

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...components.integrations.paddle.service import PaddleService
from ...components.integrations.paddle.webhook_handlers import (
    RetryableWebhookError,
    WebhookPayloadError,
    dispatch_event,
)
from ...deps import get_credit_engine
from ...platform.config import settings
from ...platform.database import get_db
from ...services.credit_service import CreditEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.get("/paddle")
def paddle_webhook_health():
    return {
        "status": "healthy",
        "configured": bool(settings.PADDLE_WEBHOOK_SECRET),
        "environment": settings.PADDLE_ENVIRONMENT,
    }


@router.post("/paddle")
async def paddle_webhook(
    request: Request,
    db: Session = Depends(get_db),
    engine: CreditEngine = Depends(get_credit_engine),
):
    """Verify and apply a Paddle Billing webhook.

    Returns 500 only when nothing was applied and a redelivery may succeed;
    every other failure is acknowledged with 200 so Paddle stops retrying.
    """
    if settings.MVP_DISABLE_PADDLE:
        raise HTTPException(status_code=503, detail="Paddle integration is disabled for MVP")
    if not settings.PADDLE_WEBHOOK_SECRET:
        raise HTTPException(status_code=503, detail="Paddle webhook secret is not configured")

    payload_raw = await request.body()
    signature = request.headers.get("Paddle-Signature", "")
    if not signature:
        raise HTTPException(status_code=401, detail="Missing signature")
    if not PaddleService.verify_signature(
        payload=payload_raw,
        signature=signature,
        secret=settings.PADDLE_WEBHOOK_SECRET,
        tolerance_seconds=settings.PADDLE_WEBHOOK_TOLERANCE_SECONDS,
    ):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        payload = json.loads(payload_raw)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail="Invalid payload") from exc
    event_type = payload.get("event_type")
    event_id = payload.get("event_id")
    started = time.monotonic()

    try:
        outcome = dispatch_event(db, engine, event_type, payload.get("data") or {})
    except RetryableWebhookError as exc:
        db.rollback()
        logger.warning("Paddle event %s will be retried: %s", event_type, exc, extra={"event_id": event_id})
        return JSONResponse(
            status_code=500,
            content={"success": False, "event": event_type, "error": str(exc)},
        )
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Storage error while processing Paddle event %s", event_type, extra={"event_id": event_id})
        return JSONResponse(
            status_code=500,
            content={"success": False, "event": event_type, "error": "Database error"},
        )
    except WebhookPayloadError as exc:
        db.rollback()
        logger.error("Paddle event %s rejected: %s", event_type, exc, extra={"event_id": event_id})
        return {"success": False, "event": event_type, "error": str(exc)}

    duration_ms = (time.monotonic() - started) * 1000
    logger.info(
        "Paddle event %s processed in %.1fms",
        event_type,
        duration_ms,
        extra={"event_id": event_id, "outcome": outcome.get("status")},
    )
    return {"success": True, "event": event_type, **outcome}
