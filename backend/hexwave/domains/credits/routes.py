"""Credits: balance, ledger history, usage summary, reconciliation and Paddle sync."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ...components.integrations.paddle.service import PaddleService
from ...components.integrations.paddle.sync import sync_from_paddle
from ...deps import get_credit_engine, get_current_user_id
from ...platform.config import settings
from ...platform.database import get_db
from ...schemas.credits import (
    BalanceResponse,
    BalanceVerificationResponse,
    LedgerEntryResponse,
    SyncResponse,
    TransactionPageResponse,
    UsageSummaryResponse,
)
from ...services.credit_service import CreditEngine

router = APIRouter(prefix="/credits", tags=["Credits"])

MAX_HISTORY_PAGE_SIZE = 100


@router.get("/balance", response_model=BalanceResponse)
def get_balance(
    user_id: str = Depends(get_current_user_id),
    engine: CreditEngine = Depends(get_credit_engine),
):
    return BalanceResponse(user_id=user_id, credits=engine.get_balance(user_id))


@router.get("/transactions", response_model=TransactionPageResponse)
def get_transactions(
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    type: Optional[List[str]] = Query(None),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user_id: str = Depends(get_current_user_id),
    engine: CreditEngine = Depends(get_credit_engine),
):
    page = engine.get_transaction_history(
        user_id,
        limit=min(limit, MAX_HISTORY_PAGE_SIZE),
        offset=offset,
        types=type,
        start_date=start_date,
        end_date=end_date,
    )
    return TransactionPageResponse(
        transactions=[LedgerEntryResponse.model_validate(entry) for entry in page.entries],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
        has_more=page.has_more,
    )


@router.get("/usage", response_model=UsageSummaryResponse)
def get_usage(
    days: int = Query(30, ge=1, le=365),
    user_id: str = Depends(get_current_user_id),
    engine: CreditEngine = Depends(get_credit_engine),
):
    summary = engine.get_usage_summary(user_id, days=days)
    return UsageSummaryResponse(
        days=days,
        total_credits=summary.total_credits,
        total_used=summary.total_used,
        total_added=summary.total_added,
        total_refunded=summary.total_refunded,
        by_type=summary.by_type,
        daily_usage=summary.daily_usage,
    )


@router.get("/verify", response_model=BalanceVerificationResponse)
def verify_balance(
    user_id: str = Depends(get_current_user_id),
    engine: CreditEngine = Depends(get_credit_engine),
):
    verification = engine.verify_balance(user_id)
    return BalanceVerificationResponse(
        is_valid=verification.is_valid,
        stored_balance=verification.stored_balance,
        calculated_balance=verification.calculated_balance,
        discrepancy=verification.discrepancy,
    )


@router.post("/sync", response_model=SyncResponse)
def sync_credits(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    engine: CreditEngine = Depends(get_credit_engine),
):
    if settings.MVP_DISABLE_PADDLE:
        raise HTTPException(status_code=503, detail="Paddle integration is disabled for MVP")
    if not settings.PADDLE_API_KEY:
        raise HTTPException(status_code=503, detail="Paddle API key is not configured")
    client = PaddleService(api_key=settings.PADDLE_API_KEY, base_url=settings.paddle_api_base_url)
    result = sync_from_paddle(db, engine, client, user_id)
    return SyncResponse(
        synced=result.synced,
        credits_added=result.credits_added,
        transactions=result.transactions,
        balance=engine.get_balance(user_id),
        error=result.error,
    )
