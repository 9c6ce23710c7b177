from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class BalanceResponse(BaseModel):
    user_id: str
    credits: int


class LedgerEntryResponse(BaseModel):
    transaction_ref: str
    type: str
    amount: int
    balance_before: int
    balance_after: int
    status: str
    source: str
    description: str
    transaction_id: Optional[str] = None
    subscription_id: Optional[str] = None
    price_id: Optional[str] = None
    product_id: Optional[str] = None
    related_transaction_ref: Optional[str] = None
    usage_details: Optional[dict] = None
    metadata: Optional[dict] = Field(default=None, validation_alias="entry_metadata")
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class TransactionPageResponse(BaseModel):
    transactions: List[LedgerEntryResponse] = Field(default_factory=list)
    total: int
    limit: int
    offset: int
    has_more: bool


class DailyUsage(BaseModel):
    date: str
    used: int = 0
    added: int = 0


class UsageSummaryResponse(BaseModel):
    days: int
    total_credits: int
    total_used: int
    total_added: int
    total_refunded: int
    by_type: dict = Field(default_factory=dict)
    daily_usage: List[DailyUsage] = Field(default_factory=list)


class BalanceVerificationResponse(BaseModel):
    is_valid: bool
    stored_balance: int
    calculated_balance: int
    discrepancy: int


class SyncResponse(BaseModel):
    synced: bool
    credits_added: int = 0
    transactions: List[str] = Field(default_factory=list)
    balance: int
    error: Optional[str] = None
