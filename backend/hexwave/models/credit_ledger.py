import enum
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..platform.database import Base


class CreditTransactionType(str, enum.Enum):
    SUBSCRIPTION_CREDIT = "subscription_credit"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    ADDON_PURCHASE = "addon_purchase"
    USAGE_DEDUCTION = "usage_deduction"
    REFUND = "refund"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    BONUS = "bonus"
    EXPIRY = "expiry"
    ROLLBACK = "rollback"
    SYNC_ADJUSTMENT = "sync_adjustment"


class CreditTransactionStatus(str, enum.Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"
    REVERSED = "reversed"


class CreditSource(str, enum.Enum):
    PADDLE_WEBHOOK = "paddle_webhook"
    PADDLE_API = "paddle_api"
    SYSTEM = "system"
    ADMIN = "admin"
    API = "api"
    SYNC = "sync"


# Ledger types whose external transaction_id may be applied at most once per class.
GRANT_TYPES = frozenset(
    {
        CreditTransactionType.SUBSCRIPTION_CREDIT.value,
        CreditTransactionType.SUBSCRIPTION_RENEWAL.value,
        CreditTransactionType.ADDON_PURCHASE.value,
    }
)
_DEDUPE_CLASSES = {
    **{t: "grant" for t in GRANT_TYPES},
    # A sync credit and the webhook credit for the same Paddle transaction are one grant.
    CreditTransactionType.SYNC_ADJUSTMENT.value: "grant",
}


def dedupe_class_for(entry_type: str) -> str | None:
    """Type class scoping transaction_id uniqueness, or None when the type is not deduplicated."""
    return _DEDUPE_CLASSES.get(str(entry_type))


class LedgerImmutableError(RuntimeError):
    """Raised when code tries to update or delete a persisted ledger entry."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditLedgerEntry(Base):
    """Immutable, append-only credit ledger entry."""

    __tablename__ = "credit_ledger"
    __table_args__ = (
        CheckConstraint("balance_after - balance_before = amount", name="ck_credit_ledger_delta"),
        UniqueConstraint("transaction_id", "dedupe_class", name="uq_credit_ledger_txn_class"),
        Index("ix_credit_ledger_user_created", "user_id", "created_at"),
        Index("ix_credit_ledger_user_type_created", "user_id", "type", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    transaction_ref = Column(String, nullable=False, unique=True, index=True)
    user_id = Column(String, ForeignKey("user_accounts.user_id"), nullable=False, index=True)
    type = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)  # positive = credit, negative = debit
    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=CreditTransactionStatus.COMPLETED.value, index=True)
    source = Column(String, nullable=False)
    description = Column(String, nullable=False)
    # Payment provider correlation
    transaction_id = Column(String, nullable=True, index=True)
    subscription_id = Column(String, nullable=True, index=True)
    customer_id = Column(String, nullable=True)
    price_id = Column(String, nullable=True)
    product_id = Column(String, nullable=True)
    dedupe_class = Column(String, nullable=True)
    related_transaction_ref = Column(String, nullable=True, index=True)
    idempotency_key = Column(String, nullable=True, unique=True, index=True)
    usage_details = Column(JSON, nullable=True)
    entry_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    account = relationship("UserAccount", back_populates="credit_ledger_entries")


@event.listens_for(CreditLedgerEntry, "before_update")
def _reject_ledger_update(mapper, connection, target):
    raise LedgerImmutableError(f"Ledger entry {target.transaction_ref} is immutable")


@event.listens_for(CreditLedgerEntry, "before_delete")
def _reject_ledger_delete(mapper, connection, target):
    raise LedgerImmutableError(f"Ledger entry {target.transaction_ref} cannot be deleted")
