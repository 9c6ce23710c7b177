"""Ledger and balance storage primitives.

Every function here takes the caller's session and never commits; the credit
engine owns transaction boundaries. The cached balance on ``user_accounts`` is
only written through :func:`compare_and_set_balance`, and ledger rows are only
ever inserted.
"""
from __future__ import annotations

import time
import uuid
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ..models.account import UserAccount
from ..models.credit_ledger import (
    CreditLedgerEntry,
    CreditTransactionStatus,
    dedupe_class_for,
)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
    if value <= 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_transaction_ref() -> str:
    timestamp = _to_base36(int(time.time() * 1000))
    return f"txn_{timestamp}_{uuid.uuid4().hex[:8]}"


# ---------------------------------------------------------------------------
# Idempotency lookups
# ---------------------------------------------------------------------------

def find_by_idempotency_key(db: Session, idempotency_key: str) -> CreditLedgerEntry | None:
    return (
        db.query(CreditLedgerEntry)
        .filter(CreditLedgerEntry.idempotency_key == idempotency_key)
        .first()
    )


def find_by_transaction_class(db: Session, transaction_id: str, entry_type: str) -> CreditLedgerEntry | None:
    dedupe_class = dedupe_class_for(entry_type)
    if dedupe_class is None:
        return None
    return (
        db.query(CreditLedgerEntry)
        .filter(
            CreditLedgerEntry.transaction_id == transaction_id,
            CreditLedgerEntry.dedupe_class == dedupe_class,
        )
        .first()
    )


def find_duplicate(
    db: Session,
    *,
    idempotency_key: str | None = None,
    transaction_id: str | None = None,
    entry_type: str | None = None,
) -> CreditLedgerEntry | None:
    """Return the entry that already applied this event, if any.

    Either key is sufficient. This is the fast path; the unique constraints on
    ``idempotency_key`` and ``(transaction_id, dedupe_class)`` remain the
    authority when two deliveries race past it.
    """
    if idempotency_key:
        existing = find_by_idempotency_key(db, idempotency_key)
        if existing:
            return existing
    if transaction_id and entry_type:
        return find_by_transaction_class(db, transaction_id, entry_type)
    return None


def has_entry_for_transaction(db: Session, transaction_id: str) -> bool:
    return (
        db.query(CreditLedgerEntry.id)
        .filter(CreditLedgerEntry.transaction_id == transaction_id)
        .first()
        is not None
    )


# ---------------------------------------------------------------------------
# Balance store
# ---------------------------------------------------------------------------

def read_balance(db: Session, user_id: str) -> int | None:
    row = db.execute(select(UserAccount.credits).where(UserAccount.user_id == user_id)).first()
    return int(row[0] or 0) if row else None


def read_balance_for_update(db: Session, user_id: str) -> int | None:
    """Read the cached balance holding the account row lock until commit (no-op lock on SQLite)."""
    row = db.execute(
        select(UserAccount.credits).where(UserAccount.user_id == user_id).with_for_update()
    ).first()
    return int(row[0] or 0) if row else None


def compare_and_set_balance(
    db: Session,
    user_id: str,
    *,
    expected: int,
    new_balance: int,
    verified_at: datetime,
) -> bool:
    """Write ``new_balance`` only if the stored balance still equals ``expected``."""
    result = db.execute(
        update(UserAccount)
        .where(UserAccount.user_id == user_id, UserAccount.credits == expected)
        .values(credits=new_balance, balance_verified_at=verified_at)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Ledger store
# ---------------------------------------------------------------------------

def append_entry(
    db: Session,
    *,
    user_id: str,
    entry_type: str,
    amount: int,
    balance_before: int,
    balance_after: int,
    source: str,
    description: str,
    transaction_id: str | None = None,
    subscription_id: str | None = None,
    customer_id: str | None = None,
    price_id: str | None = None,
    product_id: str | None = None,
    related_transaction_ref: str | None = None,
    idempotency_key: str | None = None,
    usage_details: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
) -> CreditLedgerEntry:
    entry = CreditLedgerEntry(
        transaction_ref=generate_transaction_ref(),
        user_id=user_id,
        type=str(entry_type),
        amount=int(amount),
        balance_before=int(balance_before),
        balance_after=int(balance_after),
        status=CreditTransactionStatus.COMPLETED.value,
        source=str(source),
        description=description,
        transaction_id=transaction_id,
        subscription_id=subscription_id,
        customer_id=customer_id,
        price_id=price_id,
        product_id=product_id,
        dedupe_class=dedupe_class_for(entry_type) if transaction_id else None,
        related_transaction_ref=related_transaction_ref,
        idempotency_key=idempotency_key,
        usage_details=usage_details,
        entry_metadata=metadata or {},
    )
    db.add(entry)
    db.flush()
    return entry


def completed_sum(db: Session, user_id: str) -> int:
    result = db.execute(
        select(func.coalesce(func.sum(CreditLedgerEntry.amount), 0)).where(
            CreditLedgerEntry.user_id == user_id,
            CreditLedgerEntry.status == CreditTransactionStatus.COMPLETED.value,
        )
    )
    return int(result.scalar() or 0)


def totals_by_type(db: Session, user_id: str, since: datetime) -> dict[str, int]:
    rows = db.execute(
        select(CreditLedgerEntry.type, func.sum(CreditLedgerEntry.amount))
        .where(
            CreditLedgerEntry.user_id == user_id,
            CreditLedgerEntry.status == CreditTransactionStatus.COMPLETED.value,
            CreditLedgerEntry.created_at >= since,
        )
        .group_by(CreditLedgerEntry.type)
    ).all()
    return {str(entry_type): int(total or 0) for entry_type, total in rows}


def amounts_since(db: Session, user_id: str, since: datetime) -> list[tuple[int, datetime]]:
    rows = db.execute(
        select(CreditLedgerEntry.amount, CreditLedgerEntry.created_at)
        .where(
            CreditLedgerEntry.user_id == user_id,
            CreditLedgerEntry.status == CreditTransactionStatus.COMPLETED.value,
            CreditLedgerEntry.created_at >= since,
        )
        .order_by(CreditLedgerEntry.created_at.asc())
    ).all()
    return [(int(amount), created_at) for amount, created_at in rows]


def query_entries(
    db: Session,
    user_id: str,
    *,
    types: Iterable[str] | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[CreditLedgerEntry], int]:
    query = db.query(CreditLedgerEntry).filter(CreditLedgerEntry.user_id == user_id)
    type_values = [str(t) for t in (types or [])]
    if type_values:
        query = query.filter(CreditLedgerEntry.type.in_(type_values))
    if start_date is not None:
        query = query.filter(CreditLedgerEntry.created_at >= start_date)
    if end_date is not None:
        query = query.filter(CreditLedgerEntry.created_at <= end_date)
    total = query.count()
    entries = (
        query.order_by(CreditLedgerEntry.created_at.desc(), CreditLedgerEntry.id.desc())
        .offset(max(int(offset), 0))
        .limit(max(int(limit), 0))
        .all()
    )
    return entries, total
