"""Credit engine: the only writer of account balances and ledger entries.

Each mutation runs in its own session. The account row is read under
``SELECT ... FOR UPDATE`` and the new balance is written with a
compare-and-swap on the previous value, so two writers for the same user can
never both apply against the same ``balance_before``. The ledger insert and
the balance update commit together or not at all. Unique constraints on
``idempotency_key`` and ``(transaction_id, dedupe_class)`` decide whether an
event was already applied; the lookup that runs first is only a fast path.
"""
from __future__ import annotations

import enum
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models.account import UserAccount
from ..models.credit_ledger import (
    CreditLedgerEntry,
    CreditSource,
    CreditTransactionType,
)
from ..models.subscription import LONG_BILLING_CYCLES, Subscription, SubscriptionStatus
from ..platform.config import settings
from ..platform.database import SessionLocal
from . import ledger_store, plan_catalog

logger = logging.getLogger(__name__)


class CreditErrorCode(str, enum.Enum):
    INVALID_AMOUNT = "INVALID_AMOUNT"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass
class CreditOperationResult:
    success: bool
    balance_before: int = 0
    balance_after: int = 0
    amount: int = 0
    transaction_ref: str | None = None
    error: str | None = None
    error_code: CreditErrorCode | None = None
    duplicate: bool = False

    @classmethod
    def failure(cls, code: CreditErrorCode, message: str, balance: int = 0) -> "CreditOperationResult":
        return cls(
            success=False,
            balance_before=balance,
            balance_after=balance,
            error=message,
            error_code=code,
        )


@dataclass
class BalanceCheck:
    valid: bool
    balance: int
    shortfall: int


@dataclass
class BalanceVerification:
    is_valid: bool
    stored_balance: int
    calculated_balance: int
    discrepancy: int


@dataclass
class UsageSummary:
    total_credits: int
    total_used: int
    total_added: int
    total_refunded: int
    by_type: dict[str, int] = field(default_factory=dict)
    daily_usage: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class TransactionPage:
    entries: list[CreditLedgerEntry]
    total: int
    limit: int
    offset: int
    has_more: bool


@dataclass
class MonthlyCreditResult:
    processed: bool
    credits_added: int = 0
    next_credit_date: datetime | None = None
    reason: str | None = None


@dataclass
class _LedgerWrite:
    """One pending balance change and the ledger entry that records it."""

    user_id: str
    delta: int
    entry_type: str
    source: str
    description: str
    check_funds: bool = False
    idempotency_key: str | None = None
    transaction_id: str | None = None
    subscription_id: str | None = None
    customer_id: str | None = None
    price_id: str | None = None
    product_id: str | None = None
    related_transaction_ref: str | None = None
    usage_details: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None

    @property
    def log_context(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "transaction_id": self.transaction_id,
            "idempotency_key": self.idempotency_key,
            "entry_type": self.entry_type,
        }


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored here is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditEngine:
    """Credit ledger and balance operations for one process.

    Built once at startup and handed to the HTTP routes, webhook handlers and
    Celery tasks. ``session_factory`` must return a fresh ``Session`` per call.
    """

    def __init__(
        self,
        session_factory: sessionmaker | Callable[[], Session] = SessionLocal,
        *,
        clock: Callable[[], datetime] = _utcnow,
        max_write_attempts: int | None = None,
        monthly_interval_days: int | None = None,
        signup_bonus_credits: int | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self.max_write_attempts = int(max_write_attempts or settings.CREDIT_MAX_WRITE_ATTEMPTS)
        self.monthly_interval = timedelta(days=int(monthly_interval_days or settings.MONTHLY_CREDIT_INTERVAL_DAYS))
        self.signup_bonus_credits = (
            settings.SIGNUP_BONUS_CREDITS if signup_bonus_credits is None else int(signup_bonus_credits)
        )

    def _now(self) -> datetime:
        return _as_utc(self._clock())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_credits(
        self,
        user_id: str,
        amount: int,
        type: str | CreditTransactionType = CreditTransactionType.MANUAL_ADJUSTMENT,
        description: str = "",
        source: str | CreditSource = CreditSource.SYSTEM,
        *,
        transaction_id: str | None = None,
        subscription_id: str | None = None,
        customer_id: str | None = None,
        price_id: str | None = None,
        product_id: str | None = None,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CreditOperationResult:
        if not _is_positive(amount):
            return CreditOperationResult.failure(CreditErrorCode.INVALID_AMOUNT, "Amount must be positive")
        entry_type = _enum_value(type)
        return self._apply(
            _LedgerWrite(
                user_id=user_id,
                delta=int(amount),
                entry_type=entry_type,
                source=_enum_value(source),
                description=description or f"Added {int(amount)} credits",
                idempotency_key=idempotency_key,
                transaction_id=transaction_id,
                subscription_id=subscription_id,
                customer_id=customer_id,
                price_id=price_id,
                product_id=product_id,
                metadata=metadata,
            )
        )

    def deduct_credits(
        self,
        user_id: str,
        amount: int,
        description: str = "",
        usage_details: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CreditOperationResult:
        if not _is_positive(amount):
            return CreditOperationResult.failure(CreditErrorCode.INVALID_AMOUNT, "Amount must be positive")
        return self._apply(
            _LedgerWrite(
                user_id=user_id,
                delta=-int(amount),
                entry_type=CreditTransactionType.USAGE_DEDUCTION.value,
                source=CreditSource.API.value,
                description=description or f"Used {int(amount)} credits",
                check_funds=True,
                idempotency_key=idempotency_key,
                usage_details=usage_details,
                metadata=metadata,
            )
        )

    def refund_credits(
        self,
        user_id: str,
        amount: int,
        description: str = "",
        related_transaction_ref: str | None = None,
        transaction_id: str | None = None,
        source: str | CreditSource = CreditSource.SYSTEM,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CreditOperationResult:
        """Credit back ``amount``; never blocked by the current balance."""
        if not _is_positive(amount):
            return CreditOperationResult.failure(CreditErrorCode.INVALID_AMOUNT, "Amount must be positive")
        return self._apply(
            _LedgerWrite(
                user_id=user_id,
                delta=int(amount),
                entry_type=CreditTransactionType.REFUND.value,
                source=_enum_value(source),
                description=description or f"Refunded {int(amount)} credits",
                idempotency_key=idempotency_key,
                transaction_id=transaction_id,
                related_transaction_ref=related_transaction_ref,
                metadata=metadata,
            )
        )

    def open_account(
        self,
        user_id: str,
        email: str | None = None,
        customer_id: str | None = None,
        signup_bonus: int | None = None,
    ) -> CreditOperationResult:
        """Create the balance row for a new user and grant the signup bonus once."""
        db = self._session_factory()
        try:
            account = db.get(UserAccount, user_id)
            if account is None:
                db.add(UserAccount(user_id=user_id, email=email, customer_id=customer_id, credits=0))
                try:
                    db.commit()
                except IntegrityError:
                    # Opened concurrently by another caller.
                    db.rollback()
                else:
                    logger.info("Opened credit account", extra={"user_id": user_id})
            elif customer_id and not account.customer_id:
                account.customer_id = customer_id
                db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to open credit account", extra={"user_id": user_id})
            return CreditOperationResult.failure(CreditErrorCode.INTERNAL_ERROR, "Failed to open account")
        finally:
            db.close()

        bonus = self.signup_bonus_credits if signup_bonus is None else int(signup_bonus)
        if bonus <= 0:
            balance = self.get_balance(user_id)
            return CreditOperationResult(success=True, balance_before=balance, balance_after=balance)
        return self.add_credits(
            user_id,
            bonus,
            type=CreditTransactionType.BONUS,
            description="Signup bonus",
            source=CreditSource.SYSTEM,
            idempotency_key=f"signup_bonus_{user_id}",
        )

    def _apply(self, write: _LedgerWrite) -> CreditOperationResult:
        for attempt in range(1, self.max_write_attempts + 1):
            db = self._session_factory()
            try:
                result = self._attempt(db, write)
            except IntegrityError:
                db.rollback()
                result = self._resolve_conflict(db, write)
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Credit mutation failed", extra=write.log_context)
                return CreditOperationResult.failure(CreditErrorCode.INTERNAL_ERROR, "Failed to update credits")
            finally:
                db.close()
            if result is not None:
                return result
            logger.debug(
                "Balance changed underneath mutation, retrying",
                extra={**write.log_context, "attempt": attempt},
            )

        logger.error(
            "Credit mutation gave up after %s attempts",
            self.max_write_attempts,
            extra=write.log_context,
        )
        return CreditOperationResult.failure(CreditErrorCode.INTERNAL_ERROR, "Balance is under heavy contention, retry later")

    def _attempt(self, db: Session, write: _LedgerWrite) -> CreditOperationResult | None:
        """One read-check-write pass. ``None`` means the CAS lost and the caller should retry."""
        existing = ledger_store.find_duplicate(
            db,
            idempotency_key=write.idempotency_key,
            transaction_id=write.transaction_id,
            entry_type=write.entry_type,
        )
        if existing is not None:
            return self._duplicate_result(existing, write)

        before = ledger_store.read_balance_for_update(db, write.user_id)
        if before is None:
            db.rollback()
            return CreditOperationResult.failure(CreditErrorCode.USER_NOT_FOUND, "User not found")

        after = before + write.delta
        if write.check_funds and after < 0:
            db.rollback()
            return CreditOperationResult.failure(
                CreditErrorCode.INSUFFICIENT_BALANCE,
                f"Insufficient credits. Required: {abs(write.delta)}, Available: {before}",
                balance=before,
            )

        swapped = ledger_store.compare_and_set_balance(
            db,
            write.user_id,
            expected=before,
            new_balance=after,
            verified_at=self._now(),
        )
        if not swapped:
            db.rollback()
            return None

        entry = ledger_store.append_entry(
            db,
            user_id=write.user_id,
            entry_type=write.entry_type,
            amount=write.delta,
            balance_before=before,
            balance_after=after,
            source=write.source,
            description=write.description,
            transaction_id=write.transaction_id,
            subscription_id=write.subscription_id,
            customer_id=write.customer_id,
            price_id=write.price_id,
            product_id=write.product_id,
            related_transaction_ref=write.related_transaction_ref,
            idempotency_key=write.idempotency_key,
            usage_details=write.usage_details,
            metadata=write.metadata,
        )
        transaction_ref = entry.transaction_ref
        db.commit()

        logger.info(
            "Applied %s of %s credits (%s -> %s)",
            write.entry_type,
            write.delta,
            before,
            after,
            extra={**write.log_context, "transaction_ref": transaction_ref},
        )
        return CreditOperationResult(
            success=True,
            balance_before=before,
            balance_after=after,
            amount=abs(write.delta),
            transaction_ref=transaction_ref,
        )

    def _resolve_conflict(self, db: Session, write: _LedgerWrite) -> CreditOperationResult:
        """A concurrent delivery committed the same event first; answer with its entry."""
        try:
            existing = ledger_store.find_duplicate(
                db,
                idempotency_key=write.idempotency_key,
                transaction_id=write.transaction_id,
                entry_type=write.entry_type,
            )
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to load conflicting ledger entry", extra=write.log_context)
            return CreditOperationResult.failure(CreditErrorCode.INTERNAL_ERROR, "Failed to update credits")
        if existing is None:
            logger.error("Ledger insert violated a constraint with no prior entry", extra=write.log_context)
            return CreditOperationResult.failure(CreditErrorCode.INTERNAL_ERROR, "Failed to update credits")
        return self._duplicate_result(existing, write)

    @staticmethod
    def _duplicate_result(existing: CreditLedgerEntry, write: _LedgerWrite) -> CreditOperationResult:
        if existing.user_id != write.user_id:
            # Idempotency keys and provider transaction ids are unique across all accounts.
            logger.error(
                "Ledger entry for this event belongs to another account",
                extra={**write.log_context, "transaction_ref": existing.transaction_ref},
            )
            return CreditOperationResult.failure(
                CreditErrorCode.INTERNAL_ERROR, "Event already applied to another account"
            )
        logger.warning(
            "Duplicate credit event ignored",
            extra={**write.log_context, "transaction_ref": existing.transaction_ref},
        )
        return CreditOperationResult(
            success=True,
            balance_before=int(existing.balance_before),
            balance_after=int(existing.balance_after),
            amount=abs(int(existing.amount)),
            transaction_ref=existing.transaction_ref,
            duplicate=True,
        )

    # ------------------------------------------------------------------
    # Reads and reconciliation
    # ------------------------------------------------------------------

    def get_balance(self, user_id: str) -> int:
        db = self._session_factory()
        try:
            balance = ledger_store.read_balance(db, user_id)
        finally:
            db.close()
        return balance or 0

    def validate_balance(self, user_id: str, required_amount: int) -> BalanceCheck:
        balance = self.get_balance(user_id)
        shortfall = max(0, int(required_amount) - balance)
        return BalanceCheck(valid=shortfall == 0, balance=balance, shortfall=shortfall)

    def verify_balance(self, user_id: str) -> BalanceVerification:
        """Compare the cached balance with the ledger sum. Reports only, never repairs."""
        db = self._session_factory()
        try:
            stored = ledger_store.read_balance(db, user_id) or 0
            calculated = ledger_store.completed_sum(db, user_id)
        finally:
            db.close()
        discrepancy = stored - calculated
        if discrepancy:
            logger.warning(
                "Balance discrepancy detected",
                extra={"user_id": user_id, "stored_balance": stored, "calculated_balance": calculated},
            )
        return BalanceVerification(
            is_valid=discrepancy == 0,
            stored_balance=stored,
            calculated_balance=calculated,
            discrepancy=discrepancy,
        )

    def get_usage_summary(self, user_id: str, days: int = 30) -> UsageSummary:
        since = self._now() - timedelta(days=max(int(days), 0))
        db = self._session_factory()
        try:
            balance = ledger_store.read_balance(db, user_id) or 0
            by_type = ledger_store.totals_by_type(db, user_id, since)
            amounts = ledger_store.amounts_since(db, user_id, since)
        finally:
            db.close()

        total_used = total_added = total_refunded = 0
        for entry_type, total in by_type.items():
            if total < 0:
                total_used += abs(total)
            elif entry_type == CreditTransactionType.REFUND.value:
                total_refunded += total
            else:
                total_added += total

        daily: dict[str, dict[str, int]] = defaultdict(lambda: {"used": 0, "added": 0})
        for amount, created_at in amounts:
            bucket = daily[_as_utc(created_at).date().isoformat()]
            if amount < 0:
                bucket["used"] += abs(amount)
            elif amount > 0:
                bucket["added"] += amount

        return UsageSummary(
            total_credits=balance,
            total_used=total_used,
            total_added=total_added,
            total_refunded=total_refunded,
            by_type=by_type,
            daily_usage=[{"date": day, **daily[day]} for day in sorted(daily)],
        )

    def get_transaction_history(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        types: Iterable[str] | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> TransactionPage:
        db = self._session_factory()
        try:
            entries, total = ledger_store.query_entries(
                db,
                user_id,
                types=[_enum_value(t) for t in (types or [])],
                start_date=start_date,
                end_date=end_date,
                limit=limit,
                offset=offset,
            )
        finally:
            db.close()
        return TransactionPage(
            entries=entries,
            total=total,
            limit=limit,
            offset=offset,
            has_more=offset + len(entries) < total,
        )

    def list_account_ids(self) -> list[str]:
        db = self._session_factory()
        try:
            return [row[0] for row in db.execute(select(UserAccount.user_id).order_by(UserAccount.user_id))]
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Monthly drip for annual subscriptions
    # ------------------------------------------------------------------

    def due_monthly_credit_user_ids(self, now: datetime | None = None) -> list[str]:
        now = _as_utc(now) if now else self._now()
        db = self._session_factory()
        try:
            rows = db.execute(
                select(Subscription.user_id).where(
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                    Subscription.billing_cycle.in_(sorted(LONG_BILLING_CYCLES)),
                    Subscription.next_credit_date.is_not(None),
                    Subscription.next_credit_date <= now,
                )
            )
            return [row[0] for row in rows]
        finally:
            db.close()

    def process_monthly_credits(self, user_id: str, now: datetime | None = None) -> MonthlyCreditResult:
        """Grant one month of credits to an annual subscriber whose drip date has come.

        The grant's idempotency key is derived from the due date, so a retried
        scheduler tick cannot double-grant. The next date is the previous due
        date plus the interval, regardless of when the job actually ran.
        """
        now = _as_utc(now) if now else self._now()
        db = self._session_factory()
        try:
            subscription = db.query(Subscription).filter(Subscription.user_id == user_id).first()
            if subscription is None:
                return MonthlyCreditResult(processed=False, reason="no_subscription")
            stored_due = subscription.next_credit_date
            due = _as_utc(stored_due)
            skip_reason = self._monthly_skip_reason(subscription, due, now)
            price_id = subscription.price_id
            product_id = subscription.product_id
            subscription_id = subscription.subscription_id
            customer_id = subscription.customer_id
        finally:
            db.close()

        if skip_reason:
            return MonthlyCreditResult(processed=False, next_credit_date=due, reason=skip_reason)

        credits = plan_catalog.credits_for_price(price_id)
        if credits <= 0 or plan_catalog.is_addon_price(price_id):
            logger.warning("No monthly credits configured for price", extra={"user_id": user_id, "price_id": price_id})
            return MonthlyCreditResult(processed=False, next_credit_date=due, reason="unknown_price")

        grant = self.add_credits(
            user_id,
            credits,
            type=CreditTransactionType.SUBSCRIPTION_RENEWAL,
            description=f"Monthly credits - {plan_catalog.plan_name_for_price(price_id)} (annual plan)",
            source=CreditSource.SYSTEM,
            subscription_id=subscription_id,
            customer_id=customer_id,
            price_id=price_id,
            product_id=product_id,
            idempotency_key=f"monthly_credit_{user_id}_{int(due.timestamp())}",
            metadata={"due_date": due.isoformat()},
        )
        if not grant.success:
            logger.error(
                "Monthly credit grant failed: %s",
                grant.error,
                extra={"user_id": user_id, "error_code": grant.error_code},
            )
            return MonthlyCreditResult(processed=False, next_credit_date=due, reason="grant_failed")

        next_due = due + self.monthly_interval
        db = self._session_factory()
        try:
            advanced = db.execute(
                update(Subscription)
                .where(Subscription.user_id == user_id, Subscription.next_credit_date == stored_due)
                .values(next_credit_date=next_due, last_credit_date=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            # The grant is recorded; the next tick finds it by key and only advances the date.
            logger.exception("Failed to advance next credit date", extra={"user_id": user_id})
            return MonthlyCreditResult(processed=False, next_credit_date=due, reason="schedule_update_failed")
        finally:
            db.close()

        if advanced.rowcount == 0:
            logger.info("Next credit date already advanced by another run", extra={"user_id": user_id})
        else:
            logger.info(
                "Monthly credits processed, next date %s",
                next_due.isoformat(),
                extra={"user_id": user_id, "credits": credits, "duplicate": grant.duplicate},
            )
        return MonthlyCreditResult(
            processed=True,
            credits_added=0 if grant.duplicate else grant.amount,
            next_credit_date=next_due,
        )

    @staticmethod
    def _monthly_skip_reason(subscription: Subscription, due: datetime | None, now: datetime) -> str | None:
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            return "inactive"
        if subscription.billing_cycle not in LONG_BILLING_CYCLES:
            return "not_annual"
        if due is None:
            return "no_schedule"
        if due > now:
            return "not_due"
        period_end = _as_utc(subscription.current_period_ends)
        if period_end is not None and period_end < now:
            return "period_ended"
        return None


def _is_positive(amount: Any) -> bool:
    # bool is an int subclass; True is not a credit amount.
    return isinstance(amount, int) and not isinstance(amount, bool) and amount > 0


def _enum_value(value: Any) -> str:
    return value.value if isinstance(value, enum.Enum) else str(value)
