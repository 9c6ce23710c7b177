"""Paddle Billing webhook handlers.

Translate Paddle subscription, transaction and adjustment events into credit
engine calls and subscription record updates.

Paddle often delivers ``subscription.created``/``subscription.updated`` before
the matching ``transaction.completed``. The subscription handlers therefore
keep the plan the user held before the change in ``previous_*`` columns, and
the transaction handler uses those markers to tell an upgrade from a renewal
or a billing-cycle switch. The markers are cleared once the transaction is
credited.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.orm import Session

from ....models.account import UserAccount
from ....models.credit_ledger import CreditSource, CreditTransactionType
from ....models.subscription import LONG_BILLING_CYCLES, Subscription, SubscriptionStatus
from ....services import ledger_store, plan_catalog
from ....services.credit_service import CreditEngine, CreditErrorCode

logger = logging.getLogger(__name__)


class RetryableWebhookError(RuntimeError):
    """Nothing was applied and a redelivery may succeed (e.g. the account does not exist yet)."""


class WebhookPayloadError(ValueError):
    """The event can never be processed; acknowledge it so Paddle stops retrying."""


PADDLE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE.value,
    "trialing": SubscriptionStatus.TRIALING.value,
    "past_due": SubscriptionStatus.PAST_DUE.value,
    "paused": SubscriptionStatus.PAUSED.value,
    "canceled": SubscriptionStatus.CANCELED.value,
}

DEDUCTIBLE_ADJUSTMENT_ACTIONS = {"refund", "chargeback"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def parse_custom_data(value: Any) -> dict[str, Any]:
    """Paddle sends ``custom_data`` either as an object or as a JSON string."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip():
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def first_item(data: dict[str, Any]) -> tuple[str | None, str | None, int]:
    items = data.get("items") or []
    if not items or not isinstance(items[0], dict):
        return None, None, 1
    price = items[0].get("price") or {}
    try:
        quantity = int(items[0].get("quantity") or 1)
    except (TypeError, ValueError):
        quantity = 1
    return price.get("id"), price.get("product_id"), quantity


def find_account(
    db: Session,
    *,
    user_id: str | None = None,
    subscription_id: str | None = None,
    customer_id: str | None = None,
) -> UserAccount | None:
    """Resolve the account an event belongs to, trying each identifier in order."""
    if user_id:
        account = db.get(UserAccount, str(user_id))
        if account:
            return account
    if subscription_id:
        subscription = (
            db.query(Subscription).filter(Subscription.subscription_id == subscription_id).first()
        )
        if subscription:
            return db.get(UserAccount, subscription.user_id)
    if customer_id:
        return db.query(UserAccount).filter(UserAccount.customer_id == customer_id).first()
    return None


def _subscription_for(db: Session, user_id: str) -> Subscription | None:
    return db.query(Subscription).filter(Subscription.user_id == user_id).first()


# ---------------------------------------------------------------------------
# Credit allocation rules
# ---------------------------------------------------------------------------

@dataclass
class TransactionAnalysis:
    kind: str  # new_subscription | renewal | upgrade | downgrade | billing_cycle_change | addon
    entry_type: str
    credits: int
    previous_tier: str | None
    new_tier: str
    reason: str


def analyze_transaction(
    origin: str | None,
    product_id: str | None,
    price_id: str | None,
    quantity: int = 1,
    subscription: Subscription | None = None,
) -> TransactionAnalysis:
    """Decide how many credits a completed Paddle transaction is worth.

    New subscriptions and renewals get the plan's full monthly allocation,
    add-on packs get credits per unit, tier upgrades get the difference
    between the two plans' monthly allocations, and downgrades or
    billing-cycle switches get nothing.
    """
    grant = CreditTransactionType.SUBSCRIPTION_CREDIT.value
    new_tier = plan_catalog.tier_for_product(product_id)
    new_credits = plan_catalog.credits_for_price(price_id)
    new_monthly = plan_catalog.product_monthly_credits(product_id) or new_credits

    if plan_catalog.is_addon_price(price_id):
        credits = plan_catalog.credits_for_price(price_id, quantity)
        return TransactionAnalysis(
            "addon", CreditTransactionType.ADDON_PURCHASE.value, credits, None, new_tier,
            f"Add-on purchase x{max(quantity, 1)}",
        )

    if origin == "subscription_recurring":
        return TransactionAnalysis(
            "renewal", CreditTransactionType.SUBSCRIPTION_RENEWAL.value, new_credits, new_tier, new_tier,
            "Subscription renewal - full credits",
        )

    has_markers = bool(subscription and (subscription.previous_product_id or subscription.previous_price_id))
    if subscription is not None and has_markers:
        previous_product = subscription.previous_product_id
        previous_cycle = subscription.previous_billing_cycle
    elif subscription is not None:
        previous_product = subscription.product_id
        previous_cycle = subscription.billing_cycle
    else:
        previous_product = previous_cycle = None

    def _tier_change(prefix: str) -> TransactionAnalysis | None:
        previous_tier = plan_catalog.tier_for_product(previous_product)
        previous_monthly = plan_catalog.product_monthly_credits(previous_product)
        if plan_catalog.tier_level(new_tier) > plan_catalog.tier_level(previous_tier):
            difference = max(0, new_monthly - previous_monthly)
            return TransactionAnalysis(
                "upgrade", grant, difference, previous_tier, new_tier,
                f"{prefix}upgrade from {previous_tier} ({previous_monthly}) to {new_tier} ({new_monthly})",
            )
        if plan_catalog.tier_level(new_tier) < plan_catalog.tier_level(previous_tier):
            return TransactionAnalysis(
                "downgrade", grant, 0, previous_tier, new_tier,
                f"{prefix}downgrade from {previous_tier} to {new_tier} - no additional credits",
            )
        return None

    if origin == "subscription_update":
        if not previous_product:
            return TransactionAnalysis(
                "new_subscription", grant, new_credits, None, new_tier,
                "Subscription update with no previous plan - treated as new",
            )
        if previous_product == product_id:
            return TransactionAnalysis(
                "billing_cycle_change", grant, 0, new_tier, new_tier,
                f"Billing cycle change ({previous_cycle or 'unknown'} -> "
                f"{plan_catalog.billing_cycle_for_price(price_id)}) - no additional credits",
            )
        change = _tier_change("")
        if change:
            return change
        return TransactionAnalysis(
            "billing_cycle_change", grant, 0, plan_catalog.tier_for_product(previous_product), new_tier,
            "Subscription update at the same tier level - no additional credits",
        )

    if origin in {"web", "subscription_charge"}:
        if not has_markers:
            return TransactionAnalysis(
                "new_subscription", grant, new_credits, None, new_tier,
                f"New subscription via checkout (origin: {origin})",
            )
        change = _tier_change("Checkout ")
        if change and change.kind == "upgrade":
            return change
        # Same tier or lower via checkout is a fresh purchase.
        return TransactionAnalysis(
            "new_subscription", grant, new_credits, plan_catalog.tier_for_product(previous_product), new_tier,
            f"Subscription via checkout (origin: {origin}) - full credits",
        )

    if (
        subscription is None
        or not subscription.product_id
        or subscription.status == SubscriptionStatus.CANCELED.value
    ):
        return TransactionAnalysis(
            "new_subscription", grant, new_credits, None, new_tier, "New subscription - full credits",
        )

    if previous_product == product_id:
        return TransactionAnalysis(
            "billing_cycle_change", grant, 0, new_tier, new_tier,
            f"Same plan (origin: {origin}) - no additional credits",
        )
    change = _tier_change("")
    if change:
        return change
    return TransactionAnalysis(
        "billing_cycle_change", grant, 0, plan_catalog.tier_for_product(previous_product), new_tier,
        f"Same tier level (origin: {origin}) - no additional credits",
    )


def _grant_description(analysis: TransactionAnalysis, plan_name: str) -> str:
    if analysis.kind == "renewal":
        return f"{plan_name} subscription renewal"
    if analysis.kind == "upgrade":
        return f"{plan_name} upgrade ({analysis.previous_tier} -> {analysis.new_tier})"
    if analysis.kind == "addon":
        return f"{plan_name} purchase"
    return f"{plan_name} subscription"


# ---------------------------------------------------------------------------
# Transaction events
# ---------------------------------------------------------------------------

def handle_transaction_completed(db: Session, engine: CreditEngine, data: dict[str, Any]) -> dict[str, Any]:
    transaction_id = data.get("id")
    if not transaction_id:
        raise WebhookPayloadError("transaction.completed without id")
    custom = parse_custom_data(data.get("custom_data"))
    account = find_account(
        db,
        user_id=custom.get("user_id"),
        subscription_id=data.get("subscription_id"),
        customer_id=data.get("customer_id"),
    )
    if account is None:
        raise RetryableWebhookError(f"User not found for transaction {transaction_id}")
    user_id = account.user_id

    price_id, product_id, quantity = first_item(data)
    if not price_id:
        logger.warning("Transaction has no items", extra={"transaction_id": transaction_id, "user_id": user_id})
        return {"status": "ignored", "reason": "no_items"}

    subscription = _subscription_for(db, user_id)
    analysis = analyze_transaction(data.get("origin"), product_id, price_id, quantity, subscription)
    logger.info(
        "Analyzed transaction: %s",
        analysis.reason,
        extra={"transaction_id": transaction_id, "user_id": user_id, "kind": analysis.kind, "credits": analysis.credits},
    )

    result = None
    if analysis.credits > 0:
        result = engine.add_credits(
            user_id,
            analysis.credits,
            type=analysis.entry_type,
            description=_grant_description(analysis, plan_catalog.plan_name_for_price(price_id)),
            source=CreditSource.PADDLE_WEBHOOK,
            transaction_id=transaction_id,
            subscription_id=data.get("subscription_id"),
            customer_id=data.get("customer_id"),
            price_id=price_id,
            product_id=product_id,
            idempotency_key=f"paddle_txn_{transaction_id}",
            metadata={
                "transaction_type": analysis.kind,
                "previous_tier": analysis.previous_tier,
                "new_tier": analysis.new_tier,
                "origin": data.get("origin"),
            },
        )
        if not result.success:
            if result.error_code in {CreditErrorCode.USER_NOT_FOUND, CreditErrorCode.INTERNAL_ERROR}:
                raise RetryableWebhookError(f"Failed to credit transaction {transaction_id}: {result.error}")
            logger.error(
                "Failed to add credits: %s",
                result.error,
                extra={"transaction_id": transaction_id, "user_id": user_id, "error_code": result.error_code},
            )

    if subscription is not None and analysis.kind != "addon":
        subscription.transaction_id = transaction_id
        subscription.previous_product_id = None
        subscription.previous_price_id = None
        subscription.previous_billing_cycle = None
        db.commit()

    return {
        "status": "processed",
        "kind": analysis.kind,
        "credits": analysis.credits,
        "duplicate": bool(result and result.duplicate),
    }


def handle_transaction_payment_failed(db: Session, engine: CreditEngine, data: dict[str, Any]) -> dict[str, Any]:
    account = find_account(db, subscription_id=data.get("subscription_id"), customer_id=data.get("customer_id"))
    if account is None:
        logger.warning("User not found for failed payment", extra={"transaction_id": data.get("id")})
        return {"status": "ignored", "reason": "user_not_found"}
    subscription = _subscription_for(db, account.user_id)
    if subscription is not None:
        subscription.status = SubscriptionStatus.PAST_DUE.value
        db.commit()
    return {"status": "processed"}


# ---------------------------------------------------------------------------
# Subscription events
# ---------------------------------------------------------------------------

def _apply_plan(subscription: Subscription, price_id: str | None, product_id: str | None) -> None:
    if price_id:
        subscription.price_id = price_id
        subscription.billing_cycle = plan_catalog.billing_cycle_for_price(price_id)
    if product_id:
        subscription.product_id = product_id
        subscription.plan_tier = plan_catalog.tier_for_product(product_id)


def _apply_period(subscription: Subscription, data: dict[str, Any]) -> None:
    period = data.get("current_billing_period") or {}
    starts_at = parse_timestamp(period.get("starts_at"))
    ends_at = parse_timestamp(period.get("ends_at"))
    if starts_at:
        subscription.current_period_start = starts_at
    if ends_at:
        subscription.current_period_ends = ends_at


def _start_monthly_drip(subscription: Subscription, engine: CreditEngine, now: datetime) -> None:
    # The first month is granted by transaction.completed.
    subscription.next_credit_date = now + engine.monthly_interval
    subscription.last_credit_date = now


def handle_subscription_created(db: Session, engine: CreditEngine, data: dict[str, Any]) -> dict[str, Any]:
    custom = parse_custom_data(data.get("custom_data"))
    user_id = custom.get("user_id")
    if not user_id:
        raise WebhookPayloadError("Missing user_id in custom_data")
    account = db.get(UserAccount, str(user_id))
    if account is None:
        raise RetryableWebhookError(f"User not found: {user_id}")

    price_id, product_id, _ = first_item(data)
    if not price_id:
        raise WebhookPayloadError("No items in subscription")

    now = _now()
    subscription = _subscription_for(db, account.user_id)
    if subscription is None:
        subscription = Subscription(user_id=account.user_id)
        db.add(subscription)
    elif subscription.product_id and (
        subscription.product_id != product_id or subscription.price_id != price_id
    ):
        subscription.previous_product_id = subscription.product_id
        subscription.previous_price_id = subscription.price_id
        subscription.previous_billing_cycle = subscription.billing_cycle
        logger.info(
            "Subscription change detected on create",
            extra={"user_id": account.user_id, "previous_product_id": subscription.product_id, "product_id": product_id},
        )

    subscription.subscription_id = data.get("id")
    subscription.customer_id = data.get("customer_id")
    subscription.status = PADDLE_STATUS_MAP.get(data.get("status"), data.get("status"))
    subscription.cancel_at_period_end = False
    subscription.canceled_at = None
    _apply_plan(subscription, price_id, product_id)
    _apply_period(subscription, data)
    if subscription.current_period_start is None:
        subscription.current_period_start = now
    if subscription.billing_cycle in LONG_BILLING_CYCLES:
        _start_monthly_drip(subscription, engine, now)
    else:
        subscription.next_credit_date = None
    if data.get("customer_id"):
        account.customer_id = data.get("customer_id")
    db.commit()
    logger.info(
        "Subscription created",
        extra={"user_id": account.user_id, "subscription_id": data.get("id"), "price_id": price_id},
    )
    return {"status": "processed"}


def handle_subscription_updated(db: Session, engine: CreditEngine, data: dict[str, Any]) -> dict[str, Any]:
    account = find_account(
        db,
        subscription_id=data.get("id"),
        customer_id=data.get("customer_id"),
        user_id=parse_custom_data(data.get("custom_data")).get("user_id"),
    )
    if account is None:
        logger.warning("User not found for subscription update", extra={"subscription_id": data.get("id")})
        return {"status": "ignored", "reason": "user_not_found"}
    subscription = _subscription_for(db, account.user_id)
    if subscription is None:
        subscription = Subscription(user_id=account.user_id, subscription_id=data.get("id"))
        db.add(subscription)

    price_id, product_id, _ = first_item(data)
    changed = bool(
        (product_id and subscription.product_id and product_id != subscription.product_id)
        or (price_id and subscription.price_id and price_id != subscription.price_id)
    )
    if changed and not subscription.previous_product_id:
        subscription.previous_product_id = subscription.product_id
        subscription.previous_price_id = subscription.price_id
        subscription.previous_billing_cycle = subscription.billing_cycle or "monthly"

    subscription.status = PADDLE_STATUS_MAP.get(data.get("status"), data.get("status"))
    _apply_plan(subscription, price_id, product_id)
    _apply_period(subscription, data)
    scheduled = data.get("scheduled_change") or {}
    subscription.cancel_at_period_end = scheduled.get("action") == "cancel"
    if subscription.billing_cycle in LONG_BILLING_CYCLES:
        if subscription.next_credit_date is None:
            _start_monthly_drip(subscription, engine, _now())
    else:
        subscription.next_credit_date = None
    db.commit()
    return {"status": "processed", "plan_changed": changed}


def _set_status(db: Session, data: dict[str, Any], status: str, **fields: Any) -> dict[str, Any]:
    account = find_account(
        db,
        subscription_id=data.get("id"),
        customer_id=data.get("customer_id"),
        user_id=parse_custom_data(data.get("custom_data")).get("user_id"),
    )
    if account is None:
        logger.warning("User not found for subscription status change", extra={"subscription_id": data.get("id")})
        return {"status": "ignored", "reason": "user_not_found"}
    subscription = _subscription_for(db, account.user_id)
    if subscription is None:
        subscription = Subscription(user_id=account.user_id)
        db.add(subscription)
    subscription.status = status
    for key, value in fields.items():
        setattr(subscription, key, value)
    db.commit()
    return {"status": "processed"}


def handle_subscription_canceled(db: Session, engine: CreditEngine, data: dict[str, Any]) -> dict[str, Any]:
    return _set_status(
        db,
        data,
        SubscriptionStatus.CANCELED.value,
        canceled_at=parse_timestamp(data.get("canceled_at")) or _now(),
        cancel_at_period_end=True,
    )


def handle_subscription_activated(db: Session, engine: CreditEngine, data: dict[str, Any]) -> dict[str, Any]:
    return _set_status(
        db,
        data,
        SubscriptionStatus.ACTIVE.value,
        subscription_id=data.get("id"),
        customer_id=data.get("customer_id"),
        cancel_at_period_end=False,
    )


def handle_subscription_paused(db: Session, engine: CreditEngine, data: dict[str, Any]) -> dict[str, Any]:
    return _set_status(db, data, SubscriptionStatus.PAUSED.value)


def handle_subscription_resumed(db: Session, engine: CreditEngine, data: dict[str, Any]) -> dict[str, Any]:
    return _set_status(db, data, SubscriptionStatus.ACTIVE.value)


# ---------------------------------------------------------------------------
# Adjustment events (refunds and chargebacks)
# ---------------------------------------------------------------------------

def _take_back_grant(engine: CreditEngine, user_id: str, granted: int, data: dict[str, Any]) -> int:
    """Deduct up to ``granted`` credits, capped at the balance. Returns the credits taken."""
    adjustment_id = data.get("id")
    action = data.get("action")
    label = "Chargeback" if action == "chargeback" else "Refund"
    for attempt in (1, 2):
        to_deduct = min(granted, engine.get_balance(user_id))
        if to_deduct <= 0:
            logger.info("Nothing left to deduct for adjustment", extra={"adjustment_id": adjustment_id, "user_id": user_id})
            return 0
        result = engine.deduct_credits(
            user_id,
            to_deduct,
            description=f"{label} adjustment - {data.get('reason') or 'Customer request'}",
            idempotency_key=f"paddle_adj_{adjustment_id}",
            metadata={
                "adjustment_id": adjustment_id,
                "adjustment_action": action,
                "original_transaction_id": data.get("transaction_id"),
                "refund_total": (data.get("totals") or {}).get("total"),
            },
        )
        if result.success:
            return 0 if result.duplicate else result.amount
        if result.error_code == CreditErrorCode.INTERNAL_ERROR:
            raise RetryableWebhookError(f"Failed to apply adjustment {adjustment_id}: {result.error}")
        if result.error_code != CreditErrorCode.INSUFFICIENT_BALANCE:
            logger.error(
                "Failed to deduct credits for adjustment: %s",
                result.error,
                extra={"adjustment_id": adjustment_id, "user_id": user_id, "error_code": result.error_code},
            )
            return 0
        # The balance dropped between the read and the deduction.
        logger.warning(
            "Balance moved while applying adjustment",
            extra={"adjustment_id": adjustment_id, "user_id": user_id, "attempt": attempt},
        )
    raise RetryableWebhookError(f"Balance kept moving while applying adjustment {adjustment_id}")


def handle_adjustment_created(db: Session, engine: CreditEngine, data: dict[str, Any]) -> dict[str, Any]:
    adjustment_id = data.get("id")
    action = data.get("action")
    if data.get("status") != "approved":
        return {"status": "ignored", "reason": "not_approved"}
    if action not in DEDUCTIBLE_ADJUSTMENT_ACTIONS:
        return {"status": "ignored", "reason": f"action_{action}"}

    account = find_account(db, subscription_id=data.get("subscription_id"), customer_id=data.get("customer_id"))
    if account is None:
        logger.warning("User not found for adjustment", extra={"adjustment_id": adjustment_id})
        return {"status": "ignored", "reason": "user_not_found"}
    user_id = account.user_id

    original = ledger_store.find_by_transaction_class(
        db, data.get("transaction_id") or "", CreditTransactionType.SUBSCRIPTION_CREDIT.value
    )
    deducted = 0
    if original is None or original.user_id != user_id:
        logger.warning(
            "No credit grant found for adjusted transaction",
            extra={"adjustment_id": adjustment_id, "transaction_id": data.get("transaction_id"), "user_id": user_id},
        )
    else:
        deducted = _take_back_grant(engine, user_id, int(original.amount), data)

    if action == "chargeback" and data.get("subscription_id"):
        subscription = _subscription_for(db, user_id)
        if subscription is not None:
            subscription.status = SubscriptionStatus.CANCELED.value
            subscription.canceled_at = _now()
            subscription.next_credit_date = None
            db.commit()
            logger.warning("Subscription canceled after chargeback", extra={"user_id": user_id})

    return {"status": "processed", "credits_deducted": deducted}


def handle_adjustment_updated(db: Session, engine: CreditEngine, data: dict[str, Any]) -> dict[str, Any]:
    if data.get("status") != "approved":
        return {"status": "ignored", "reason": "not_approved"}
    return handle_adjustment_created(db, engine, data)


EVENT_HANDLERS: dict[str, Callable[[Session, CreditEngine, dict[str, Any]], dict[str, Any]]] = {
    "transaction.completed": handle_transaction_completed,
    "transaction.payment_failed": handle_transaction_payment_failed,
    "subscription.created": handle_subscription_created,
    "subscription.updated": handle_subscription_updated,
    "subscription.activated": handle_subscription_activated,
    "subscription.canceled": handle_subscription_canceled,
    "subscription.paused": handle_subscription_paused,
    "subscription.resumed": handle_subscription_resumed,
    "adjustment.created": handle_adjustment_created,
    "adjustment.updated": handle_adjustment_updated,
}


def dispatch_event(db: Session, engine: CreditEngine, event_type: str, data: dict[str, Any]) -> dict[str, Any]:
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info("Unhandled Paddle event type %s", event_type)
        return {"status": "ignored", "reason": "unhandled_event"}
    return handler(db, engine, data or {})
