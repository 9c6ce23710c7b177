"""Fallback sync: credit Paddle subscriptions whose webhook never arrived."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import httpx
from sqlalchemy.orm import Session

from ....models.account import UserAccount
from ....models.credit_ledger import CreditSource, CreditTransactionType
from ....services import ledger_store, plan_catalog
from ....services.credit_service import CreditEngine
from .service import PaddleService

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    synced: bool
    credits_added: int = 0
    transactions: list[str] = field(default_factory=list)
    error: str | None = None


def _first_transaction_id(subscription: dict) -> str | None:
    return subscription.get("first_transaction_id") or subscription.get("transaction_id")


def sync_from_paddle(db: Session, engine: CreditEngine, client: PaddleService, user_id: str) -> SyncResult:
    account = db.get(UserAccount, user_id)
    if account is None or not account.customer_id:
        return SyncResult(synced=False, error="No Paddle customer linked to this account")

    try:
        subscriptions = client.list_subscriptions(customer_id=account.customer_id)
    except httpx.HTTPError as exc:
        logger.warning("Paddle subscription lookup failed: %s", exc, extra={"user_id": user_id})
        return SyncResult(synced=False, error="Paddle API unavailable")

    result = SyncResult(synced=True)
    for subscription in subscriptions:
        transaction_id = _first_transaction_id(subscription)
        if not transaction_id or ledger_store.has_entry_for_transaction(db, transaction_id):
            continue
        try:
            transaction = client.get_transaction(transaction_id)
        except httpx.HTTPError as exc:
            logger.warning(
                "Paddle transaction lookup failed: %s",
                exc,
                extra={"user_id": user_id, "transaction_id": transaction_id},
            )
            continue
        items = (transaction or {}).get("items") or []
        credits = 0
        for item in items:
            price_id = (item.get("price") or {}).get("id")
            if price_id:
                credits += plan_catalog.credits_for_price(price_id, int(item.get("quantity") or 1))
        if credits <= 0:
            continue

        first_price = (items[0].get("price") or {}) if items else {}
        grant = engine.add_credits(
            user_id,
            credits,
            type=CreditTransactionType.SYNC_ADJUSTMENT,
            description=f"Paddle sync: {plan_catalog.plan_name_for_price(first_price.get('id'))} subscription",
            source=CreditSource.SYNC,
            transaction_id=transaction_id,
            subscription_id=subscription.get("id"),
            customer_id=account.customer_id,
            price_id=first_price.get("id"),
            product_id=first_price.get("product_id"),
            # Same key the transaction.completed handler uses, so a late webhook is a duplicate.
            idempotency_key=f"paddle_txn_{transaction_id}",
            metadata={"sync_reason": "paddle_fallback"},
        )
        if grant.success and not grant.duplicate:
            result.credits_added += credits
            result.transactions.append(transaction_id)
        elif not grant.success:
            logger.error(
                "Paddle sync grant failed: %s",
                grant.error,
                extra={"user_id": user_id, "transaction_id": transaction_id},
            )

    logger.info(
        "Paddle sync finished",
        extra={"user_id": user_id, "credits_added": result.credits_added, "transactions": result.transactions},
    )
    return result
