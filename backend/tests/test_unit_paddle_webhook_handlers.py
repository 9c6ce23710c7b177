"""Paddle webhook handler units: allocation rules, signatures, payload parsing."""
import hashlib
import hmac
import time

import pytest

from hexwave.components.integrations.paddle.service import PaddleService
from hexwave.components.integrations.paddle.webhook_handlers import (
    RetryableWebhookError,
    WebhookPayloadError,
    analyze_transaction,
    dispatch_event,
    first_item,
    handle_adjustment_created,
    handle_subscription_created,
    handle_transaction_completed,
    parse_custom_data,
    parse_timestamp,
)
from hexwave.models.subscription import Subscription
from tests.conftest import (
    ADDON_PRICE,
    ADDON_PRODUCT,
    CREATOR_MONTHLY_PRICE,
    CREATOR_PRODUCT,
    PRO_ANNUAL_PRICE,
    PRO_MONTHLY_PRICE,
    PRO_PRODUCT,
    ULTIMATE_MONTHLY_PRICE,
    ULTIMATE_PRODUCT,
    create_account,
)


def _sub(**fields):
    values = {"product_id": PRO_PRODUCT, "price_id": PRO_MONTHLY_PRICE, "billing_cycle": "monthly", "status": "active"}
    values.update(fields)
    return Subscription(user_id="user_1", **values)


# ---------------------------------------------------------------------------
# Credit allocation rules
# ---------------------------------------------------------------------------

def test_new_checkout_gets_full_allocation():
    analysis = analyze_transaction("web", PRO_PRODUCT, PRO_MONTHLY_PRICE, subscription=None)
    assert analysis.kind == "new_subscription"
    assert analysis.entry_type == "subscription_credit"
    assert analysis.credits == 4000


def test_renewal_gets_full_allocation():
    analysis = analyze_transaction("subscription_recurring", PRO_PRODUCT, PRO_MONTHLY_PRICE, subscription=_sub())
    assert analysis.kind == "renewal"
    assert analysis.entry_type == "subscription_renewal"
    assert analysis.credits == 4000


def test_addon_scales_with_quantity():
    analysis = analyze_transaction("web", ADDON_PRODUCT, ADDON_PRICE, quantity=3, subscription=_sub())
    assert analysis.kind == "addon"
    assert analysis.entry_type == "addon_purchase"
    assert analysis.credits == 300


def test_upgrade_via_subscription_update_gets_difference():
    subscription = _sub(
        product_id=ULTIMATE_PRODUCT,
        price_id=ULTIMATE_MONTHLY_PRICE,
        previous_product_id=PRO_PRODUCT,
        previous_price_id=PRO_MONTHLY_PRICE,
        previous_billing_cycle="monthly",
    )
    analysis = analyze_transaction("subscription_update", ULTIMATE_PRODUCT, ULTIMATE_MONTHLY_PRICE, subscription=subscription)
    assert analysis.kind == "upgrade"
    assert analysis.credits == 4000
    assert (analysis.previous_tier, analysis.new_tier) == ("pro", "ultimate")


def test_upgrade_without_markers_uses_current_plan():
    analysis = analyze_transaction("subscription_update", CREATOR_PRODUCT, CREATOR_MONTHLY_PRICE, subscription=_sub())
    assert analysis.kind == "upgrade"
    assert analysis.credits == 16000


def test_downgrade_gets_nothing():
    subscription = _sub(product_id=ULTIMATE_PRODUCT, price_id=ULTIMATE_MONTHLY_PRICE)
    analysis = analyze_transaction("subscription_update", PRO_PRODUCT, PRO_MONTHLY_PRICE, subscription=subscription)
    assert analysis.kind == "downgrade"
    assert analysis.credits == 0


def test_billing_cycle_change_gets_nothing():
    subscription = _sub(
        price_id=PRO_ANNUAL_PRICE,
        billing_cycle="annual",
        previous_product_id=PRO_PRODUCT,
        previous_price_id=PRO_MONTHLY_PRICE,
        previous_billing_cycle="monthly",
    )
    analysis = analyze_transaction("subscription_update", PRO_PRODUCT, PRO_ANNUAL_PRICE, subscription=subscription)
    assert analysis.kind == "billing_cycle_change"
    assert analysis.credits == 0


def test_subscription_update_without_previous_plan_is_new():
    analysis = analyze_transaction("subscription_update", PRO_PRODUCT, PRO_MONTHLY_PRICE, subscription=None)
    assert analysis.kind == "new_subscription"
    assert analysis.credits == 4000


def test_checkout_upgrade_with_markers_gets_difference():
    subscription = _sub(
        product_id=ULTIMATE_PRODUCT,
        price_id=ULTIMATE_MONTHLY_PRICE,
        previous_product_id=PRO_PRODUCT,
        previous_price_id=PRO_MONTHLY_PRICE,
    )
    analysis = analyze_transaction("web", ULTIMATE_PRODUCT, ULTIMATE_MONTHLY_PRICE, subscription=subscription)
    assert analysis.kind == "upgrade"
    assert analysis.credits == 4000


def test_checkout_resubscribe_without_markers_gets_full_allocation():
    analysis = analyze_transaction("web", PRO_PRODUCT, PRO_MONTHLY_PRICE, subscription=_sub(status="canceled"))
    assert analysis.kind == "new_subscription"
    assert analysis.credits == 4000


def test_other_origin_after_cancellation_is_new():
    analysis = analyze_transaction("api", PRO_PRODUCT, PRO_MONTHLY_PRICE, subscription=_sub(status="canceled"))
    assert analysis.kind == "new_subscription"
    assert analysis.credits == 4000


def test_other_origin_same_plan_gets_nothing():
    analysis = analyze_transaction("api", PRO_PRODUCT, PRO_MONTHLY_PRICE, subscription=_sub())
    assert analysis.kind == "billing_cycle_change"
    assert analysis.credits == 0


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------

def _signature(body: bytes, secret: str, ts: int) -> str:
    digest = hmac.new(secret.encode(), f"{ts}:".encode() + body, hashlib.sha256).hexdigest()
    return f"ts={ts};h1={digest}"


def test_signature_valid():
    body = b'{"event_type":"transaction.completed"}'
    ts = int(time.time())
    assert PaddleService.verify_signature(payload=body, signature=_signature(body, "whsec", ts), secret="whsec")


def test_signature_rejects_tampered_body_and_wrong_secret():
    body = b'{"amount":1}'
    ts = int(time.time())
    header = _signature(body, "whsec", ts)
    assert not PaddleService.verify_signature(payload=b'{"amount":9}', signature=header, secret="whsec")
    assert not PaddleService.verify_signature(payload=body, signature=header, secret="other")


def test_signature_rejects_stale_timestamp():
    body = b"{}"
    ts = 1_700_000_000
    header = _signature(body, "whsec", ts)
    assert PaddleService.verify_signature(payload=body, signature=header, secret="whsec", now=ts + 299)
    assert not PaddleService.verify_signature(payload=body, signature=header, secret="whsec", now=ts + 301)


@pytest.mark.parametrize("header", ["", "garbage", "ts=abc;h1=00", "h1=deadbeef", "ts=1700000000"])
def test_signature_rejects_malformed_headers(header):
    assert not PaddleService.verify_signature(payload=b"{}", signature=header, secret="whsec", now=1_700_000_000)


def test_parse_signature_header():
    assert PaddleService.parse_signature_header("ts=1;h1=abc") == ("1", "abc")
    assert PaddleService.parse_signature_header("ts=1") is None


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------

def test_parse_custom_data_variants():
    assert parse_custom_data({"user_id": "u1"}) == {"user_id": "u1"}
    assert parse_custom_data('{"user_id": "u1"}') == {"user_id": "u1"}
    assert parse_custom_data("not json") == {}
    assert parse_custom_data("[1]") == {}
    assert parse_custom_data(None) == {}


def test_parse_timestamp():
    parsed = parse_timestamp("2026-03-01T12:00:00Z")
    assert parsed.tzinfo is not None
    assert parsed.hour == 12
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None


def test_first_item():
    data = {"items": [{"price": {"id": ADDON_PRICE, "product_id": ADDON_PRODUCT}, "quantity": 4}]}
    assert first_item(data) == (ADDON_PRICE, ADDON_PRODUCT, 4)
    assert first_item({}) == (None, None, 1)


# ---------------------------------------------------------------------------
# Handlers without HTTP
# ---------------------------------------------------------------------------

def test_transaction_for_unknown_user_is_retryable(db, credit_engine):
    data = {
        "id": "txn_unknown",
        "origin": "web",
        "custom_data": {"user_id": "nobody"},
        "items": [{"price": {"id": PRO_MONTHLY_PRICE, "product_id": PRO_PRODUCT}, "quantity": 1}],
    }
    with pytest.raises(RetryableWebhookError):
        handle_transaction_completed(db, credit_engine, data)


def test_transaction_without_items_is_ignored(db, credit_engine):
    create_account("user_1")
    outcome = handle_transaction_completed(
        db, credit_engine, {"id": "txn_empty", "custom_data": {"user_id": "user_1"}, "items": []}
    )
    assert outcome == {"status": "ignored", "reason": "no_items"}


def test_subscription_created_without_user_is_payload_error(db, credit_engine):
    with pytest.raises(WebhookPayloadError):
        handle_subscription_created(db, credit_engine, {"id": "sub_1", "items": []})


def test_unknown_event_is_ignored(db, credit_engine):
    assert dispatch_event(db, credit_engine, "customer.created", {}) == {
        "status": "ignored",
        "reason": "unhandled_event",
    }


# ---------------------------------------------------------------------------
# Adjustments racing other spending
# ---------------------------------------------------------------------------

def _refund(adjustment_id="adj_1"):
    return {
        "id": adjustment_id,
        "action": "refund",
        "status": "approved",
        "transaction_id": "txn_1",
        "customer_id": "ctm_1",
    }


def _granted_then_spent(credit_engine, spent):
    create_account("user_1", customer_id="ctm_1")
    credit_engine.add_credits("user_1", 4000, type="subscription_credit", transaction_id="txn_1")
    credit_engine.deduct_credits("user_1", spent, "Render job")


def test_adjustment_rereads_balance_when_it_drops_mid_deduction(db, credit_engine, monkeypatch):
    _granted_then_spent(credit_engine, 3000)
    real_get_balance = credit_engine.get_balance
    reads = []

    def stale_then_fresh(user_id):
        reads.append(user_id)
        # The first read predates the 3000-credit spend.
        return 4000 if len(reads) == 1 else real_get_balance(user_id)

    monkeypatch.setattr(credit_engine, "get_balance", stale_then_fresh)

    outcome = handle_adjustment_created(db, credit_engine, _refund())

    assert outcome == {"status": "processed", "credits_deducted": 1000}
    assert len(reads) == 2
    assert real_get_balance("user_1") == 0


def test_adjustment_asks_for_redelivery_when_balance_keeps_moving(db, credit_engine, monkeypatch):
    _granted_then_spent(credit_engine, 3000)
    real_get_balance = credit_engine.get_balance
    monkeypatch.setattr(credit_engine, "get_balance", lambda user_id: 4000)

    with pytest.raises(RetryableWebhookError):
        handle_adjustment_created(db, credit_engine, _refund())

    assert real_get_balance("user_1") == 1000
