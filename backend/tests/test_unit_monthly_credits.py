"""Monthly credit drip for annual subscribers."""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from hexwave.models.subscription import Subscription
from hexwave.services.credit_service import CreditEngine
from tests.conftest import (
    ADDON_PRICE,
    PRO_ANNUAL_PRICE,
    TestingSessionLocal,
    create_account,
    create_subscription,
    ledger_entries,
    load_subscription,
)

DUE = datetime(2026, 1, 1, tzinfo=timezone.utc)
LATE_RUN = datetime(2026, 1, 20, 9, 30, tzinfo=timezone.utc)


def _utc(value):
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _annual_subscriber(user_id="annual_user", **fields):
    create_account(user_id)
    values = {
        "price_id": PRO_ANNUAL_PRICE,
        "billing_cycle": "annual",
        "next_credit_date": DUE,
        "current_period_ends": datetime(2026, 12, 1, tzinfo=timezone.utc),
    }
    values.update(fields)
    create_subscription(user_id, **values)
    return user_id


def test_grants_monthly_allocation_and_advances_from_due_date(credit_engine):
    user_id = _annual_subscriber()

    result = credit_engine.process_monthly_credits(user_id, now=LATE_RUN)

    assert result.processed is True
    assert result.credits_added == 4000
    # Anchored on the due date, not on when the job happened to run
    assert result.next_credit_date == DUE + timedelta(days=30)
    subscription = load_subscription(user_id)
    assert _utc(subscription.next_credit_date) == DUE + timedelta(days=30)
    assert _utc(subscription.last_credit_date) == LATE_RUN

    (entry,) = ledger_entries(user_id)
    assert entry.type == "subscription_renewal"
    assert entry.source == "system"
    assert entry.amount == 4000
    assert entry.idempotency_key == f"monthly_credit_{user_id}_{int(DUE.timestamp())}"
    assert entry.entry_metadata == {"due_date": DUE.isoformat()}


def test_rerun_after_advance_is_not_due(credit_engine):
    user_id = _annual_subscriber()
    credit_engine.process_monthly_credits(user_id, now=LATE_RUN)

    again = credit_engine.process_monthly_credits(user_id, now=LATE_RUN)

    assert again.processed is False
    assert again.reason == "not_due"
    assert credit_engine.get_balance(user_id) == 4000


def test_retried_tick_after_lost_schedule_update_does_not_double_grant(credit_engine):
    user_id = _annual_subscriber()
    credit_engine.process_monthly_credits(user_id, now=LATE_RUN)

    # Simulate a crash between the grant and the schedule update.
    db = TestingSessionLocal()
    try:
        db.execute(update(Subscription).where(Subscription.user_id == user_id).values(next_credit_date=DUE))
        db.commit()
    finally:
        db.close()

    retried = credit_engine.process_monthly_credits(user_id, now=LATE_RUN)

    assert retried.processed is True
    assert retried.credits_added == 0
    assert retried.next_credit_date == DUE + timedelta(days=30)
    assert credit_engine.get_balance(user_id) == 4000
    assert len(ledger_entries(user_id)) == 1
    assert _utc(load_subscription(user_id).next_credit_date) == DUE + timedelta(days=30)


def test_catching_up_missed_months_one_tick_at_a_time(credit_engine):
    user_id = _annual_subscriber()
    now = DUE + timedelta(days=45)

    first = credit_engine.process_monthly_credits(user_id, now=now)
    second = credit_engine.process_monthly_credits(user_id, now=now)
    third = credit_engine.process_monthly_credits(user_id, now=now)

    assert first.next_credit_date == DUE + timedelta(days=30)
    assert second.next_credit_date == DUE + timedelta(days=60)
    assert third.processed is False and third.reason == "not_due"
    assert credit_engine.get_balance(user_id) == 8000


def test_custom_interval(db):
    user_id = _annual_subscriber()
    engine = CreditEngine(TestingSessionLocal, monthly_interval_days=28)
    result = engine.process_monthly_credits(user_id, now=LATE_RUN)
    assert result.next_credit_date == DUE + timedelta(days=28)


@pytest.mark.parametrize(
    "fields, reason",
    [
        ({"status": "canceled"}, "inactive"),
        ({"status": "past_due"}, "inactive"),
        ({"billing_cycle": "monthly"}, "not_annual"),
        ({"next_credit_date": None}, "no_schedule"),
        ({"next_credit_date": LATE_RUN + timedelta(days=1)}, "not_due"),
        ({"current_period_ends": DUE + timedelta(days=2)}, "period_ended"),
        ({"price_id": "pri_unknown"}, "unknown_price"),
        ({"price_id": ADDON_PRICE}, "unknown_price"),
    ],
)
def test_skip_reasons(credit_engine, fields, reason):
    user_id = _annual_subscriber(**fields)
    result = credit_engine.process_monthly_credits(user_id, now=LATE_RUN)
    assert result.processed is False
    assert result.reason == reason
    assert credit_engine.get_balance(user_id) == 0


def test_no_subscription(credit_engine):
    create_account("no_sub")
    result = credit_engine.process_monthly_credits("no_sub", now=LATE_RUN)
    assert result.processed is False
    assert result.reason == "no_subscription"


def test_legacy_yearly_cycle_is_dripped(credit_engine):
    user_id = _annual_subscriber(billing_cycle="yearly")
    result = credit_engine.process_monthly_credits(user_id, now=LATE_RUN)
    assert result.processed is True
    assert result.credits_added == 4000


def test_due_user_ids(credit_engine):
    _annual_subscriber("due_user")
    _annual_subscriber("future_user", next_credit_date=LATE_RUN + timedelta(days=3))
    _annual_subscriber("canceled_user", status="canceled")
    create_account("monthly_user")
    create_subscription("monthly_user")

    assert credit_engine.due_monthly_credit_user_ids(now=LATE_RUN) == ["due_user"]
