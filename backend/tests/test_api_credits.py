"""Credits API: balance, history, usage, verification and Paddle sync."""
from sqlalchemy import update

from hexwave.domains.credits import routes as credit_routes
from hexwave.models.account import UserAccount
from hexwave.platform.config import settings
from tests.conftest import create_account, user_headers


def test_balance_requires_caller(client):
    resp = client.get("/api/v1/credits/balance")
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Not authenticated"


def test_balance(client):
    create_account("user_1", credits=1200)
    resp = client.get("/api/v1/credits/balance", headers=user_headers())
    assert resp.status_code == 200
    assert resp.json() == {"user_id": "user_1", "credits": 1200}
    assert resp.headers["X-Request-ID"]


def test_balance_for_unknown_user_is_zero(client):
    resp = client.get("/api/v1/credits/balance", headers=user_headers("nobody"))
    assert resp.status_code == 200
    assert resp.json()["credits"] == 0


def test_transactions_page(client, credit_engine):
    create_account("user_1", credits=100)
    credit_engine.deduct_credits("user_1", 30, "Render", usage_details={"frames": 300})

    resp = client.get("/api/v1/credits/transactions", headers=user_headers())
    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 2
    assert body["has_more"] is False
    latest = body["transactions"][0]
    assert latest["type"] == "usage_deduction"
    assert latest["amount"] == -30
    assert latest["balance_before"] == 100
    assert latest["balance_after"] == 70
    assert latest["usage_details"] == {"frames": 300}
    assert latest["transaction_ref"].startswith("txn_")
    assert latest["metadata"] == {}


def test_transactions_limit_is_capped(client):
    create_account("user_1", credits=100)
    resp = client.get("/api/v1/credits/transactions?limit=500", headers=user_headers())
    assert resp.status_code == 200
    assert resp.json()["limit"] == 100


def test_transactions_rejects_bad_limit(client):
    resp = client.get("/api/v1/credits/transactions?limit=0", headers=user_headers())
    assert resp.status_code == 422


def test_transactions_type_filter(client, credit_engine):
    create_account("user_1", credits=100)
    credit_engine.deduct_credits("user_1", 10)
    credit_engine.refund_credits("user_1", 10)

    resp = client.get(
        "/api/v1/credits/transactions?type=refund&type=usage_deduction", headers=user_headers()
    )
    body = resp.json()
    assert body["total"] == 2
    assert {t["type"] for t in body["transactions"]} == {"refund", "usage_deduction"}


def test_transactions_pagination(client, credit_engine):
    create_account("user_1", credits=100)
    for _ in range(3):
        credit_engine.deduct_credits("user_1", 1)

    resp = client.get("/api/v1/credits/transactions?limit=2&offset=0", headers=user_headers())
    assert resp.json()["has_more"] is True
    resp = client.get("/api/v1/credits/transactions?limit=2&offset=2", headers=user_headers())
    assert resp.json()["has_more"] is False
    assert len(resp.json()["transactions"]) == 2


def test_usage_summary(client, credit_engine):
    create_account("user_1", credits=500)
    credit_engine.deduct_credits("user_1", 120)

    resp = client.get("/api/v1/credits/usage?days=7", headers=user_headers())
    assert resp.status_code == 200
    body = resp.json()
    assert body["days"] == 7
    assert body["total_credits"] == 380
    assert body["total_used"] == 120
    assert body["total_added"] == 500
    assert body["by_type"]["usage_deduction"] == -120
    assert body["daily_usage"][0]["used"] == 120


def test_usage_days_bounds(client):
    assert client.get("/api/v1/credits/usage?days=0", headers=user_headers()).status_code == 422
    assert client.get("/api/v1/credits/usage?days=366", headers=user_headers()).status_code == 422


def test_verify_balance(client, db):
    create_account("user_1", credits=300)
    resp = client.get("/api/v1/credits/verify", headers=user_headers())
    assert resp.json() == {"is_valid": True, "stored_balance": 300, "calculated_balance": 300, "discrepancy": 0}

    db.execute(update(UserAccount).where(UserAccount.user_id == "user_1").values(credits=310))
    db.commit()
    resp = client.get("/api/v1/credits/verify", headers=user_headers())
    assert resp.json()["is_valid"] is False
    assert resp.json()["discrepancy"] == 10


def test_sync_disabled(client):
    create_account("user_1")
    resp = client.post("/api/v1/credits/sync", headers=user_headers())
    assert resp.status_code == 503


def test_sync_without_api_key(client, monkeypatch):
    monkeypatch.setattr(settings, "MVP_DISABLE_PADDLE", False)
    monkeypatch.setattr(settings, "PADDLE_API_KEY", "")
    create_account("user_1")
    resp = client.post("/api/v1/credits/sync", headers=user_headers())
    assert resp.status_code == 503


def test_sync_credits_missing_grant(client, monkeypatch):
    monkeypatch.setattr(settings, "MVP_DISABLE_PADDLE", False)
    monkeypatch.setattr(settings, "PADDLE_API_KEY", "pdl_test_key")

    class FakePaddle:
        def __init__(self, *, api_key, base_url):
            assert api_key == "pdl_test_key"

        def list_subscriptions(self, *, customer_id, statuses=("active", "trialing")):
            return [{"id": "sub_1", "first_transaction_id": "txn_missed"}]

        def get_transaction(self, transaction_id):
            return {
                "id": transaction_id,
                "items": [{"price": {"id": "pri_01kb0jgmc9m3qym1jz1kmcrbre", "product_id": "pro_01kb0jenzv3vz04zp16g4qmk4k"}, "quantity": 1}],
            }

    monkeypatch.setattr(credit_routes, "PaddleService", FakePaddle)
    create_account("user_1", customer_id="ctm_1")

    resp = client.post("/api/v1/credits/sync", headers=user_headers())
    assert resp.status_code == 200
    assert resp.json() == {
        "synced": True,
        "credits_added": 4000,
        "transactions": ["txn_missed"],
        "balance": 4000,
        "error": None,
    }

    again = client.post("/api/v1/credits/sync", headers=user_headers())
    assert again.json()["credits_added"] == 0
    assert again.json()["balance"] == 4000


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["service"] == "hexwave-api"
    assert body["database"] is True
    assert body["integrations"]["paddle_webhook_configured"] is False
