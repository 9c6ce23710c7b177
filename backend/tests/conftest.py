import os
# Override DATABASE_URL before any hexwave imports to avoid PostgreSQL driver requirement
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
# Keep external integrations disabled by default for unit/API tests. Individual
# tests can opt-in by monkeypatching settings.
os.environ["MVP_DISABLE_PADDLE"] = "true"
os.environ["MVP_DISABLE_CELERY"] = "true"
os.environ["PADDLE_API_KEY"] = ""
os.environ["PADDLE_WEBHOOK_SECRET"] = ""
os.environ["SIGNUP_BONUS_CREDITS"] = "0"
os.environ["MONTHLY_CREDIT_INTERVAL_DAYS"] = "30"

import hashlib
import hmac
import json
import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from hexwave.deps import get_credit_engine
from hexwave.platform.database import Base, get_db
from hexwave.main import app
from hexwave.models.account import UserAccount
from hexwave.models.credit_ledger import CreditLedgerEntry, CreditTransactionType
from hexwave.models.subscription import Subscription
from hexwave.services.credit_service import CreditEngine

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
# Concurrency tests write from several threads; wait on the file lock instead of failing.
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False, "timeout": 30})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Enable foreign key support for SQLite
@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()

def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

@pytest.fixture(scope="function")
def db():
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    yield db
    db.close()
    Base.metadata.drop_all(bind=engine)

@pytest.fixture(scope="function")
def credit_engine(db):
    return CreditEngine(TestingSessionLocal, signup_bonus_credits=0)

@pytest.fixture(scope="function")
def client(db, credit_engine):
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_credit_engine] = lambda: credit_engine
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers: seed accounts and subscriptions directly in the test DB
# ---------------------------------------------------------------------------

PRO_MONTHLY_PRICE = "pri_01kb0jgmc9m3qym1jz1kmcrbre"
PRO_ANNUAL_PRICE = "pri_01kb0jjhfnbx54vsvsxxn4nfc6"
PRO_PRODUCT = "pro_01kb0jenzv3vz04zp16g4qmk4k"
ULTIMATE_MONTHLY_PRICE = "pri_01kb0jkrthda3qnyjc79hz0k8h"
ULTIMATE_PRODUCT = "pro_01kb0jjz493ecvk5zyx1h2cb8m"
CREATOR_MONTHLY_PRICE = "pri_01kb0jrkr4c74krb8p61tp8mfs"
CREATOR_PRODUCT = "pro_01kb0jqezssqwz612c7jc738y4"
ADDON_PRICE = "pri_01kb0jvyfk3v1cj284kgvvz3sq"
ADDON_PRODUCT = "pro_01kb0jttzcm5s39b11azkpb9bz"


def create_account(user_id: str = "user_1", credits: int = 0, customer_id: str | None = None) -> str:
    """Open an account and fund it through the engine so the ledger backs the balance."""
    credit_engine = CreditEngine(TestingSessionLocal, signup_bonus_credits=0)
    opened = credit_engine.open_account(user_id, email=f"{user_id}@example.com", customer_id=customer_id)
    assert opened.success
    if credits:
        funded = credit_engine.add_credits(
            user_id,
            credits,
            type=CreditTransactionType.BONUS,
            description="Test funding",
            idempotency_key=f"test_funding_{user_id}",
        )
        assert funded.success
    return user_id


def create_subscription(user_id: str, **fields) -> None:
    db = TestingSessionLocal()
    try:
        values = {
            "subscription_id": f"sub_{user_id}",
            "customer_id": f"ctm_{user_id}",
            "product_id": PRO_PRODUCT,
            "price_id": PRO_MONTHLY_PRICE,
            "status": "active",
            "billing_cycle": "monthly",
            "plan_tier": "pro",
        }
        values.update(fields)
        db.add(Subscription(user_id=user_id, **values))
        db.commit()
    finally:
        db.close()


def load_subscription(user_id: str) -> Subscription | None:
    db = TestingSessionLocal()
    try:
        subscription = db.query(Subscription).filter(Subscription.user_id == user_id).first()
        if subscription is not None:
            db.expunge(subscription)
        return subscription
    finally:
        db.close()


def load_account(user_id: str) -> UserAccount | None:
    db = TestingSessionLocal()
    try:
        account = db.get(UserAccount, user_id)
        if account is not None:
            db.expunge(account)
        return account
    finally:
        db.close()


def ledger_entries(user_id: str) -> list[CreditLedgerEntry]:
    """All ledger rows for a user in insertion order."""
    db = TestingSessionLocal()
    try:
        entries = (
            db.query(CreditLedgerEntry)
            .filter(CreditLedgerEntry.user_id == user_id)
            .order_by(CreditLedgerEntry.id)
            .all()
        )
        db.expunge_all()
        return entries
    finally:
        db.close()


def user_headers(user_id: str = "user_1") -> dict:
    return {"X-User-Id": user_id}


def sign_paddle_payload(raw: bytes, secret: str, ts: int | None = None) -> str:
    ts = int(time.time()) if ts is None else ts
    digest = hmac.new(secret.encode(), f"{ts}:".encode() + raw, hashlib.sha256).hexdigest()
    return f"ts={ts};h1={digest}"


def paddle_event(event_type: str, data: dict, event_id: str = "evt_test") -> bytes:
    return json.dumps({"event_id": event_id, "event_type": event_type, "data": data}).encode()
