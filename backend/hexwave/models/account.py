from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..platform.database import Base


class UserAccount(Base):
    """Cached credit balance per user; the ledger is the audit trail behind it."""

    __tablename__ = "user_accounts"
    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_user_accounts_credits_non_negative"),
    )

    user_id = Column(String, primary_key=True)
    email = Column(String, nullable=True, index=True)
    customer_id = Column(String, nullable=True, index=True)  # Paddle customer id
    credits = Column(Integer, nullable=False, default=0)
    balance_verified_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    subscription = relationship("Subscription", back_populates="account", uselist=False)
    credit_ledger_entries = relationship("CreditLedgerEntry", back_populates="account")
