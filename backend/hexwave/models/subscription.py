import enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..platform.database import Base


class SubscriptionStatus(str, enum.Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELED = "canceled"


class BillingCycle(str, enum.Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"
    YEARLY = "yearly"  # legacy spelling of annual


# Cycles whose credits are dripped monthly instead of granted up front.
LONG_BILLING_CYCLES = {BillingCycle.ANNUAL.value, BillingCycle.YEARLY.value}


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, ForeignKey("user_accounts.user_id"), unique=True, index=True, nullable=False)
    subscription_id = Column(String, nullable=True, index=True)  # Paddle subscription id
    customer_id = Column(String, nullable=True)
    product_id = Column(String, nullable=True)
    price_id = Column(String, nullable=True)
    transaction_id = Column(String, nullable=True)  # latest completed Paddle transaction
    status = Column(String, nullable=True, index=True)
    billing_cycle = Column(String, nullable=True)
    plan_tier = Column(String, nullable=True)
    # Plan held before an upgrade or cycle change, kept until the next completed transaction is credited
    previous_product_id = Column(String, nullable=True)
    previous_price_id = Column(String, nullable=True)
    previous_billing_cycle = Column(String, nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_ends = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    # Monthly credit drip for long billing cycles
    next_credit_date = Column(DateTime(timezone=True), nullable=True, index=True)
    last_credit_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    account = relationship("UserAccount", back_populates="subscription")
