from .account import UserAccount
from .subscription import Subscription, SubscriptionStatus, BillingCycle
from .credit_ledger import (
    CreditLedgerEntry,
    CreditSource,
    CreditTransactionStatus,
    CreditTransactionType,
    LedgerImmutableError,
)

__all__ = [
    "UserAccount",
    "Subscription",
    "SubscriptionStatus",
    "BillingCycle",
    "CreditLedgerEntry",
    "CreditSource",
    "CreditTransactionStatus",
    "CreditTransactionType",
    "LedgerImmutableError",
]
