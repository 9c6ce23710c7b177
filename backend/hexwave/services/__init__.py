"""
Hexwave credit service layer.

Convenience imports for the credit engine and its result types.
"""

from .credit_service import (
    BalanceCheck,
    BalanceVerification,
    CreditEngine,
    CreditErrorCode,
    CreditOperationResult,
    MonthlyCreditResult,
    TransactionPage,
    UsageSummary,
)

__all__ = [
    "BalanceCheck",
    "BalanceVerification",
    "CreditEngine",
    "CreditErrorCode",
    "CreditOperationResult",
    "MonthlyCreditResult",
    "TransactionPage",
    "UsageSummary",
]
