from .credits import (
    BalanceResponse,
    BalanceVerificationResponse,
    DailyUsage,
    LedgerEntryResponse,
    SyncResponse,
    TransactionPageResponse,
    UsageSummaryResponse,
)

__all__ = [
    "BalanceResponse",
    "BalanceVerificationResponse",
    "DailyUsage",
    "LedgerEntryResponse",
    "SyncResponse",
    "TransactionPageResponse",
    "UsageSummaryResponse",
]
