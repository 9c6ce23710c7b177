from .celery_app import celery_app
from .credit_tasks import (
    process_due_monthly_credits,
    process_monthly_credits_for_user,
    verify_all_balances,
)

__all__ = [
    "celery_app",
    "process_due_monthly_credits",
    "process_monthly_credits_for_user",
    "verify_all_balances",
]
