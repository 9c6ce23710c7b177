import logging
from .celery_app import celery_app, credit_engine_for

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3, default_retry_delay=300)
def process_monthly_credits_for_user(self, user_id: str):
    """Grant one due monthly allocation to an annual subscriber.

    Safe to retry: the grant is keyed on the due date.
    """
    result = credit_engine_for(self.app).process_monthly_credits(user_id)
    if not result.processed and result.reason in {"grant_failed", "schedule_update_failed"}:
        raise self.retry(exc=RuntimeError(f"Monthly credits for {user_id} failed: {result.reason}"))
    return {
        "user_id": user_id,
        "processed": result.processed,
        "credits_added": result.credits_added,
        "next_credit_date": result.next_credit_date.isoformat() if result.next_credit_date else None,
        "reason": result.reason,
    }


@celery_app.task(bind=True)
def process_due_monthly_credits(self):
    """Periodic task: grant monthly credits to every annual subscriber whose date has come."""
    engine = credit_engine_for(self.app)
    user_ids = engine.due_monthly_credit_user_ids()
    logger.info("Processing monthly credits for %d subscribers", len(user_ids))

    processed = 0
    failed = []
    for user_id in user_ids:
        result = engine.process_monthly_credits(user_id)
        if result.processed:
            processed += 1
        elif result.reason in {"grant_failed", "schedule_update_failed"}:
            failed.append(user_id)
    if failed:
        logger.error("Monthly credits failed for %d subscribers", len(failed), extra={"user_ids": failed})
    return {"due": len(user_ids), "processed": processed, "failed": failed}


@celery_app.task(bind=True)
def verify_all_balances(self):
    """Periodic task: reconcile every cached balance against its ledger. Reports only."""
    engine = credit_engine_for(self.app)
    discrepancies = []
    user_ids = engine.list_account_ids()
    for user_id in user_ids:
        verification = engine.verify_balance(user_id)
        if not verification.is_valid:
            discrepancies.append(
                {
                    "user_id": user_id,
                    "stored_balance": verification.stored_balance,
                    "calculated_balance": verification.calculated_balance,
                    "discrepancy": verification.discrepancy,
                }
            )
    if discrepancies:
        logger.error("Balance reconciliation found %d discrepancies", len(discrepancies), extra={"discrepancies": discrepancies})
    else:
        logger.info("Balance reconciliation clean for %d accounts", len(user_ids))
    return {"checked": len(user_ids), "discrepancies": discrepancies}
