from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging as celery_setup_logging
from celery.signals import worker_init, worker_process_init
from ..platform.config import settings
from ..platform.database import SessionLocal, engine as db_engine
from ..platform.logging import setup_logging
from ..services.credit_service import CreditEngine

celery_app = Celery(
    "hexwave",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "monthly-credit-drip-daily": {
            "task": "hexwave.tasks.credit_tasks.process_due_monthly_credits",
            "schedule": crontab(hour=0, minute=15),
        },
        "balance-reconciliation-daily": {
            "task": "hexwave.tasks.credit_tasks.verify_all_balances",
            "schedule": crontab(hour=3, minute=0),
        },
    },
)

# Set by the worker signals below; tasks read it through credit_engine_for().
celery_app.credit_engine = None


@celery_setup_logging.connect
def _configure_worker_logging(**kwargs):
    # Workers emit the same JSON lines as the API instead of Celery's default format.
    setup_logging()


@worker_init.connect
def init_credit_engine(**kwargs):
    """Build the credit engine the tasks use and keep it on the app."""
    celery_app.credit_engine = CreditEngine(SessionLocal)
    return celery_app.credit_engine


@worker_process_init.connect
def _init_forked_worker(**kwargs):
    # Prefork children must not reuse pooled connections inherited from the parent.
    db_engine.dispose(close=False)
    init_credit_engine()


def credit_engine_for(app: Celery) -> CreditEngine:
    engine = getattr(app, "credit_engine", None)
    if engine is None:
        raise RuntimeError("Credit engine not initialised; is this running inside a Celery worker?")
    return engine


# Auto-discover tasks
celery_app.autodiscover_tasks(["hexwave.tasks"])
