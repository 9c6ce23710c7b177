import logging as _logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .platform.brand import BRAND_APP_DESCRIPTION, BRAND_NAME
from .platform.config import settings
from .platform.database import SessionLocal
from .platform.logging import setup_logging
from .platform.middleware import RequestLoggingMiddleware
from .services.credit_service import CreditEngine

# Set up logging
logger = setup_logging()

_is_production = bool(settings.SENTRY_DSN) or "localhost" not in settings.FRONTEND_URL

# ---------------------------------------------------------------------------
# Disable interactive API docs in production (information disclosure)
# ---------------------------------------------------------------------------
_docs_url = None if _is_production else "/api/docs"
_openapi_url = None if _is_production else "/api/openapi.json"


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    # One credit engine per process, shared by every request.
    _app.state.credit_engine = CreditEngine(SessionLocal)
    logger.info("%s API started | env=%s", BRAND_NAME, settings.DEPLOYMENT_ENV)
    yield


app = FastAPI(
    title=f"{BRAND_NAME} API",
    description=BRAND_APP_DESCRIPTION,
    version="1.0.0",
    docs_url=_docs_url,
    openapi_url=_openapi_url,
    lifespan=_lifespan,
)

_val_logger = _logging.getLogger("hexwave.validation")


def _is_configured_secret(value: str | None) -> bool:
    cleaned = (value or "").strip().lower()
    return cleaned not in {"", "skip", "changeme"}


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log validation errors with detail so we can diagnose 422s."""
    _val_logger.warning(
        "Validation error on %s %s: %s",
        request.method,
        request.url.path,
        exc.errors(),
    )
    return JSONResponse(
        status_code=422,
        content={"detail": [{k: str(v) for k, v in err.items()} for err in exc.errors()]},
    )


# CORS: frontend URL + localhost + any extra origins
_cors_origins = [
    settings.FRONTEND_URL,
    "http://localhost:3000",
]
if settings.CORS_EXTRA_ORIGINS:
    _cors_origins.extend(o.strip() for o in settings.CORS_EXTRA_ORIGINS.split(",") if o.strip())
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o for o in _cors_origins if o],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-User-Id", "X-Request-ID"],
)

# Request logging
app.add_middleware(RequestLoggingMiddleware)

# Sentry (optional)
if settings.SENTRY_DSN and settings.SENTRY_DSN.startswith("https://"):
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        traces_sample_rate=0.1,
        environment=settings.DEPLOYMENT_ENV,
        integrations=[FastApiIntegration(), SqlalchemyIntegration()],
    )

# Include routers
from .domains.billing_webhooks.webhook_routes import router as webhooks_router
from .domains.credits.routes import router as credits_router

app.include_router(credits_router, prefix="/api/v1")
app.include_router(webhooks_router, prefix="/api/v1")


@app.get("/health")
def health_check():
    db_ok = False
    redis_ok = False
    try:
        from sqlalchemy import text
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        db.close()
        db_ok = True
    except Exception:
        logger.warning("Health check: database unreachable")
    try:
        import redis
        r = redis.from_url(settings.REDIS_URL, socket_connect_timeout=2, socket_timeout=2)
        redis_ok = bool(r.ping())
    except Exception:
        logger.warning("Health check: redis unreachable")

    integrations = {
        "paddle_api_configured": _is_configured_secret(settings.PADDLE_API_KEY),
        "paddle_webhook_configured": _is_configured_secret(settings.PADDLE_WEBHOOK_SECRET),
    }

    status_str = "healthy" if db_ok and (redis_ok or settings.MVP_DISABLE_CELERY) else "degraded"
    return {
        "status": status_str,
        "service": "hexwave-api",
        "database": db_ok,
        "redis": redis_ok,
        "integrations": integrations,
    }
