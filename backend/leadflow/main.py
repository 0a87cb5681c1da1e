import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from leadflow.api.v1.admin import router as admin_router
from leadflow.api.v1.notifications import router as notifications_router
from leadflow.api.v1.provider import router as provider_router
from leadflow.api.v1.scheduled_tasks import router as scheduled_tasks_router
from leadflow.api.v1.service_requests import router as service_requests_router
from leadflow.api.v1.subscriptions import router as subscriptions_router
from leadflow.api.v1.webhooks import router as webhooks_router
from leadflow.core import dependencies
from leadflow.core.config import get_settings
from leadflow.services.audit import create_audit_log
from leadflow.services.errors import MarketplaceError
from leadflow.services.recurring_jobs import start_fallback_sweep_worker, start_geocode_backfill_worker
from leadflow.utils.rate_limit import WINDOW_SECONDS, RateDecision, check_request, get_client_ip, get_user_agent

settings = get_settings()
_fallback_sweep_task = None
_geocode_backfill_task = None

logger = logging.getLogger(__name__)

GENERIC_ERROR_DETAIL = "Internal server error"
WEBHOOK_PATH_PREFIX = "/api/v1/webhook/stripe"

app = FastAPI(
    title="LeadFlow API",
    version="0.9.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)


@app.on_event("startup")
async def _startup_jobs():
    global _fallback_sweep_task, _geocode_backfill_task
    current = get_settings()
    errors = current.validate_required_config()
    if errors:
        if current.environment.strip().lower() == "production":
            raise RuntimeError(
                "Configuration validation failed in production environment: " + "; ".join(errors)
            )
        logger.warning("Configuration problems (non-production, continuing): %s", "; ".join(errors))

    if _fallback_sweep_task is None and current.enable_recurring_jobs:
        _fallback_sweep_task = start_fallback_sweep_worker()
    if _geocode_backfill_task is None and current.enable_recurring_jobs and current.enable_geocoding:
        _geocode_backfill_task = start_geocode_backfill_worker()


@app.on_event("shutdown")
async def _shutdown_jobs():
    global _fallback_sweep_task, _geocode_backfill_task
    if _fallback_sweep_task is not None:
        _fallback_sweep_task.cancel()
        _fallback_sweep_task = None
    if _geocode_backfill_task is not None:
        _geocode_backfill_task.cancel()
        _geocode_backfill_task = None


if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

app.include_router(webhooks_router, prefix="/api/v1", tags=["webhooks"])
app.include_router(service_requests_router, prefix="/api/v1", tags=["customer"])
app.include_router(provider_router, prefix="/api/v1", tags=["provider"])
app.include_router(subscriptions_router, prefix="/api/v1", tags=["subscriptions"])
app.include_router(admin_router, prefix="/api/v1", tags=["admin"])
app.include_router(scheduled_tasks_router, prefix="/api/v1", tags=["tasks"])
app.include_router(notifications_router, prefix="/api/v1", tags=["notifications"])


@app.exception_handler(MarketplaceError)
async def _marketplace_error_handler(request: Request, exc: MarketplaceError):
    detail = exc.message
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
        if not settings.expose_error_details:
            detail = GENERIC_ERROR_DETAIL
    return JSONResponse(status_code=exc.status_code, content={"detail": detail, "code": exc.code})


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Hide internal details for 5xx in production unless explicitly enabled.
    if exc.status_code >= 500 and not settings.expose_error_details:
        return JSONResponse(status_code=exc.status_code, content={"detail": GENERIC_ERROR_DETAIL})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": GENERIC_ERROR_DETAIL})


async def _audit_rate_limit_block(request: Request, decision: RateDecision, *, limit: int) -> None:
    if dependencies.AsyncSessionLocal is None:
        return
    async with dependencies.AsyncSessionLocal() as db:
        create_audit_log(
            db,
            entity_type="system",
            entity_id="rate_limit",
            action="RATE_LIMIT_BLOCKED",
            old_value=None,
            new_value=None,
            actor_type="SYSTEM",
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
            metadata={"path": request.url.path, "key": decision.key, "limit": limit, "window_seconds": WINDOW_SECONDS},
        )
        await db.commit()


def _too_many_requests(decision: RateDecision) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"detail": "Too Many Requests"},
        headers={"Retry-After": str(decision.retry_after)},
    )


@app.middleware("http")
async def webhook_rate_limit_middleware(request: Request, call_next):
    path = request.url.path
    if request.method != "POST" or not path.startswith(WEBHOOK_PATH_PREFIX):
        return await call_next(request)

    current = get_settings()
    if not current.rate_limit_webhook_enabled:
        return await call_next(request)

    limit = current.rate_limit_stripe_ip_per_min
    decision = check_request(request, "stripe", limit)
    if not decision.allowed:
        await _audit_rate_limit_block(request, decision, limit=limit)
        return _too_many_requests(decision)

    return await call_next(request)


@app.middleware("http")
async def api_rate_limit_middleware(request: Request, call_next):
    if request.method == "OPTIONS":
        return await call_next(request)

    path = request.url.path
    if not path.startswith("/api/v1") or path.startswith(WEBHOOK_PATH_PREFIX):
        return await call_next(request)

    current = get_settings()
    if not current.rate_limit_api_enabled:
        return await call_next(request)

    decision = check_request(request, "api", current.rate_limit_api_per_min)
    if not decision.allowed:
        return _too_many_requests(decision)

    return await call_next(request)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if not settings.security_headers_enabled:
        return response

    headers = response.headers
    if "X-Content-Type-Options" not in headers:
        headers["X-Content-Type-Options"] = "nosniff"
    if "X-Frame-Options" not in headers:
        headers["X-Frame-Options"] = "DENY"
    if "Referrer-Policy" not in headers:
        headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if "Strict-Transport-Security" not in headers:
        headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    if "Content-Security-Policy" not in headers:
        headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'; base-uri 'none'"

    return response


@app.get("/health")
async def health_check():
    return {"status": "ok"}
