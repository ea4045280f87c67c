import asyncio
from fastapi import FastAPI, Depends, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import sentry_sdk
import structlog

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from poflow.config import settings
from poflow.database import init_db, close_db, get_db
from poflow.logging_config import setup_logging, setup_error_tracking
from poflow.services.cache import cache
from poflow.services.email_service import close_http_client
from poflow.services.storage import invoice_storage
from poflow.middleware.correlation import CorrelationIdMiddleware

# Import models so they are registered with Base.metadata
import poflow.models  # noqa: F401

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    sentry_enabled = setup_error_tracking()
    logger.info("starting_poflow", env=settings.ENVIRONMENT, sentry=sentry_enabled)
    await init_db()
    yield
    await close_http_client()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Global exception handlers. Every error leaves as
# {"error": {"code": "...", "message": "..."}}
# ---------------------------------------------------------------------------

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, str):
        detail = {"error": {"code": "HTTP_ERROR", "message": detail}}
    elif isinstance(detail, dict) and "error" not in detail:
        detail = {"error": detail}
    return JSONResponse(status_code=exc.status_code, content=detail, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "details": jsonable_errors(exc),
            }
        },
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception", path=request.url.path)
    sentry_sdk.capture_exception(exc)
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred"}},
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may carry the raw exception object, which JSONResponse cannot encode
    errors = []
    for err in exc.errors():
        err = dict(err)
        if "ctx" in err:
            err["ctx"] = {k: str(v) for k, v in err["ctx"].items()}
        errors.append(err)
    return errors


app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_origin_regex=settings.CORS_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "X-Request-ID"],
    expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"],
)


@app.get("/health", tags=["System"])
async def health(response: Response, db: AsyncSession = Depends(get_db)):
    health_status = {"status": "healthy", "version": settings.APP_VERSION, "checks": {}}

    # 1. Check DB
    try:
        await db.execute(text("SELECT 1"))
        health_status["checks"]["db"] = "ok"
    except Exception as e:
        logger.error("health_check_db_failed", error=str(e))
        health_status["checks"]["db"] = "error"
        health_status["status"] = "unhealthy"

    # 2. Check Redis (rate limiting falls back to in-process windows without it)
    if cache.configured:
        try:
            await cache.ping()
            health_status["checks"]["redis"] = "ok"
        except Exception as e:
            logger.error("health_check_redis_failed", error=str(e))
            health_status["checks"]["redis"] = "error"
            health_status["status"] = "unhealthy"
    else:
        health_status["checks"]["redis"] = "not_configured"

    # 3. Check R2
    try:
        await asyncio.to_thread(invoice_storage.head_bucket)
        health_status["checks"]["r2"] = "ok"
    except Exception as e:
        logger.error("health_check_r2_failed", error=str(e))
        health_status["checks"]["r2"] = "error"
        health_status["status"] = "unhealthy"

    if health_status["status"] == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return health_status


# --- Routers ---
from poflow.routes.purchase_orders import router as po_router  # noqa: E402
from poflow.routes.approvals import router as approvals_router  # noqa: E402
from poflow.routes.public import router as public_router  # noqa: E402
from poflow.routes.organization import router as organization_router  # noqa: E402
from poflow.routes.users import router as users_router  # noqa: E402
from poflow.routes.tax_rates import router as tax_rates_router  # noqa: E402

# Rate limiting middleware (Upstash Redis, in-process fallback)
from poflow.middleware.rate_limit import rate_limit_middleware  # noqa: E402

app.middleware("http")(rate_limit_middleware)

app.include_router(po_router, prefix="/api/v1/purchase-orders", tags=["Purchase Orders"])
app.include_router(approvals_router, prefix="/api/v1/approvals", tags=["Approvals"])
app.include_router(public_router, prefix="/api/v1/public", tags=["Public"])
app.include_router(organization_router, prefix="/api/v1/organization", tags=["Organization"])
app.include_router(users_router, prefix="/api/v1/users", tags=["Users"])
app.include_router(tax_rates_router, prefix="/api/v1/tax-rates", tags=["Tax Rates"])
