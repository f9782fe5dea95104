"""
CoverGhar Order Reconciliation - FastAPI Backend
"""
import os
from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi import status
from sqlalchemy import text
import uvicorn
import logging

from routes.api import register_routes
from app.database import engine, Base
from app.config import settings
from app import models  # noqa: F401  (registers tables on Base.metadata)
from app.services.errors import ReconciliationError
from app.workers.scheduler import start_background_workers, stop_background_workers, get_workers_status

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="CoverGhar Order Reconciliation API",
    description="Shipping and payment provider reconciliation for storefront orders",
    version="1.0.0",
    docs_url="/docs" if settings.IS_DEVELOPMENT else None,  # Disable docs in production
    redoc_url="/redoc" if settings.IS_DEVELOPMENT else None,
)

logger.info("Starting CoverGhar reconciliation API")
logger.info("Environment: %s (production=%s, cloud=%s)", settings.ENV, settings.IS_PRODUCTION, settings.IS_CLOUD)
logger.info("Shipping provider: %s, idempotency backend: %s", settings.SHIPPING_PROVIDER, settings.IDEMPOTENCY_BACKEND)

# Startup config validation (warn only)
if settings.IS_PRODUCTION and settings.JWT_SECRET.strip() in ("", "supersecret_fallback_key_change_in_production"):
    logger.warning("JWT_SECRET is default or empty in production. Set a strong JWT_SECRET in environment.")
if not settings.RAZORPAY_WEBHOOK_SECRET:
    logger.warning("RAZORPAY_WEBHOOK_SECRET is not set; payment webhooks will be answered with 500.")
if not (settings.SHIPROCKET_WEBHOOK_SECRET or settings.DELHIVERY_WEBHOOK_TOKEN):
    logger.warning("No shipping webhook secret configured; shipping webhooks will be rejected.")
if settings.IS_PRODUCTION and not (os.getenv("ALLOWED_ORIGINS", "") or "").strip():
    logger.warning("ALLOWED_ORIGINS is not set in production. Set your frontend origin(s) (comma-separated).")


def get_cors_headers(request: Request) -> dict:
    """Get CORS headers for a request"""
    origin = request.headers.get("origin", "")
    allowed_origins = settings.ALLOWED_ORIGINS

    if origin in allowed_origins:
        cors_origin = origin
    elif settings.IS_DEVELOPMENT and (origin.startswith("http://localhost") or origin.startswith("http://127.0.0.1")):
        cors_origin = origin
    elif allowed_origins:
        cors_origin = allowed_origins[0]
    else:
        cors_origin = "*"

    return {
        "Access-Control-Allow-Origin": cors_origin,
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "*",
    }


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("Validation error on %s: %s", request.url.path, exc.errors())
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "detail": exc.errors(),
            "message": "Validation error: Please check your request format"
        },
        headers=get_cors_headers(request)
    )


@app.exception_handler(ReconciliationError)
async def reconciliation_exception_handler(request: Request, exc: ReconciliationError):
    """Domain errors carry their own status code and details."""
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    else:
        logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=get_cors_headers(request)
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTPException and ensure CORS headers are sent"""
    headers = get_cors_headers(request)
    if exc.headers:
        headers.update(exc.headers)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "detail": exc.detail},
        headers=headers
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler to ensure CORS headers are always sent"""
    logger.error("Unhandled exception on %s: %s", request.url.path, exc, exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "detail": "Internal server error",
            "message": str(exc) if settings.IS_DEVELOPMENT else "An error occurred"
        },
        headers=get_cors_headers(request)
    )


cors_kwargs = {
    "allow_origins": settings.ALLOWED_ORIGINS,
    "allow_credentials": True,
    "allow_methods": ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    "allow_headers": ["*"],
    "expose_headers": ["*"],
}

cors_regex = settings.CORS_ORIGIN_REGEX
if cors_regex:
    cors_kwargs["allow_origin_regex"] = cors_regex

app.add_middleware(CORSMiddleware, **cors_kwargs)
logger.info("CORS configured for %s origin(s)", len(settings.ALLOWED_ORIGINS))

register_routes(app, settings)


@app.get("/health")
async def health():
    """Health check endpoint. Includes DB connectivity check and worker state."""
    db_status = "ok"
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Health check DB ping failed: %s", e)
        db_status = "error"
    return {
        "status": "ok" if db_status == "ok" else "degraded",
        "service": "api",
        "db": db_status,
        "environment": settings.ENV,
        "workers": get_workers_status() if settings.WORKERS_ENABLED else "disabled",
    }


@app.on_event("startup")
async def startup_workers() -> None:
    """Start ledger eviction and the tracking reconciliation sweep."""
    start_background_workers()


@app.on_event("shutdown")
async def shutdown_workers() -> None:
    stop_background_workers()


@app.get("/api")
async def root():
    """API root endpoint"""
    return {
        "message": "CoverGhar Order Reconciliation API",
        "version": "1.0.0",
        "environment": settings.ENV,
        "docs": "/docs" if settings.IS_DEVELOPMENT else "disabled in production"
    }


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.IS_DEVELOPMENT,
        log_level=settings.LOG_LEVEL.lower()
    )
