"""
Membership Billing Service - Main Application Entry Point

Subscription auto-renewal, payment confirmation, reconciliation and refunds
for membership plans.
"""

import os
import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

# Load environment variables from .env file FIRST
from dotenv import load_dotenv
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

from .core.config import settings
from .core.exceptions import (
    BillingServiceError,
    ConcurrencyConflict,
    InvalidStateTransition,
    PendingPaymentNotFoundError,
    ReconciliationDataError,
    RefundError,
    SubscriptionNotFoundError,
    ValidationError,
    WebhookSignatureError,
)
from .core.logging_config import setup_logging, get_logger
from .core.redis_lock import check_redis_connection
from .api import admin, webhooks
from .services.scheduler import start_scheduler, stop_scheduler

# Setup logging
setup_logging()
logger = get_logger("membership-billing")

ERROR_STATUS_CODES = [
    (SubscriptionNotFoundError, status.HTTP_404_NOT_FOUND),
    (PendingPaymentNotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidStateTransition, status.HTTP_409_CONFLICT),
    (ConcurrencyConflict, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ReconciliationDataError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (WebhookSignatureError, status.HTTP_401_UNAUTHORIZED),
    (RefundError, status.HTTP_400_BAD_REQUEST),
]


def _scheduler_enabled() -> bool:
    return os.getenv("SCHEDULER_ENABLED", "true").lower() not in ("0", "false", "no")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info("Starting Membership Billing Service...")
    logger.info(f"Environment: {os.getenv('ENVIRONMENT', 'development')}")
    logger.info(f"API Version: {settings.API_V1_STR}")
    logger.info(f"Payment gateway: {settings.PAYMENT_GATEWAY}")

    if _scheduler_enabled():
        try:
            start_scheduler()
        except Exception as e:
            logger.error(f"Failed to start scheduler: {e}")
            logger.warning("Service will continue but renewals must be triggered from the CLI")
    else:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false)")

    yield

    # Shutdown
    logger.info("Shutting down Membership Billing Service...")
    if _scheduler_enabled():
        stop_scheduler()


# Create FastAPI application
app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    description="Membership subscription billing: renewals, payments, reconciliation and refunds",
    lifespan=lifespan
)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests"""
    start_time = time.time()

    # Skip logging for health check
    if request.url.path != "/health":
        logger.info(f"Request: {request.method} {request.url.path}")

    response = await call_next(request)

    duration_ms = (time.time() - start_time) * 1000

    if request.url.path != "/health":
        logger.info(
            f"Response: {request.method} {request.url.path} - "
            f"Status: {response.status_code} - Duration: {duration_ms:.2f}ms"
        )

    return response


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "membership-billing",
        "version": "1.0.0",
        "redis": "up" if check_redis_connection() else "down"
    }


# Include API routers
app.include_router(webhooks.router, prefix=settings.API_V1_STR)
app.include_router(admin.router, prefix=settings.API_V1_STR)


@app.exception_handler(BillingServiceError)
async def billing_error_handler(request: Request, exc: BillingServiceError):
    """Map domain errors onto HTTP status codes"""
    status_code = next(
        (code for error_type, code in ERROR_STATUS_CODES if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    if status_code >= 500:
        logger.error(f"Unhandled billing error on {request.url.path}: {exc}")
    else:
        logger.warning(f"{type(exc).__name__} on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__}
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.exception(f"Unhandled exception: {str(exc)}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error",
            "error": str(exc) if os.getenv("ENVIRONMENT") == "development" else "An error occurred"
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "membership_billing.main:app",
        host="0.0.0.0",
        port=8004,
        reload=True,
        log_level="info"
    )
