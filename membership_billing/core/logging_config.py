"""
Standardized logging configuration using Loguru.

Provides:
- Human-readable logs (colored in dev, plain text in production)
- Billing context (subscription, job, payment, run ids) via Loguru's .bind()
- Third-party library log level control
"""

import os
import sys
import logging
import uuid
from typing import Optional

from loguru import logger


def setup_logging(log_level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """
    Configure logging for the service using Loguru

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional log file path
    """

    # Remove default loguru handler
    logger.remove()

    if log_level is None:
        log_level = os.environ.get("LOG_LEVEL", "INFO").upper()

    environment = os.environ.get("ENVIRONMENT", "development")

    # ============================================================================
    # 1. Configure Python's standard logging module
    # ============================================================================
    # Infrastructure modules and third-party libraries use logging.getLogger()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        force=True
    )

    # ============================================================================
    # 2. Configure third-party library loggers
    # ============================================================================
    logging.getLogger("uvicorn").setLevel(getattr(logging, log_level, logging.INFO))
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    # RabbitMQ (reconciliation queue)
    logging.getLogger("pika").setLevel(logging.WARNING)

    # Database
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("alembic").setLevel(logging.WARNING)

    # Background scheduler
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    # HTTP clients (gateway integration)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    # ============================================================================
    # 3. Configure Loguru
    # ============================================================================
    if environment == "production":
        logger.add(
            sys.stdout,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message} | {extra}{exception}",
            level=log_level,
            colorize=False,
            serialize=False,
            enqueue=True
        )
    else:
        logger.add(
            sys.stdout,
            format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | <level>{message}</level> | <blue>{extra}</blue>{exception}",
            level=log_level,
            colorize=True,
            enqueue=True
        )

    if log_file:
        logger.add(log_file, level=log_level, rotation="50 MB", retention=10, enqueue=True)

    logger.info(f"Logging configured - Environment: {environment}, Level: {log_level}")


def get_logger(name: str = None):
    """Get a logger instance"""
    return logger.bind(module=name or "membership-billing")


def generate_request_id() -> str:
    """Generate a unique request ID"""
    return str(uuid.uuid4())


# ============================================================================
# Helper functions for common logging patterns
# ============================================================================

def log_renewal_attempt(subscription_id: str, job_id: str, attempt_number: int, outcome: str, **kwargs):
    """Log the outcome of one auto-renewal attempt"""
    logger.bind(
        subscription_id=subscription_id,
        job_id=job_id,
        attempt_number=attempt_number,
        **kwargs
    ).info(f"Renewal attempt {attempt_number} {outcome}")


def log_payment_transition(payment_id: str, from_status: str, to_status: str, **kwargs):
    """Log a pending payment status change"""
    logger.bind(payment_id=payment_id, **kwargs).info(
        f"Pending payment {payment_id}: {from_status} -> {to_status}"
    )


def log_reconciliation_run(run_id: str, status: str, **kwargs):
    """Log the outcome of a reconciliation run"""
    logger.bind(run_id=run_id, **kwargs).info(f"Reconciliation run {run_id} finished with status {status}")
