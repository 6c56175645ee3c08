from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Membership Billing Configuration - Non-sensitive settings only
    All sensitive values (API keys, secrets, URLs) must be loaded from environment variables
    """

    # API Configuration
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "Membership Billing Service"

    # Billing Defaults
    DEFAULT_CURRENCY: str = "KES"
    SUPPORTED_CURRENCIES: List[str] = ["KES", "USD", "NGN", "UGX", "TZS"]
    DEFAULT_BILLING_PERIOD_DAYS: int = 30
    SUBSCRIPTION_GRACE_PERIOD_DAYS: int = 14

    # Auto-renewal
    MAX_RENEWAL_ATTEMPTS: int = 3
    RENEWAL_LEAD_HOURS: int = 24  # Renew active subscriptions ending within this window
    RENEWAL_LEASE_SECONDS: int = 300  # Per-subscription lease held while charging
    RENEWAL_BATCH_SIZE: int = 200

    # Retry backoff ("fixed" uses RETRY_DELAYS_HOURS, "exponential" the base/multiplier pair)
    RETRY_BACKOFF_STRATEGY: str = "fixed"
    RETRY_DELAYS_HOURS: List[int] = [24, 72, 168]
    RETRY_BASE_DELAY_HOURS: int = 24
    RETRY_BACKOFF_MULTIPLIER: float = 2.0
    RETRY_MAX_DELAY_HOURS: int = 168

    # Pending payments
    PENDING_PAYMENT_TTL_MINUTES: int = 60

    # Payment gateway ("mock" or "paystack")
    PAYMENT_GATEWAY: str = "mock"

    # Reconciliation queue
    RECONCILIATION_EXCHANGE: str = "billing.events"
    RECONCILIATION_QUEUE: str = "billing.reconciliation.runs"
    RECONCILIATION_ROUTING_KEY: str = "reconciliation.run"

    # Database Pool Settings
    POOL_SIZE: int = 10
    POOL_MAX_OVERFLOW: int = 20
    POOL_RECYCLE_SECONDS: int = 300  # Recycle connections every 5 minutes
    POOL_TIMEOUT: int = 30  # Wait max 30 seconds for connection from pool
    CONNECT_TIMEOUT: int = 10  # Connection timeout in seconds

    # JWT Token Settings
    JWT_ALGORITHM: str = "HS256"
    ADMIN_AUTHORITY: str = "ROLE_BILLING_ADMIN"

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
