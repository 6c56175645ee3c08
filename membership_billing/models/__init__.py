"""Database models for the membership billing service"""
from .plan import Plan
from .subscription import Subscription
from .enhancement import (
    SubscriptionEnhancement,
    EnhancementStatus,
    PaymentFailureState,
)
from .auto_renewal_job import AutoRenewalJob, RenewalJobStatus, RenewalAttemptType
from .pending_payment import PendingPayment, PendingPaymentStatus
from .payment import Payment, PaymentStatus
from .reconciliation import (
    ReconciliationRun,
    ReconciliationItem,
    RunStatus,
    ItemSource,
    ItemStatus,
)
from .refund import Refund, RefundStatus, RefundReason, RefundableKind, RefundTarget
from .webhook_event import WebhookEvent, WebhookEventStatus

__all__ = [
    "Plan",
    "Subscription",
    "SubscriptionEnhancement",
    "EnhancementStatus",
    "PaymentFailureState",
    "AutoRenewalJob",
    "RenewalJobStatus",
    "RenewalAttemptType",
    "PendingPayment",
    "PendingPaymentStatus",
    "Payment",
    "PaymentStatus",
    "ReconciliationRun",
    "ReconciliationItem",
    "RunStatus",
    "ItemSource",
    "ItemStatus",
    "Refund",
    "RefundStatus",
    "RefundReason",
    "RefundableKind",
    "RefundTarget",
    "WebhookEvent",
    "WebhookEventStatus",
]
