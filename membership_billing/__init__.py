"""Membership billing core: renewals, pending payments, reconciliation and refunds"""

__version__ = "1.0.0"
