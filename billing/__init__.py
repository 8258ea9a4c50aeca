"""
Childcare Billing Module
Owner: CC2
Workstream: W2 (Billing & Stripe)

This module handles:
- Plan definitions, per-child pricing and plan limits
- Subscription checkout, plan change and portal via Stripe
- Plan-tier gating of dashboard routes and API features
"""

from billing.plans import PLAN_PRICING, PLAN_LIMITS, get_plan_limits, has_feature_access
from billing.pricing import monthly_price, annual_price, price_for_cycle
from billing.exceptions import (
    BillingError,
    ValidationError,
    NotFoundError,
    ConflictError,
    Unauthorized,
    Forbidden,
    ExternalProcessorError,
    ReconciliationGap,
)
from billing.subscriptions import SubscriptionOrchestrator

__all__ = [
    'PLAN_PRICING', 'PLAN_LIMITS', 'get_plan_limits', 'has_feature_access',
    'monthly_price', 'annual_price', 'price_for_cycle',
    'BillingError', 'ValidationError', 'NotFoundError', 'ConflictError',
    'Unauthorized', 'Forbidden', 'ExternalProcessorError', 'ReconciliationGap',
    'SubscriptionOrchestrator',
]
