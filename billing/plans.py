"""
Childcare Billing Plan Definitions
Owner: CC2
Workstream: W2P1

Single source of truth for plan data:
- Per-child pricing with monthly minimums (monthly and annual set independently)
- Plan hierarchy used for both feature gating and upgrade/downgrade decisions
- Feature access by plan tier and dashboard route gating
- Plan-derived limits written onto the organization row

Everything here is deployment-time configuration, never mutated at runtime.
"""

from decimal import Decimal
from typing import Optional, Dict, Any, List

PAID_PLANS = ('starter', 'professional', 'enterprise')
BILLING_CYCLES = ('monthly', 'annual')

CURRENCY = 'usd'

# trial gets professional features
PLAN_HIERARCHY: Dict[str, int] = {
    'cancelled': 0,
    'starter': 1,
    'trial': 2,
    'professional': 2,
    'enterprise': 3,
}

# Dollars per active child. Annual figures are a separate finance decision,
# not monthly * 12 * discount.
PLAN_PRICING: Dict[str, Dict[str, Dict[str, Decimal]]] = {
    'starter': {
        'monthly': {'unit_rate': Decimal('1.50'), 'minimum': Decimal('29.00')},
        'annual': {'unit_rate': Decimal('15.00'), 'minimum': Decimal('289.00')},
    },
    'professional': {
        'monthly': {'unit_rate': Decimal('2.50'), 'minimum': Decimal('49.00')},
        'annual': {'unit_rate': Decimal('25.00'), 'minimum': Decimal('489.00')},
    },
    'enterprise': {
        'monthly': {'unit_rate': Decimal('3.50'), 'minimum': Decimal('99.00')},
        'annual': {'unit_rate': Decimal('35.00'), 'minimum': Decimal('989.00')},
    },
}

PLAN_LIMITS: Dict[str, Dict[str, int]] = {
    'starter': {'max_children': 50, 'max_staff': 10},
    'professional': {'max_children': 200, 'max_staff': 50},
    'enterprise': {'max_children': 9999, 'max_staff': 9999},
}

TRIAL_CONFIG: Dict[str, Any] = {
    'duration_days': 14,
    'plan_level': 'professional',
    'max_children': 999,
    'max_staff': 999,
}

_STARTER_FEATURES = [
    'children',
    'families',
    'staff',
    'classrooms',
    'attendance',
    'billing',
    'daily_activities',
    'notifications',
    'settings',
    'ai_support',
]

_PROFESSIONAL_FEATURES = _STARTER_FEATURES + [
    'communication',
    'reports',
    'incidents',
    'immunizations',
    'documents',
    'food_program',
    'learning',
    'dcf_ratios',
    'programs',
    'admissions',
]

_ENTERPRISE_FEATURES = _PROFESSIONAL_FEATURES + [
    'accounting',
    'multi_location',
    'api_access',
    'custom_branding',
    'compliance',
]

PLAN_FEATURES: Dict[str, List[str]] = {
    'starter': _STARTER_FEATURES,
    'professional': _PROFESSIONAL_FEATURES,
    'enterprise': _ENTERPRISE_FEATURES,
}

# Dashboard route prefix -> feature key. Routes not listed are not plan-gated.
ROUTE_FEATURE_MAP: Dict[str, str] = {
    '/dashboard/communication': 'communication',
    '/dashboard/reports': 'reports',
    '/dashboard/incidents': 'incidents',
    '/dashboard/immunizations': 'immunizations',
    '/dashboard/documents': 'documents',
    '/dashboard/food-program': 'food_program',
    '/dashboard/learning': 'learning',
    '/dashboard/programs': 'programs',
    '/dashboard/admissions': 'admissions',
    '/dashboard/accounting': 'accounting',
    '/dashboard/compliance': 'compliance',
}

BILLING_SETTINGS_PATH = '/dashboard/settings'


def plan_level(plan_id: Optional[str]) -> int:
    """
    Numeric level of a stored plan value.

    Args:
        plan_id: Plan identifier, may be None for legacy rows

    Returns:
        Level from PLAN_HIERARCHY, 0 for unknown or missing plans
    """
    if not plan_id:
        return 0
    return PLAN_HIERARCHY.get(plan_id, 0)


def get_plan_limits(plan_id: str) -> Dict[str, int]:
    """
    Get the organization limits for a plan.

    Args:
        plan_id: The plan identifier

    Returns:
        Dictionary with max_children and max_staff; starter limits if unknown
    """
    if plan_id == 'trial':
        return {
            'max_children': TRIAL_CONFIG['max_children'],
            'max_staff': TRIAL_CONFIG['max_staff'],
        }
    return dict(PLAN_LIMITS.get(plan_id, PLAN_LIMITS['starter']))


def get_minimum_plan(feature: str) -> Optional[str]:
    """
    Cheapest paid plan that includes a feature.

    Args:
        feature: Feature key from PLAN_FEATURES

    Returns:
        Plan ID or None if no plan offers the feature
    """
    for plan_id in PAID_PLANS:
        if feature in PLAN_FEATURES[plan_id]:
            return plan_id
    return None


def has_feature_access(plan_id: Optional[str], feature: str) -> bool:
    """Check a stored plan against a feature. Trial reads as professional."""
    if plan_id == 'trial':
        return feature in PLAN_FEATURES[TRIAL_CONFIG['plan_level']]
    if not plan_id or plan_id == 'cancelled':
        return False
    features = PLAN_FEATURES.get(plan_id)
    if not features:
        return False
    return feature in features


def get_route_feature(path: str) -> Optional[str]:
    """Feature key gating a dashboard path, matched by prefix."""
    for route, feature in ROUTE_FEATURE_MAP.items():
        if path == route or path.startswith(route + '/'):
            return feature
    return None

