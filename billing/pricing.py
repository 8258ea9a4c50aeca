"""
Childcare Billing Pricing
Owner: CC2
Workstream: W2P1

Pure pricing functions: price = max(children * per-child rate, minimum).

Amounts are Decimal dollars quantized to cents with ROUND_HALF_UP, so the
same inputs always give the same bytes. Convert with to_minor_units() only
at the point an amount is handed to Stripe.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

from .exceptions import ValidationError
from .plans import PLAN_PRICING, PAID_PLANS, BILLING_CYCLES

CENT = Decimal('0.01')


def round_money(amount: Decimal) -> Decimal:
    """Quantize a dollar amount to whole cents, half-up."""
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """
    Convert a dollar amount to integer cents.

    Args:
        amount: Decimal dollar amount

    Returns:
        Amount in cents, rounded half-up
    """
    return int(round_money(amount) * 100)


def _validate(plan: str, unit_count: int, billing_cycle: str = 'monthly') -> None:
    if plan not in PAID_PLANS:
        raise ValidationError(
            f'Invalid plan: {plan!r}. Must be starter, professional, or enterprise.',
            context={'field': 'plan'}
        )
    if billing_cycle not in BILLING_CYCLES:
        raise ValidationError(
            f'Invalid billing cycle: {billing_cycle!r}. Must be monthly or annual.',
            context={'field': 'billing_cycle'}
        )
    if isinstance(unit_count, bool) or not isinstance(unit_count, int) or unit_count < 0:
        raise ValidationError(
            'Unit count must be a non-negative integer',
            context={'field': 'unit_count'}
        )


def _tier_price(plan: str, billing_cycle: str, unit_count: int,
                pricing: Dict[str, Dict[str, Dict[str, Decimal]]]) -> Decimal:
    tier = pricing[plan][billing_cycle]
    raw = unit_count * Decimal(tier['unit_rate'])
    return round_money(max(raw, Decimal(tier['minimum'])))


def monthly_price(plan: str, unit_count: int,
                  pricing: Optional[Dict[str, Dict[str, Dict[str, Decimal]]]] = None) -> Decimal:
    """
    Monthly price for a plan.

    Args:
        plan: 'starter', 'professional' or 'enterprise'
        unit_count: Number of active children
        pricing: Pricing table, defaults to PLAN_PRICING

    Returns:
        Price in dollars, never below the plan's monthly minimum
    """
    _validate(plan, unit_count)
    return _tier_price(plan, 'monthly', unit_count, pricing or PLAN_PRICING)


def annual_price(plan: str, unit_count: int,
                 pricing: Optional[Dict[str, Dict[str, Dict[str, Decimal]]]] = None) -> Dict[str, Decimal]:
    """
    Annual price for a plan, from the annual rate and annual minimum.

    Args:
        plan: 'starter', 'professional' or 'enterprise'
        unit_count: Number of active children
        pricing: Pricing table, defaults to PLAN_PRICING

    Returns:
        {'annual': yearly charge, 'equivalent_monthly': annual / 12}
    """
    _validate(plan, unit_count, 'annual')
    annual = _tier_price(plan, 'annual', unit_count, pricing or PLAN_PRICING)
    return {
        'annual': annual,
        'equivalent_monthly': round_money(annual / 12),
    }


def price_for_cycle(plan: str, billing_cycle: str, unit_count: int,
                    pricing: Optional[Dict[str, Dict[str, Dict[str, Decimal]]]] = None) -> Decimal:
    """Amount charged per billing period for the given cycle."""
    _validate(plan, unit_count, billing_cycle)
    if billing_cycle == 'annual':
        return annual_price(plan, unit_count, pricing)['annual']
    return monthly_price(plan, unit_count, pricing)


def recurring_interval(billing_cycle: str) -> str:
    """Stripe recurring interval for a billing cycle."""
    return 'year' if billing_cycle == 'annual' else 'month'
