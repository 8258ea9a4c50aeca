"""
Trial Provisioning
Owner: CC1
Domain: Onboarding

New organizations start on a time-boxed trial with professional features.
Signup calls start_trial(); checkout uses trial_days_remaining() to carry
the unused part of the trial over to the paid subscription.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, Union

from .plans import TRIAL_CONFIG


def as_utc(value: Union[datetime, str, None]) -> Optional[datetime]:
    """Normalize a stored timestamp to an aware UTC datetime (naive = UTC)."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_trial_expired(tenant: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    """True if the organization is on trial and the trial end has passed."""
    if tenant.get('plan') != 'trial':
        return False
    trial_ends_at = as_utc(tenant.get('trial_ends_at'))
    if trial_ends_at is None:
        return False
    now = as_utc(now) or datetime.now(timezone.utc)
    return trial_ends_at < now


def trial_days_remaining(tenant: Dict[str, Any], now: Optional[datetime] = None) -> int:
    """
    Whole days left on an organization's trial, rounded up.

    Args:
        tenant: Organization dict with plan and trial_ends_at
        now: Current time, defaults to now

    Returns:
        Days remaining, 0 if not on trial or already expired
    """
    if tenant.get('plan') != 'trial':
        return 0
    trial_ends_at = as_utc(tenant.get('trial_ends_at'))
    if trial_ends_at is None:
        return TRIAL_CONFIG['duration_days']
    now = as_utc(now) or datetime.now(timezone.utc)
    remaining = math.ceil((trial_ends_at - now).total_seconds() / 86400)
    return max(remaining, 0)


def start_trial(cur, organization_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Put an organization on a fresh trial.

    Args:
        cur: Active database cursor (caller owns the transaction).
        organization_id: Organization UUID.
        now: Trial start, defaults to now.

    Returns:
        dict with keys: organization_id, plan, trial_ends_at, max_children, max_staff
    """
    from .db import update_tenant

    now = as_utc(now) or datetime.now(timezone.utc)
    trial_ends_at = now + timedelta(days=TRIAL_CONFIG['duration_days'])

    update_tenant(
        cur,
        organization_id,
        plan='trial',
        trial_ends_at=trial_ends_at,
        max_children=TRIAL_CONFIG['max_children'],
        max_staff=TRIAL_CONFIG['max_staff'],
    )
    print(f"[PROVISION] Started {TRIAL_CONFIG['duration_days']}-day trial for organization {organization_id}", flush=True)

    return {
        'organization_id': organization_id,
        'plan': 'trial',
        'trial_ends_at': trial_ends_at,
        'max_children': TRIAL_CONFIG['max_children'],
        'max_staff': TRIAL_CONFIG['max_staff'],
    }
