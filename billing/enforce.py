"""
Childcare Billing Plan Gate
Owner: CC2
Workstream: W2P4

Plan-tier access control for dashboard pages and API features:
- Page navigations below the required tier redirect to the billing tab
  with an upgrade hint
- API calls get a 403 with the required and current plan
- An expired trial reads as cancelled without touching the stored plan

Decisions are made per request from the current organization row.
"""

import sys
from datetime import datetime
from functools import wraps
from typing import Optional, Dict, Any
from urllib.parse import urlencode

from flask import request, jsonify, redirect, g

from .plans import (
    PLAN_HIERARCHY,
    BILLING_SETTINGS_PATH,
    plan_level,
    get_minimum_plan,
    get_route_feature,
)
from .provisioning import is_trial_expired

# Above every real plan, so unknown features are never granted
DENIED_LEVEL = max(PLAN_HIERARCHY.values()) + 1


def effective_level(tenant: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> int:
    """
    Plan level an organization is entitled to right now.

    Args:
        tenant: Organization dict with plan and trial_ends_at
        now: Current time, defaults to now

    Returns:
        Level from PLAN_HIERARCHY; 0 for an expired trial or missing organization
    """
    if not tenant:
        return 0
    if is_trial_expired(tenant, now):
        return 0
    return plan_level(tenant.get('plan'))


def required_plan(route_or_feature: str) -> Optional[str]:
    """Cheapest plan unlocking a dashboard path or feature key, None if ungated or unknown."""
    feature = get_route_feature(route_or_feature) if route_or_feature.startswith('/') else route_or_feature
    if feature is None:
        return None
    return get_minimum_plan(feature)


def required_level(route_or_feature: str) -> int:
    """
    Level needed for a dashboard path or feature key.

    Paths not in the route table are ungated (0). Feature keys no plan
    offers are denied outright.
    """
    if route_or_feature.startswith('/'):
        feature = get_route_feature(route_or_feature)
        if feature is None:
            return 0
    else:
        feature = route_or_feature

    plan_id = get_minimum_plan(feature)
    if plan_id is None:
        return DENIED_LEVEL
    return PLAN_HIERARCHY[plan_id]


def is_allowed(tenant: Optional[Dict[str, Any]], route_or_feature: str,
               now: Optional[datetime] = None) -> bool:
    return effective_level(tenant, now) >= required_level(route_or_feature)


def wants_json(req=None) -> bool:
    """API-style request: /api/ path or a JSON Accept header."""
    req = req or request
    if req.path.startswith('/api/'):
        return True
    best = req.accept_mimetypes.best
    return best == 'application/json'


def plan_required_response(required: Optional[str], tenant: Optional[Dict[str, Any]],
                           api: bool, now: Optional[datetime] = None):
    """
    Denial for a gated request.

    Args:
        required: Plan that would unlock the request
        tenant: Organization dict (for the current plan)
        api: 403 JSON if True, redirect to the billing tab otherwise
        now: Current time for trial expiry

    Returns:
        Flask response
    """
    current = (tenant or {}).get('plan') or 'cancelled'
    if api:
        response = jsonify({
            'error': 'plan_required',
            'required_plan': required,
            'current_plan': current,
            'trial_expired': bool(tenant) and is_trial_expired(tenant, now),
        })
        response.status_code = 403
        return response

    query = {'tab': 'billing'}
    if required:
        query['upgrade'] = required
    return redirect(f'{BILLING_SETTINGS_PATH}?{urlencode(query)}', code=302)


def gate_decision(tenant: Optional[Dict[str, Any]], path: str, api: bool,
                  now: Optional[datetime] = None):
    """
    Apply the plan gate to a request path.

    Returns:
        None if allowed, otherwise the denial response
    """
    if is_allowed(tenant, path, now):
        return None
    required = required_plan(path)
    print(
        f"[BILLING] Plan gate denied {path}: org={(tenant or {}).get('id')}, "
        f"plan={(tenant or {}).get('plan')}, requires={required}",
        flush=True
    )
    return plan_required_response(required, tenant, api, now)


def _load_tenant(get_cursor_func, organization_id: str) -> Optional[Dict[str, Any]]:
    from .db import get_tenant

    cur = get_cursor_func()
    try:
        return get_tenant(cur, organization_id)
    finally:
        cur.close()


def init_plan_gate(app, get_cursor_func):
    """
    Register the dashboard plan gate as a before_request hook.

    Only paths in ROUTE_FEATURE_MAP are checked. Unauthenticated requests
    pass through untouched; login is enforced elsewhere.

    Args:
        app: Flask application
        get_cursor_func: Function to get database cursor
    """
    from auth import get_request_user

    @app.before_request
    def plan_gate():
        if get_route_feature(request.path) is None:
            return None

        user = get_request_user()
        if not user or not user.get('tenant_id'):
            return None

        try:
            tenant = _load_tenant(get_cursor_func, user['tenant_id'])
        except Exception as e:
            print(f"[BILLING] Error loading organization for plan gate: {e}", file=sys.stderr)
            # On error, allow the request (fail open for now)
            return None

        if tenant is None:
            return None
        g.organization = tenant
        return gate_decision(tenant, request.path, wants_json())

    return plan_gate


def require_feature(feature: str, get_cursor_func):
    """
    Decorator factory gating an API view on a plan feature.

    Must be applied inside require_jwt so g.current_user is set.

    Args:
        feature: Feature key from PLAN_FEATURES
        get_cursor_func: Function to get database cursor

    Returns:
        Decorator function
    """
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            user = g.get('current_user') or {}
            tenant = _load_tenant(get_cursor_func, user.get('tenant_id')) if user.get('tenant_id') else None

            if not is_allowed(tenant, feature):
                print(f"[BILLING] Feature {feature} denied: org={user.get('tenant_id')}", flush=True)
                return plan_required_response(get_minimum_plan(feature), tenant, api=True)

            g.organization = tenant
            return f(*args, **kwargs)

        return decorated
    return decorator
