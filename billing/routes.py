"""
Childcare Billing Subscription Routes
Owner: CC2
Workstream: W2P3

POST /api/stripe/subscription/checkout  - Start a subscription checkout
POST /api/stripe/subscription/change    - Change plan and/or billing cycle
POST /api/stripe/subscription/portal    - Open the Stripe customer portal
GET  /api/stripe/health                 - Billing module health

The organization always comes from the bearer token. Prices are computed
server-side; an amount in the request body is ignored and, if it
disagrees with the real price, raised as a security alert.
"""

import sys
from decimal import Decimal, InvalidOperation

import stripe
from flask import Blueprint, request, jsonify, g

from audit_service import audit_logger, get_client_info
from auth import require_jwt
from rate_limiter import rate_limit

from .db import PostgresTenantStore
from .exceptions import BillingError
from .stripe_handler import StripeProcessor
from .subscriptions import SubscriptionOrchestrator


def _error_response(e: BillingError):
    print(f"[BILLING] {request.path} -> {e.status_code} {e.error_code}: {e.message}", file=sys.stderr, flush=True)
    return jsonify(e.to_dict()), e.status_code


def _check_client_amount(orchestrator, data: dict, server_amount: Decimal, actor, organization_id: str, client):
    """Flag a request whose client-side amount differs from the server price."""
    if 'amount' not in data or data['amount'] is None:
        return
    try:
        claimed = Decimal(str(data['amount']))
    except (InvalidOperation, ValueError):
        claimed = None
    if claimed is not None and claimed == server_amount:
        return
    print(f"[BILLING] Amount mismatch for org={organization_id}: client={data['amount']!r} server={server_amount}",
          file=sys.stderr, flush=True)
    orchestrator.audit.security_alert(
        'Client amount does not match server price',
        details={
            'client_amount': str(data['amount']),
            'server_amount': str(server_amount),
            'path': request.path,
        },
        actor=actor,
        organization_id=organization_id,
        client=client,
    )


def init_subscriptions(get_db, get_cursor, orchestrator=None, limiter=None):
    """
    Build the subscription blueprint.

    Args:
        get_db: Function to get database connection
        get_cursor: Function to get database cursor
        orchestrator: SubscriptionOrchestrator, defaults to Postgres + Stripe + audit_logger
        limiter: RateLimiter for the strict preset, defaults to the shared limiter

    Returns:
        Flask Blueprint mounted at /api/stripe
    """
    if orchestrator is None:
        orchestrator = SubscriptionOrchestrator(
            PostgresTenantStore(get_db, get_cursor),
            StripeProcessor(),
            audit_logger,
        )

    bp = Blueprint('subscriptions', __name__, url_prefix='/api/stripe')

    @bp.route('/subscription/checkout', methods=['POST'])
    @rate_limit('strict', 'subscription-checkout', limiter)
    @require_jwt
    def subscription_checkout():
        """
        Start a subscription checkout.

        Request body:
        {
            "plan": "professional",
            "billing_cycle": "monthly"
        }

        Returns:
        {
            "url": "https://checkout.stripe.com/...",
            "session_id": "cs_...",
            "amount": "125.00",
            ...
        }
        """
        data = request.get_json(silent=True) or {}
        actor = g.current_user
        organization_id = actor['tenant_id']
        client = get_client_info(request.headers, request.remote_addr)

        try:
            result = orchestrator.start_checkout(
                actor,
                organization_id,
                data.get('plan'),
                data.get('billing_cycle') or data.get('billingCycle') or 'monthly',
                client=client,
            )
        except BillingError as e:
            return _error_response(e)

        _check_client_amount(orchestrator, data, result['amount'], actor, organization_id, client)

        return jsonify({
            'url': result['url'],
            'session_id': result['session_id'],
            'plan': result['plan'],
            'billing_cycle': result['billing_cycle'],
            'amount': str(result['amount']),
            'child_count': result['unit_count'],
            'trial_days': result['trial_days'],
        })

    @bp.route('/subscription/change', methods=['POST'])
    @rate_limit('strict', 'subscription-change', limiter)
    @require_jwt
    def subscription_change():
        """
        Change plan and/or billing cycle of an existing subscription.

        Request body:
        {
            "plan": "enterprise",
            "billing_cycle": "annual"    (optional)
        }
        """
        data = request.get_json(silent=True) or {}
        actor = g.current_user
        organization_id = actor['tenant_id']
        client = get_client_info(request.headers, request.remote_addr)

        try:
            result = orchestrator.change_plan(
                actor,
                organization_id,
                data.get('plan'),
                data.get('billing_cycle') or data.get('billingCycle'),
                client=client,
            )
        except BillingError as e:
            return _error_response(e)

        _check_client_amount(orchestrator, data, result['new_price'], actor, organization_id, client)

        return jsonify({
            'success': True,
            'plan': result['plan'],
            'billing_cycle': result['billing_cycle'],
            'is_upgrade': result['is_upgrade'],
            'prorated': result['prorated'],
            'effective': result['effective'],
            'new_price': str(result['new_price']),
            'child_count': result['unit_count'],
            'subscription_id': result['subscription_id'],
        })

    @bp.route('/subscription/portal', methods=['POST'])
    @rate_limit('strict', 'subscription-portal', limiter)
    @require_jwt
    def subscription_portal():
        """Open the Stripe customer portal. Returns {"url": ...}."""
        actor = g.current_user
        client = get_client_info(request.headers, request.remote_addr)

        try:
            result = orchestrator.open_portal(actor, actor['tenant_id'], client=client)
        except BillingError as e:
            return _error_response(e)

        return jsonify({'url': result['url']})

    @bp.route('/health', methods=['GET'])
    def billing_health():
        """Health check for billing module."""
        return jsonify({
            'status': 'ok',
            'module': 'billing',
            'stripe_configured': bool(stripe.api_key),
        })

    return bp
