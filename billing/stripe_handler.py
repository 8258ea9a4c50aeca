"""
Childcare Billing Stripe Handler
Owner: CC2
Workstream: W2P2

Thin wrapper over stripe-python for the subscription orchestrator:
- customers (one per organization)
- subscription checkout sessions with inline per-child pricing
- subscription retrieve / price replacement
- customer portal sessions

Every Stripe failure comes out as ExternalProcessorError with Stripe's
message and HTTP status. Calls are bounded by STRIPE_TIMEOUT_SECONDS and
never retried here; idempotency keys make a caller-level retry safe.
"""

import os
import sys
from typing import Optional, Dict, Any

import stripe

from .exceptions import ExternalProcessorError
from .plans import CURRENCY

STRIPE_SECRET_KEY = os.environ.get('STRIPE_SECRET_KEY')
STRIPE_TIMEOUT_SECONDS = int(os.environ.get('STRIPE_TIMEOUT_SECONDS', 20))
STRIPE_MAX_NETWORK_RETRIES = int(os.environ.get('STRIPE_MAX_NETWORK_RETRIES', 0))

PRODUCT_NAME_PREFIX = 'ChildCare Pro'


def configure_stripe(api_key: Optional[str] = None,
                     timeout: int = STRIPE_TIMEOUT_SECONDS,
                     max_network_retries: int = STRIPE_MAX_NETWORK_RETRIES) -> None:
    """Set the global Stripe key, request timeout and retry policy."""
    stripe.api_key = api_key or STRIPE_SECRET_KEY
    stripe.max_network_retries = max_network_retries
    stripe.default_http_client = stripe.RequestsClient(timeout=timeout)


configure_stripe()


def _processor_error(e: Exception, action: str) -> ExternalProcessorError:
    if isinstance(e, stripe.APIConnectionError):
        # Covers request timeouts; the outcome on Stripe's side is unknown
        message = 'Payment processor did not respond. Please try again.'
        status = 502
    else:
        message = getattr(e, 'user_message', None) or str(e) or 'Payment processor error'
        status = getattr(e, 'http_status', None) or 502
    print(f"[STRIPE] {action} failed ({type(e).__name__}, {status}): {e}", file=sys.stderr, flush=True)
    return ExternalProcessorError(message, status_code=status, processor_code=getattr(e, 'code', None))


def _plain(obj) -> Dict[str, Any]:
    return dict(obj) if obj else {}


class StripeProcessor:
    """
    Payment processor used by SubscriptionOrchestrator.

    Results are reduced to plain dicts so the orchestrator never depends
    on stripe-python object types.
    """

    def _require_configured(self) -> None:
        if not stripe.api_key:
            raise ExternalProcessorError('Stripe is not configured.', status_code=503)

    def create_customer(self, email: Optional[str], name: Optional[str],
                        organization_id: str, idempotency_key: str) -> str:
        """
        Create the organization's Stripe customer.

        Args:
            email: Billing email
            name: Organization name
            organization_id: Stored in customer metadata
            idempotency_key: Stable per organization so a retry returns the same customer

        Returns:
            Stripe customer ID (cus_xxx)
        """
        self._require_configured()
        try:
            customer = stripe.Customer.create(
                email=email,
                name=name,
                metadata={'organizationId': organization_id},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            raise _processor_error(e, 'create_customer')
        print(f"[STRIPE] Created customer {customer['id']} for organization {organization_id}", flush=True)
        return customer['id']

    def create_checkout_session(
        self,
        customer_id: str,
        plan: str,
        billing_cycle: str,
        unit_amount: int,
        interval: str,
        unit_count: int,
        trial_days: int,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        idempotency_key: str
    ) -> Dict[str, Any]:
        """
        Create a hosted checkout session for a new subscription.

        Args:
            customer_id: Stripe customer ID
            plan: Plan being purchased
            billing_cycle: 'monthly' or 'annual'
            unit_amount: Price per period in cents
            interval: 'month' or 'year'
            unit_count: Active children the price was computed for
            trial_days: Trial period to grant, 0 for none
            success_url: Redirect after payment
            cancel_url: Redirect on abandon
            metadata: Copied to both the session and the subscription
            idempotency_key: Deduplicates double submits

        Returns:
            {'id': session ID, 'url': hosted checkout URL}
        """
        self._require_configured()
        subscription_data: Dict[str, Any] = {'metadata': dict(metadata)}
        if trial_days > 0:
            subscription_data['trial_period_days'] = trial_days

        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                mode='subscription',
                payment_method_types=['card'],
                line_items=[{
                    'price_data': {
                        'currency': CURRENCY,
                        'product_data': {
                            'name': f'{PRODUCT_NAME_PREFIX} - {plan.capitalize()}',
                            'description': f'{unit_count} children, billed {billing_cycle}',
                        },
                        'unit_amount': unit_amount,
                        'recurring': {'interval': interval},
                    },
                    'quantity': 1,
                }],
                success_url=success_url,
                cancel_url=cancel_url,
                subscription_data=subscription_data,
                metadata=dict(metadata, type='subscription'),
                allow_promotion_codes=True,
                billing_address_collection='required',
                customer_update={'address': 'auto', 'name': 'auto'},
                payment_method_collection='always',
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            raise _processor_error(e, 'create_checkout_session')
        return {'id': session['id'], 'url': session['url']}

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """
        Fetch a subscription.

        Returns:
            {'id', 'status', 'metadata', 'items': [{'id', 'product'}]}
        """
        self._require_configured()
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise _processor_error(e, 'retrieve_subscription')

        items = []
        for item in subscription['items']['data']:
            product = item['price']['product']
            items.append({
                'id': item['id'],
                'product': product if isinstance(product, str) else product['id'],
            })
        return {
            'id': subscription['id'],
            'status': subscription['status'],
            'metadata': _plain(subscription.get('metadata')),
            'items': items,
        }

    def update_subscription(
        self,
        subscription_id: str,
        item_id: str,
        product_id: str,
        unit_amount: int,
        interval: str,
        proration_behavior: str,
        metadata: Dict[str, str],
        idempotency_key: str
    ) -> Dict[str, Any]:
        """
        Replace the subscription's single item price.

        Args:
            subscription_id: Stripe subscription ID
            item_id: The subscription item being repriced
            product_id: Product the existing price belongs to
            unit_amount: New price per period in cents
            interval: 'month' or 'year'
            proration_behavior: 'create_prorations' or 'none'
            metadata: Full replacement metadata
            idempotency_key: Deduplicates retries within a time bucket

        Returns:
            {'id', 'status'}
        """
        self._require_configured()
        try:
            subscription = stripe.Subscription.modify(
                subscription_id,
                items=[{
                    'id': item_id,
                    'price_data': {
                        'currency': CURRENCY,
                        'product': product_id,
                        'unit_amount': unit_amount,
                        'recurring': {'interval': interval},
                    },
                }],
                proration_behavior=proration_behavior,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            raise _processor_error(e, 'update_subscription')
        print(f"[STRIPE] Updated subscription {subscription_id} ({proration_behavior})", flush=True)
        return {'id': subscription['id'], 'status': subscription['status']}

    def create_portal_session(self, customer_id: str, return_url: str) -> Dict[str, Any]:
        """Create a customer portal session. Returns {'url'}."""
        self._require_configured()
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as e:
            raise _processor_error(e, 'create_portal_session')
        return {'url': session['url']}
