"""
Childcare Billing Subscription Orchestrator
Owner: CC2
Workstream: W2P3

Checkout, plan change and customer portal for an organization:
- prices are always computed here from the active child count
- Stripe is called first; the organization row is written only after
  Stripe accepted the change
- a local write that fails after Stripe succeeded is a ReconciliationGap:
  audited at critical severity, never reported as a failed billing action

Collaborators are injected (store, processor, audit) so the flow can be
exercised without Postgres or Stripe.
"""

import os
import sys
import time
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Callable

from auth import ADMIN_ROLE

from .exceptions import (
    BillingError,
    ValidationError,
    NotFoundError,
    ConflictError,
    Unauthorized,
    Forbidden,
    ReconciliationGap,
)
from .plans import (
    PAID_PLANS,
    BILLING_CYCLES,
    PLAN_PRICING,
    TRIAL_CONFIG,
    BILLING_SETTINGS_PATH,
    plan_level,
    get_plan_limits,
)
from .pricing import price_for_cycle, to_minor_units, recurring_interval
from .provisioning import trial_days_remaining

APP_BASE_URL = os.environ.get('APP_BASE_URL', 'http://localhost:3000').rstrip('/')
IDEMPOTENCY_BUCKET_SECONDS = int(os.environ.get('IDEMPOTENCY_BUCKET_SECONDS', 60))

# Stripe statuses a subscription never comes back from
TERMINAL_SUBSCRIPTION_STATUSES = ('canceled', 'incomplete_expired')


class SubscriptionOrchestrator:
    """
    Args:
        store: Tenant store (get, update, count_billable_units, record_subscription_event)
        processor: Payment processor (StripeProcessor or compatible)
        audit: AuditLogger
        pricing: Pricing table, defaults to PLAN_PRICING
        clock: Returns epoch seconds
        base_url: Public app URL for checkout/portal redirects
        bucket_seconds: Width of the idempotency time bucket
    """

    def __init__(
        self,
        store,
        processor,
        audit,
        pricing: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None,
        clock: Callable[[], float] = time.time,
        base_url: str = APP_BASE_URL,
        bucket_seconds: int = IDEMPOTENCY_BUCKET_SECONDS
    ):
        self.store = store
        self.processor = processor
        self.audit = audit
        self.pricing = pricing or PLAN_PRICING
        self.clock = clock
        self.base_url = base_url.rstrip('/')
        self.bucket_seconds = bucket_seconds

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def _bucket(self) -> int:
        return int(self.clock() // self.bucket_seconds)

    def _bucket_start(self) -> datetime:
        # Everything sent under a bucketed idempotency key must derive from the bucket
        return datetime.fromtimestamp(self._bucket() * self.bucket_seconds, tz=timezone.utc)

    def _billing_url(self, **params) -> str:
        query = '&'.join(['tab=billing'] + [f'{k}={v}' for k, v in params.items()])
        return f'{self.base_url}{BILLING_SETTINGS_PATH}?{query}'

    def _authorize(self, actor: Optional[Dict[str, Any]], tenant_id: str, client=None) -> None:
        if not actor or not actor.get('sub'):
            raise Unauthorized('Authentication required')
        if actor.get('tenant_id') == tenant_id:
            return
        if actor.get('role') == ADMIN_ROLE:
            self.audit.admin_access(actor, 'billing', organization_id=tenant_id, client=client)
            return
        self.audit.admin_denied(
            actor,
            'Cross-organization billing access',
            organization_id=tenant_id,
            client=client,
        )
        raise Forbidden('Not allowed to manage billing for this organization')

    def _load_tenant(self, tenant_id: str) -> Dict[str, Any]:
        tenant = self.store.get(tenant_id)
        if not tenant:
            raise NotFoundError('Organization not found')
        return tenant

    def _reconciliation_gap(self, message: str, tenant_id: str, external_id: Optional[str],
                            intended: Dict[str, Any], cause: Exception, actor=None, client=None) -> ReconciliationGap:
        gap = ReconciliationGap(message, tenant_id, external_id=external_id, intended=intended, cause=cause)
        print(f"[BILLING] RECONCILIATION GAP org={tenant_id} external={external_id}: {cause}", file=sys.stderr, flush=True)
        self.audit.reconciliation_gap(gap, actor=actor, client=client)
        return gap

    @staticmethod
    def _validate_target(plan: str, billing_cycle: Optional[str]) -> None:
        if plan not in PAID_PLANS:
            raise ValidationError(
                'Invalid plan. Must be starter, professional, or enterprise.',
                context={'field': 'plan'}
            )
        if billing_cycle is not None and billing_cycle not in BILLING_CYCLES:
            raise ValidationError(
                'Invalid billing cycle. Must be monthly or annual.',
                context={'field': 'billing_cycle'}
            )

    def checkout_trial_days(self, tenant: Dict[str, Any], now: Optional[datetime] = None) -> int:
        """
        Trial to grant on a new checkout.

        Remaining trial days while on trial, a full trial for an organization
        that never had a plan, nothing for a returning (cancelled) one.
        """
        plan = tenant.get('plan')
        if plan == 'trial':
            return trial_days_remaining(tenant, now or self._now())
        if not plan:
            return TRIAL_CONFIG['duration_days']
        return 0

    def _ensure_customer(self, tenant: Dict[str, Any], actor, client=None) -> str:
        if tenant.get('stripe_customer_id'):
            return tenant['stripe_customer_id']

        tenant_id = tenant['id']
        email = tenant.get('email')
        if not email and actor.get('tenant_id') == tenant_id:
            email = actor.get('email')
        customer_id = self.processor.create_customer(
            email=email,
            name=tenant.get('name'),
            organization_id=tenant_id,
            idempotency_key=f'customer-{tenant_id}',
        )
        try:
            self.store.update(tenant_id, stripe_customer_id=customer_id)
        except Exception as e:
            # The stable idempotency key returns the same customer next time
            self._reconciliation_gap(
                'Stripe customer created but not saved on organization',
                tenant_id, customer_id, {'stripe_customer_id': customer_id}, e,
                actor=actor, client=client,
            )
        return customer_id

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def start_checkout(self, actor, tenant_id: str, plan: str, billing_cycle: str = 'monthly',
                       client: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """
        Create a hosted checkout session for an organization's first subscription.

        Args:
            actor: Authenticated user ({'sub', 'email', 'tenant_id', 'role'})
            tenant_id: Organization UUID
            plan: 'starter', 'professional' or 'enterprise'
            billing_cycle: 'monthly' or 'annual'
            client: {'ip_address', 'user_agent'} for the audit trail

        Returns:
            {'url', 'session_id', 'plan', 'billing_cycle', 'amount', 'unit_count', 'trial_days'}

        Raises:
            ValidationError, NotFoundError, ConflictError, Unauthorized,
            Forbidden, ExternalProcessorError
        """
        self._authorize(actor, tenant_id, client)
        self._validate_target(plan, billing_cycle)
        tenant = self._load_tenant(tenant_id)

        if tenant.get('stripe_subscription_id'):
            raise ConflictError(
                'Organization already has a subscription. Use plan change instead.',
                context={'subscription_id': tenant['stripe_subscription_id']}
            )

        customer_id = self._ensure_customer(tenant, actor, client)

        unit_count = self.store.count_billable_units(tenant_id)
        amount = price_for_cycle(plan, billing_cycle, unit_count, self.pricing)
        trial_days = self.checkout_trial_days(tenant)

        metadata = {
            'organizationId': tenant_id,
            'plan': plan,
            'billingCycle': billing_cycle,
            'childCount': str(unit_count),
        }

        session = self.processor.create_checkout_session(
            customer_id=customer_id,
            plan=plan,
            billing_cycle=billing_cycle,
            unit_amount=to_minor_units(amount),
            interval=recurring_interval(billing_cycle),
            unit_count=unit_count,
            trial_days=trial_days,
            success_url=self._billing_url(success='true', plan=plan),
            cancel_url=self._billing_url(canceled='true'),
            metadata=metadata,
            idempotency_key=f'sub-checkout-{tenant_id}-{plan}-{billing_cycle}-{self._bucket()}',
        )

        print(
            f"[BILLING] Checkout session {session['id']} for org={tenant_id}: "
            f"{plan}/{billing_cycle} ${amount} ({unit_count} children, {trial_days} trial days)",
            flush=True
        )
        self.audit.checkout_initiated(actor, tenant_id, plan, billing_cycle, amount, unit_count, client=client)

        return {
            'url': session['url'],
            'session_id': session['id'],
            'plan': plan,
            'billing_cycle': billing_cycle,
            'amount': amount,
            'unit_count': unit_count,
            'trial_days': trial_days,
        }

    def change_plan(self, actor, tenant_id: str, target_plan: str, target_cycle: Optional[str] = None,
                    client: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """
        Move an existing subscription to another plan and/or billing cycle.

        Upgrades are prorated immediately; downgrades and cycle-only changes
        take effect from the next period. The organization's plan and limits
        are updated right away in both cases.

        Args:
            actor: Authenticated user
            tenant_id: Organization UUID
            target_plan: Plan to move to
            target_cycle: Billing cycle to move to, None keeps the current one
            client: {'ip_address', 'user_agent'} for the audit trail

        Returns:
            Dict with plan, billing_cycle, is_upgrade, prorated, effective,
            new_price, unit_amount, unit_count, subscription_id and
            reconciliation_pending

        Raises:
            ValidationError, NotFoundError, ConflictError, Unauthorized,
            Forbidden, ExternalProcessorError
        """
        self._authorize(actor, tenant_id, client)
        self._validate_target(target_plan, target_cycle)
        tenant = self._load_tenant(tenant_id)

        subscription_id = tenant.get('stripe_subscription_id')
        if not subscription_id:
            raise ConflictError('No active subscription. Start a checkout first.')

        subscription = self.processor.retrieve_subscription(subscription_id)
        if subscription['status'] in TERMINAL_SUBSCRIPTION_STATUSES:
            raise ConflictError(
                'Subscription is canceled. Create a new subscription.',
                context={'subscription_status': subscription['status']}
            )

        current_plan = tenant.get('plan')
        external_metadata = subscription.get('metadata') or {}
        current_cycle = next(
            (c for c in (external_metadata.get('billingCycle'), tenant.get('billing_cycle')) if c in BILLING_CYCLES),
            'monthly'
        )
        cycle = target_cycle or current_cycle

        if target_plan == current_plan and cycle == current_cycle:
            raise ConflictError(f'Already on the {target_plan} plan, billed {cycle}.')

        items = subscription.get('items') or []
        if not items:
            raise BillingError('No subscription items found.', status_code=500,
                               error_code='SUBSCRIPTION_ITEMS_MISSING')
        item = items[0]

        unit_count = self.store.count_billable_units(tenant_id)
        new_price = price_for_cycle(target_plan, cycle, unit_count, self.pricing)
        unit_amount = to_minor_units(new_price)

        is_upgrade = plan_level(target_plan) > plan_level(current_plan)
        proration_behavior = 'create_prorations' if is_upgrade else 'none'

        metadata = dict(external_metadata)
        metadata.update({
            'plan': target_plan,
            'billingCycle': cycle,
            'childCount': str(unit_count),
            'previousPlan': current_plan or '',
            'changedAt': self._bucket_start().isoformat(),
        })

        updated = self.processor.update_subscription(
            subscription_id=subscription_id,
            item_id=item['id'],
            product_id=item['product'],
            unit_amount=unit_amount,
            interval=recurring_interval(cycle),
            proration_behavior=proration_behavior,
            metadata=metadata,
            idempotency_key=f'sub-change-{tenant_id}-{target_plan}-{cycle}-{self._bucket()}',
        )
        subscription_id = updated.get('id') or subscription_id

        # Stripe has accepted the change from here on
        limits = get_plan_limits(target_plan)
        intended = {
            'plan': target_plan,
            'billing_cycle': cycle,
            'max_children': limits['max_children'],
            'max_staff': limits['max_staff'],
        }
        reconciliation_pending = False
        try:
            self.store.update(tenant_id, **intended)
        except Exception as e:
            reconciliation_pending = True
            self._reconciliation_gap(
                'Subscription changed in Stripe but organization row not updated',
                tenant_id, subscription_id, intended, e, actor=actor, client=client,
            )

        event_type = 'plan.upgraded' if is_upgrade else 'plan.downgraded'
        event_data = {
            'previousPlan': current_plan,
            'newPlan': target_plan,
            'billingCycle': cycle,
            'proration': 'immediate' if is_upgrade else 'next_period',
            'unitAmount': str(new_price),
            'unitCount': unit_count,
        }
        try:
            self.store.record_subscription_event(subscription_id, tenant_id, event_type, event_data)
        except Exception as e:
            reconciliation_pending = True
            self._reconciliation_gap(
                f'Subscription changed in Stripe but {event_type} event not recorded',
                tenant_id, subscription_id, {'event_type': event_type, **event_data}, e,
                actor=actor, client=client,
            )

        print(
            f"[BILLING] Plan change org={tenant_id}: {current_plan} -> {target_plan} "
            f"({cycle}, ${new_price}, {proration_behavior})",
            flush=True
        )
        self.audit.plan_changed(
            actor, tenant_id, subscription_id, current_plan or '', target_plan, cycle,
            new_price, is_upgrade, client=client,
        )

        return {
            'plan': target_plan,
            'billing_cycle': cycle,
            'is_upgrade': is_upgrade,
            'prorated': is_upgrade,
            'effective': 'immediate' if is_upgrade else 'next_period',
            'new_price': new_price,
            'unit_amount': unit_amount,
            'unit_count': unit_count,
            'subscription_id': subscription_id,
            'reconciliation_pending': reconciliation_pending,
        }

    def open_portal(self, actor, tenant_id: str, client: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """
        Create a Stripe customer portal session.

        Returns:
            {'url': portal session URL}

        Raises:
            NotFoundError, ConflictError, Unauthorized, Forbidden,
            ExternalProcessorError
        """
        self._authorize(actor, tenant_id, client)
        tenant = self._load_tenant(tenant_id)

        customer_id = tenant.get('stripe_customer_id')
        if not customer_id:
            raise ConflictError('No Stripe customer found for this organization. Please subscribe first.')

        session = self.processor.create_portal_session(customer_id, self._billing_url())
        self.audit.admin_access(actor, 'stripe-portal', organization_id=tenant_id, client=client)
        return {'url': session['url']}
