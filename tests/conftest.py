"""
Shared pytest fixtures for the billing tests.

Postgres and Stripe are replaced with in-memory fakes; the audit trail uses
the real AuditLogger writing inline to a list.
"""

import os
from datetime import datetime, timedelta, timezone

import pytest

# Keep tests away from real services regardless of the developer's shell
os.environ.pop("DATABASE_URL", None)
os.environ.pop("RATE_LIMIT_REDIS_URL", None)
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")

from audit_service import AuditLogger  # noqa: E402
from billing.subscriptions import SubscriptionOrchestrator  # noqa: E402

# 2026-03-01T12:00:00Z
FIXED_NOW = 1772366400.0
ORG_ID = "11111111-1111-1111-1111-111111111111"
OTHER_ORG_ID = "22222222-2222-2222-2222-222222222222"


def make_tenant(**overrides):
    """Organization row as returned by billing.db.get_tenant."""
    tenant = {
        "id": ORG_ID,
        "name": "Sunshine Daycare",
        "email": "owner@sunshine.test",
        "plan": "starter",
        "billing_cycle": "monthly",
        "stripe_customer_id": "cus_123",
        "stripe_subscription_id": "sub_123",
        "trial_ends_at": None,
        "max_children": 50,
        "max_staff": 10,
        "updated_at": None,
    }
    tenant.update(overrides)
    return tenant


class FakeTenantStore:
    def __init__(self, tenants=None, units=None):
        self.tenants = {t["id"]: dict(t) for t in (tenants or [])}
        self.units = units or {}
        self.updates = []
        self.events = []
        self.fail_updates = False
        self.fail_events = False

    def get(self, organization_id):
        tenant = self.tenants.get(organization_id)
        return dict(tenant) if tenant else None

    def update(self, organization_id, **fields):
        if self.fail_updates:
            raise RuntimeError("connection reset by peer")
        self.updates.append((organization_id, fields))
        self.tenants[organization_id].update(fields)
        return dict(self.tenants[organization_id])

    def count_billable_units(self, organization_id):
        return self.units.get(organization_id, 0)

    def record_subscription_event(self, subscription_id, organization_id, event_type, data):
        if self.fail_events:
            raise RuntimeError("subscription_events unavailable")
        event = {
            "subscription_id": subscription_id,
            "organization_id": organization_id,
            "event_type": event_type,
            "data": data,
        }
        self.events.append(event)
        return event


class FakeProcessor:
    """Records every call; `errors` maps a method name to an exception to raise."""

    def __init__(self, subscription=None):
        self.calls = []
        self.errors = {}
        self.subscription = subscription or {
            "id": "sub_123",
            "status": "active",
            "metadata": {"billingCycle": "monthly", "organizationId": ORG_ID},
            "items": [{"id": "si_1", "product": "prod_1"}],
        }

    def _call(self, _method, **kwargs):
        self.calls.append((_method, kwargs))
        if _method in self.errors:
            raise self.errors[_method]

    def call_names(self):
        return [name for name, _ in self.calls]

    def kwargs_for(self, name):
        return [kwargs for call, kwargs in self.calls if call == name][-1]

    def create_customer(self, **kwargs):
        self._call("create_customer", **kwargs)
        return "cus_new"

    def create_checkout_session(self, **kwargs):
        self._call("create_checkout_session", **kwargs)
        return {"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}

    def retrieve_subscription(self, subscription_id):
        self._call("retrieve_subscription", subscription_id=subscription_id)
        return dict(self.subscription)

    def update_subscription(self, **kwargs):
        self._call("update_subscription", **kwargs)
        return {"id": kwargs["subscription_id"], "status": "active"}

    def create_portal_session(self, customer_id, return_url):
        self._call("create_portal_session", customer_id=customer_id, return_url=return_url)
        return {"url": "https://billing.stripe.test/session/bps_1"}


@pytest.fixture
def audit_entries():
    return []


@pytest.fixture
def audit(audit_entries):
    return AuditLogger(
        sink=audit_entries.append,
        background=False,
        clock=lambda: datetime.fromtimestamp(FIXED_NOW, tz=timezone.utc),
    )


@pytest.fixture
def store():
    return FakeTenantStore([make_tenant()], units={ORG_ID: 30})


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def orchestrator(store, processor, audit):
    return SubscriptionOrchestrator(
        store,
        processor,
        audit,
        clock=lambda: FIXED_NOW,
        base_url="https://app.test",
    )


@pytest.fixture
def actor():
    return {"sub": "user-1", "email": "owner@sunshine.test", "tenant_id": ORG_ID, "role": "owner"}


@pytest.fixture
def fixed_now():
    return datetime.fromtimestamp(FIXED_NOW, tz=timezone.utc)


@pytest.fixture
def trial_tenant(fixed_now):
    return make_tenant(
        plan="trial",
        stripe_customer_id=None,
        stripe_subscription_id=None,
        trial_ends_at=fixed_now + timedelta(days=5, hours=3),
        max_children=999,
        max_staff=999,
    )
