"""
Billing Database Functions
Owner: CC2
Workstream: W2P2

Database operations for the organization billing record and the
subscription event trail. Cursor-level helpers leave the transaction to
the caller; PostgresTenantStore wraps them with commit/rollback for the
subscription orchestrator.
"""

import json
from typing import Optional, Dict, Any, Callable

# Columns the billing engine is allowed to write on an organization row
TENANT_UPDATABLE_FIELDS = (
    'plan',
    'billing_cycle',
    'stripe_customer_id',
    'stripe_subscription_id',
    'trial_ends_at',
    'max_children',
    'max_staff',
)


def get_tenant(cur, organization_id: str) -> Optional[Dict[str, Any]]:
    """
    Get the billing view of an organization.

    Args:
        cur: Database cursor (RealDictCursor)
        organization_id: Organization UUID

    Returns:
        Organization dict or None
    """
    cur.execute(
        '''SELECT id, name, email, plan, billing_cycle, stripe_customer_id,
                  stripe_subscription_id, trial_ends_at, max_children, max_staff,
                  updated_at
           FROM organizations
           WHERE id = %s''',
        (organization_id,)
    )
    row = cur.fetchone()
    return dict(row) if row else None


def update_tenant(cur, organization_id: str, **fields) -> Optional[Dict[str, Any]]:
    """
    Update billing columns on an organization.

    Args:
        cur: Database cursor
        organization_id: Organization UUID
        **fields: Column values, restricted to TENANT_UPDATABLE_FIELDS

    Returns:
        Updated organization dict, or None if not found or nothing to update

    Raises:
        ValueError: On a column outside TENANT_UPDATABLE_FIELDS
    """
    # Build dynamic UPDATE
    updates = []
    params = []

    for column, value in fields.items():
        if column not in TENANT_UPDATABLE_FIELDS:
            raise ValueError(f'Column not updatable by billing: {column}')
        updates.append(f'{column} = %s')
        params.append(value)

    if not updates:
        return None

    updates.append('updated_at = NOW()')
    params.append(organization_id)

    sql = f'''UPDATE organizations
              SET {', '.join(updates)}
              WHERE id = %s
              RETURNING *'''

    cur.execute(sql, params)
    row = cur.fetchone()
    return dict(row) if row else None


def count_billable_units(cur, organization_id: str) -> int:
    """
    Count active children, the unit subscriptions are priced on.

    Args:
        cur: Database cursor
        organization_id: Organization UUID

    Returns:
        Number of children with status 'active'
    """
    cur.execute(
        '''SELECT COUNT(*) AS count
           FROM children
           WHERE organization_id = %s AND status = 'active' ''',
        (organization_id,)
    )
    row = cur.fetchone()
    return int(row['count']) if row else 0


def record_subscription_event(
    cur,
    subscription_id: str,
    organization_id: str,
    event_type: str,
    data: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Append a subscription event. Rows are never updated or read back
    to rebuild state.

    Args:
        cur: Database cursor
        subscription_id: Stripe subscription ID (sub_xxx)
        organization_id: Organization UUID
        event_type: 'plan.upgraded' or 'plan.downgraded'
        data: Event payload, stored as JSONB

    Returns:
        Created event dict
    """
    cur.execute(
        '''INSERT INTO subscription_events
           (subscription_id, organization_id, event_type, data, created_at)
           VALUES (%s, %s, %s, %s, NOW())
           RETURNING *''',
        (subscription_id, organization_id, event_type, json.dumps(data, default=str))
    )
    return dict(cur.fetchone())


class PostgresTenantStore:
    """
    Tenant store used by SubscriptionOrchestrator.

    Each write runs in its own transaction so a processor-side change is
    never held hostage by an unrelated statement later in the request.

    Args:
        get_db: Returns the request's psycopg2 connection
        get_cursor: Returns a RealDictCursor on that connection
    """

    def __init__(self, get_db: Callable, get_cursor: Callable):
        self.get_db = get_db
        self.get_cursor = get_cursor

    def get(self, organization_id: str) -> Optional[Dict[str, Any]]:
        cur = self.get_cursor()
        try:
            return get_tenant(cur, organization_id)
        finally:
            cur.close()

    def count_billable_units(self, organization_id: str) -> int:
        cur = self.get_cursor()
        try:
            return count_billable_units(cur, organization_id)
        finally:
            cur.close()

    def update(self, organization_id: str, **fields) -> Optional[Dict[str, Any]]:
        return self._write(update_tenant, organization_id, **fields)

    def record_subscription_event(self, subscription_id: str, organization_id: str,
                                  event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._write(record_subscription_event, subscription_id, organization_id, event_type, data)

    def _write(self, fn, *args, **kwargs):
        db = self.get_db()
        cur = self.get_cursor()
        try:
            result = fn(cur, *args, **kwargs)
            db.commit()
            return result
        except Exception:
            db.rollback()
            raise
        finally:
            cur.close()
