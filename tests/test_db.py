import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from billing.db import (
    PostgresTenantStore,
    count_billable_units,
    get_tenant,
    record_subscription_event,
    update_tenant,
)
from billing.provisioning import start_trial, trial_days_remaining

pytestmark = pytest.mark.unit


@pytest.fixture
def cur():
    return MagicMock()


class TestCursorHelpers:
    def test_get_tenant(self, cur):
        cur.fetchone.return_value = {"id": "org-1", "plan": "starter"}
        assert get_tenant(cur, "org-1") == {"id": "org-1", "plan": "starter"}
        assert cur.execute.call_args[0][1] == ("org-1",)

    def test_get_tenant_missing(self, cur):
        cur.fetchone.return_value = None
        assert get_tenant(cur, "org-1") is None

    def test_update_tenant_builds_dynamic_update(self, cur):
        cur.fetchone.return_value = {"id": "org-1", "plan": "professional"}
        update_tenant(cur, "org-1", plan="professional", max_children=200)

        sql, params = cur.execute.call_args[0]
        assert "plan = %s" in sql
        assert "max_children = %s" in sql
        assert "updated_at = NOW()" in sql
        assert params == ["professional", 200, "org-1"]

    def test_update_tenant_rejects_unknown_column(self, cur):
        with pytest.raises(ValueError):
            update_tenant(cur, "org-1", name="Renamed")
        cur.execute.assert_not_called()

    def test_update_tenant_nothing_to_do(self, cur):
        assert update_tenant(cur, "org-1") is None
        cur.execute.assert_not_called()

    def test_count_billable_units_counts_active_children(self, cur):
        cur.fetchone.return_value = {"count": 42}
        assert count_billable_units(cur, "org-1") == 42
        assert "status = 'active'" in cur.execute.call_args[0][0]

    def test_record_subscription_event(self, cur):
        cur.fetchone.return_value = {"id": "evt-1"}
        record_subscription_event(cur, "sub_1", "org-1", "plan.upgraded", {"newPlan": "enterprise"})

        params = cur.execute.call_args[0][1]
        assert params[:3] == ("sub_1", "org-1", "plan.upgraded")
        assert json.loads(params[3]) == {"newPlan": "enterprise"}


class TestPostgresTenantStore:
    def test_write_commits(self):
        db, cursor = MagicMock(), MagicMock()
        cursor.fetchone.return_value = {"id": "org-1"}
        store = PostgresTenantStore(lambda: db, lambda: cursor)

        store.update("org-1", plan="enterprise")

        db.commit.assert_called_once()
        cursor.close.assert_called_once()

    def test_write_failure_rolls_back_and_raises(self):
        db, cursor = MagicMock(), MagicMock()
        cursor.execute.side_effect = RuntimeError("deadlock detected")
        store = PostgresTenantStore(lambda: db, lambda: cursor)

        with pytest.raises(RuntimeError):
            store.record_subscription_event("sub_1", "org-1", "plan.downgraded", {})

        db.rollback.assert_called_once()
        db.commit.assert_not_called()


class TestProvisioning:
    def test_start_trial_sets_trial_plan_and_limits(self, cur):
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        cur.fetchone.return_value = {"id": "org-1"}

        result = start_trial(cur, "org-1", now=now)

        assert result["plan"] == "trial"
        assert result["trial_ends_at"] == datetime(2026, 3, 15, tzinfo=timezone.utc)
        assert result["max_children"] == 999
        params = cur.execute.call_args[0][1]
        assert params[0] == "trial"
        assert params[-1] == "org-1"

    def test_trial_days_remaining(self):
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        tenant = {"plan": "trial", "trial_ends_at": datetime(2026, 3, 3, 1, tzinfo=timezone.utc)}
        assert trial_days_remaining(tenant, now) == 3
        assert trial_days_remaining({"plan": "starter"}, now) == 0
        assert trial_days_remaining({"plan": "trial", "trial_ends_at": "2026-02-01T00:00:00Z"}, now) == 0
