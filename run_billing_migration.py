#!/usr/bin/env python3
"""
Billing Migration: subscription billing schema
1. Add billing columns to organizations
2. Create subscription_events and audit_logs tables
3. Verify columns, tables and indexes

Run with:
  DATABASE_URL='postgresql://...' python run_billing_migration.py
"""

import os
import sys

import psycopg2

ORGANIZATION_COLUMNS = [
    ("plan", "VARCHAR(20) NOT NULL DEFAULT 'trial'"),
    ("billing_cycle", "VARCHAR(10) NOT NULL DEFAULT 'monthly'"),
    ("stripe_customer_id", "VARCHAR(255)"),
    ("stripe_subscription_id", "VARCHAR(255)"),
    ("trial_ends_at", "TIMESTAMPTZ"),
    ("max_children", "INTEGER NOT NULL DEFAULT 999"),
    ("max_staff", "INTEGER NOT NULL DEFAULT 999"),
    ("updated_at", "TIMESTAMPTZ DEFAULT NOW()"),
]

STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS subscription_events (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        subscription_id VARCHAR(255) NOT NULL,
        organization_id UUID NOT NULL REFERENCES organizations(id),
        event_type VARCHAR(50) NOT NULL,
        data JSONB NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_subscription_events_org ON subscription_events(organization_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        action VARCHAR(50) NOT NULL,
        severity VARCHAR(10) NOT NULL DEFAULT 'info',
        user_id VARCHAR(255),
        user_email VARCHAR(255),
        organization_id UUID,
        resource_type VARCHAR(50),
        resource_id VARCHAR(255),
        ip_address VARCHAR(64),
        user_agent VARCHAR(500),
        details JSONB NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_org ON audit_logs(organization_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_action ON audit_logs(action, created_at DESC)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_organizations_stripe_customer ON organizations(stripe_customer_id) WHERE stripe_customer_id IS NOT NULL",
]


def run_schema_migration(conn):
    """Add billing columns and tables"""
    print("\n[1/2] Running schema migration...")

    cur = conn.cursor()

    for column, definition in ORGANIZATION_COLUMNS:
        cur.execute(f"ALTER TABLE organizations ADD COLUMN IF NOT EXISTS {column} {definition}")
        print(f"  OK: organizations.{column}")

    for stmt in STATEMENTS:
        cur.execute(stmt)
        first_line = stmt.strip().split('\n')[0][:60]
        print(f"  OK: {first_line}...")

    conn.commit()
    cur.close()
    print("  Schema migration complete!")


def verify_migration(conn):
    """Verify migration was successful"""
    print("\n[2/2] Verifying migration...")

    cur = conn.cursor()

    cur.execute("""
        SELECT column_name
        FROM information_schema.columns
        WHERE table_name = 'organizations'
    """)
    existing = {row[0] for row in cur.fetchall()}
    missing = [column for column, _ in ORGANIZATION_COLUMNS if column not in existing]
    print(f"  organizations billing columns missing: {missing or 'none'}")

    ok = not missing
    for table in ('subscription_events', 'audit_logs'):
        cur.execute("""
            SELECT EXISTS (
                SELECT FROM information_schema.tables
                WHERE table_name = %s
            )
        """, (table,))
        exists = cur.fetchone()[0]
        print(f"  {table} table exists: {exists}")
        ok = ok and exists

        cur.execute("SELECT indexname FROM pg_indexes WHERE tablename = %s", (table,))
        for (index_name,) in cur.fetchall():
            print(f"    - {index_name}")

    cur.close()
    return ok


def main():
    database_url = os.environ.get('DATABASE_URL')
    if not database_url:
        print("ERROR: DATABASE_URL environment variable not set!")
        print("Set it with: export DATABASE_URL='postgresql://...'")
        sys.exit(1)

    print("=" * 60)
    print("CHILDCARE BILLING: SUBSCRIPTION SCHEMA MIGRATION")
    print("=" * 60)

    print("\nConnecting to Postgres...")
    conn = psycopg2.connect(database_url)
    conn.autocommit = False
    print("  Connected!")

    try:
        run_schema_migration(conn)
        if not verify_migration(conn):
            print("\n*** MIGRATION FAILED ***")
            sys.exit(1)
        print("\n" + "=" * 60)
        print("MIGRATION COMPLETE")
        print("=" * 60)
    except Exception as e:
        conn.rollback()
        print(f"\n*** MIGRATION FAILED: {e} ***")
        sys.exit(1)
    finally:
        conn.close()


if __name__ == '__main__':
    main()
