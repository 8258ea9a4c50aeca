#!/usr/bin/env python3
"""
Childcare Billing API
Subscription billing and plan-tier access control for the daycare platform.
PostgreSQL + Stripe, multi-tenant by organization.
"""

import os
import sys
from urllib.parse import urlparse

import psycopg2
import psycopg2.extras
from flask import Flask, jsonify, g
from flask_cors import CORS

app = Flask(__name__)
CORS(app)

# Database URL from environment
DATABASE_URL = os.environ.get('DATABASE_URL')

# Startup logging for debugging
print(f"[STARTUP] DATABASE_URL set: {bool(DATABASE_URL)}", file=sys.stderr)
if DATABASE_URL:
    # Log host only, never credentials
    parsed = urlparse(DATABASE_URL)
    print(f"[STARTUP] Database host: {parsed.hostname}:{parsed.port}", file=sys.stderr)


def get_db():
    """Get database connection for current request context."""
    if 'db' not in g:
        if not DATABASE_URL:
            raise Exception("DATABASE_URL environment variable not set")
        # Add connection timeout to prevent hanging
        g.db = psycopg2.connect(DATABASE_URL, connect_timeout=10)
        g.db.autocommit = False
    return g.db


def get_cursor():
    """Get a cursor with dict-like row access."""
    db = get_db()
    return db.cursor(cursor_factory=psycopg2.extras.RealDictCursor)


@app.teardown_appcontext
def close_db(exception):
    """Close database connection at end of request."""
    db = g.pop('db', None)
    if db is not None:
        db.close()


# =============================================================================
# PLAN GATE (W2P4 - CC2)
# =============================================================================

from billing.enforce import init_plan_gate
init_plan_gate(app, get_cursor)


# =============================================================================
# SUBSCRIPTIONS: CHECKOUT / CHANGE / PORTAL (W2P3 - CC2)
# =============================================================================

from billing.routes import init_subscriptions
subscriptions_bp = init_subscriptions(get_db, get_cursor)
app.register_blueprint(subscriptions_bp)


@app.route('/health', methods=['GET'])
def health():
    """Service health, including database reachability."""
    db_ok = False
    if DATABASE_URL:
        try:
            cur = get_cursor()
            cur.execute('SELECT 1')
            cur.close()
            db_ok = True
        except Exception as e:
            print(f"[HEALTH] Database check failed: {e}", file=sys.stderr)

    return jsonify({
        'status': 'ok' if db_ok else 'degraded',
        'service': 'childcare-billing',
        'database': db_ok,
    })


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8080))
    app.run(host='0.0.0.0', port=port, debug=False)
