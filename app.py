#!/usr/bin/env python3
"""
Community Entitlements API
PostgreSQL + Stripe, tier limits / trials / add-ons per community
"""

import os
import sys

import psycopg2
from flask import Flask, g
from flask_cors import CORS

from entitlements.routes import init_entitlements

app = Flask(__name__)
CORS(app)

DATABASE_URL = os.environ.get('DATABASE_URL')

if not os.environ.get('STRIPE_SECRET_KEY'):
    print("[BILLING] WARNING: STRIPE_SECRET_KEY not configured", file=sys.stderr, flush=True)


def get_db():
    """Get database connection for current request context."""
    if 'db' not in g:
        if not DATABASE_URL:
            raise Exception("DATABASE_URL environment variable not set")
        # Add connection timeout to prevent hanging
        g.db = psycopg2.connect(DATABASE_URL, connect_timeout=10)
        g.db.autocommit = False
    return g.db


@app.teardown_appcontext
def close_db(exception):
    """Close database connection at end of request."""
    db = g.pop('db', None)
    if db is not None:
        db.close()


# =============================================================================
# ENTITLEMENTS: TIERS, TRIALS, USAGE, ADD-ONS (W2 - CC2)
# =============================================================================

communities_bp, platform_bp = init_entitlements(get_db)
app.register_blueprint(communities_bp)
app.register_blueprint(platform_bp)


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8080))
    app.run(host='0.0.0.0', port=port, debug=False)
