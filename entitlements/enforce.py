"""
Community Usage Enforcement
Owner: CC2
Workstream: W2P4

Decorators and helpers for enforcing tier limits in CRUD handlers:
- Returns 402 Payment Required when a limit is reached
- Includes the next tier up and an upgrade URL
"""

import os
import sys
from functools import wraps
from typing import Optional

import psycopg2
from flask import request, jsonify

from entitlements import db
from entitlements.catalog import DEFAULT_CATALOG
from entitlements.errors import LimitReached
from entitlements.usage import STRICT_USAGE_TRACKING, UsageMeter

# Base URL for upgrade links
BASE_URL = os.environ.get('BASE_URL', 'http://localhost:3000')


def _tenant_tier(conn, tenant_id: str, store=db) -> Optional[str]:
    cur = store.dict_cursor(conn)
    try:
        subscription = store.get_subscription(cur, tenant_id)
    finally:
        cur.close()
    return subscription.get('tier_id') if subscription else None


def limit_exceeded_response(error: LimitReached, tier_id: Optional[str], catalog=DEFAULT_CATALOG):
    """
    Generate a 402 Payment Required response with upgrade info.

    Args:
        error: The LimitReached raised by the usage check
        tier_id: Community's current tier (None without a subscription)
        catalog: Catalog used for the upgrade recommendation

    Returns:
        Flask response tuple (jsonify, status_code)
    """
    upgrade_to = catalog.get_upgrade_recommendation(tier_id)
    body = error.to_dict()
    body.update({
        'metric': error.metric,
        'current': error.current,
        'limit': error.limit,
        'tier': tier_id,
        'upgrade_to': upgrade_to,
        'upgrade_url': f"{BASE_URL}/settings/billing?upgrade={upgrade_to}" if upgrade_to else None,
    })
    return jsonify(body), int(error.status_code)


def enforce_usage_limit(conn, tenant_id: str, metric: str, amount: int = 1,
                        store=db, catalog=DEFAULT_CATALOG, strict: Optional[bool] = None):
    """
    Inline limit check for handlers that cannot use the decorator.

    Returns:
        None if allowed, or (response, status_code) tuple if blocked
    """
    meter = UsageMeter(conn, store, catalog, strict=strict)
    try:
        meter.require_capacity(tenant_id, metric, amount)
    except LimitReached as e:
        return limit_exceeded_response(e, _tenant_tier(conn, tenant_id, store), catalog)
    return None


def check_usage_limit(get_db_func, metric: str, amount: int = 1,
                      store=db, catalog=DEFAULT_CATALOG, strict: Optional[bool] = None):
    """
    Decorator factory to check a usage limit before the handler runs.

    The tenant is taken from the route's tenant_id argument, falling back to
    the X-Tenant-ID header.

    Args:
        get_db_func: Function to get database connection
        metric: Usage metric the handler consumes ('members', 'items', ...)
        amount: Units the handler will add

    Returns:
        Decorator function
    """
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            tenant_id = kwargs.get('tenant_id') or request.headers.get('X-Tenant-ID')
            if not tenant_id:
                return jsonify({'error': 'INVALID_REQUEST', 'message': 'Missing tenant id'}), 400

            try:
                blocked = enforce_usage_limit(get_db_func(), tenant_id, metric, amount,
                                              store=store, catalog=catalog, strict=strict)
            except psycopg2.Error as e:
                get_db_func().rollback()
                if STRICT_USAGE_TRACKING if strict is None else strict:
                    raise
                # Fail open: a broken counter query must not block member CRUD
                print(f"[USAGE] Error checking {metric} limit for {tenant_id}: {e}",
                      file=sys.stderr, flush=True)
                return f(*args, **kwargs)

            if blocked:
                return blocked
            return f(*args, **kwargs)

        return decorated
    return decorator
