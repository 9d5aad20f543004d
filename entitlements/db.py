"""
Entitlement Database Functions
Owner: CC2
Workstream: W2P2

Every function takes an open cursor (RealDictCursor) and leaves the
transaction to the caller. Counter mutations are single statements so
concurrent writers never lose updates.
"""

import json
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Iterable

import psycopg2.extras


SUBSCRIPTION_FIELDS = (
    'tier_id', 'status', 'is_trial', 'billing_period', 'trial_ends_at',
    'current_period_start', 'current_period_end', 'cancel_at_period_end',
    'canceled_at', 'stripe_customer_id', 'stripe_subscription_id',
)

# Mirrors the CHECK on community_subscriptions.status
SUBSCRIPTION_STATUSES = ('trialing', 'active', 'past_due', 'canceled')

ADDON_FIELDS = ('quantity', 'status', 'expires_at', 'stripe_subscription_item_id')

TRIAL_FIELDS = (
    'cooldown_ends_at', 'canceled_at', 'expired_at', 'converted_to_paid',
    'reminder_sent_day_7', 'reminder_sent_day_12',
)


def utcnow() -> datetime:
    """Timezone-aware now, matching TIMESTAMPTZ columns."""
    return datetime.now(timezone.utc)


def dict_cursor(conn):
    """Get a cursor with dict-like row access."""
    return conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)


def _build_update(fields: Dict[str, Any], allowed: Iterable[str]):
    """Build the SET clause of a dynamic UPDATE from whitelisted columns."""
    updates = []
    params = []
    for column in allowed:
        if column in fields:
            updates.append(f'{column} = %s')
            params.append(fields[column])
    unknown = set(fields) - set(allowed)
    if unknown:
        raise ValueError(f"Unknown columns: {sorted(unknown)}")
    return updates, params


# ============================================================================
# Subscriptions
# ============================================================================

def get_subscription(cur, tenant_id: str) -> Optional[Dict[str, Any]]:
    """
    Get the subscription for a tenant.

    Args:
        cur: Database cursor
        tenant_id: Community UUID

    Returns:
        Subscription dict or None
    """
    cur.execute(
        'SELECT * FROM community_subscriptions WHERE community_id = %s',
        (tenant_id,)
    )
    row = cur.fetchone()
    return _subscription_row(row) if row else None


def _subscription_row(row) -> Dict[str, Any]:
    data = dict(row)
    data['tenant_id'] = data.pop('community_id', data.get('tenant_id'))
    return data


def upsert_subscription(
    cur,
    tenant_id: str,
    tier_id: str,
    status: str,
    billing_period: str = 'monthly',
    is_trial: bool = False,
    trial_ends_at: datetime = None,
    stripe_customer_id: str = None,
    stripe_subscription_id: str = None,
    current_period_start: datetime = None,
    current_period_end: datetime = None
) -> Dict[str, Any]:
    """
    Create the subscription record for a tenant, replacing a canceled one.

    Returns:
        Created subscription dict
    """
    cur.execute(
        '''INSERT INTO community_subscriptions
           (community_id, tier_id, status, billing_period, is_trial, trial_ends_at,
            stripe_customer_id, stripe_subscription_id,
            current_period_start, current_period_end, cancel_at_period_end, canceled_at)
           VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, FALSE, NULL)
           ON CONFLICT (community_id) DO UPDATE SET
               tier_id = EXCLUDED.tier_id,
               status = EXCLUDED.status,
               billing_period = EXCLUDED.billing_period,
               is_trial = EXCLUDED.is_trial,
               trial_ends_at = EXCLUDED.trial_ends_at,
               stripe_customer_id = EXCLUDED.stripe_customer_id,
               stripe_subscription_id = EXCLUDED.stripe_subscription_id,
               current_period_start = EXCLUDED.current_period_start,
               current_period_end = EXCLUDED.current_period_end,
               cancel_at_period_end = FALSE,
               canceled_at = NULL,
               updated_at = NOW()
           RETURNING *''',
        (tenant_id, tier_id, status, billing_period, is_trial, trial_ends_at,
         stripe_customer_id, stripe_subscription_id,
         current_period_start, current_period_end)
    )
    return _subscription_row(cur.fetchone())


def update_subscription(cur, tenant_id: str, **fields) -> Optional[Dict[str, Any]]:
    """
    Update columns of a tenant's subscription.

    Args:
        cur: Database cursor
        tenant_id: Community UUID
        **fields: Columns to change (see SUBSCRIPTION_FIELDS)

    Returns:
        Updated subscription dict or None if not found
    """
    updates, params = _build_update(fields, SUBSCRIPTION_FIELDS)
    if not updates:
        return get_subscription(cur, tenant_id)

    updates.append('updated_at = NOW()')
    params.append(tenant_id)

    sql = f'''UPDATE community_subscriptions
              SET {', '.join(updates)}
              WHERE community_id = %s
              RETURNING *'''

    cur.execute(sql, params)
    row = cur.fetchone()
    return _subscription_row(row) if row else None


def set_community_plan(cur, tenant_id: str, tier_id: str) -> None:
    """Mirror the tier onto communities.plan (display only)."""
    cur.execute(
        'UPDATE communities SET plan = %s WHERE id = %s',
        (tier_id, tenant_id)
    )


def list_subscribed_tenants(cur) -> List[str]:
    """Tenants whose subscription is not canceled (for scheduled usage sync)."""
    cur.execute(
        "SELECT community_id FROM community_subscriptions WHERE status <> 'canceled'"
    )
    return [row['community_id'] for row in cur.fetchall()]


def list_lapsed_trial_subscriptions(cur, now: datetime) -> List[str]:
    """Local trial subscriptions (no Stripe subscription) past trial_ends_at."""
    cur.execute(
        '''SELECT community_id FROM community_subscriptions
           WHERE status = 'trialing'
             AND is_trial = TRUE
             AND stripe_subscription_id IS NULL
             AND trial_ends_at <= %s''',
        (now,)
    )
    return [row['community_id'] for row in cur.fetchall()]


# ============================================================================
# Stripe price mappings
# ============================================================================

def get_tier_price_ids(cur, tier_id: str) -> Optional[Dict[str, Any]]:
    """
    Stripe price IDs for a tier.

    Returns:
        Dict with stripe_price_monthly_id / stripe_price_annual_id, or None
        when the tier has no row yet
    """
    cur.execute(
        '''SELECT stripe_price_monthly_id, stripe_price_annual_id
           FROM subscription_tiers WHERE id = %s''',
        (tier_id,)
    )
    row = cur.fetchone()
    return dict(row) if row else None


def get_addon_price_id(cur, addon_id: str) -> Optional[str]:
    """Stripe price ID for an add-on, or None if not configured."""
    cur.execute(
        'SELECT stripe_price_id FROM addon_prices WHERE addon_id = %s',
        (addon_id,)
    )
    row = cur.fetchone()
    return row['stripe_price_id'] if row else None


# ============================================================================
# Add-on instances
# ============================================================================

def _addon_row(row) -> Dict[str, Any]:
    # Older rows only carry addon_type; expose a single addon_id
    data = dict(row)
    legacy = data.pop('addon_type', None)
    data['addon_id'] = data.get('addon_id') or legacy
    data['tenant_id'] = data.pop('community_id', data.get('tenant_id'))
    return data


def list_addons(cur, tenant_id: str, active_only: bool = False) -> List[Dict[str, Any]]:
    """
    Add-on instances for a tenant, oldest first.

    Args:
        cur: Database cursor
        tenant_id: Community UUID
        active_only: Only return status = 'active'
    """
    sql = 'SELECT * FROM subscription_addons WHERE community_id = %s'
    if active_only:
        sql += " AND status = 'active'"
    sql += ' ORDER BY created_at'
    cur.execute(sql, (tenant_id,))
    return [_addon_row(row) for row in cur.fetchall()]


def get_active_addon(cur, tenant_id: str, addon_id: str) -> Optional[Dict[str, Any]]:
    """Active instance of an add-on, matched on addon_id or the legacy addon_type."""
    cur.execute(
        '''SELECT * FROM subscription_addons
           WHERE community_id = %s
             AND COALESCE(addon_id, addon_type) = %s
             AND status = 'active'
           ORDER BY created_at DESC
           LIMIT 1''',
        (tenant_id, addon_id)
    )
    row = cur.fetchone()
    return _addon_row(row) if row else None


def has_addon_history(cur, tenant_id: str, addon_id: str) -> bool:
    """True if the tenant ever held this add-on (any status)."""
    cur.execute(
        '''SELECT 1 FROM subscription_addons
           WHERE community_id = %s AND COALESCE(addon_id, addon_type) = %s
           LIMIT 1''',
        (tenant_id, addon_id)
    )
    return cur.fetchone() is not None


def insert_addon(
    cur,
    tenant_id: str,
    addon_id: str,
    quantity: int,
    price_per_unit: int,
    stripe_subscription_item_id: str
) -> Dict[str, Any]:
    """Record a newly purchased add-on as active."""
    cur.execute(
        '''INSERT INTO subscription_addons
           (community_id, addon_id, quantity, price_per_unit,
            stripe_subscription_item_id, status, activated_at)
           VALUES (%s, %s, %s, %s, %s, 'active', NOW())
           RETURNING *''',
        (tenant_id, addon_id, quantity, price_per_unit, stripe_subscription_item_id)
    )
    return _addon_row(cur.fetchone())


def update_addon(cur, instance_id, **fields) -> Optional[Dict[str, Any]]:
    """Update an add-on instance by row id (see ADDON_FIELDS)."""
    updates, params = _build_update(fields, ADDON_FIELDS)
    if not updates:
        return None
    params.append(instance_id)
    cur.execute(
        f'''UPDATE subscription_addons SET {', '.join(updates)}
            WHERE id = %s RETURNING *''',
        params
    )
    row = cur.fetchone()
    return _addon_row(row) if row else None


# ============================================================================
# Usage counters
# ============================================================================

def get_usage_counter(cur, tenant_id: str, metric: str) -> Optional[Dict[str, Any]]:
    cur.execute(
        '''SELECT metric, current_value, limit_value, last_updated
           FROM usage_tracking WHERE community_id = %s AND metric = %s''',
        (tenant_id, metric)
    )
    row = cur.fetchone()
    return dict(row) if row else None


def list_usage_counters(cur, tenant_id: str) -> Dict[str, Dict[str, Any]]:
    """All counters for a tenant keyed by metric."""
    cur.execute(
        '''SELECT metric, current_value, limit_value, last_updated
           FROM usage_tracking WHERE community_id = %s''',
        (tenant_id,)
    )
    return {row['metric']: dict(row) for row in cur.fetchall()}


def adjust_usage_limit(cur, tenant_id: str, metric: str, delta: int) -> Optional[Dict[str, Any]]:
    """
    Move limit_value by a signed delta in one statement.

    Returns:
        Updated counter, or None if the tenant has no counter for the metric
    """
    cur.execute(
        '''UPDATE usage_tracking
           SET limit_value = limit_value + %s, last_updated = NOW()
           WHERE community_id = %s AND metric = %s
           RETURNING metric, current_value, limit_value, last_updated''',
        (delta, tenant_id, metric)
    )
    row = cur.fetchone()
    return dict(row) if row else None


def set_usage_current(cur, tenant_id: str, metric: str, value: int) -> None:
    cur.execute(
        '''UPDATE usage_tracking
           SET current_value = %s, last_updated = NOW()
           WHERE community_id = %s AND metric = %s''',
        (value, tenant_id, metric)
    )


def increment_usage(cur, tenant_id: str, metric: str, amount: int = 1) -> None:
    cur.execute('SELECT increment_usage(%s, %s, %s)', (tenant_id, metric, amount))


def decrement_usage(cur, tenant_id: str, metric: str, amount: int = 1) -> None:
    cur.execute('SELECT decrement_usage(%s, %s, %s)', (tenant_id, metric, amount))


def initialize_usage_tracking(cur, tenant_id: str, limits: Dict[str, int]) -> None:
    """Create or reset every counter's limit_value from a tier's limits."""
    cur.execute(
        'SELECT initialize_usage_tracking(%s, %s::jsonb)',
        (tenant_id, json.dumps(limits))
    )


def count_usage(cur, tenant_id: str) -> Dict[str, int]:
    """
    Authoritative counts straight from the community tables.

    Returns:
        Dictionary with members, items, resources, admins
    """
    cur.execute(
        '''SELECT
             (SELECT COUNT(*) FROM community_members
               WHERE community_id = %s AND status = 'active') AS members,
             (SELECT COUNT(*) FROM items WHERE community_id = %s) AS items,
             (SELECT COUNT(*) FROM resources WHERE community_id = %s) AS resources,
             (SELECT COUNT(*) FROM community_members
               WHERE community_id = %s AND status = 'active' AND role = 'admin') AS admins''',
        (tenant_id, tenant_id, tenant_id, tenant_id)
    )
    row = cur.fetchone() or {}
    return {
        'members': row.get('members') or 0,
        'items': row.get('items') or 0,
        'resources': row.get('resources') or 0,
        'admins': row.get('admins') or 0,
    }


# ============================================================================
# Trials
# ============================================================================

def get_trial(cur, user_id: str) -> Optional[Dict[str, Any]]:
    cur.execute('SELECT * FROM user_trials WHERE user_id = %s', (user_id,))
    row = cur.fetchone()
    return dict(row) if row else None


def insert_trial(
    cur,
    user_id: str,
    tier_id: str,
    trial_started_at: datetime,
    trial_ends_at: datetime,
    cooldown_ends_at: datetime
) -> Dict[str, Any]:
    """
    Record a user's one and only trial.

    The user_id column is UNIQUE; a second insert fails instead of
    overwriting the lifetime record.
    """
    cur.execute(
        '''INSERT INTO user_trials
           (user_id, trial_tier_id, trial_started_at, trial_ends_at, cooldown_ends_at)
           VALUES (%s, %s, %s, %s, %s)
           RETURNING *''',
        (user_id, tier_id, trial_started_at, trial_ends_at, cooldown_ends_at)
    )
    return dict(cur.fetchone())


def update_trial(cur, user_id: str, **fields) -> Optional[Dict[str, Any]]:
    updates, params = _build_update(fields, TRIAL_FIELDS)
    if not updates:
        return get_trial(cur, user_id)
    params.append(user_id)
    cur.execute(
        f'''UPDATE user_trials SET {', '.join(updates)}
            WHERE user_id = %s RETURNING *''',
        params
    )
    row = cur.fetchone()
    return dict(row) if row else None


def list_trials_ending_between(cur, start: datetime, end: datetime) -> List[Dict[str, Any]]:
    """Open trials (not converted, not canceled) ending in (start, end]."""
    cur.execute(
        '''SELECT user_id, trial_ends_at, trial_tier_id,
                  reminder_sent_day_7, reminder_sent_day_12
           FROM user_trials
           WHERE trial_ends_at > %s AND trial_ends_at <= %s
             AND converted_to_paid = FALSE
             AND canceled_at IS NULL
             AND expired_at IS NULL
           ORDER BY trial_ends_at''',
        (start, end)
    )
    return [dict(row) for row in cur.fetchall()]


def list_lapsed_trials(cur, now: datetime) -> List[Dict[str, Any]]:
    """Trials past their end that were never converted, canceled or expired."""
    cur.execute(
        '''SELECT * FROM user_trials
           WHERE trial_ends_at <= %s
             AND converted_to_paid = FALSE
             AND canceled_at IS NULL
             AND expired_at IS NULL''',
        (now,)
    )
    return [dict(row) for row in cur.fetchall()]


# ============================================================================
# Billing events (outbox)
# ============================================================================

def insert_billing_event(cur, tenant_id: str, operation: str, payload: Dict[str, Any]) -> Any:
    """Record the intent of a processor-backed operation. Returns the event id."""
    cur.execute(
        '''INSERT INTO billing_events (community_id, operation, payload, status)
           VALUES (%s, %s, %s::jsonb, 'pending')
           RETURNING id''',
        (tenant_id, operation, json.dumps(payload, default=str))
    )
    return cur.fetchone()['id']


def update_billing_event(
    cur,
    event_id,
    status: str,
    processor_ref: Optional[str] = None,
    error: Optional[str] = None
) -> None:
    cur.execute(
        '''UPDATE billing_events
           SET status = %s,
               processor_ref = COALESCE(%s, processor_ref),
               error = COALESCE(%s, error),
               updated_at = NOW()
           WHERE id = %s''',
        (status, processor_ref, error, event_id)
    )


def get_billing_event(cur, event_id) -> Optional[Dict[str, Any]]:
    cur.execute('SELECT * FROM billing_events WHERE id = %s', (event_id,))
    row = cur.fetchone()
    if not row:
        return None
    data = dict(row)
    data['tenant_id'] = data.pop('community_id', None)
    return data


def list_billing_events(cur, status: str, tenant_id: Optional[str] = None) -> List[Dict[str, Any]]:
    sql = 'SELECT * FROM billing_events WHERE status = %s'
    params = [status]
    if tenant_id:
        sql += ' AND community_id = %s'
        params.append(tenant_id)
    sql += ' ORDER BY created_at'
    cur.execute(sql, params)
    events = []
    for row in cur.fetchall():
        data = dict(row)
        data['tenant_id'] = data.pop('community_id', None)
        events.append(data)
    return events
