"""
Shared fixtures for the entitlement tests.

FakeStore implements the entitlements.db function surface over plain dicts.
FakeConnection snapshots the store on commit() and restores it on
rollback(), so tests see exactly what a real transaction would leave behind.
"""

import copy
import itertools
from datetime import datetime, timedelta, timezone

import psycopg2
import pytest
from flask import Flask

from entitlements import db
from entitlements.catalog import DEFAULT_CATALOG
from entitlements.routes import init_entitlements

TENANT = '11111111-1111-1111-1111-111111111111'
OTHER_TENANT = '22222222-2222-2222-2222-222222222222'
USER = 'aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa'


# ============================================================================
# Store / connection doubles
# ============================================================================

class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.closed = False
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def close(self):
        self.closed = True


class FakeConnection:
    def __init__(self, store):
        self.store = store
        self.commits = 0
        self.rollbacks = 0

    def cursor(self, cursor_factory=None):
        return FakeCursor(self)

    def commit(self):
        self.store.snapshot()
        self.commits += 1

    def rollback(self):
        self.store.restore()
        self.rollbacks += 1

    def close(self):
        pass


class FakeStore:
    """In-memory stand-in for entitlements.db. Every function takes `cur` first."""

    SUBSCRIPTION_FIELDS = db.SUBSCRIPTION_FIELDS
    ADDON_FIELDS = db.ADDON_FIELDS
    TRIAL_FIELDS = db.TRIAL_FIELDS
    SUBSCRIPTION_STATUSES = db.SUBSCRIPTION_STATUSES

    def __init__(self):
        self.data = {
            'subscriptions': {},
            'addons': [],
            'counters': {},
            'trials': {},
            'events': {},
            'tier_prices': {},
            'addon_prices': {},
            'plans': {},
            'counts': {},
        }
        self.failures = {}
        self._ids = itertools.count(1)
        self._committed = copy.deepcopy(self.data)

    # -- transactions ----------------------------------------------------

    def snapshot(self):
        self._committed = copy.deepcopy(self.data)

    def restore(self):
        self.data = copy.deepcopy(self._committed)

    # -- test helpers --------------------------------------------------

    def fail_on(self, name, exc=None):
        """Make the next call to store function `name` raise."""
        self.failures[name] = exc or psycopg2.OperationalError(f'{name} failed')

    def _check(self, name):
        exc = self.failures.pop(name, None)
        if exc is not None:
            raise exc

    def _check_status(self, status):
        if status not in self.SUBSCRIPTION_STATUSES:
            raise psycopg2.IntegrityError(
                'new row for relation "community_subscriptions" violates check constraint'
            )

    def limit(self, tenant_id, metric):
        return self.data['counters'][(tenant_id, metric)]['limit_value']

    def current(self, tenant_id, metric):
        return self.data['counters'][(tenant_id, metric)]['current_value']

    # -- connection ----------------------------------------------------

    def dict_cursor(self, conn):
        return FakeCursor(conn)

    # -- subscriptions -------------------------------------------------

    def get_subscription(self, cur, tenant_id):
        row = self.data['subscriptions'].get(tenant_id)
        return dict(row) if row else None

    def upsert_subscription(self, cur, tenant_id, tier_id, status, billing_period='monthly',
                            is_trial=False, trial_ends_at=None, stripe_customer_id=None,
                            stripe_subscription_id=None, current_period_start=None,
                            current_period_end=None):
        self._check('upsert_subscription')
        self._check_status(status)
        row = {
            'tenant_id': tenant_id,
            'tier_id': tier_id,
            'status': status,
            'billing_period': billing_period,
            'is_trial': is_trial,
            'trial_ends_at': trial_ends_at,
            'stripe_customer_id': stripe_customer_id,
            'stripe_subscription_id': stripe_subscription_id,
            'current_period_start': current_period_start,
            'current_period_end': current_period_end,
            'cancel_at_period_end': False,
            'canceled_at': None,
        }
        self.data['subscriptions'][tenant_id] = row
        return dict(row)

    def update_subscription(self, cur, tenant_id, **fields):
        self._check('update_subscription')
        unknown = set(fields) - set(self.SUBSCRIPTION_FIELDS)
        if unknown:
            raise ValueError(f'Unknown columns: {sorted(unknown)}')
        if 'status' in fields:
            self._check_status(fields['status'])
        row = self.data['subscriptions'].get(tenant_id)
        if not row:
            return None
        row.update(fields)
        return dict(row)

    def set_community_plan(self, cur, tenant_id, tier_id):
        self._check('set_community_plan')
        self.data['plans'][tenant_id] = tier_id

    def list_subscribed_tenants(self, cur):
        return [t for t, row in self.data['subscriptions'].items() if row['status'] != 'canceled']

    def list_lapsed_trial_subscriptions(self, cur, now):
        return [t for t, row in self.data['subscriptions'].items()
                if row['status'] == 'trialing' and row['is_trial']
                and not row['stripe_subscription_id'] and row['trial_ends_at'] <= now]

    # -- prices ----------------------------------------------------------

    def get_tier_price_ids(self, cur, tier_id):
        row = self.data['tier_prices'].get(tier_id)
        return dict(row) if row else None

    def get_addon_price_id(self, cur, addon_id):
        return self.data['addon_prices'].get(addon_id)

    # -- add-ons ---------------------------------------------------------

    def _addon_row(self, row):
        data = dict(row)
        legacy = data.pop('addon_type', None)
        data['addon_id'] = data.get('addon_id') or legacy
        return data

    def _addon_matches(self, row, tenant_id, addon_id):
        return row['tenant_id'] == tenant_id and (row.get('addon_id') or row.get('addon_type')) == addon_id

    def list_addons(self, cur, tenant_id, active_only=False):
        return [self._addon_row(row) for row in self.data['addons']
                if row['tenant_id'] == tenant_id and (not active_only or row['status'] == 'active')]

    def get_active_addon(self, cur, tenant_id, addon_id):
        for row in reversed(self.data['addons']):
            if self._addon_matches(row, tenant_id, addon_id) and row['status'] == 'active':
                return self._addon_row(row)
        return None

    def has_addon_history(self, cur, tenant_id, addon_id):
        return any(self._addon_matches(row, tenant_id, addon_id) for row in self.data['addons'])

    def insert_addon(self, cur, tenant_id, addon_id, quantity, price_per_unit, stripe_subscription_item_id):
        self._check('insert_addon')
        row = {
            'id': next(self._ids),
            'tenant_id': tenant_id,
            'addon_id': addon_id,
            'quantity': quantity,
            'price_per_unit': price_per_unit,
            'stripe_subscription_item_id': stripe_subscription_item_id,
            'status': 'active',
            'expires_at': None,
        }
        self.data['addons'].append(row)
        return self._addon_row(row)

    def seed_addon(self, tenant_id, addon_id=None, quantity=1, status='active',
                   item_id='si_seeded', addon_type=None):
        row = {
            'id': next(self._ids),
            'tenant_id': tenant_id,
            'addon_id': addon_id,
            'addon_type': addon_type,
            'quantity': quantity,
            'price_per_unit': 0,
            'stripe_subscription_item_id': item_id,
            'status': status,
            'expires_at': None,
        }
        self.data['addons'].append(row)
        return row

    def update_addon(self, cur, instance_id, **fields):
        self._check('update_addon')
        unknown = set(fields) - set(self.ADDON_FIELDS)
        if unknown:
            raise ValueError(f'Unknown columns: {sorted(unknown)}')
        for row in self.data['addons']:
            if row['id'] == instance_id:
                row.update(fields)
                return self._addon_row(row)
        return None

    # -- usage counters ------------------------------------------------

    def get_usage_counter(self, cur, tenant_id, metric):
        row = self.data['counters'].get((tenant_id, metric))
        return dict(row) if row else None

    def list_usage_counters(self, cur, tenant_id):
        return {metric: dict(row) for (t, metric), row in self.data['counters'].items() if t == tenant_id}

    def adjust_usage_limit(self, cur, tenant_id, metric, delta):
        self._check('adjust_usage_limit')
        row = self.data['counters'].get((tenant_id, metric))
        if not row:
            return None
        row['limit_value'] += delta
        return dict(row)

    def set_usage_current(self, cur, tenant_id, metric, value):
        self._check('set_usage_current')
        row = self.data['counters'].get((tenant_id, metric))
        if row:
            row['current_value'] = value

    def increment_usage(self, cur, tenant_id, metric, amount=1):
        self._check('increment_usage')
        row = self.data['counters'].get((tenant_id, metric))
        if row:
            row['current_value'] += amount

    def decrement_usage(self, cur, tenant_id, metric, amount=1):
        self._check('decrement_usage')
        row = self.data['counters'].get((tenant_id, metric))
        if row:
            row['current_value'] = max(0, row['current_value'] - amount)

    def initialize_usage_tracking(self, cur, tenant_id, limits):
        self._check('initialize_usage_tracking')
        for metric, limit in limits.items():
            row = self.data['counters'].setdefault(
                (tenant_id, metric), {'metric': metric, 'current_value': 0, 'limit_value': 0}
            )
            row['limit_value'] = limit

    def count_usage(self, cur, tenant_id):
        self._check('count_usage')
        counts = {'members': 0, 'items': 0, 'resources': 0, 'admins': 0}
        counts.update(self.data['counts'].get(tenant_id, {}))
        return counts

    # -- trials ----------------------------------------------------------

    def get_trial(self, cur, user_id):
        row = self.data['trials'].get(user_id)
        return dict(row) if row else None

    def insert_trial(self, cur, user_id, tier_id, trial_started_at, trial_ends_at, cooldown_ends_at):
        self._check('insert_trial')
        if user_id in self.data['trials']:
            raise psycopg2.IntegrityError('duplicate key value violates unique constraint')
        row = {
            'user_id': user_id,
            'trial_tier_id': tier_id,
            'trial_started_at': trial_started_at,
            'trial_ends_at': trial_ends_at,
            'cooldown_ends_at': cooldown_ends_at,
            'canceled_at': None,
            'expired_at': None,
            'converted_to_paid': False,
            'reminder_sent_day_7': False,
            'reminder_sent_day_12': False,
        }
        self.data['trials'][user_id] = row
        return dict(row)

    def update_trial(self, cur, user_id, **fields):
        self._check('update_trial')
        unknown = set(fields) - set(self.TRIAL_FIELDS)
        if unknown:
            raise ValueError(f'Unknown columns: {sorted(unknown)}')
        row = self.data['trials'].get(user_id)
        if not row:
            return None
        row.update(fields)
        return dict(row)

    def _open(self, row):
        return not row['converted_to_paid'] and not row['canceled_at'] and not row['expired_at']

    def list_trials_ending_between(self, cur, start, end):
        rows = [dict(row) for row in self.data['trials'].values()
                if self._open(row) and start < row['trial_ends_at'] <= end]
        return sorted(rows, key=lambda row: row['trial_ends_at'])

    def list_lapsed_trials(self, cur, now):
        return [dict(row) for row in self.data['trials'].values()
                if self._open(row) and row['trial_ends_at'] <= now]

    # -- billing events --------------------------------------------------

    def insert_billing_event(self, cur, tenant_id, operation, payload):
        self._check('insert_billing_event')
        event_id = next(self._ids)
        self.data['events'][event_id] = {
            'id': event_id,
            'tenant_id': tenant_id,
            'operation': operation,
            'payload': payload,
            'status': 'pending',
            'processor_ref': None,
            'error': None,
        }
        return event_id

    def update_billing_event(self, cur, event_id, status, processor_ref=None, error=None):
        self._check('update_billing_event')
        row = self.data['events'][event_id]
        row['status'] = status
        if processor_ref is not None:
            row['processor_ref'] = processor_ref
        if error is not None:
            row['error'] = error

    def get_billing_event(self, cur, event_id):
        row = self.data['events'].get(event_id)
        return dict(row) if row else None

    def list_billing_events(self, cur, status, tenant_id=None):
        return [dict(row) for row in self.data['events'].values()
                if row['status'] == status and (tenant_id is None or row['tenant_id'] == tenant_id)]

    def events(self, operation=None):
        return [row for row in self.data['events'].values()
                if operation is None or row['operation'] == operation]


class FakeProcessor:
    """Records every call; set fail_with to make the next calls raise."""

    def __init__(self):
        self.calls = []
        self.fail_with = None
        self._ids = itertools.count(1)

    def _record(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        if self.fail_with is not None:
            raise self.fail_with

    @property
    def call_names(self):
        return [name for name, _, _ in self.calls]

    def create_subscription(self, customer_id, price_id, metadata=None, trial_period_days=None):
        self._record('create_subscription', customer_id, price_id, metadata=metadata)
        return {
            'id': f'sub_{next(self._ids)}',
            'status': 'active',
            'current_period_start': datetime(2026, 3, 1, tzinfo=timezone.utc),
            'current_period_end': datetime(2026, 4, 1, tzinfo=timezone.utc),
        }

    def change_subscription_price(self, subscription_id, new_price_id, current_price_id=None, metadata=None):
        self._record('change_subscription_price', subscription_id, new_price_id,
                     current_price_id=current_price_id, metadata=metadata)
        return {'id': subscription_id, 'status': 'active'}

    def cancel_subscription(self, subscription_id):
        self._record('cancel_subscription', subscription_id)
        return {'id': subscription_id, 'status': 'canceled'}

    def set_cancel_at_period_end(self, subscription_id, cancel):
        self._record('set_cancel_at_period_end', subscription_id, cancel)
        return {'id': subscription_id, 'status': 'active', 'cancel_at_period_end': cancel}

    def create_subscription_item(self, subscription_id, price_id, quantity):
        self._record('create_subscription_item', subscription_id, price_id, quantity)
        return f'si_{next(self._ids)}'

    def update_subscription_item_quantity(self, item_id, quantity):
        self._record('update_subscription_item_quantity', item_id, quantity)
        return item_id

    def delete_subscription_item(self, item_id):
        self._record('delete_subscription_item', item_id)
        return item_id


class FrozenClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    store = FakeStore()
    for tier in DEFAULT_CATALOG.tiers:
        store.data['tier_prices'][tier['id']] = {
            'stripe_price_monthly_id': f"price_{tier['id']}_monthly",
            'stripe_price_annual_id': f"price_{tier['id']}_annual",
        }
    for addon in DEFAULT_CATALOG.addons:
        store.data['addon_prices'][addon['id']] = f"price_{addon['id']}"
    return store


@pytest.fixture
def conn(store):
    return FakeConnection(store)


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def subscribed(store, conn):
    """TENANT on an active, Stripe-backed starter subscription with counters set up."""
    store.upsert_subscription(None, TENANT, 'starter', 'active',
                              stripe_customer_id='cus_1', stripe_subscription_id='sub_live')
    store.initialize_usage_tracking(None, TENANT, DEFAULT_CATALOG.tier_limits('starter'))
    conn.commit()
    return TENANT


@pytest.fixture
def client(store, processor, clock):
    """Flask test client wired to the fake store and processor."""
    app = Flask(__name__)
    app.config['TESTING'] = True
    conn = FakeConnection(store)
    communities_bp, platform_bp = init_entitlements(
        lambda: conn,
        processor_factory=lambda: processor,
        store=store,
        clock=clock,
    )
    app.register_blueprint(communities_bp)
    app.register_blueprint(platform_bp)
    app.test_conn = conn
    return app.test_client()
