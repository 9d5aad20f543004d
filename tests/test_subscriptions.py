"""Subscription lifecycle: create, tier changes, cancel / resume."""

import psycopg2
import pytest
import stripe

from entitlements.addons import AddOnManager
from entitlements.errors import (
    ExternalProcessorError,
    InvalidRequest,
    InvalidTransition,
    NotFound,
    TierNotConfigured,
)
from entitlements.processor import StripeProcessor
from entitlements.subscriptions import SubscriptionManager
from entitlements.trials import TrialManager

from conftest import OTHER_TENANT, TENANT, USER


@pytest.fixture
def subscriptions(store, conn, processor, clock):
    return SubscriptionManager(conn, processor, store, clock=clock)


@pytest.fixture
def addons(store, conn, processor, clock):
    return AddOnManager(conn, processor, store, clock=clock)


# ============================================================================
# Reads
# ============================================================================

def test_get_subscription_includes_tier_and_addons(subscribed, subscriptions, addons):
    addons.purchase_addon(TENANT, 'extra_admin')

    subscription = subscriptions.get_subscription(TENANT)

    assert subscription['tier_id'] == 'starter'
    assert subscription['tier']['id'] == 'starter'
    assert subscription['tier']['limits']['members'] == 10
    assert [a['addon_id'] for a in subscription['addons']] == ['extra_admin']


def test_get_subscription_missing(subscriptions):
    with pytest.raises(NotFound):
        subscriptions.get_subscription(OTHER_TENANT)


# ============================================================================
# Create
# ============================================================================

def test_create_subscription(subscriptions, store, processor):
    subscription = subscriptions.create_subscription(TENANT, 'growth', 'annual', 'cus_9')

    assert processor.calls == [(
        'create_subscription', ('cus_9', 'price_growth_annual'),
        {'metadata': {'community_id': TENANT, 'tier_id': 'growth'}},
    )]
    assert subscription['status'] == 'active'
    assert subscription['billing_period'] == 'annual'
    assert subscription['stripe_subscription_id'] == 'sub_1'
    assert store.limit(TENANT, 'members') == 30
    assert store.data['plans'][TENANT] == 'growth'
    assert [e['status'] for e in store.events('create_subscription')] == ['completed']
    assert store.events('create_subscription')[0]['processor_ref'] == 'sub_1'


def test_create_converts_local_trial(subscriptions, store, conn, clock):
    TrialManager(conn, store, clock=clock).start_trial(USER, 'community', TENANT)

    subscription = subscriptions.create_subscription(TENANT, 'starter', 'monthly', 'cus_1', user_id=USER)

    assert subscription['is_trial'] is False
    assert store.data['trials'][USER]['converted_to_paid'] is True
    assert store.limit(TENANT, 'members') == 10


def test_create_rejects_bad_input(subscriptions, processor):
    with pytest.raises(NotFound):
        subscriptions.create_subscription(TENANT, 'enterprise', 'monthly', 'cus_1')
    with pytest.raises(InvalidRequest):
        subscriptions.create_subscription(TENANT, 'starter', 'weekly', 'cus_1')
    with pytest.raises(InvalidRequest):
        subscriptions.create_subscription(TENANT, 'starter', 'monthly', '')
    assert processor.calls == []


def test_create_rejects_live_subscription(subscribed, subscriptions, processor):
    with pytest.raises(InvalidTransition):
        subscriptions.create_subscription(TENANT, 'growth', 'monthly', 'cus_1')
    assert processor.calls == []


def test_create_after_cancel_is_allowed(subscribed, subscriptions):
    subscriptions.cancel_subscription(TENANT, immediately=True)
    subscription = subscriptions.create_subscription(TENANT, 'community', 'monthly', 'cus_1')
    assert subscription['status'] == 'active'
    assert subscription['tier_id'] == 'community'


def test_create_without_price(subscriptions, store, processor):
    del store.data['tier_prices']['starter']
    with pytest.raises(TierNotConfigured) as exc:
        subscriptions.create_subscription(TENANT, 'starter', 'monthly', 'cus_1')
    assert int(exc.value.status_code) == 503
    assert processor.calls == []


# ============================================================================
# Tier changes
# ============================================================================

def test_change_tier_keeps_addon_capacity(subscribed, subscriptions, addons, store, processor):
    addons.purchase_addon(TENANT, 'extra_members_10', 1)
    assert store.limit(TENANT, 'members') == 20

    subscriptions.change_tier(TENANT, 'growth')

    assert processor.calls[-1] == (
        'change_subscription_price', ('sub_live', 'price_growth_monthly'),
        {'current_price_id': 'price_starter_monthly', 'metadata': {'tier_id': 'growth'}},
    )
    assert store.limit(TENANT, 'members') == 30 + 10
    assert store.limit(TENANT, 'storage_mb') == 3072
    assert store.data['subscriptions'][TENANT]['tier_id'] == 'growth'
    assert store.data['plans'][TENANT] == 'growth'


def test_downgrade_applies_negative_delta(subscribed, subscriptions, store):
    subscriptions.change_tier(TENANT, 'professional')
    subscriptions.change_tier(TENANT, 'community')
    assert store.limit(TENANT, 'members') == 15
    assert store.limit(TENANT, 'admins') == 1


def test_change_tier_rebuilds_missing_counters(subscriptions, store, conn):
    store.upsert_subscription(None, TENANT, 'starter', 'active', stripe_subscription_id='sub_live')
    store.seed_addon(TENANT, addon_id='extra_members_10', quantity=2)
    conn.commit()

    subscriptions.change_tier(TENANT, 'growth')

    assert store.limit(TENANT, 'members') == 30 + 20
    assert store.limit(TENANT, 'items') == 50


def test_change_to_same_tier_is_noop(subscribed, subscriptions, processor):
    subscription = subscriptions.change_tier(TENANT, 'starter')
    assert subscription['tier_id'] == 'starter'
    assert processor.calls == []


def test_change_tier_errors(subscriptions, store, conn, processor):
    with pytest.raises(NotFound):
        subscriptions.change_tier(TENANT, 'growth')

    store.upsert_subscription(None, TENANT, 'starter', 'active', stripe_subscription_id='sub_live')
    conn.commit()
    with pytest.raises(NotFound):
        subscriptions.change_tier(TENANT, 'enterprise')

    del store.data['tier_prices']['growth']
    with pytest.raises(TierNotConfigured):
        subscriptions.change_tier(TENANT, 'growth')
    assert processor.calls == []


def test_change_tier_processor_failure(subscribed, subscriptions, store, processor):
    processor.fail_with = ExternalProcessorError('change_subscription_price', 'card_declined')

    with pytest.raises(ExternalProcessorError):
        subscriptions.change_tier(TENANT, 'growth')

    assert store.data['subscriptions'][TENANT]['tier_id'] == 'starter'
    assert store.limit(TENANT, 'members') == 10
    assert [e['status'] for e in store.events('change_tier')] == ['processor_failed']


# ============================================================================
# Cancel / resume
# ============================================================================

def test_cancel_immediately_expires_addons(subscribed, subscriptions, addons, store, processor):
    addons.purchase_addon(TENANT, 'extra_members_10', 2)

    subscription = subscriptions.cancel_subscription(TENANT, immediately=True)

    assert subscription['status'] == 'canceled'
    assert subscription['canceled_at'] is not None
    assert processor.calls[-1] == ('cancel_subscription', ('sub_live',), {})
    assert [a['status'] for a in store.list_addons(None, TENANT)] == ['expired']
    assert store.limit(TENANT, 'members') == 10

    with pytest.raises(InvalidTransition):
        subscriptions.cancel_subscription(TENANT, immediately=True)
    with pytest.raises(InvalidTransition):
        subscriptions.change_tier(TENANT, 'growth')


def test_cancel_at_period_end(subscribed, subscriptions, store, processor):
    subscription = subscriptions.cancel_subscription(TENANT)

    assert subscription['status'] == 'active'
    assert subscription['cancel_at_period_end'] is True
    assert processor.calls == [('set_cancel_at_period_end', ('sub_live', True), {})]

    with pytest.raises(InvalidTransition):
        subscriptions.cancel_subscription(TENANT)


def test_resume_withdraws_pending_cancel(subscribed, subscriptions, store, processor):
    subscriptions.cancel_subscription(TENANT)

    subscription = subscriptions.resume_subscription(TENANT)

    assert subscription['cancel_at_period_end'] is False
    assert processor.calls[-1] == ('set_cancel_at_period_end', ('sub_live', False), {})
    with pytest.raises(InvalidTransition):
        subscriptions.resume_subscription(TENANT)


def test_resume_canceled_subscription(subscribed, subscriptions):
    subscriptions.cancel_subscription(TENANT, immediately=True)
    with pytest.raises(InvalidTransition):
        subscriptions.resume_subscription(TENANT)


def test_cancel_without_subscription(subscriptions):
    with pytest.raises(NotFound):
        subscriptions.cancel_subscription(TENANT)


def test_sync_usage(subscribed, subscriptions, store):
    store.data['counts'][TENANT] = {'members': 4, 'items': 2}
    counts = subscriptions.sync_usage(TENANT)
    assert counts['members'] == 4
    assert store.current(TENANT, 'items') == 2


def test_incomplete_first_payment_is_stored_as_past_due(store, conn, clock, monkeypatch):
    monkeypatch.setattr(stripe.Subscription, 'create', lambda **params: {
        'id': 'sub_pending', 'status': 'incomplete',
        'current_period_start': 1772366400, 'current_period_end': 1775044800,
    })
    manager = SubscriptionManager(conn, StripeProcessor(), store, clock=clock)

    subscription = manager.create_subscription(TENANT, 'starter', 'monthly', 'cus_1')

    assert subscription['status'] == 'past_due'
    assert subscription['is_trial'] is False
    assert store.data['subscriptions'][TENANT]['stripe_subscription_id'] == 'sub_pending'
    assert [e['status'] for e in store.events('create_subscription')] == ['completed']


def test_store_rejects_unknown_status(store):
    with pytest.raises(psycopg2.IntegrityError):
        store.upsert_subscription(None, TENANT, 'starter', 'incomplete')
