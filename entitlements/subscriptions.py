"""
Subscription Lifecycle Manager
Owner: CC2
Workstream: W2P5

Tier selection and changes, cancellation (immediate or at period end),
resumption and usage reconciliation. Stripe is called first; local state
is only written once Stripe has accepted the change (see outbox.py).
"""

from typing import Dict, Any, Optional

from entitlements import db
from entitlements.catalog import DEFAULT_CATALOG, BILLING_PERIODS, METRICS, to_plain
from entitlements.errors import (
    InvalidRequest,
    InvalidTransition,
    NotFound,
    TierNotConfigured,
)
from entitlements.outbox import processor_step
from entitlements.trials import mark_trial_converted
from entitlements.usage import UsageMeter, initialize_usage_tracking


class SubscriptionManager:
    """Drives a community's Stripe subscription and mirrors it locally."""

    def __init__(self, conn, processor=None, store=db, catalog=DEFAULT_CATALOG, clock=None):
        self.conn = conn
        self._processor = processor
        self.store = store
        self.catalog = catalog
        self.clock = clock or db.utcnow

    @property
    def processor(self):
        if self._processor is None:
            from entitlements.processor import StripeProcessor
            self._processor = StripeProcessor()
        return self._processor

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_subscription(self, tenant_id: str) -> Dict[str, Any]:
        """
        Subscription with its tier definition and active add-ons.

        Raises:
            NotFound: community has no subscription record
        """
        cur = self.store.dict_cursor(self.conn)
        try:
            subscription = self.store.get_subscription(cur, tenant_id)
            if not subscription:
                raise NotFound('subscription', tenant_id)
            addons = self.store.list_addons(cur, tenant_id, active_only=True)
        finally:
            cur.close()

        tier = self.catalog.tier_by_id(subscription.get('tier_id'))
        subscription['tier'] = to_plain(tier) if tier else None
        subscription['addons'] = addons
        return subscription

    def _billed_subscription(self, cur, tenant_id: str) -> Dict[str, Any]:
        subscription = self.store.get_subscription(cur, tenant_id)
        if not subscription or not subscription.get('stripe_subscription_id'):
            raise NotFound('subscription', tenant_id, 'No active subscription')
        return subscription

    def _price_for(self, cur, tier_id: str, billing_period: str) -> str:
        prices = self.store.get_tier_price_ids(cur, tier_id) or {}
        price_id = prices.get(f'stripe_price_{billing_period}_id')
        if not price_id:
            raise TierNotConfigured(tier_id, billing_period)
        return price_id

    # ------------------------------------------------------------------
    # Limit bookkeeping
    # ------------------------------------------------------------------

    def _rederive_limits(self, cur, tenant_id: str, old_tier_id: Optional[str], new_tier_id: str) -> None:
        """
        Move limits from the old tier's values to the new tier's.

        Applied as a per-metric delta so add-on contributions survive the
        change. Without counters or a known old tier there is nothing to move
        from, so counters are rebuilt from the new tier plus active add-ons.
        """
        counters = self.store.list_usage_counters(cur, tenant_id)
        old_tier = self.catalog.tier_by_id(old_tier_id) if old_tier_id else None

        if counters and old_tier:
            new_limits = self.catalog.tier_limits(new_tier_id)
            old_limits = self.catalog.tier_limits(old_tier_id)
            for metric in METRICS:
                delta = new_limits[metric] - old_limits[metric]
                if delta:
                    self.store.adjust_usage_limit(cur, tenant_id, metric, delta)
            return

        initialize_usage_tracking(cur, tenant_id, new_tier_id, self.catalog, self.store)
        for instance in self.store.list_addons(cur, tenant_id, active_only=True):
            addon = self.catalog.addon_by_id(instance['addon_id'])
            increase = addon.get('metric_increase') if addon else None
            if increase:
                self.store.adjust_usage_limit(cur, tenant_id, increase['metric'],
                                              increase['amount'] * instance['quantity'])

    def _expire_addons(self, cur, tenant_id: str, now) -> None:
        """Stripe drops every line item with the subscription; mirror that locally."""
        for instance in self.store.list_addons(cur, tenant_id, active_only=True):
            self.store.update_addon(cur, instance['id'], status='expired', expires_at=now)
            addon = self.catalog.addon_by_id(instance['addon_id'])
            increase = addon.get('metric_increase') if addon else None
            if increase:
                self.store.adjust_usage_limit(cur, tenant_id, increase['metric'],
                                              -increase['amount'] * instance['quantity'])

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_subscription(
        self,
        tenant_id: str,
        tier_id: str,
        billing_period: str,
        customer_id: str,
        user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        First paid tier selection for a community.

        Replaces a local-only trial or a canceled subscription. When user_id
        is given, that user's trial is marked as converted.

        Raises:
            NotFound: unknown tier
            InvalidRequest: bad billing period or missing customer
            InvalidTransition: community already has a live Stripe subscription
            TierNotConfigured: tier has no Stripe price for the period
        """
        self.catalog.require_tier(tier_id)
        if billing_period not in BILLING_PERIODS:
            raise InvalidRequest(f"billing_period must be one of {', '.join(BILLING_PERIODS)}",
                                 field='billing_period')
        if not customer_id:
            raise InvalidRequest('customer_id is required', field='customer_id')

        cur = self.store.dict_cursor(self.conn)
        try:
            existing = self.store.get_subscription(cur, tenant_id)
            if existing and existing.get('stripe_subscription_id') and existing['status'] != 'canceled':
                raise InvalidTransition('Community already has an active subscription')
            price_id = self._price_for(cur, tier_id, billing_period)
        finally:
            cur.close()

        def write_local(cur, result):
            subscription = self.store.upsert_subscription(
                cur, tenant_id, tier_id, result['status'],
                billing_period=billing_period,
                is_trial=result['status'] == 'trialing',
                stripe_customer_id=customer_id,
                stripe_subscription_id=result['id'],
                current_period_start=result.get('current_period_start'),
                current_period_end=result.get('current_period_end'),
            )
            initialize_usage_tracking(cur, tenant_id, tier_id, self.catalog, self.store)
            self.store.set_community_plan(cur, tenant_id, tier_id)
            if user_id:
                mark_trial_converted(cur, user_id, self.store)
            return subscription

        subscription = processor_step(
            self.conn, tenant_id, 'create_subscription',
            {'tier_id': tier_id, 'billing_period': billing_period, 'price_id': price_id},
            lambda: self.processor.create_subscription(
                customer_id, price_id,
                metadata={'community_id': tenant_id, 'tier_id': tier_id},
            ),
            write_local,
            reference=lambda result: result['id'],
            store=self.store,
        )
        print(f"[BILLING] {tenant_id} subscribed to {tier_id} ({billing_period})", flush=True)
        return subscription

    def change_tier(self, tenant_id: str, new_tier_id: str) -> Dict[str, Any]:
        """
        Upgrade or downgrade with Stripe proration.

        Raises:
            NotFound: no Stripe subscription, or unknown tier
            InvalidTransition: subscription is canceled
            TierNotConfigured: new tier has no Stripe price for the billing period

        Returns:
            Updated subscription dict
        """
        cur = self.store.dict_cursor(self.conn)
        try:
            subscription = self._billed_subscription(cur, tenant_id)
            self.catalog.require_tier(new_tier_id)
            if subscription['status'] == 'canceled':
                raise InvalidTransition('Cannot change the tier of a canceled subscription')

            old_tier_id = subscription.get('tier_id')
            if old_tier_id == new_tier_id:
                return subscription

            billing_period = subscription.get('billing_period') or 'monthly'
            new_price_id = self._price_for(cur, new_tier_id, billing_period)
            old_price_id = None
            if old_tier_id:
                old_prices = self.store.get_tier_price_ids(cur, old_tier_id) or {}
                old_price_id = old_prices.get(f'stripe_price_{billing_period}_id')
        finally:
            cur.close()

        stripe_subscription_id = subscription['stripe_subscription_id']

        def write_local(cur, _result):
            updated = self.store.update_subscription(cur, tenant_id, tier_id=new_tier_id)
            self._rederive_limits(cur, tenant_id, old_tier_id, new_tier_id)
            self.store.set_community_plan(cur, tenant_id, new_tier_id)
            return updated

        updated = processor_step(
            self.conn, tenant_id, 'change_tier',
            {'old_tier_id': old_tier_id, 'new_tier_id': new_tier_id, 'price_id': new_price_id},
            lambda: self.processor.change_subscription_price(
                stripe_subscription_id, new_price_id,
                current_price_id=old_price_id,
                metadata={'tier_id': new_tier_id},
            ),
            write_local,
            reference=stripe_subscription_id,
            store=self.store,
        )
        print(f"[BILLING] {tenant_id} changed tier {old_tier_id} -> {new_tier_id}", flush=True)
        return updated

    def cancel_subscription(self, tenant_id: str, immediately: bool = False) -> Dict[str, Any]:
        """
        Cancel now (status 'canceled') or at period end (cancel_at_period_end).

        Raises:
            NotFound: no Stripe subscription
            InvalidTransition: already canceled, or already scheduled to cancel
        """
        cur = self.store.dict_cursor(self.conn)
        try:
            subscription = self._billed_subscription(cur, tenant_id)
        finally:
            cur.close()

        if subscription['status'] == 'canceled':
            raise InvalidTransition('Subscription is already canceled')

        stripe_subscription_id = subscription['stripe_subscription_id']

        if immediately:
            def write_local(cur, _result):
                now = self.clock()
                updated = self.store.update_subscription(
                    cur, tenant_id,
                    status='canceled', canceled_at=now, cancel_at_period_end=False,
                )
                self._expire_addons(cur, tenant_id, now)
                return updated

            updated = processor_step(
                self.conn, tenant_id, 'cancel_subscription',
                {'immediately': True},
                lambda: self.processor.cancel_subscription(stripe_subscription_id),
                write_local,
                reference=stripe_subscription_id,
                store=self.store,
            )
            print(f"[BILLING] {tenant_id} subscription canceled immediately", flush=True)
            return updated

        if subscription.get('cancel_at_period_end'):
            raise InvalidTransition('Subscription is already scheduled to cancel')

        updated = processor_step(
            self.conn, tenant_id, 'cancel_subscription',
            {'immediately': False},
            lambda: self.processor.set_cancel_at_period_end(stripe_subscription_id, True),
            lambda cur, _result: self.store.update_subscription(cur, tenant_id, cancel_at_period_end=True),
            reference=stripe_subscription_id,
            store=self.store,
        )
        print(f"[BILLING] {tenant_id} subscription will cancel at period end", flush=True)
        return updated

    def resume_subscription(self, tenant_id: str) -> Dict[str, Any]:
        """
        Withdraw a pending end-of-period cancellation.

        Raises:
            NotFound: no Stripe subscription
            InvalidTransition: nothing pending (or already canceled)
        """
        cur = self.store.dict_cursor(self.conn)
        try:
            subscription = self._billed_subscription(cur, tenant_id)
        finally:
            cur.close()

        if subscription['status'] == 'canceled':
            raise InvalidTransition('Subscription is already canceled')
        if not subscription.get('cancel_at_period_end'):
            raise InvalidTransition('Subscription is not pending cancellation')

        stripe_subscription_id = subscription['stripe_subscription_id']
        updated = processor_step(
            self.conn, tenant_id, 'resume_subscription',
            {},
            lambda: self.processor.set_cancel_at_period_end(stripe_subscription_id, False),
            lambda cur, _result: self.store.update_subscription(cur, tenant_id, cancel_at_period_end=False),
            reference=stripe_subscription_id,
            store=self.store,
        )
        print(f"[BILLING] {tenant_id} subscription resumed", flush=True)
        return updated

    def sync_usage(self, tenant_id: str) -> Dict[str, int]:
        return UsageMeter(self.conn, self.store, self.catalog).sync_usage(tenant_id)
