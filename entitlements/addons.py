"""
Add-on Manager
Owner: CC2
Workstream: W2P5

Capacity add-ons are extra line items on the community's existing Stripe
subscription (never standalone). Each purchase/adjust/cancel moves the
matching usage limit by a signed delta:

    purchase  +quantity * amount
    adjust    +(new - old) * amount
    cancel    -quantity * amount

Limits are never recomputed from a snapshot, so concurrent changes to
different add-ons on the same metric add up correctly.
"""

import sys
from typing import Dict, Any, List, Optional

from entitlements import db
from entitlements.catalog import DEFAULT_CATALOG, to_plain
from entitlements.errors import (
    AddOnNotConfigured,
    InvalidRequest,
    InvalidTransition,
    NotFound,
)
from entitlements.outbox import processor_step


def _validate_quantity(quantity, minimum: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < minimum:
        raise InvalidRequest(f'quantity must be an integer >= {minimum}', field='quantity')


class AddOnManager:
    """Purchase, resize and cancel add-ons for a community."""

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

    def _shift_limit(self, cur, tenant_id: str, addon, units: int) -> Optional[Dict[str, Any]]:
        increase = addon.get('metric_increase')
        if not increase or units == 0:
            return None
        delta = increase['amount'] * units
        counter = self.store.adjust_usage_limit(cur, tenant_id, increase['metric'], delta)
        if counter is None:
            print(f"[BILLING] Warning: no {increase['metric']} counter for {tenant_id}, "
                  f"limit change {delta:+d} not applied", file=sys.stderr, flush=True)
        return counter

    def _active_instance(self, cur, tenant_id: str, addon_id: str) -> Dict[str, Any]:
        instance = self.store.get_active_addon(cur, tenant_id, addon_id)
        if instance:
            return instance
        if self.store.has_addon_history(cur, tenant_id, addon_id):
            raise InvalidTransition(f"Add-on '{addon_id}' is not active")
        raise NotFound('addon', addon_id, f"Add-on '{addon_id}' not found for this community")

    def get_active_addons(self, tenant_id: str) -> List[Dict[str, Any]]:
        cur = self.store.dict_cursor(self.conn)
        try:
            return self.store.list_addons(cur, tenant_id, active_only=True)
        finally:
            cur.close()

    def get_available_addons(self, tenant_id: str) -> List[Dict[str, Any]]:
        """
        Full add-on catalog annotated with this community's active quantity.

        Returns:
            List of add-on dicts with extra keys quantity (0 if none) and is_active
        """
        quantities: Dict[str, int] = {}
        for instance in self.get_active_addons(tenant_id):
            quantities[instance['addon_id']] = quantities.get(instance['addon_id'], 0) + instance['quantity']

        available = []
        for addon in self.catalog.addons:
            entry = to_plain(addon)
            entry['quantity'] = quantities.get(addon['id'], 0)
            entry['is_active'] = entry['quantity'] > 0
            available.append(entry)
        return available

    def purchase_addon(self, tenant_id: str, addon_id: str, quantity: int = 1) -> Dict[str, Any]:
        """
        Add an add-on to the community's Stripe subscription.

        Raises:
            NotFound: unknown add-on, or no Stripe subscription to attach to
            InvalidTransition: subscription is canceled
            AddOnNotConfigured: add-on has no Stripe price
            ExternalProcessorError: Stripe rejected the line item

        Returns:
            The new active add-on instance
        """
        addon = self.catalog.require_addon(addon_id)
        _validate_quantity(quantity, 1)

        cur = self.store.dict_cursor(self.conn)
        try:
            subscription = self.store.get_subscription(cur, tenant_id)
            price_id = self.store.get_addon_price_id(cur, addon_id)
        finally:
            cur.close()

        if not subscription or not subscription.get('stripe_subscription_id'):
            raise NotFound('subscription', tenant_id,
                           'Community must have an active subscription to purchase add-ons')
        if subscription['status'] == 'canceled':
            raise InvalidTransition('Cannot add add-ons to a canceled subscription')
        if not price_id:
            raise AddOnNotConfigured(addon_id)

        stripe_subscription_id = subscription['stripe_subscription_id']

        def write_local(cur, item_id):
            instance = self.store.insert_addon(
                cur, tenant_id, addon_id, quantity, addon['price_per_year'], item_id
            )
            self._shift_limit(cur, tenant_id, addon, quantity)
            return instance

        instance = processor_step(
            self.conn, tenant_id, 'purchase_addon',
            {'addon_id': addon_id, 'quantity': quantity, 'price_id': price_id},
            lambda: self.processor.create_subscription_item(stripe_subscription_id, price_id, quantity),
            write_local,
            reference=lambda item_id: item_id,
            store=self.store,
        )
        print(f"[BILLING] {tenant_id} purchased {addon_id} x{quantity}", flush=True)
        return instance

    def update_addon_quantity(self, tenant_id: str, addon_id: str, new_quantity: int) -> Dict[str, Any]:
        """
        Resize an active add-on. A quantity of 0 cancels it.

        Returns:
            The updated (or canceled) add-on instance
        """
        addon = self.catalog.require_addon(addon_id)
        _validate_quantity(new_quantity, 0)

        cur = self.store.dict_cursor(self.conn)
        try:
            instance = self._active_instance(cur, tenant_id, addon_id)
        finally:
            cur.close()

        if new_quantity == 0:
            return self.cancel_addon(tenant_id, addon_id)

        old_quantity = instance['quantity']
        if new_quantity == old_quantity:
            return instance

        item_id = instance.get('stripe_subscription_item_id')
        if not item_id:
            raise NotFound('subscription_item', addon_id,
                           f"Add-on '{addon_id}' has no Stripe line item to update")

        def write_local(cur, _result):
            updated = self.store.update_addon(cur, instance['id'], quantity=new_quantity)
            self._shift_limit(cur, tenant_id, addon, new_quantity - old_quantity)
            return updated

        updated = processor_step(
            self.conn, tenant_id, 'update_addon_quantity',
            {'addon_id': addon_id, 'old_quantity': old_quantity, 'new_quantity': new_quantity},
            lambda: self.processor.update_subscription_item_quantity(item_id, new_quantity),
            write_local,
            reference=item_id,
            store=self.store,
        )
        print(f"[BILLING] {tenant_id} {addon_id} quantity {old_quantity} -> {new_quantity}", flush=True)
        return updated

    def cancel_addon(self, tenant_id: str, addon_id: str) -> Dict[str, Any]:
        """
        Remove an add-on from Stripe (prorated) and mark it canceled locally.

        The row is kept for audit with status 'canceled' and expires_at set.
        """
        addon = self.catalog.require_addon(addon_id)

        cur = self.store.dict_cursor(self.conn)
        try:
            instance = self._active_instance(cur, tenant_id, addon_id)
        finally:
            cur.close()

        item_id = instance.get('stripe_subscription_item_id')

        def call_processor():
            if item_id:
                return self.processor.delete_subscription_item(item_id)
            return None

        def write_local(cur, _result):
            canceled = self.store.update_addon(
                cur, instance['id'], status='canceled', expires_at=self.clock()
            )
            self._shift_limit(cur, tenant_id, addon, -instance['quantity'])
            return canceled

        canceled = processor_step(
            self.conn, tenant_id, 'cancel_addon',
            {'addon_id': addon_id, 'quantity': instance['quantity']},
            call_processor,
            write_local,
            reference=item_id,
            store=self.store,
        )
        print(f"[BILLING] {tenant_id} canceled {addon_id}", flush=True)
        return canceled
