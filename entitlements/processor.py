"""
Stripe Processor Adapter
Owner: CC2
Workstream: W2P2

Thin wrapper over the Stripe subscription APIs used by the entitlement
managers. Every call either returns plain data (ids, status, period bounds)
or raises ExternalProcessorError; stripe exceptions never leak past here.

Only pre-configured price IDs are ever sent. No ad-hoc prices.
"""

import os
import sys
from datetime import datetime, timezone
from typing import Optional, Dict, Any

import stripe

from entitlements.errors import ExternalProcessorError

stripe.api_key = os.environ.get('STRIPE_SECRET_KEY')

PRORATION_BEHAVIOR = 'create_prorations'

# Stripe statuses with no local counterpart, folded into trialing/active/past_due/canceled
LOCAL_STATUS = {
    'incomplete': 'past_due',
    'unpaid': 'past_due',
    'paused': 'past_due',
    'incomplete_expired': 'canceled',
}


def _timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _local_status(status: str) -> str:
    return LOCAL_STATUS.get(status, status)


def _period_bounds(subscription) -> Dict[str, Optional[datetime]]:
    # Newer API versions moved the period onto the subscription items
    start = subscription.get('current_period_start')
    end = subscription.get('current_period_end')
    if start is None or end is None:
        items = (subscription.get('items') or {}).get('data') or []
        if items:
            start = items[0].get('current_period_start')
            end = items[0].get('current_period_end')
    return {
        'current_period_start': _timestamp(start),
        'current_period_end': _timestamp(end),
    }


class StripeProcessor:
    """Billing processor backed by the stripe SDK."""

    def _call(self, operation: str, reference: Optional[str], func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except stripe.StripeError as e:
            message = getattr(e, 'user_message', None) or str(e)
            print(f"[STRIPE] {operation} failed (ref={reference}): {message}",
                  file=sys.stderr, flush=True)
            raise ExternalProcessorError(
                operation,
                processor_message=message,
                processor_code=getattr(e, 'code', None),
                reference=reference,
            ) from e

    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        metadata: Optional[Dict[str, str]] = None,
        trial_period_days: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Create a subscription for an existing Stripe customer.

        Returns:
            Dict with id, status (one of the four local statuses),
            current_period_start, current_period_end
        """
        params = {
            'customer': customer_id,
            'items': [{'price': price_id, 'quantity': 1}],
            'metadata': metadata or {},
        }
        if trial_period_days:
            params['trial_period_days'] = trial_period_days

        subscription = self._call('create_subscription', customer_id,
                                  stripe.Subscription.create, **params)
        print(f"[STRIPE] Created subscription {subscription['id']} for {customer_id}", flush=True)
        return {
            'id': subscription['id'],
            'status': _local_status(subscription['status']),
            **_period_bounds(subscription),
        }

    def change_subscription_price(
        self,
        subscription_id: str,
        new_price_id: str,
        current_price_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """
        Swap the tier line item to a new price, prorated.

        The tier item is the one billed at current_price_id; add-on items on
        the same subscription are left alone. Falls back to the first item.
        """
        subscription = self._call('retrieve_subscription', subscription_id,
                                  stripe.Subscription.retrieve, subscription_id)
        items = subscription['items']['data']
        if not items:
            raise ExternalProcessorError('change_subscription_price',
                                         'subscription has no items', reference=subscription_id)

        tier_item = items[0]
        if current_price_id:
            for item in items:
                if item['price']['id'] == current_price_id:
                    tier_item = item
                    break

        merged_metadata = dict(subscription.get('metadata') or {})
        merged_metadata.update(metadata or {})

        updated = self._call(
            'change_subscription_price', subscription_id,
            stripe.Subscription.modify,
            subscription_id,
            items=[{'id': tier_item['id'], 'price': new_price_id}],
            proration_behavior=PRORATION_BEHAVIOR,
            metadata=merged_metadata,
        )
        print(f"[STRIPE] Subscription {subscription_id} moved to price {new_price_id}", flush=True)
        return {
            'id': updated['id'],
            'status': _local_status(updated['status']),
            **_period_bounds(updated),
        }

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Cancel immediately."""
        canceled = self._call('cancel_subscription', subscription_id,
                              stripe.Subscription.cancel, subscription_id)
        print(f"[STRIPE] Subscription {subscription_id} canceled immediately", flush=True)
        return {'id': canceled['id'], 'status': _local_status(canceled['status'])}

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> Dict[str, Any]:
        """Schedule (cancel=True) or withdraw (cancel=False) end-of-period cancellation."""
        updated = self._call('set_cancel_at_period_end', subscription_id,
                             stripe.Subscription.modify,
                             subscription_id, cancel_at_period_end=cancel)
        print(f"[STRIPE] Subscription {subscription_id} cancel_at_period_end={cancel}", flush=True)
        return {
            'id': updated['id'],
            'status': _local_status(updated['status']),
            'cancel_at_period_end': updated.get('cancel_at_period_end', cancel),
        }

    def create_subscription_item(self, subscription_id: str, price_id: str, quantity: int) -> str:
        """Add a line item to a subscription. Returns the item id."""
        item = self._call('create_subscription_item', subscription_id,
                          stripe.SubscriptionItem.create,
                          subscription=subscription_id, price=price_id, quantity=quantity)
        print(f"[STRIPE] Added item {item['id']} x{quantity} to {subscription_id}", flush=True)
        return item['id']

    def update_subscription_item_quantity(self, item_id: str, quantity: int) -> str:
        item = self._call('update_subscription_item', item_id,
                          stripe.SubscriptionItem.modify,
                          item_id, quantity=quantity, proration_behavior=PRORATION_BEHAVIOR)
        print(f"[STRIPE] Item {item_id} quantity -> {quantity}", flush=True)
        return item['id']

    def delete_subscription_item(self, item_id: str) -> str:
        self._call('delete_subscription_item', item_id,
                   stripe.SubscriptionItem.delete,
                   item_id, proration_behavior=PRORATION_BEHAVIOR)
        print(f"[STRIPE] Removed item {item_id}", flush=True)
        return item_id
