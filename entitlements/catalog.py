"""
Community Plan Catalog
Owner: CC2
Workstream: W2P1

Tier definitions, add-ons and the marketplace fee schedule.

Tiers:
- Starter: small house communities
- Community: growing communities
- Growth: active, engaged communities
- Professional: large communities and property managers

Prices are in cents (EUR). Stripe price IDs are NOT kept here: they live in
the subscription_tiers / addon_prices tables so a tier can exist in the
catalog before it is configured in Stripe.
"""

import os
from decimal import Decimal, ROUND_HALF_UP
from types import MappingProxyType
from typing import Optional, Dict, Any, List

from entitlements.errors import NotFound, InvalidRequest

TRIAL_PERIOD_DAYS = int(os.environ.get('TRIAL_PERIOD_DAYS', 14))
COOLDOWN_PERIOD_DAYS = int(os.environ.get('COOLDOWN_PERIOD_DAYS', 14))

METRICS = ('members', 'items', 'resources', 'admins', 'storage_mb')

METRIC_LABELS = {
    'members': 'Members',
    'items': 'Items',
    'resources': 'Resources',
    'admins': 'Admins',
    'storage_mb': 'Storage',
}

BILLING_PERIODS = ('monthly', 'annual')


TIERS: Dict[str, Dict[str, Any]] = {
    'starter': {
        'id': 'starter',
        'name': 'Starter',
        'description': 'Perfect for small house communities',
        'price_annual': 900,  # €9/year
        'price_monthly': 89,  # €0.89/month
        'limits': {
            'members': 10,
            'items': 10,
            'resources': 2,
            'admins': 1,
            'storage_mb': 500,
        },
        'features': {
            'events': True,
            'polls': False,
            'documents': False,
            'messaging': False,
            'analytics': True,
            'custom_branding': False,
            'priority_support': False,
            'api_access': False,
        },
    },
    'community': {
        'id': 'community',
        'name': 'Community',
        'description': 'Great for growing communities',
        'price_annual': 1500,
        'price_monthly': 147,
        'popular': True,
        'limits': {
            'members': 15,
            'items': 20,
            'resources': 5,
            'admins': 1,
            'storage_mb': 1024,
        },
        'features': {
            'events': True,
            'polls': True,
            'documents': True,
            'messaging': False,
            'analytics': True,
            'custom_branding': False,
            'priority_support': False,
            'api_access': False,
        },
    },
    'growth': {
        'id': 'growth',
        'name': 'Growth',
        'description': 'For active, engaged communities',
        'price_annual': 3500,
        'price_monthly': 342,
        'limits': {
            'members': 30,
            'items': 50,
            'resources': 10,
            'admins': 2,
            'storage_mb': 3072,
        },
        'features': {
            'events': True,
            'polls': True,
            'documents': True,
            'messaging': True,
            'analytics': True,
            'custom_branding': False,
            'priority_support': False,
            'api_access': False,
        },
    },
    'professional': {
        'id': 'professional',
        'name': 'Professional',
        'description': 'For large communities and property managers',
        'price_annual': 7900,
        'price_monthly': 772,
        'limits': {
            'members': 75,
            'items': 150,
            'resources': 25,
            'admins': 3,
            'storage_mb': 10240,
        },
        'features': {
            'events': True,
            'polls': True,
            'documents': True,
            'messaging': True,
            'analytics': True,
            'custom_branding': True,
            'priority_support': True,
            'api_access': False,
        },
    },
}


ADDONS: Dict[str, Dict[str, Any]] = {
    'extra_admin': {
        'id': 'extra_admin',
        'name': 'Extra Admin',
        'description': 'Add one additional admin to your community',
        'price_per_year': 500,
        'metric_increase': {'metric': 'admins', 'amount': 1},
    },
    'extra_members_10': {
        'id': 'extra_members_10',
        'name': '10 Extra Members',
        'description': 'Increase your member limit by 10',
        'price_per_year': 300,
        'metric_increase': {'metric': 'members', 'amount': 10},
    },
    'extra_items_20': {
        'id': 'extra_items_20',
        'name': '20 Extra Items',
        'description': 'Increase your item limit by 20',
        'price_per_year': 200,
        'metric_increase': {'metric': 'items', 'amount': 20},
    },
    'extra_resources_5': {
        'id': 'extra_resources_5',
        'name': '5 Extra Resources',
        'description': 'Add 5 more bookable resources',
        'price_per_year': 300,
        'metric_increase': {'metric': 'resources', 'amount': 5},
    },
    'extra_storage_2gb': {
        'id': 'extra_storage_2gb',
        'name': '2 GB Extra Storage',
        'description': 'Increase your storage by 2 GB',
        'price_per_year': 400,
        'metric_increase': {'metric': 'storage_mb', 'amount': 2048},
    },
    'marketplace': {
        'id': 'marketplace',
        'name': 'Marketplace',
        'description': 'Enable buying and selling within your community',
        'price_per_year': 500,
        'metric_increase': None,
    },
    'custom_branding': {
        'id': 'custom_branding',
        'name': 'Custom Branding',
        'description': 'Add your logo and custom colors',
        'price_per_year': 1000,
        'metric_increase': None,
    },
    'priority_support': {
        'id': 'priority_support',
        'name': 'Priority Support',
        'description': '12-hour response time guarantee',
        'price_per_year': 1500,
        'metric_increase': None,
    },
    'api_access': {
        'id': 'api_access',
        'name': 'API Access',
        'description': 'Developer API for custom integrations',
        'price_per_year': 2500,
        'metric_increase': None,
    },
}


def _freeze(value):
    if isinstance(value, dict):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    return value


def to_plain(value):
    """Copy a frozen catalog entry back into plain dicts (for JSON responses)."""
    if isinstance(value, (dict, MappingProxyType)):
        return {k: to_plain(v) for k, v in value.items()}
    return value


class Catalog:
    """
    Read-only table of tiers and add-ons.

    Managers take a catalog instance instead of reaching for TIERS/ADDONS
    directly, so tests and regional pricing can swap in their own table.
    Tier order is the order of the mapping passed in (lowest first).
    """

    def __init__(self, tiers: Dict[str, Dict[str, Any]], addons: Dict[str, Dict[str, Any]]):
        self._tiers = _freeze(tiers)
        self._addons = _freeze(addons)

    @property
    def tiers(self) -> List[Any]:
        return list(self._tiers.values())

    @property
    def addons(self) -> List[Any]:
        return list(self._addons.values())

    def tier_by_id(self, tier_id: str) -> Optional[Any]:
        """
        Get a tier by ID.

        Args:
            tier_id: The tier identifier ('starter', 'community', ...)

        Returns:
            Tier mapping or None if not found
        """
        return self._tiers.get(tier_id)

    def addon_by_id(self, addon_id: str) -> Optional[Any]:
        """
        Get an add-on by ID.

        Args:
            addon_id: The add-on identifier ('extra_admin', ...)

        Returns:
            Add-on mapping or None if not found
        """
        return self._addons.get(addon_id)

    def require_tier(self, tier_id: str):
        tier = self.tier_by_id(tier_id)
        if tier is None:
            raise NotFound('tier', tier_id)
        return tier

    def require_addon(self, addon_id: str):
        addon = self.addon_by_id(addon_id)
        if addon is None:
            raise NotFound('addon', addon_id)
        return addon

    def tier_limits(self, tier_id: str) -> Dict[str, int]:
        """Plain dict of a tier's limits, one entry per usage metric."""
        tier = self.require_tier(tier_id)
        return {metric: tier['limits'].get(metric, 0) for metric in METRICS}

    def get_upgrade_recommendation(self, tier_id: Optional[str]) -> Optional[str]:
        """
        Get the next tier up from the current one.

        Args:
            tier_id: Current tier ID (None means no subscription yet)

        Returns:
            Recommended tier ID or None if already on highest tier
        """
        order = list(self._tiers.keys())
        if not order:
            return None
        if tier_id not in order:
            return order[0]
        position = order.index(tier_id)
        if position + 1 < len(order):
            return order[position + 1]
        return None  # already on the top tier


DEFAULT_CATALOG = Catalog(TIERS, ADDONS)


def calculate_fee(price_in_cents: int) -> Dict[str, Any]:
    """
    Marketplace fee for an item sold inside a community.

    Bands:
        0            -> no fee
        1..1000      -> flat 25
        1001..5000   -> 2.5%
        5001..20000  -> 2.0%
        20001+       -> 1.5%, max 1000

    Percentages are rounded half-up to the cent.

    Args:
        price_in_cents: Item price in cents

    Returns:
        Dictionary with item_price, fee, buyer_total, seller_receives, fee_percentage
    """
    if price_in_cents < 0:
        raise InvalidRequest('price must not be negative', field='price')

    if price_in_cents == 0:
        fee = 0
    elif price_in_cents <= 1000:
        fee = 25
    elif price_in_cents <= 5000:
        fee = _percent_of(price_in_cents, '0.025')
    elif price_in_cents <= 20000:
        fee = _percent_of(price_in_cents, '0.02')
    else:
        fee = min(1000, _percent_of(price_in_cents, '0.015'))

    return {
        'item_price': price_in_cents,
        'fee': fee,
        'buyer_total': price_in_cents + fee,
        'seller_receives': price_in_cents,
        'fee_percentage': (fee / price_in_cents) * 100 if price_in_cents > 0 else 0,
    }


def _percent_of(cents: int, rate: str) -> int:
    amount = Decimal(cents) * Decimal(rate)
    return int(amount.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def format_price(cents: int) -> str:
    """Format cents as a EUR display string, e.g. 1500 -> '€15.00'."""
    return f"€{Decimal(cents) / 100:,.2f}"
