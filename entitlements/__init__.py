"""
Community Entitlements Module
Owner: CC2
Workstream: W2 (Billing & Stripe)

This module handles:
- Tier and add-on catalog, marketplace fees
- Free trials and the post-trial cooldown
- Usage metering and limit enforcement
- Stripe-backed subscription and add-on lifecycle
"""

from entitlements.catalog import (
    DEFAULT_CATALOG,
    Catalog,
    calculate_fee,
    format_price,
    TRIAL_PERIOD_DAYS,
    COOLDOWN_PERIOD_DAYS,
)
from entitlements.errors import EntitlementError, LimitReached
from entitlements.usage import UsageMeter
from entitlements.trials import TrialManager
from entitlements.addons import AddOnManager
from entitlements.subscriptions import SubscriptionManager

__all__ = [
    'DEFAULT_CATALOG', 'Catalog', 'calculate_fee', 'format_price',
    'TRIAL_PERIOD_DAYS', 'COOLDOWN_PERIOD_DAYS',
    'EntitlementError', 'LimitReached',
    'UsageMeter', 'TrialManager', 'AddOnManager', 'SubscriptionManager'
]
