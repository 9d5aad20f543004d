"""Catalog lookups, upgrade recommendations and the marketplace fee table."""

import pytest

from entitlements.catalog import (
    ADDONS,
    DEFAULT_CATALOG,
    METRICS,
    TIERS,
    Catalog,
    calculate_fee,
    format_price,
    to_plain,
)
from entitlements.errors import InvalidRequest, NotFound


# ============================================================================
# Tiers and add-ons
# ============================================================================

def test_every_tier_defines_every_metric():
    for tier in DEFAULT_CATALOG.tiers:
        assert set(tier['limits']) == set(METRICS)


def test_starter_limits():
    assert DEFAULT_CATALOG.tier_limits('starter') == {
        'members': 10, 'items': 10, 'resources': 2, 'admins': 1, 'storage_mb': 500,
    }


def test_unknown_lookups():
    assert DEFAULT_CATALOG.tier_by_id('enterprise') is None
    assert DEFAULT_CATALOG.addon_by_id('extra_unicorns') is None
    with pytest.raises(NotFound):
        DEFAULT_CATALOG.require_tier('enterprise')
    with pytest.raises(NotFound):
        DEFAULT_CATALOG.require_addon('extra_unicorns')


def test_catalog_entries_are_read_only():
    tier = DEFAULT_CATALOG.tier_by_id('starter')
    with pytest.raises(TypeError):
        tier['limits']['members'] = 1000
    assert DEFAULT_CATALOG.tier_limits('starter')['members'] == 10


def test_catalog_copies_its_input():
    tiers = {'solo': {'id': 'solo', 'name': 'Solo', 'limits': {'members': 1}}}
    catalog = Catalog(tiers, {})
    tiers['solo']['limits']['members'] = 99
    assert catalog.tier_limits('solo')['members'] == 1
    assert catalog.tier_limits('solo')['items'] == 0


def test_to_plain_returns_mutable_dicts():
    plain = to_plain(DEFAULT_CATALOG.addon_by_id('extra_members_10'))
    assert plain == ADDONS['extra_members_10']
    plain['price_per_year'] = 0
    assert DEFAULT_CATALOG.addon_by_id('extra_members_10')['price_per_year'] == 300


def test_feature_addons_have_no_metric_increase():
    for addon_id in ('marketplace', 'custom_branding', 'priority_support', 'api_access'):
        assert DEFAULT_CATALOG.addon_by_id(addon_id)['metric_increase'] is None


@pytest.mark.parametrize('current, expected', [
    (None, 'starter'),
    ('starter', 'community'),
    ('community', 'growth'),
    ('growth', 'professional'),
    ('professional', None),
])
def test_upgrade_recommendation(current, expected):
    assert DEFAULT_CATALOG.get_upgrade_recommendation(current) == expected


def test_tier_order_follows_the_table():
    assert [tier['id'] for tier in DEFAULT_CATALOG.tiers] == list(TIERS)


# ============================================================================
# Marketplace fees
# ============================================================================

@pytest.mark.parametrize('price, fee', [
    (0, 0),
    (1, 25),
    (1000, 25),
    (1001, 25),      # 2.5% of 1001 = 25.025
    (1060, 27),      # 26.5 rounds half up
    (5000, 125),
    (5001, 100),     # 2.0% band starts
    (20000, 400),
    (20001, 300),    # 1.5% band starts
    (100000, 1000),
    (1000000, 1000),  # capped
])
def test_fee_table(price, fee):
    assert calculate_fee(price)['fee'] == fee


def test_fee_breakdown():
    result = calculate_fee(5000)
    assert result['item_price'] == 5000
    assert result['fee'] == 125
    assert result['buyer_total'] == 5125
    assert result['seller_receives'] == 5000
    assert result['fee_percentage'] == pytest.approx(2.5)


def test_free_item_has_zero_fee_percentage():
    assert calculate_fee(0)['fee_percentage'] == 0


def test_negative_price_rejected():
    with pytest.raises(InvalidRequest):
        calculate_fee(-1)


def test_format_price():
    assert format_price(1500) == '€15.00'
    assert format_price(89) == '€0.89'
    assert format_price(123456) == '€1,234.56'
