"""
Community Usage Metering
Owner: CC2
Workstream: W2P4

Tracks usage metrics per community for limit enforcement:
- Members, items, resources, admins (counted)
- Storage in MB

Counters live in usage_tracking and are created lazily when a tier is
assigned. CRUD handlers call can_add()/require_capacity() before they
commit a write, then increment_usage() once it succeeds.
"""

import os
import sys
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Any, List, Optional, Tuple

from entitlements import db
from entitlements.catalog import DEFAULT_CATALOG, METRICS, METRIC_LABELS
from entitlements.errors import InvalidRequest, LimitReached

STRICT_USAGE_TRACKING = os.environ.get('STRICT_USAGE_TRACKING', 'false').lower() == 'true'

# Metrics recomputed from community tables by sync_usage (storage is reported separately)
COUNTED_METRICS = ('members', 'items', 'resources', 'admins')

WARNING_PERCENTAGE = 80
CRITICAL_PERCENTAGE = 100


def check_limit(current: int, limit: int) -> Tuple[bool, int]:
    """
    Check if another unit fits under a limit.

    Args:
        current: Current usage count
        limit: The limit

    Returns:
        Tuple of (is_allowed, remaining)
    """
    remaining = limit - current
    return remaining > 0, max(0, remaining)


def usage_percentage(current: int, limit: int) -> int:
    """Percent of the limit used, rounded half-up. 0 when the limit is 0."""
    if limit <= 0:
        return 0
    value = Decimal(current) * 100 / Decimal(limit)
    return int(value.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def initialize_usage_tracking(cur, tenant_id: str, tier_id: str,
                              catalog=DEFAULT_CATALOG, store=db) -> Dict[str, int]:
    """
    Set every counter's limit to the tier's limit (counters created if missing).

    Runs inside the caller's transaction.

    Returns:
        The limits written
    """
    limits = catalog.tier_limits(tier_id)
    store.initialize_usage_tracking(cur, tenant_id, limits)
    print(f"[USAGE] Initialized tracking for {tenant_id} on tier {tier_id}", flush=True)
    return limits


def _validate_metric(metric: str) -> None:
    if metric not in METRICS:
        raise InvalidRequest(f"Unknown usage metric: {metric}", field='metric')


class UsageMeter:
    """Per-community usage gate and counter mutations."""

    def __init__(self, conn, store=db, catalog=DEFAULT_CATALOG, strict: Optional[bool] = None):
        self.conn = conn
        self.store = store
        self.catalog = catalog
        self.strict = STRICT_USAGE_TRACKING if strict is None else strict

    def check_usage(self, tenant_id: str, metric: str) -> Dict[str, Any]:
        """
        Current usage against the limit for one metric.

        Args:
            tenant_id: Community UUID
            metric: One of METRICS

        Returns:
            Dictionary with allowed, current_usage, limit, remaining,
            percentage, initialized and an optional message
        """
        _validate_metric(metric)
        cur = self.store.dict_cursor(self.conn)
        try:
            counter = self.store.get_usage_counter(cur, tenant_id, metric)
        finally:
            cur.close()

        if not counter:
            # Counters are created lazily; an untracked community is not blocked
            # unless strict tracking is on.
            return {
                'metric': metric,
                'allowed': not self.strict,
                'current_usage': 0,
                'limit': 0,
                'remaining': 0,
                'percentage': 0,
                'initialized': False,
                'message': 'Usage tracking not initialized',
            }

        current = counter['current_value']
        limit = counter['limit_value']
        allowed, remaining = check_limit(current, limit)

        return {
            'metric': metric,
            'allowed': allowed,
            'current_usage': current,
            'limit': limit,
            'remaining': remaining,
            'percentage': usage_percentage(current, limit),
            'initialized': True,
            'message': None if allowed else f"{METRIC_LABELS[metric]} limit reached. Please upgrade your plan.",
        }

    def get_all_usage(self, tenant_id: str) -> Dict[str, Dict[str, Any]]:
        return {metric: self.check_usage(tenant_id, metric) for metric in METRICS}

    def can_add(self, tenant_id: str, metric: str, amount: int = 1) -> bool:
        usage = self.check_usage(tenant_id, metric)
        if not usage['initialized']:
            return usage['allowed']
        return usage['remaining'] >= amount

    def require_capacity(self, tenant_id: str, metric: str, amount: int = 1) -> Dict[str, Any]:
        """
        Raise LimitReached unless `amount` more units fit.

        Returns:
            The usage check result when allowed
        """
        usage = self.check_usage(tenant_id, metric)
        if not usage['initialized']:
            if usage['allowed']:
                return usage
            raise LimitReached(metric, 0, 0, amount)
        if usage['remaining'] < amount:
            print(f"[USAGE] Limit hit: tenant={tenant_id}, metric={metric}, "
                  f"usage={usage['current_usage']}/{usage['limit']}", flush=True)
            raise LimitReached(metric, usage['current_usage'], usage['limit'], amount)
        return usage

    def increment_usage(self, tenant_id: str, metric: str, amount: int = 1) -> None:
        self._mutate(self.store.increment_usage, tenant_id, metric, amount)

    def decrement_usage(self, tenant_id: str, metric: str, amount: int = 1) -> None:
        self._mutate(self.store.decrement_usage, tenant_id, metric, amount)

    def _mutate(self, procedure, tenant_id: str, metric: str, amount: int) -> None:
        _validate_metric(metric)
        if amount < 1:
            raise InvalidRequest('amount must be at least 1', field='amount')
        cur = self.store.dict_cursor(self.conn)
        try:
            procedure(cur, tenant_id, metric, amount)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        finally:
            cur.close()

    def get_usage_warnings(self, tenant_id: str) -> List[Dict[str, Any]]:
        """
        Metrics at or near their limit.

        Returns:
            List of {metric, level ('warning'|'critical'), message, percentage}
        """
        warnings = []
        for metric, usage in self.get_all_usage(tenant_id).items():
            label = METRIC_LABELS[metric]
            numbers = f"({usage['current_usage']}/{usage['limit']})"
            if usage['percentage'] >= CRITICAL_PERCENTAGE:
                warnings.append({
                    'metric': metric,
                    'level': 'critical',
                    'message': f"{label} limit reached {numbers}",
                    'percentage': usage['percentage'],
                })
            elif usage['percentage'] >= WARNING_PERCENTAGE:
                warnings.append({
                    'metric': metric,
                    'level': 'warning',
                    'message': f"{label} approaching limit {numbers}",
                    'percentage': usage['percentage'],
                })
        return warnings

    def sync_usage(self, tenant_id: str) -> Dict[str, int]:
        """
        Overwrite current_value for counted metrics with real counts.

        Heals drift from missed increments/decrements. limit_value is left as is.

        Returns:
            The counts written
        """
        cur = self.store.dict_cursor(self.conn)
        try:
            counts = self.store.count_usage(cur, tenant_id)
            for metric in COUNTED_METRICS:
                self.store.set_usage_current(cur, tenant_id, metric, counts.get(metric, 0))
            self.conn.commit()
        except Exception as e:
            self.conn.rollback()
            print(f"[USAGE] Sync failed for {tenant_id}: {e}", file=sys.stderr, flush=True)
            raise
        finally:
            cur.close()

        print(f"[USAGE] Synced {tenant_id}: {counts}", flush=True)
        return counts
