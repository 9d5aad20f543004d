"""
Trial & Cooldown Policy
Owner: CC2
Workstream: W2P3

One free trial per user account, ever:

    no-trial -> trialing -> converted
                         -> canceled  (cooldown)
                         -> expired   (cooldown)

While a cooldown is running, eligibility fails with reason 'cooldown'.
After it lapses the answer is still no ('already_trialed'); the cooldown
only gates billing actions, it does not renew the trial.

Canceling or expiring a trial also cancels the community subscription, but
only while that row is still the local trial (trialing, is_trial, no Stripe
subscription). A community that has moved to a paid Stripe subscription is
left alone; Stripe-backed subscriptions only change through
SubscriptionManager. Usage counters keep their limits either way.
"""

import math
import sys
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List

import psycopg2

from entitlements import db
from entitlements.db import utcnow
from entitlements.catalog import DEFAULT_CATALOG, TRIAL_PERIOD_DAYS, COOLDOWN_PERIOD_DAYS
from entitlements.errors import (
    AlreadyTrialed,
    CooldownActive,
    InvalidRequest,
    InvalidTransition,
    NotFound,
)
from entitlements.usage import initialize_usage_tracking

REMINDER_FIELDS = {7: 'reminder_sent_day_7', 12: 'reminder_sent_day_12'}


def is_local_trial(subscription: Optional[Dict[str, Any]]) -> bool:
    """True for the trialing row start_trial created, before any Stripe subscription exists."""
    return bool(
        subscription
        and subscription.get('is_trial')
        and subscription.get('status') == 'trialing'
        and not subscription.get('stripe_subscription_id')
    )


def mark_trial_converted(cur, user_id: str, store=db) -> bool:
    """
    Flag a user's open trial as converted to a paid plan.

    Runs inside the caller's transaction.

    Returns:
        True if a trial was flagged
    """
    trial = store.get_trial(cur, user_id)
    if not trial or trial.get('converted_to_paid') or trial.get('canceled_at'):
        return False
    store.update_trial(cur, user_id, converted_to_paid=True)
    print(f"[TRIAL] User {user_id} converted to paid", flush=True)
    return True


class TrialManager:
    """Trial eligibility, start/cancel and the scheduled trial scans."""

    def __init__(self, conn, store=db, catalog=DEFAULT_CATALOG, clock=None,
                 trial_days: int = TRIAL_PERIOD_DAYS, cooldown_days: int = COOLDOWN_PERIOD_DAYS):
        self.conn = conn
        self.store = store
        self.catalog = catalog
        self.clock = clock or utcnow
        self.trial_days = trial_days
        self.cooldown_days = cooldown_days

    def _eligibility(self, trial: Optional[Dict[str, Any]], now: datetime) -> Dict[str, Any]:
        if not trial:
            return {'eligible': True, 'reason': None, 'cooldown_ends_at': None}

        cooldown_ends_at = trial.get('cooldown_ends_at')
        if cooldown_ends_at and cooldown_ends_at > now:
            return {'eligible': False, 'reason': 'cooldown', 'cooldown_ends_at': cooldown_ends_at}

        return {'eligible': False, 'reason': 'already_trialed', 'cooldown_ends_at': None}

    def check_eligibility(self, user_id: str) -> Dict[str, Any]:
        """
        Can this user start a trial?

        Returns:
            {eligible, reason ('cooldown'|'already_trialed'|None), cooldown_ends_at}
        """
        cur = self.store.dict_cursor(self.conn)
        try:
            trial = self.store.get_trial(cur, user_id)
        finally:
            cur.close()
        return self._eligibility(trial, self.clock())

    def get_trial_status(self, user_id: str) -> Optional[Dict[str, Any]]:
        """
        Derived trial state for display, or None if the user never trialed.
        """
        cur = self.store.dict_cursor(self.conn)
        try:
            trial = self.store.get_trial(cur, user_id)
        finally:
            cur.close()

        if not trial:
            return None

        now = self.clock()
        trial_ends_at = trial.get('trial_ends_at')
        cooldown_ends_at = trial.get('cooldown_ends_at')
        converted = bool(trial.get('converted_to_paid'))
        canceled = trial.get('canceled_at') is not None

        days_remaining = 0
        if trial_ends_at:
            days_remaining = math.ceil((trial_ends_at - now).total_seconds() / 86400)

        return {
            'has_trialed': True,
            'tier_id': trial.get('trial_tier_id'),
            'is_active': days_remaining > 0 and not converted and not canceled,
            'is_expired': days_remaining <= 0 and not converted,
            'is_canceled': canceled,
            'days_remaining': max(0, days_remaining),
            'trial_ends_at': trial_ends_at,
            'cooldown_ends_at': cooldown_ends_at,
            'in_cooldown': bool(cooldown_ends_at and cooldown_ends_at > now),
            'converted_to_paid': converted,
        }

    def start_trial(self, user_id: str, tier_id: str, tenant_id: str) -> Dict[str, Any]:
        """
        Start the user's one trial on a community.

        Records the trial, creates the community subscription in 'trialing'
        and sets up usage counters from the tier, in one transaction.

        Raises:
            NotFound: unknown tier
            CooldownActive / AlreadyTrialed: user not eligible
            InvalidTransition: community already has a live subscription
        """
        self.catalog.require_tier(tier_id)
        now = self.clock()
        trial_ends_at = now + timedelta(days=self.trial_days)
        cooldown_ends_at = trial_ends_at + timedelta(days=self.cooldown_days)

        cur = self.store.dict_cursor(self.conn)
        try:
            eligibility = self._eligibility(self.store.get_trial(cur, user_id), now)
            if eligibility['reason'] == 'cooldown':
                raise CooldownActive(eligibility['cooldown_ends_at'])
            if not eligibility['eligible']:
                raise AlreadyTrialed()

            existing = self.store.get_subscription(cur, tenant_id)
            if existing and existing['status'] != 'canceled':
                raise InvalidTransition(
                    f"Community already has a {existing['status']} subscription"
                )

            self.store.insert_trial(cur, user_id, tier_id, now, trial_ends_at, cooldown_ends_at)
            subscription = self.store.upsert_subscription(
                cur, tenant_id, tier_id, 'trialing',
                is_trial=True,
                trial_ends_at=trial_ends_at,
            )
            limits = initialize_usage_tracking(cur, tenant_id, tier_id, self.catalog, self.store)
            self.conn.commit()
        except psycopg2.IntegrityError:
            # Lost a race with a concurrent start for the same user
            self.conn.rollback()
            raise AlreadyTrialed()
        except Exception:
            self.conn.rollback()
            raise
        finally:
            cur.close()

        print(f"[TRIAL] Started {tier_id} trial for user {user_id} on {tenant_id}, "
              f"ends {trial_ends_at.isoformat()}", flush=True)
        return {
            'trial_ends_at': trial_ends_at,
            'cooldown_ends_at': cooldown_ends_at,
            'subscription': subscription,
            'limits': limits,
        }

    def cancel_trial(self, user_id: str, tenant_id: str) -> Dict[str, Any]:
        """
        Cancel a running trial and start the cooldown from now.

        Raises:
            NotFound: user never trialed
            InvalidTransition: trial already canceled, expired or converted
        """
        now = self.clock()
        cooldown_ends_at = now + timedelta(days=self.cooldown_days)

        cur = self.store.dict_cursor(self.conn)
        try:
            trial = self.store.get_trial(cur, user_id)
            if not trial:
                raise NotFound('trial', user_id)
            if trial.get('canceled_at'):
                raise InvalidTransition('Trial is already canceled')
            if trial.get('converted_to_paid'):
                raise InvalidTransition('Trial has already converted to a paid plan')
            if trial.get('expired_at'):
                raise InvalidTransition('Trial has already expired')

            self.store.update_trial(cur, user_id, canceled_at=now, cooldown_ends_at=cooldown_ends_at)
            subscription = self.store.get_subscription(cur, tenant_id)
            if is_local_trial(subscription):
                self.store.update_subscription(cur, tenant_id, status='canceled', canceled_at=now)
            elif subscription:
                print(f"[TRIAL] {tenant_id} has a {subscription['status']} paid subscription, "
                      f"leaving it untouched", flush=True)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        finally:
            cur.close()

        print(f"[TRIAL] User {user_id} canceled trial on {tenant_id}, "
              f"cooldown until {cooldown_ends_at.isoformat()}", flush=True)
        return self.get_trial_status(user_id)

    def mark_converted(self, user_id: str) -> bool:
        cur = self.store.dict_cursor(self.conn)
        try:
            converted = mark_trial_converted(cur, user_id, self.store)
            self.conn.commit()
            return converted
        except Exception:
            self.conn.rollback()
            raise
        finally:
            cur.close()

    def expire_lapsed_trials(self) -> List[str]:
        """
        Move every trial past its end date into 'expired' and restart its cooldown.

        Local trial subscriptions past trial_ends_at are canceled in the same
        transaction.

        Returns:
            User IDs whose trials were expired
        """
        now = self.clock()
        cooldown_ends_at = now + timedelta(days=self.cooldown_days)
        cur = self.store.dict_cursor(self.conn)
        try:
            lapsed = self.store.list_lapsed_trials(cur, now)
            for trial in lapsed:
                self.store.update_trial(cur, trial['user_id'], expired_at=now,
                                        cooldown_ends_at=cooldown_ends_at)
            lapsed_tenants = self.store.list_lapsed_trial_subscriptions(cur, now)
            for tenant_id in lapsed_tenants:
                self.store.update_subscription(cur, tenant_id, status='canceled', canceled_at=now)
            self.conn.commit()
        except Exception as e:
            self.conn.rollback()
            print(f"[TRIAL] Expiry scan failed: {e}", file=sys.stderr, flush=True)
            raise
        finally:
            cur.close()

        expired = [trial['user_id'] for trial in lapsed]
        if expired:
            print(f"[TRIAL] Expired {len(expired)} lapsed trials", flush=True)
        if lapsed_tenants:
            print(f"[TRIAL] Canceled {len(lapsed_tenants)} lapsed trial subscriptions", flush=True)
        return expired

    def get_trials_ending_soon(self, days: int = 3) -> List[Dict[str, Any]]:
        """Open trials ending within the next `days` days (reminder candidates)."""
        now = self.clock()
        cur = self.store.dict_cursor(self.conn)
        try:
            return self.store.list_trials_ending_between(cur, now, now + timedelta(days=days))
        finally:
            cur.close()

    def mark_reminder_sent(self, user_id: str, reminder_day: int) -> None:
        field = REMINDER_FIELDS.get(reminder_day)
        if not field:
            raise InvalidRequest('reminder_day must be 7 or 12', field='reminder_day')
        cur = self.store.dict_cursor(self.conn)
        try:
            if not self.store.update_trial(cur, user_id, **{field: True}):
                raise NotFound('trial', user_id)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        finally:
            cur.close()
