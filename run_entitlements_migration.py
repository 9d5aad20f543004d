#!/usr/bin/env python3
"""
Run entitlements migration: subscriptions, add-ons, usage counters, trials,
billing events, and the counter procedures the usage meter calls.
Author: CC2

Usage:
    DATABASE_URL=postgresql://... python run_entitlements_migration.py
"""

import hashlib
import os
import sys

import psycopg2

from entitlements.catalog import DEFAULT_CATALOG

DATABASE_URL = os.environ.get('DATABASE_URL')

EXPECTED_TABLES = (
    'addon_prices',
    'billing_events',
    'community_subscriptions',
    'subscription_addons',
    'subscription_tiers',
    'usage_tracking',
    'user_trials',
)

MIGRATION_SQL = """
-- ENTITLEMENTS SCHEMA

-- PART 1: STRIPE PRICE MAPPINGS (operator fills the price ids)
CREATE TABLE IF NOT EXISTS subscription_tiers (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  stripe_price_monthly_id TEXT,
  stripe_price_annual_id TEXT,
  created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS addon_prices (
  addon_id TEXT PRIMARY KEY,
  stripe_price_id TEXT,
  created_at TIMESTAMPTZ DEFAULT NOW()
);

-- PART 2: SUBSCRIPTIONS (one per community)
ALTER TABLE communities ADD COLUMN IF NOT EXISTS plan TEXT;

CREATE TABLE IF NOT EXISTS community_subscriptions (
  id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
  community_id UUID NOT NULL UNIQUE REFERENCES communities(id) ON DELETE CASCADE,
  tier_id TEXT NOT NULL,
  status TEXT NOT NULL CHECK (status IN ('trialing', 'active', 'past_due', 'canceled')),
  is_trial BOOLEAN NOT NULL DEFAULT FALSE,
  billing_period TEXT NOT NULL DEFAULT 'monthly' CHECK (billing_period IN ('monthly', 'annual')),
  trial_ends_at TIMESTAMPTZ,
  current_period_start TIMESTAMPTZ,
  current_period_end TIMESTAMPTZ,
  cancel_at_period_end BOOLEAN NOT NULL DEFAULT FALSE,
  canceled_at TIMESTAMPTZ,
  stripe_customer_id TEXT,
  stripe_subscription_id TEXT,
  created_at TIMESTAMPTZ DEFAULT NOW(),
  updated_at TIMESTAMPTZ DEFAULT NOW(),
  CHECK (NOT (cancel_at_period_end AND status = 'canceled'))
);

-- PART 3: ADD-ON INSTANCES (addon_type kept for rows written before addon_id)
CREATE TABLE IF NOT EXISTS subscription_addons (
  id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
  community_id UUID NOT NULL REFERENCES communities(id) ON DELETE CASCADE,
  addon_id TEXT,
  addon_type TEXT,
  quantity INTEGER NOT NULL DEFAULT 1,
  price_per_unit INTEGER NOT NULL DEFAULT 0,
  stripe_subscription_item_id TEXT,
  status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'canceled', 'expired')),
  activated_at TIMESTAMPTZ DEFAULT NOW(),
  expires_at TIMESTAMPTZ,
  created_at TIMESTAMPTZ DEFAULT NOW(),
  CHECK (status <> 'active' OR quantity > 0)
);

-- PART 4: USAGE COUNTERS
CREATE TABLE IF NOT EXISTS usage_tracking (
  community_id UUID NOT NULL REFERENCES communities(id) ON DELETE CASCADE,
  metric TEXT NOT NULL,
  current_value INTEGER NOT NULL DEFAULT 0,
  limit_value INTEGER NOT NULL DEFAULT 0,
  last_updated TIMESTAMPTZ DEFAULT NOW(),
  PRIMARY KEY (community_id, metric)
);

-- PART 5: TRIALS (one per user, ever)
CREATE TABLE IF NOT EXISTS user_trials (
  id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
  user_id UUID NOT NULL UNIQUE,
  trial_tier_id TEXT NOT NULL,
  trial_started_at TIMESTAMPTZ NOT NULL,
  trial_ends_at TIMESTAMPTZ NOT NULL,
  cooldown_ends_at TIMESTAMPTZ,
  canceled_at TIMESTAMPTZ,
  expired_at TIMESTAMPTZ,
  converted_to_paid BOOLEAN NOT NULL DEFAULT FALSE,
  reminder_sent_day_7 BOOLEAN NOT NULL DEFAULT FALSE,
  reminder_sent_day_12 BOOLEAN NOT NULL DEFAULT FALSE,
  created_at TIMESTAMPTZ DEFAULT NOW()
);

-- PART 6: BILLING EVENTS (Stripe/local two-phase log)
CREATE TABLE IF NOT EXISTS billing_events (
  id BIGSERIAL PRIMARY KEY,
  community_id UUID,
  operation TEXT NOT NULL,
  processor_ref TEXT,
  payload JSONB DEFAULT '{}',
  status TEXT NOT NULL DEFAULT 'pending'
    CHECK (status IN ('pending', 'completed', 'processor_failed', 'needs_reconciliation', 'resolved')),
  error TEXT,
  created_at TIMESTAMPTZ DEFAULT NOW(),
  updated_at TIMESTAMPTZ DEFAULT NOW()
);

-- PART 7: INDEXES
CREATE INDEX IF NOT EXISTS idx_subscription_addons_community
  ON subscription_addons(community_id, status);
CREATE INDEX IF NOT EXISTS idx_user_trials_ends ON user_trials(trial_ends_at)
  WHERE converted_to_paid = FALSE AND canceled_at IS NULL AND expired_at IS NULL;
CREATE INDEX IF NOT EXISTS idx_billing_events_status ON billing_events(status, created_at);

-- PART 8: COUNTER PROCEDURES
CREATE OR REPLACE FUNCTION increment_usage(p_community_id UUID, p_metric TEXT, p_amount INTEGER DEFAULT 1)
RETURNS VOID AS $$
BEGIN
  UPDATE usage_tracking
     SET current_value = current_value + p_amount, last_updated = NOW()
   WHERE community_id = p_community_id AND metric = p_metric;
END;
$$ LANGUAGE plpgsql;

CREATE OR REPLACE FUNCTION decrement_usage(p_community_id UUID, p_metric TEXT, p_amount INTEGER DEFAULT 1)
RETURNS VOID AS $$
BEGIN
  UPDATE usage_tracking
     SET current_value = GREATEST(current_value - p_amount, 0), last_updated = NOW()
   WHERE community_id = p_community_id AND metric = p_metric;
END;
$$ LANGUAGE plpgsql;

CREATE OR REPLACE FUNCTION initialize_usage_tracking(p_community_id UUID, p_limits JSONB)
RETURNS VOID AS $$
BEGIN
  INSERT INTO usage_tracking (community_id, metric, current_value, limit_value, last_updated)
  SELECT p_community_id, key, 0, value::INTEGER, NOW()
    FROM jsonb_each_text(p_limits)
  ON CONFLICT (community_id, metric) DO UPDATE
     SET limit_value = EXCLUDED.limit_value, last_updated = NOW();
END;
$$ LANGUAGE plpgsql;
"""


def seed_catalog(cursor):
    """Make sure every catalog tier and add-on has a price mapping row."""
    for tier in DEFAULT_CATALOG.tiers:
        cursor.execute(
            'INSERT INTO subscription_tiers (id, name) VALUES (%s, %s) ON CONFLICT (id) DO NOTHING',
            (tier['id'], tier['name'])
        )
    for addon in DEFAULT_CATALOG.addons:
        cursor.execute(
            'INSERT INTO addon_prices (addon_id) VALUES (%s) ON CONFLICT (addon_id) DO NOTHING',
            (addon['id'],)
        )


def main():
    print("=" * 60)
    print("ENTITLEMENTS MIGRATION")
    print("=" * 60)

    if not DATABASE_URL:
        print("[ERROR] DATABASE_URL environment variable not set", file=sys.stderr)
        sys.exit(1)

    sql_hash = hashlib.sha256(MIGRATION_SQL.encode()).hexdigest()[:16]
    print(f"Migration SQL hash: {sql_hash}")

    conn = None
    cursor = None
    try:
        print("\nConnecting to Postgres...")
        conn = psycopg2.connect(DATABASE_URL)
        conn.autocommit = False
        cursor = conn.cursor()

        print("Running migration...")
        cursor.execute(MIGRATION_SQL)
        seed_catalog(cursor)

        cursor.execute("""
            SELECT table_name FROM information_schema.tables
            WHERE table_schema = 'public' AND table_name = ANY(%s)
            ORDER BY table_name
        """, (list(EXPECTED_TABLES),))
        tables = [row[0] for row in cursor.fetchall()]

        missing = sorted(set(EXPECTED_TABLES) - set(tables))
        if missing:
            print(f"\n[ERROR] Expected tables not found: {missing}")
            conn.rollback()
            sys.exit(1)

        print("\n[SUCCESS] Tables ready:")
        for t in tables:
            print(f"  - {t}")

        conn.commit()
        print("\nMigration committed successfully!")
        print("Set stripe_price_*_id in subscription_tiers / addon_prices before selling.")

    except psycopg2.Error as e:
        print(f"\n[ERROR] Migration failed: {e}")
        if conn:
            conn.rollback()
        sys.exit(1)
    finally:
        if cursor:
            cursor.close()
        if conn:
            conn.close()

    print("\n" + "=" * 60)
    print("MIGRATION COMPLETE")
    print("=" * 60)


if __name__ == "__main__":
    main()
