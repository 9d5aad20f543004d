#!/usr/bin/env python3
"""
Entitlements maintenance cron worker.
Run via Railway cron service.
Cadence: Daily at 3am UTC
Budget: 2 minute max runtime

Runs: trial expiry + reminder scan + usage sync + reconciliation check
"""

import os
import sys

import requests

ENTITLEMENTS_URL = os.environ.get('ENTITLEMENTS_URL', 'http://localhost:8080')
CRON_SECRET = os.environ.get('CRON_SECRET', '')

# Max runtime in seconds (2 minutes)
MAX_RUNTIME = 120


def report(results: dict) -> bool:
    """Print one line per maintenance step. Returns True if any step failed."""
    expiry = results.get('trial_expiry', {})
    if 'error' not in expiry:
        print(f"[CRON] Trials expired: {expiry.get('expired', 0)}")
    else:
        print(f"[CRON] Trial expiry error: {expiry['error']}", file=sys.stderr)

    reminders = results.get('trial_reminders', {})
    if 'error' not in reminders:
        print(f"[CRON] Trials ending within 3 days: {reminders.get('due', 0)}")
    else:
        print(f"[CRON] Reminder scan error: {reminders['error']}", file=sys.stderr)

    sync = results.get('usage_sync', {})
    if 'error' not in sync:
        print(f"[CRON] Usage synced for {sync.get('synced', 0)} communities")
    else:
        print(f"[CRON] Usage sync error: {sync['error']}", file=sys.stderr)
        for failure in sync.get('failed', []):
            print(f"[CRON]   {failure['tenant_id']}: {failure['error']}", file=sys.stderr)

    recon = results.get('reconciliations', {})
    if 'error' not in recon:
        pending = recon.get('pending', 0)
        if pending:
            print(f"[CRON] WARNING: {pending} billing events need reconciliation", file=sys.stderr)
    else:
        print(f"[CRON] Reconciliation check error: {recon['error']}", file=sys.stderr)

    return any('error' in step for step in results.values())


def main():
    """Run entitlements maintenance cycle."""
    url = f"{ENTITLEMENTS_URL}/v2/billing/maintenance"

    print(f"[CRON] Starting entitlements maintenance at {url}")

    try:
        response = requests.post(
            url,
            json={},
            headers={'X-Cron-Secret': CRON_SECRET},
            timeout=MAX_RUNTIME
        )
        if response.status_code != 200:
            print(f"[CRON] HTTP {response.status_code}: {response.text[:500]}", file=sys.stderr)
            sys.exit(1)

        data = response.json()
        print(f"[CRON] {data.get('status', 'unknown')} in {data.get('duration_ms', 0)}ms")

        if report(data.get('results', {})):
            sys.exit(1)
        sys.exit(0)

    except requests.Timeout:
        print(f"[CRON] TIMEOUT: Exceeded {MAX_RUNTIME}s", file=sys.stderr)
        sys.exit(1)
    except requests.RequestException as e:
        print(f"[CRON] ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
