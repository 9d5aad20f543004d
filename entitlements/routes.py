"""
Entitlement Routes
Owner: CC2
Workstream: W2P6

Community admin endpoints (mounted under /v2/communities/<tenant_id>):
    GET    /usage                  - All metrics + warnings
    GET    /usage/<metric>         - One metric
    POST   /usage/sync             - Recount current usage
    GET    /addons                 - Catalog annotated with active quantities
    POST   /addons                 - Purchase an add-on
    PATCH  /addons/<addon_id>      - Change quantity (0 cancels)
    DELETE /addons/<addon_id>      - Cancel an add-on
    GET    /subscription           - Current subscription
    POST   /subscription           - First paid tier selection
    POST   /subscription/tier      - Upgrade / downgrade
    POST   /subscription/cancel    - Cancel now or at period end
    POST   /subscription/resume    - Undo a pending cancellation
    POST   /trial                  - Start the user's free trial
    DELETE /trial                  - Cancel the user's trial

Platform endpoints (mounted under /v2):
    GET  /trials/<user_id>                           - Trial status + eligibility
    GET  /billing/fee?price=                         - Marketplace fee quote
    GET  /billing/reconciliations                    - Events needing an operator
    POST /billing/reconciliations/<event_id>/resolve - Close one
    POST /billing/maintenance                        - Cron entry point
    GET  /billing/health                             - Liveness + store check
"""

import hmac
import os
import sys
import time
from datetime import datetime

from flask import Blueprint, request, jsonify, g

from entitlements import db
from entitlements.addons import AddOnManager
from entitlements.catalog import DEFAULT_CATALOG, calculate_fee, format_price
from entitlements.enforce import limit_exceeded_response
from entitlements.errors import EntitlementError, InvalidRequest, LimitReached
from entitlements.outbox import list_pending_reconciliations, resolve_reconciliation
from entitlements.subscriptions import SubscriptionManager
from entitlements.trials import TrialManager
from entitlements.usage import UsageMeter

CRON_SECRET = os.environ.get('CRON_SECRET')


def _json_body() -> dict:
    return request.get_json(silent=True) or {}


def _acting_user(data: dict) -> str:
    """Authenticated user if the auth layer set one, else the request body."""
    user_id = getattr(g, 'current_user', None) or data.get('user_id') or request.args.get('user_id')
    if not user_id:
        raise InvalidRequest('user_id is required', field='user_id')
    return str(user_id)


def _required(data: dict, field: str):
    value = data.get(field)
    if value in (None, ''):
        raise InvalidRequest(f'{field} is required', field=field)
    return value


def init_entitlements(get_db, processor_factory=None, catalog=DEFAULT_CATALOG, store=db, clock=None):
    """
    Build the entitlement blueprints.

    Args:
        get_db: Function returning the request's database connection
        processor_factory: No-arg callable returning the billing processor
            (defaults to entitlements.processor.StripeProcessor)
        catalog: Catalog shared by every manager
        store: Query module (entitlements.db)
        clock: Optional now() override

    Returns:
        (communities_bp, platform_bp)
    """
    communities_bp = Blueprint('entitlements', __name__, url_prefix='/v2/communities/<tenant_id>')
    platform_bp = Blueprint('entitlements_platform', __name__, url_prefix='/v2')

    def processor():
        # None lets the managers build a StripeProcessor on first use
        return processor_factory() if processor_factory is not None else None

    def meter():
        return UsageMeter(get_db(), store, catalog)

    def trials():
        return TrialManager(get_db(), store, catalog, clock=clock)

    def addons():
        return AddOnManager(get_db(), processor(), store, catalog, clock=clock)

    def subscriptions():
        return SubscriptionManager(get_db(), processor(), store, catalog, clock=clock)

    def handle_entitlement_error(error: EntitlementError):
        if isinstance(error, LimitReached):
            tenant_id = (request.view_args or {}).get('tenant_id')
            tier_id = None
            if tenant_id:
                cur = store.dict_cursor(get_db())
                try:
                    subscription = store.get_subscription(cur, tenant_id)
                finally:
                    cur.close()
                tier_id = subscription.get('tier_id') if subscription else None
            return limit_exceeded_response(error, tier_id, catalog)

        if int(error.status_code) >= 500:
            print(f"[BILLING] {request.method} {request.path} failed: {error}", file=sys.stderr, flush=True)
        return jsonify(error.to_dict()), int(error.status_code)

    communities_bp.register_error_handler(EntitlementError, handle_entitlement_error)
    platform_bp.register_error_handler(EntitlementError, handle_entitlement_error)

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    @communities_bp.route('/usage', methods=['GET'])
    def get_usage(tenant_id):
        usage_meter = meter()
        return jsonify({
            'tenant_id': tenant_id,
            'usage': usage_meter.get_all_usage(tenant_id),
            'warnings': usage_meter.get_usage_warnings(tenant_id),
        })

    @communities_bp.route('/usage/<metric>', methods=['GET'])
    def get_metric_usage(tenant_id, metric):
        return jsonify(meter().check_usage(tenant_id, metric))

    @communities_bp.route('/usage/sync', methods=['POST'])
    def sync_usage(tenant_id):
        counts = meter().sync_usage(tenant_id)
        return jsonify({'tenant_id': tenant_id, 'counts': counts})

    # ------------------------------------------------------------------
    # Add-ons
    # ------------------------------------------------------------------

    @communities_bp.route('/addons', methods=['GET'])
    def list_addons(tenant_id):
        manager = AddOnManager(get_db(), store=store, catalog=catalog)
        return jsonify({
            'available': manager.get_available_addons(tenant_id),
            'active': manager.get_active_addons(tenant_id),
        })

    @communities_bp.route('/addons', methods=['POST'])
    def purchase_addon(tenant_id):
        """
        Request body:
            {"addon_id": "extra_members_10", "quantity": 2}

        Returns 201 with the active add-on instance.
        """
        data = _json_body()
        addon_id = _required(data, 'addon_id')
        instance = addons().purchase_addon(tenant_id, addon_id, data.get('quantity', 1))
        return jsonify(instance), 201

    @communities_bp.route('/addons/<addon_id>', methods=['PATCH'])
    def update_addon(tenant_id, addon_id):
        data = _json_body()
        quantity = _required(data, 'quantity')
        return jsonify(addons().update_addon_quantity(tenant_id, addon_id, quantity))

    @communities_bp.route('/addons/<addon_id>', methods=['DELETE'])
    def cancel_addon(tenant_id, addon_id):
        return jsonify(addons().cancel_addon(tenant_id, addon_id))

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    @communities_bp.route('/subscription', methods=['GET'])
    def get_subscription(tenant_id):
        manager = SubscriptionManager(get_db(), store=store, catalog=catalog)
        return jsonify(manager.get_subscription(tenant_id))

    @communities_bp.route('/subscription', methods=['POST'])
    def create_subscription(tenant_id):
        """
        Request body:
            {
              "tier_id": "community",
              "billing_period": "annual",
              "customer_id": "cus_...",
              "user_id": "uuid"        (optional, converts that user's trial)
            }
        """
        data = _json_body()
        subscription = subscriptions().create_subscription(
            tenant_id,
            _required(data, 'tier_id'),
            data.get('billing_period', 'monthly'),
            data.get('customer_id'),
            user_id=getattr(g, 'current_user', None) or data.get('user_id'),
        )
        return jsonify(subscription), 201

    @communities_bp.route('/subscription/tier', methods=['POST'])
    def change_tier(tenant_id):
        data = _json_body()
        return jsonify(subscriptions().change_tier(tenant_id, _required(data, 'tier_id')))

    @communities_bp.route('/subscription/cancel', methods=['POST'])
    def cancel_subscription(tenant_id):
        data = _json_body()
        immediately = data.get('immediately', False)
        if not isinstance(immediately, bool):
            raise InvalidRequest('immediately must be true or false', field='immediately')
        return jsonify(subscriptions().cancel_subscription(tenant_id, immediately=immediately))

    @communities_bp.route('/subscription/resume', methods=['POST'])
    def resume_subscription(tenant_id):
        return jsonify(subscriptions().resume_subscription(tenant_id))

    # ------------------------------------------------------------------
    # Trial
    # ------------------------------------------------------------------

    @communities_bp.route('/trial', methods=['POST'])
    def start_trial(tenant_id):
        data = _json_body()
        result = trials().start_trial(_acting_user(data), _required(data, 'tier_id'), tenant_id)
        return jsonify(result), 201

    @communities_bp.route('/trial', methods=['DELETE'])
    def cancel_trial(tenant_id):
        data = _json_body()
        return jsonify(trials().cancel_trial(_acting_user(data), tenant_id))

    # ------------------------------------------------------------------
    # Platform
    # ------------------------------------------------------------------

    @platform_bp.route('/trials/<user_id>', methods=['GET'])
    def trial_status(user_id):
        manager = trials()
        return jsonify({
            'user_id': user_id,
            'status': manager.get_trial_status(user_id),
            'eligibility': manager.check_eligibility(user_id),
        })

    @platform_bp.route('/billing/fee', methods=['GET'])
    def fee_quote():
        raw = request.args.get('price', '')
        try:
            price = int(raw)
        except ValueError:
            raise InvalidRequest('price must be an integer number of cents', field='price')
        fee = calculate_fee(price)
        fee['display'] = {
            'item_price': format_price(fee['item_price']),
            'fee': format_price(fee['fee']),
            'buyer_total': format_price(fee['buyer_total']),
        }
        return jsonify(fee)

    @platform_bp.route('/billing/reconciliations', methods=['GET'])
    def reconciliations():
        events = list_pending_reconciliations(get_db(), request.args.get('tenant_id'), store=store)
        return jsonify({'events': events, 'count': len(events)})

    @platform_bp.route('/billing/reconciliations/<int:event_id>/resolve', methods=['POST'])
    def resolve(event_id):
        return jsonify(resolve_reconciliation(get_db(), event_id, store=store))

    @platform_bp.route('/billing/maintenance', methods=['POST'])
    def maintenance():
        """
        Scheduled maintenance: expire lapsed trials, list reminder candidates,
        resync usage for every subscribed community and count open
        reconciliations. Each step reports its own error.
        """
        if CRON_SECRET:
            supplied = request.headers.get('X-Cron-Secret', '')
            if not hmac.compare_digest(supplied, CRON_SECRET):
                return jsonify({'error': 'UNAUTHORIZED', 'message': 'Invalid cron secret'}), 401

        start_time = time.time()
        results = {}
        manager = trials()

        try:
            expired = manager.expire_lapsed_trials()
            results['trial_expiry'] = {'expired': len(expired), 'user_ids': expired}
        except Exception as e:
            results['trial_expiry'] = {'error': str(e)}

        try:
            due = manager.get_trials_ending_soon(days=3)
            results['trial_reminders'] = {'due': len(due), 'trials': due}
        except Exception as e:
            results['trial_reminders'] = {'error': str(e)}

        try:
            conn = get_db()
            cur = store.dict_cursor(conn)
            try:
                tenants = store.list_subscribed_tenants(cur)
            finally:
                cur.close()
            usage_meter = meter()
            synced, failed = 0, []
            for tenant_id in tenants:
                try:
                    usage_meter.sync_usage(tenant_id)
                    synced += 1
                except Exception as e:
                    failed.append({'tenant_id': tenant_id, 'error': str(e)})
            results['usage_sync'] = {'synced': synced, 'failed': failed}
            if failed:
                results['usage_sync']['error'] = f'{len(failed)} communities failed to sync'
        except Exception as e:
            get_db().rollback()
            results['usage_sync'] = {'error': str(e)}

        try:
            pending = list_pending_reconciliations(get_db(), store=store)
            results['reconciliations'] = {'pending': len(pending)}
            if pending:
                print(f"[OUTBOX] {len(pending)} billing events awaiting reconciliation",
                      file=sys.stderr, flush=True)
        except Exception as e:
            results['reconciliations'] = {'error': str(e)}

        has_errors = any('error' in step for step in results.values())
        duration_ms = int((time.time() - start_time) * 1000)
        print(f"[BILLING] Maintenance {'completed with errors' if has_errors else 'ok'} "
              f"in {duration_ms}ms", flush=True)
        return jsonify({
            'status': 'partial' if has_errors else 'ok',
            'duration_ms': duration_ms,
            'results': results,
        })

    @platform_bp.route('/billing/health', methods=['GET'])
    def health():
        conn = None
        try:
            conn = get_db()
            cur = conn.cursor()
            cur.execute('SELECT 1')
            cur.close()
            database = 'ok'
        except Exception as e:
            if conn is not None:
                conn.rollback()
            database = f'error: {e}'

        return jsonify({
            'status': 'ok' if database == 'ok' else 'degraded',
            'service': 'entitlements',
            'database': database,
            'tiers': [tier['id'] for tier in catalog.tiers],
            'addons': [addon['id'] for addon in catalog.addons],
            'stripe_configured': bool(os.environ.get('STRIPE_SECRET_KEY')),
            'timestamp': datetime.utcnow().isoformat() + 'Z'
        }), 200 if database == 'ok' else 503

    return communities_bp, platform_bp
