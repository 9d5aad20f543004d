"""
Billing Event Outbox
Owner: CC2

Stripe and Postgres cannot be committed atomically, so every
processor-backed change runs as a recorded two-phase step:

    1. billing_events row inserted as 'pending' and committed
    2. Stripe call; failure -> 'processor_failed', nothing else written
    3. local writes + event 'completed' in one transaction
    4. local failure -> rollback, event 'needs_reconciliation' with the
       Stripe reference, InconsistentState raised

Operators (or the maintenance cron) list and resolve the
needs_reconciliation rows.
"""

import sys
from typing import Any, Callable, Dict, List, Optional, Union

from entitlements import db
from entitlements.errors import InconsistentState, InvalidTransition, NotFound

PENDING = 'pending'
COMPLETED = 'completed'
PROCESSOR_FAILED = 'processor_failed'
NEEDS_RECONCILIATION = 'needs_reconciliation'
RESOLVED = 'resolved'


def _mark(conn, store, event_id, status: str, processor_ref: Optional[str] = None,
          error: Optional[str] = None) -> None:
    cur = store.dict_cursor(conn)
    try:
        store.update_billing_event(cur, event_id, status, processor_ref=processor_ref, error=error)
        conn.commit()
    finally:
        cur.close()


def processor_step(
    conn,
    tenant_id: str,
    operation: str,
    payload: Dict[str, Any],
    call_processor: Callable[[], Any],
    write_local: Callable[[Any, Any], Any],
    reference: Union[str, Callable[[Any], Optional[str]], None] = None,
    store=db
):
    """
    Run one Stripe call and its local writes as a single logical step.

    Args:
        conn: Database connection (committed/rolled back here)
        tenant_id: Community UUID
        operation: Short operation name ('purchase_addon', ...)
        payload: JSON-serializable description of the intent
        call_processor: No-arg callable performing the Stripe call
        write_local: Callable(cursor, processor_result) performing local writes
        reference: Stripe reference, or a callable deriving it from the result
        store: Query module (entitlements.db)

    Returns:
        Whatever write_local returns
    """
    cur = store.dict_cursor(conn)
    try:
        event_id = store.insert_billing_event(cur, tenant_id, operation, payload)
        conn.commit()
    finally:
        cur.close()

    try:
        result = call_processor()
    except Exception as e:
        try:
            conn.rollback()
            _mark(conn, store, event_id, PROCESSOR_FAILED,
                  error=getattr(e, 'processor_message', None) or str(e))
        except Exception as mark_error:
            print(f"[OUTBOX] Could not mark event {event_id} as processor_failed: {mark_error}",
                  file=sys.stderr, flush=True)
        raise

    processor_ref = reference(result) if callable(reference) else reference

    cur = store.dict_cursor(conn)
    try:
        value = write_local(cur, result)
        store.update_billing_event(cur, event_id, COMPLETED, processor_ref=processor_ref)
        conn.commit()
        return value
    except Exception as e:
        conn.rollback()
        print(f"[OUTBOX] CRITICAL: {operation} succeeded in Stripe but local write failed "
              f"(tenant={tenant_id}, ref={processor_ref}, event={event_id}): {e}",
              file=sys.stderr, flush=True)
        try:
            _mark(conn, store, event_id, NEEDS_RECONCILIATION,
                  processor_ref=processor_ref, error=str(e))
        except Exception as mark_error:
            print(f"[OUTBOX] CRITICAL: could not flag event {event_id} for reconciliation: "
                  f"{mark_error}", file=sys.stderr, flush=True)
        raise InconsistentState(operation, event_id, processor_ref) from e
    finally:
        cur.close()


def list_pending_reconciliations(conn, tenant_id: Optional[str] = None, store=db) -> List[Dict[str, Any]]:
    """Events where Stripe and the local store are known to disagree."""
    cur = store.dict_cursor(conn)
    try:
        return store.list_billing_events(cur, NEEDS_RECONCILIATION, tenant_id=tenant_id)
    finally:
        cur.close()


def resolve_reconciliation(conn, event_id, store=db) -> Dict[str, Any]:
    """Mark a needs_reconciliation event as handled by an operator."""
    cur = store.dict_cursor(conn)
    try:
        event = store.get_billing_event(cur, event_id)
        if not event:
            raise NotFound('billing_event', event_id)
        if event['status'] != NEEDS_RECONCILIATION:
            raise InvalidTransition(
                f"Billing event {event_id} is '{event['status']}', not awaiting reconciliation"
            )
        store.update_billing_event(cur, event_id, RESOLVED)
        conn.commit()
        print(f"[OUTBOX] Event {event_id} resolved ({event['operation']})", flush=True)
        return store.get_billing_event(cur, event_id)
    except Exception:
        conn.rollback()
        raise
    finally:
        cur.close()
