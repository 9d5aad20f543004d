"""
Entitlement Errors
Owner: CC2

Typed failures raised by the entitlement managers. Routes render them with
to_dict(); the status code tells the UI whether to offer an upgrade (402),
show a retry (502) or page an operator (503 / 500).
"""

from http import HTTPStatus
from typing import Any, Dict, Optional


class EntitlementError(Exception):
    """
    Base class for every entitlement failure.

    Attributes:
        message: Human readable message (safe to show to the user)
        status_code: HTTP status code
        code: Stable error code for clients
        details: Extra structured data
    """

    status_code = HTTPStatus.INTERNAL_SERVER_ERROR
    code = 'ENTITLEMENT_ERROR'

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error': self.code,
            'message': self.message,
            'details': self.details,
        }

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class NotFound(EntitlementError):
    status_code = HTTPStatus.NOT_FOUND
    code = 'NOT_FOUND'

    def __init__(self, resource: str, identifier: Any = None, message: Optional[str] = None):
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            message or f"{resource} not found: {identifier}",
            {'resource': resource, 'id': identifier},
        )


class NotConfigured(EntitlementError):
    """A catalog entry has no processor-side price yet. Operator action needed."""

    status_code = HTTPStatus.SERVICE_UNAVAILABLE
    code = 'NOT_CONFIGURED'

    def __init__(self, resource: str, identifier: str, message: Optional[str] = None):
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            message or f"{resource} '{identifier}' has no Stripe price configured",
            {'resource': resource, 'id': identifier},
        )


class TierNotConfigured(NotConfigured):
    code = 'TIER_NOT_CONFIGURED'

    def __init__(self, tier_id: str, billing_period: str):
        self.billing_period = billing_period
        super().__init__(
            'tier', tier_id,
            f"Price not configured for tier '{tier_id}' ({billing_period})",
        )
        self.details['billing_period'] = billing_period


class AddOnNotConfigured(NotConfigured):
    code = 'ADDON_NOT_CONFIGURED'

    def __init__(self, addon_id: str):
        super().__init__('addon', addon_id, f"Add-on '{addon_id}' price not configured in Stripe")


class InvalidTransition(EntitlementError):
    status_code = HTTPStatus.CONFLICT
    code = 'INVALID_TRANSITION'


class InvalidRequest(EntitlementError):
    status_code = HTTPStatus.BAD_REQUEST
    code = 'INVALID_REQUEST'

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, {'field': field} if field else None)


class LimitReached(EntitlementError):
    """Usage enforcement denial. A normal business outcome, not a system error."""

    status_code = HTTPStatus.PAYMENT_REQUIRED
    code = 'LIMIT_REACHED'

    def __init__(self, metric: str, current: int, limit: int, requested: int = 1):
        from entitlements.catalog import METRIC_LABELS

        self.metric = metric
        self.current = current
        self.limit = limit
        self.requested = requested
        label = METRIC_LABELS.get(metric, metric)
        super().__init__(
            f"{label} limit reached ({current}/{limit})",
            {'metric': metric, 'current': current, 'limit': limit, 'requested': requested},
        )


class TrialIneligible(EntitlementError):
    status_code = HTTPStatus.FORBIDDEN
    reason = 'ineligible'


class CooldownActive(TrialIneligible):
    code = 'COOLDOWN_ACTIVE'
    reason = 'cooldown'

    def __init__(self, cooldown_ends_at):
        self.cooldown_ends_at = cooldown_ends_at
        super().__init__(
            'You are in a cooldown period. Please wait before starting a trial.',
            {'reason': self.reason, 'cooldown_ends_at': cooldown_ends_at.isoformat()},
        )


class AlreadyTrialed(TrialIneligible):
    code = 'ALREADY_TRIALED'
    reason = 'already_trialed'

    def __init__(self):
        super().__init__('A free trial has already been used on this account.',
                         {'reason': self.reason})


class ExternalProcessorError(EntitlementError):
    """
    Opaque failure from Stripe.

    The user-facing message is generic; the processor's own message stays in
    processor_message for logs and alerts.
    """

    status_code = HTTPStatus.BAD_GATEWAY
    code = 'PROCESSOR_ERROR'

    def __init__(self, operation: str, processor_message: str = '',
                 processor_code: Optional[str] = None, reference: Optional[str] = None):
        self.operation = operation
        self.processor_message = processor_message
        self.processor_code = processor_code
        self.reference = reference
        super().__init__(
            'The billing provider could not complete the request. Please try again.',
            {'operation': operation, 'retryable': True},
        )


class InconsistentState(EntitlementError):
    """Stripe accepted the change but the local write failed; queued for reconciliation."""

    code = 'RECONCILIATION_PENDING'

    def __init__(self, operation: str, event_id: Any, processor_ref: Optional[str]):
        self.operation = operation
        self.event_id = event_id
        self.processor_ref = processor_ref
        super().__init__(
            'The change was accepted by the billing provider but could not be saved. '
            'It has been queued for reconciliation.',
            {'operation': operation, 'event_id': event_id},
        )
