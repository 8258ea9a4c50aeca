"""
Billing Errors
Owner: CC2
Workstream: W2P5

Every error carries an HTTP status and a machine-readable code so the
blueprint can render it without knowing which layer raised it.
"""

from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for billing failures."""

    status_code = 400
    error_code = 'BILLING_ERROR'

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Shape used for JSON error responses."""
        body = {'error': self.message, 'code': self.error_code}
        body.update(self.context)
        return body


class ValidationError(BillingError):
    """Malformed or missing input. Raised before any external call."""

    status_code = 400
    error_code = 'VALIDATION_ERROR'


class NotFoundError(BillingError):
    status_code = 404
    error_code = 'NOT_FOUND'


class ConflictError(BillingError):
    """A precondition on the tenant's billing state does not hold."""

    status_code = 409
    error_code = 'CONFLICT'


class Unauthorized(BillingError):
    status_code = 401
    error_code = 'UNAUTHORIZED'


class Forbidden(BillingError):
    status_code = 403
    error_code = 'FORBIDDEN'


class ExternalProcessorError(BillingError):
    """
    The payment processor rejected or failed a call.

    The processor's message and HTTP status are passed through untouched,
    since most of these are actionable by the customer (declined card etc).
    """

    status_code = 502
    error_code = 'PAYMENT_PROCESSOR_ERROR'

    def __init__(self, message: str, status_code: Optional[int] = None,
                 processor_code: Optional[str] = None):
        context = {'processor_code': processor_code} if processor_code else None
        super().__init__(message, status_code=status_code or 502, context=context)
        self.processor_code = processor_code


class ReconciliationGap(BillingError):
    """
    The processor accepted a change but the local tenant row was not updated.

    Never shown to the end user. Recorded as a critical audit event so the
    out-of-band reconciliation can pick it up.
    """

    status_code = 500
    error_code = 'RECONCILIATION_GAP'

    def __init__(self, message: str, organization_id: str,
                 external_id: Optional[str] = None, intended: Optional[Dict[str, Any]] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message, context={
            'organization_id': organization_id,
            'external_id': external_id,
        })
        self.organization_id = organization_id
        self.external_id = external_id
        self.intended = intended or {}
        self.cause = cause
