"""
Error taxonomy for the dispatch & settlement core.

Every error carries a stable ``code`` and the HTTP status the API layer
maps it to.  ``retry_suggested`` tells the requester-facing surface whether
a later retry may succeed.

Recovery policy
---------------
* ``AssignmentConflict`` / ``OfferExpired`` -- handled inside the
  dispatcher (next-ranked candidate), surfaced only on budget exhaustion.
* ``QuotaExhausted`` -- pay-per-ride fallback when the service allows it.
* ``NoDriversAvailable`` / ``InvalidZone`` -- user-visible, retryable.
* ``PaymentHoldFailed`` -- fatal per booking; request parked in
  ``PENDING_PAYMENT`` for manual review.
* ``PaymentGatewayError`` -- a capture or refund did not go through; the
  escrow row is handed back to its previous status so a retry (or the
  auto-release sweep) can settle it.
"""

from __future__ import annotations


class DispatchError(Exception):
    code = "dispatch_error"
    status_code = 400
    retry_suggested = False

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.context = context


class StaleLocation(DispatchError):
    code = "stale_location"
    status_code = 409


class NoDriversAvailable(DispatchError):
    code = "no_drivers_available"
    status_code = 503
    retry_suggested = True


class QuotaExhausted(DispatchError):
    code = "quota_exhausted"
    status_code = 402


class AssignmentConflict(DispatchError):
    code = "assignment_conflict"
    status_code = 409


class OfferExpired(DispatchError):
    code = "offer_expired"
    status_code = 410


class InvalidZone(DispatchError):
    code = "invalid_zone"
    status_code = 422
    retry_suggested = True


class EscrowAlreadyTerminal(DispatchError):
    code = "escrow_already_terminal"
    status_code = 409


class EscrowDisputed(DispatchError):
    code = "escrow_disputed"
    status_code = 409


class EscrowAmountMismatch(DispatchError):
    code = "escrow_amount_mismatch"
    status_code = 422


class PaymentHoldFailed(DispatchError):
    code = "payment_hold_failed"
    status_code = 402


class PaymentGatewayError(DispatchError):
    code = "payment_gateway_error"
    status_code = 502
    retry_suggested = True


class InvalidStateTransition(DispatchError):
    """Raised when a request status change violates the state machine."""

    code = "invalid_state_transition"
    status_code = 409


class DriverNotAssigned(DispatchError):
    code = "driver_not_assigned"
    status_code = 403


class RequestNotFound(DispatchError):
    code = "request_not_found"
    status_code = 404


class OfferNotFound(DispatchError):
    code = "offer_not_found"
    status_code = 404


class EscrowNotFound(DispatchError):
    code = "escrow_not_found"
    status_code = 404
