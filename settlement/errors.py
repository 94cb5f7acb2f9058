"""
Settlement error hierarchy.

Every error carries the HTTP status the blueprint answers with, so route
handlers can let them propagate and the error handler shapes the JSON body.
"""
from typing import Any, Dict, Optional


class SettlementError(Exception):
    """Base class for errors this service raises on purpose."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.message}
        if self.details:
            body.update(self.details)
        return body


class AuthenticationError(SettlementError):
    """Missing, malformed or expired bearer token."""

    status_code = 401


class AuthorizationError(SettlementError):
    """Authenticated caller without an admin/owner role."""

    status_code = 403


class PreconditionError(SettlementError):
    """
    Request is well-formed JSON but cannot be processed.

    Examples:
    - required field missing
    - actual miles exceed the event's mile goal
    - no amount could be extracted from the Stripe objects
    """

    status_code = 400


class DonationTypeMismatch(PreconditionError):
    """Stripe metadata says the payment is a sponsorship/order, not a donation."""


class EventNotFound(PreconditionError):
    status_code = 404


class GatewayConfigError(SettlementError):
    """No Stripe secret key configured for the requested mode."""
