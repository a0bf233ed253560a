"""Business error taxonomy shared by services and HTTP handlers"""

from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    """Base class for expected business failures.

    `code` is a stable machine-readable identifier, `status_code` the HTTP
    status the API layer answers with.
    """

    code = "marketplace_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ConflictError(MarketplaceError):
    """Lost a race for a shared resource; expected, never retried automatically"""
    code = "conflict"
    status_code = 409


class OutOfStockError(ConflictError):
    code = "out_of_stock"


class NotFoundError(MarketplaceError):
    code = "not_found"
    status_code = 404


class InvalidStateError(MarketplaceError):
    """Operation not permitted from the entity's current state"""
    code = "invalid_state"
    status_code = 409


class ValidationError(MarketplaceError):
    code = "validation_error"
    status_code = 422


class UnauthorizedError(MarketplaceError):
    code = "unauthorized"
    status_code = 401


class ForbiddenError(MarketplaceError):
    code = "forbidden"
    status_code = 403


class UpstreamMalformedError(MarketplaceError):
    """Payment provider sent a payload that cannot be interpreted"""
    code = "upstream_malformed"
    status_code = 400


class PaymentProviderError(MarketplaceError):
    """Payment provider could not create a charge"""
    code = "payment_failed"
    status_code = 502
