"""
Domain errors raised by the service modules.

Each class maps to one HTTP status; ``code`` is a stable machine-readable
identifier so clients can branch without parsing ``message``.
"""
from typing import Any, Dict, Optional


class StoreError(Exception):
    status_code = 500
    default_code = "internal_error"

    def __init__(self, message: str, code: Optional[str] = None, **details: Any):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "message": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class InvalidRequestError(StoreError):
    status_code = 400
    default_code = "invalid_request"


class NotFoundError(StoreError):
    status_code = 404
    default_code = "not_found"


class InsufficientStockError(StoreError):
    status_code = 400
    default_code = "insufficient_stock"


class PromoCodeError(StoreError):
    status_code = 400
    default_code = "promo_invalid"


class InvalidTransitionError(StoreError):
    status_code = 409
    default_code = "invalid_transition"


class ConflictError(StoreError):
    status_code = 409
    default_code = "conflict"
