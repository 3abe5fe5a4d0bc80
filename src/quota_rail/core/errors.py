"""
Error taxonomy for Quota Rail.

Exception Hierarchy:
    QuotaRailError (base)
    ├── ValidationError          - malformed page range, bad copy count (400)
    ├── CapabilityMismatchError  - printer cannot satisfy requested options (422)
    ├── InsufficientBalanceError - debit would drive the balance negative (402)
    ├── NotFoundError            - unknown document, printer, job or payment (404)
    ├── ConflictError            - illegal state transition, stale payment (409)
    └── StorageError             - ledger or job store could not be written (500)

All but StorageError are user-facing and recoverable. StorageError is fatal to
the single operation that raised it; nothing it touched is left half-written.
"""

from typing import Any, Dict, Optional


class QuotaRailError(Exception):
    """
    Base exception for all Quota Rail errors.

    Carries a human-readable message plus a details dict that the API layer
    returns verbatim to the caller.
    """

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(QuotaRailError):
    """A request field (page range token, copy count, amount) is invalid."""

    status_code = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        token: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = dict(details or {})
        if field is not None:
            error_details["field"] = field
        if token is not None:
            error_details["token"] = token
        super().__init__(message, error_details)
        self.field = field
        self.token = token


class CapabilityMismatchError(QuotaRailError):
    """The selected printer cannot honour a requested option."""

    status_code = 422

    def __init__(self, feature: str, request_index: int, printer_id: str, requested: Any = None):
        message = (
            f"Printer {printer_id} does not support {feature} "
            f"(request #{request_index})"
        )
        details = {
            "feature": feature,
            "request_index": request_index,
            "printer_id": printer_id,
        }
        if requested is not None:
            details["requested"] = requested
        super().__init__(message, details)
        self.feature = feature
        self.request_index = request_index
        self.printer_id = printer_id


class InsufficientBalanceError(QuotaRailError):
    """
    A debit would make the balance negative.

    Carries both numbers so the caller can offer a top-up of the shortfall.
    """

    status_code = 402

    def __init__(self, current_balance: int, required: int, user_id: Optional[str] = None):
        message = (
            f"Insufficient page balance: {current_balance} A4 pages available, "
            f"{required} required"
        )
        details = {
            "current_balance": current_balance,
            "required": required,
            "shortfall": required - current_balance,
        }
        if user_id is not None:
            details["user_id"] = user_id
        super().__init__(message, details)
        self.current_balance = current_balance
        self.required = required


class NotFoundError(QuotaRailError):
    status_code = 404

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            f"{resource} not found: {identifier}",
            {"resource": resource, "id": identifier},
        )
        self.resource = resource
        self.identifier = identifier


class ConflictError(QuotaRailError):
    status_code = 409


class StorageError(QuotaRailError):
    """The underlying store failed; the operation had no visible effect."""

    status_code = 500
