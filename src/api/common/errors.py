from typing import Any, Dict, Optional
from fastapi import HTTPException


class InvoiceEngineError(Exception):
    """
    Base error for the invoice engine.

    Every error carries the invoice id (when one exists) and the name of the
    step that failed so partial failures can be diagnosed from the error
    alone.
    """
    status_code = 500

    def __init__(self, message: str, invoice_id: Optional[str] = None, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.invoice_id = invoice_id
        self.step = step

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "step": self.step,
            "invoice_id": self.invoice_id,
        }


class InvoiceValidationError(InvoiceEngineError):
    """Malformed or missing input to an issuance or transition command."""
    status_code = 400


class ConflictError(InvoiceEngineError):
    """Requested transition is not allowed from the invoice's current state."""
    status_code = 409

    def __init__(self, message: str, current_state: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.current_state = current_state

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["current_state"] = self.current_state
        return data


class NotFoundError(InvoiceEngineError):
    status_code = 404


class DependencyError(InvoiceEngineError):
    """A collaborator failed and the operation was aborted."""
    status_code = 503


class NumberingError(DependencyError):
    pass


class PersistenceError(DependencyError):
    pass


class DegradedDependencyError(InvoiceEngineError):
    """A collaborator failed but the operation continued without it."""
    status_code = 502


class ExchangeRateUnavailableError(DegradedDependencyError):
    """No rate could be fetched and none was ever cached."""


class UnsupportedCurrencyPairError(DegradedDependencyError):
    status_code = 400


class SideEffectError(DegradedDependencyError):
    pass


def to_http_exception(error: InvoiceEngineError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.to_dict())
