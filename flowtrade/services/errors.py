"""
Error taxonomy for the document lifecycle.

Services raise these; the HTTP layer maps them to structured JSON bodies in
``flowtrade.main``. ConflictError is an expected outcome of conversions and
carries the identifier the caller should redirect to.
"""
from typing import Any, Dict, Optional


class FlowTradeError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message}


class ValidationError(FlowTradeError):
    status_code = 400


class InvalidStateError(FlowTradeError):
    status_code = 400

    def __init__(self, current: Optional[str], requested: str, message: Optional[str] = None):
        super().__init__(message or f"Cannot transition from {current} to {requested}")
        self.current = current
        self.requested = requested

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "current_status": self.current, "requested_status": self.requested}


class ConflictError(FlowTradeError):
    status_code = 409

    def __init__(self, message: str, field: str, existing_id: Any):
        super().__init__(message)
        self.field = field
        self.existing_id = existing_id

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, self.field: str(self.existing_id)}


class NotFoundError(FlowTradeError):
    status_code = 404


class ExternalDependencyError(FlowTradeError):
    status_code = 502


class PaymentsUnavailableError(ExternalDependencyError):
    status_code = 503


class LinkExpiredError(FlowTradeError):
    """Portal link that was revoked or is past its expiry."""
    status_code = 410
