"""
Commission engine error taxonomy.

Services raise these; the API layer maps each class to an HTTP status
(see fuelops.main). Batch calculation reports them per station.
"""
from typing import Any, Dict, Optional


class CommissionError(Exception):
    """Base exception for commission engine errors."""
    status_code: int = 400
    code: str = "COMMISSION_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(CommissionError):
    """Missing or invalid required field (e.g. payment reference)."""
    status_code = 422
    code = "VALIDATION_ERROR"


class NotFound(CommissionError):
    """Unknown station or commission record."""
    status_code = 404
    code = "NOT_FOUND"


class InvalidStateTransition(CommissionError):
    """Lifecycle violation, including any action on a paid/cancelled record."""
    status_code = 409
    code = "INVALID_STATE_TRANSITION"


class PermissionDenied(CommissionError):
    """Missing capability or out-of-scope access."""
    status_code = 403
    code = "PERMISSION_DENIED"


class UpstreamDataUnavailable(CommissionError):
    """No upstream source could supply period data."""
    status_code = 503
    code = "UPSTREAM_DATA_UNAVAILABLE"


class ConcurrencyConflict(CommissionError):
    """A calculation for the same (station, period) is already in progress."""
    status_code = 409
    code = "CALCULATION_IN_PROGRESS"
