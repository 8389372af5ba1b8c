"""Exception taxonomy for batch generation and route claiming.

Every error carries a stable ``code`` so callers (the HTTP layer, scheduled
jobs) can react without parsing messages.
"""

from __future__ import annotations

from typing import Any, Sequence


class BatchingError(Exception):
    """Base class for batching errors."""

    code = "BATCHING_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code, "details": self.details}


class NoPendingOrders(BatchingError):
    """Informational: nothing to batch for the requested date."""

    code = "NO_ORDERS"


class GeocodingFailure(BatchingError):
    """An order's delivery address could not be resolved to coordinates."""

    code = "GEOCODING_FAILED"

    def __init__(self, order_id: str, reason: str) -> None:
        self.order_id = order_id
        self.reason = reason
        super().__init__(f"Could not resolve address for order {order_id}: {reason}", {"order_id": order_id})


class OptimizationServiceFailure(BatchingError):
    """The routing service failed or timed out for a cluster."""

    code = "OPTIMIZATION_FAILED"


class PersistenceFailure(BatchingError):
    """Writing a batch failed and was rolled back."""

    code = "DATABASE_ERROR"

    def __init__(self, message: str, order_ids: Sequence[str], batch_number: int | None = None) -> None:
        self.order_ids = list(order_ids)
        self.batch_number = batch_number
        super().__init__(message, {"order_ids": self.order_ids, "batch_number": batch_number})


class FatalConfigurationError(BatchingError):
    """Required configuration is missing. Raised before any writes."""

    code = "CONFIGURATION_ERROR"


class BatchNotFound(BatchingError):
    code = "BATCH_NOT_FOUND"


class BatchUnavailable(BatchingError):
    """The batch was already claimed or is no longer pending."""

    code = "BATCH_UNAVAILABLE"
