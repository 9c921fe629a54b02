from __future__ import annotations

from datetime import date


class TrackerError(Exception):
    """Base class for errors the core hands back to the request layer."""

    code = "TRACKER_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(TrackerError, ValueError):
    code = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field


class InvalidAmount(ValidationError):
    def __init__(self, message: str = "Amount must be positive.") -> None:
        super().__init__("amount", message)


class InvalidDate(ValidationError):
    def __init__(self, message: str, field: str = "date") -> None:
        super().__init__(field, message)


class NotFound(TrackerError):
    """Raised for missing rows and for rows owned by another family."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, field: str | None = None) -> None:
        super().__init__(f"{entity.capitalize()} not found.")
        self.entity = entity
        self.field = field


class RateUnavailable(TrackerError):
    code = "RATE_UNAVAILABLE"

    def __init__(self, from_currency: str, to_currency: str, as_of: date) -> None:
        super().__init__(
            f"No exchange rate for {from_currency}->{to_currency} on or before {as_of.isoformat()}."
        )
        self.from_currency = from_currency
        self.to_currency = to_currency
        self.as_of = as_of


class StorageFailure(TrackerError):
    code = "DATABASE_ERROR"


class Conflict(TrackerError):
    code = "CONFLICT"


class Unauthenticated(TrackerError):
    code = "UNAUTHORIZED"
