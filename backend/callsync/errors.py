import enum
from typing import Any


class ErrorCode(str, enum.Enum):
    INVALID_CALLER_ID = "invalid-caller-id"
    LOOKUP_FAILED = "lookup-failed"
    NOT_FOUND = "not-found"
    LEG_RESOLUTION_FAILED = "leg-resolution-failed"
    OVERRIDE_FAILED = "override-failed"


class BillingAPIError(Exception):
    """Raised by the billing platform client for transport errors and non-2xx replies."""

    def __init__(self, message: str, status_code: int | None = None, payload: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self) -> dict:
        return {"message": self.message, "status_code": self.status_code, "payload": self.payload}


class LegResolutionError(Exception):
    pass


class AppendOnlyViolation(RuntimeError):
    pass
