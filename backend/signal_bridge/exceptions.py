"""
Domain exceptions for signal-bridge.

Adapters, the risk engine and the trade executor raise these instead of
fastapi.HTTPException or venue-native error shapes. A global exception
handler in main.py translates them into structured HTTP responses.

Error kinds:
- AuthError: bad or expired credentials, never retried
- ValidationError: malformed trade intent, rejected before any venue call
- RiskRejected: admission-control deny, names the offending limit
- VenueTransient: 5xx / 429 / network, retried inside the adapter
- ExecutionFailed: transient failure that outlived the retry budget
- VenueRejected: 4xx business-rule rejection (insufficient margin, bad qty)
- PartialExecution: entry filled but a protective leg failed (warning only)
"""

from typing import Any, Optional


class AppError(Exception):
    """Base application error with an HTTP-equivalent status code."""

    kind = "app_error"

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"success": False, "error_kind": self.kind, "error": self.message}


class ValidationError(AppError):
    """Input validation failure (400)."""

    kind = "validation_error"

    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class AuthError(AppError):
    """Unauthorized caller or rejected venue credentials (401)."""

    kind = "auth_error"

    def __init__(self, message: str = "Unauthorized", venue_code: Any = None):
        self.venue_code = venue_code
        super().__init__(message, status_code=401)


class RiskRejected(AppError):
    """Admission control denied the intent (429).

    Carries which limit tripped and its current/threshold values.
    """

    kind = "risk_rejected"

    def __init__(
        self,
        message: str,
        limit_type: str,
        current: Optional[float] = None,
        limit: Optional[float] = None,
    ):
        self.limit_type = limit_type
        self.current = current
        self.limit = limit
        super().__init__(message, status_code=429)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "limit_type": self.limit_type,
            "current": self.current,
            "limit": self.limit,
        })
        return data


class VenueError(AppError):
    """Base for errors originating at a venue; preserves the native code."""

    kind = "venue_error"

    def __init__(
        self,
        message: str,
        status_code: int = 502,
        venue_code: Any = None,
        venue_payload: Any = None,
    ):
        self.venue_code = venue_code
        self.venue_payload = venue_payload
        super().__init__(message, status_code=status_code)

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.venue_code is not None:
            data["venue_code"] = self.venue_code
        return data


class VenueTransient(VenueError):
    """Retryable venue failure (5xx, 429, timeout, connection reset)."""

    kind = "venue_transient"

    def __init__(self, message: str, venue_code: Any = None, venue_payload: Any = None):
        super().__init__(message, status_code=503, venue_code=venue_code, venue_payload=venue_payload)


class ExecutionFailed(VenueError):
    """A transient failure that survived every retry (502)."""

    kind = "execution_failed"

    def __init__(self, message: str, venue_code: Any = None, venue_payload: Any = None):
        super().__init__(message, status_code=502, venue_code=venue_code, venue_payload=venue_payload)


class VenueRejected(VenueError):
    """Venue refused the request on business rules (422); never retried."""

    kind = "venue_rejected"

    def __init__(self, message: str, venue_code: Any = None, venue_payload: Any = None):
        super().__init__(message, status_code=422, venue_code=venue_code, venue_payload=venue_payload)


class PartialExecution(AppError):
    """Entry succeeded but a protective order could not be placed.

    Not raised to callers: the executor records it as a warning on the
    result and keeps the position open.
    """

    kind = "partial_execution"

    def __init__(self, message: str, unprotected_sides: Optional[list] = None):
        self.unprotected_sides = unprotected_sides or []
        super().__init__(message, status_code=200)
