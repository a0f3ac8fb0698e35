"""Error taxonomy for the billing subsystem."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, status


@dataclass(eq=False)
class BillingError(Exception):
    """Base class for billing failures carrying a display-safe message."""

    message: str
    code: str = "billing_error"
    status_code: int = status.HTTP_400_BAD_REQUEST
    retryable: bool = False

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def to_http_exception(self, status_code: Optional[int] = None) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=status_code or self.status_code, detail=self.message)


@dataclass(eq=False)
class Unauthenticated(BillingError):
    """Missing or invalid bearer credential or webhook signature."""

    code: str = "unauthenticated"
    status_code: int = status.HTTP_401_UNAUTHORIZED


@dataclass(eq=False)
class InvalidArgument(BillingError):
    """Unknown plan or a payload with the wrong shape."""

    code: str = "invalid_argument"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass(eq=False)
class NotFound(BillingError):
    """No resolvable user, customer or provider object."""

    code: str = "not_found"
    status_code: int = status.HTTP_404_NOT_FOUND


@dataclass(eq=False)
class Conflict(BillingError):
    """Request contradicts state already recorded for the user."""

    code: str = "conflict"
    status_code: int = status.HTTP_409_CONFLICT


@dataclass(eq=False)
class Unavailable(BillingError):
    """Upstream fetch or store write failed; safe to retry."""

    code: str = "unavailable"
    status_code: int = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable: bool = True


__all__ = [
    "BillingError",
    "Conflict",
    "InvalidArgument",
    "NotFound",
    "Unauthenticated",
    "Unavailable",
]
