# backend/coachline/core/exceptions.py
"""
Domain-specific exceptions for the Coachline platform.

These exceptions carry business-focused error messages that the API layer
converts into HTTP responses.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "details": self.details,
        }

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.to_dict())


class ValidationException(DomainException):
    """Raised when business validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when a write cannot be serialized against a concurrent one."""

    status_code = status.HTTP_409_CONFLICT


class UnauthorizedException(DomainException):
    """Raised when an operational endpoint is called without valid credentials."""

    status_code = status.HTTP_401_UNAUTHORIZED


class ConsistencyException(DomainException):
    """
    Raised when an operation would break a money or account invariant.

    Always raised before any external call is made.
    """

    status_code = status.HTTP_400_BAD_REQUEST


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message or "An error occurred processing your request",
            "code": self.code,
            "details": self.details if self.details else {},
        }


class ExternalServiceException(ServiceException):
    """Raised when the payment processor or a scheduling/calendar provider fails."""

    def __init__(
        self,
        message: str,
        *,
        service: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.service = service
        super().__init__(
            message=message,
            code=code or "EXTERNAL_SERVICE_ERROR",
            details={"service": service, **(details or {})},
        )


# Specific business exceptions


class SlotUnavailableException(ValidationException):
    """Raised when a requested interval collides with an existing booking."""

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message or "Time slot is not available",
            code="SLOT_UNAVAILABLE",
            details=details or {},
        )


class DuplicateFreeIntroException(ValidationException):
    """Raised when a student already had a free intro with the coach in the window."""

    def __init__(self, coach_id: str, student_id: str, window_days: int):
        super().__init__(
            message=(
                f"You already have a free intro session with this coach in the last "
                f"{window_days} days"
            ),
            code="DUPLICATE_FREE_INTRO",
            details={
                "coach_id": coach_id,
                "student_id": student_id,
                "window_days": window_days,
            },
        )


class InvalidTransitionException(ValidationException):
    """Raised when a booking transition is not allowed from its current status."""

    def __init__(self, booking_id: str, current_status: str, action: str):
        super().__init__(
            message=f"Cannot {action} a booking that is {current_status}",
            code="INVALID_TRANSITION",
            details={
                "booking_id": booking_id,
                "status": current_status,
                "action": action,
            },
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    Used when data access operations fail, such as connection issues,
    query failures, or constraint violations.
    """
