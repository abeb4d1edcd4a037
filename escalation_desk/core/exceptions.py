"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

Every exception carries a stable ``kind`` so the API boundary can render a
predictable error code next to the human-readable message.
"""

from typing import Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    kind = "application-error"

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""

    kind = "repository-error"


class ValidationException(ApplicationException):
    """Exception for validation errors."""

    kind = "validation"


class AuthenticationException(ApplicationException):
    """The caller could not be identified."""

    kind = "unauthenticated"


class ForbiddenException(ApplicationException):
    """The actor lacks permission for this action in this state."""

    kind = "forbidden"


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    kind = "not-found"

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class InvalidStateException(ApplicationException):
    """Transition is illegal for the matter's current status/level."""

    kind = "invalid-state"


class AlreadyClosedException(ApplicationException):
    """Terminal-state guard for hold/withdraw/close on a closed matter."""

    kind = "already-closed"

    def __init__(self, matter_id: Optional[int] = None, details: Optional[dict] = None):
        self.matter_id = matter_id
        message = "Matter is already closed"
        if matter_id is not None:
            message = f"Matter {matter_id} is already closed"
        super().__init__(message, details or {"matter_id": matter_id})


class InvalidTargetException(ApplicationException):
    """Assignee does not hold the required role."""

    kind = "invalid-target"


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""

    kind = "configuration-error"


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    kind = "external-service-error"

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class DeliveryException(ExternalServiceException):
    """Per-recipient notification failure. Collected, never propagated to callers."""

    kind = "delivery-failed"

    def __init__(self, reason: str, message: Optional[str] = None, details: Optional[dict] = None):
        self.reason = reason
        super().__init__("WhatsApp", message or reason, details or {"reason": reason})
