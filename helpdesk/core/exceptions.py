"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries.
"""

from typing import Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """Exception for validation errors."""


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

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


class InvalidStateException(DomainException):
    """Exception when an operation is not allowed in the current ticket state."""

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.current_state = current_state
        details = details or {}
        if current_state is not None:
            details.setdefault("current_state", current_state)
        super().__init__(message, details)


class ConflictException(ApplicationException):
    """Exception when a concurrent run or write loses against another one."""

    def __init__(self, resource_type: str, resource_id: str, reason: str):
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(
            f"{resource_type} '{resource_id}': {reason}",
            {"resource_type": resource_type, "resource_id": resource_id}
        )


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class LLMException(ExternalServiceException):
    """Exception for LLM API failures."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("LLM Service", message, details)


class RetryExhaustedException(ApplicationException):
    """Exception raised once every bounded triage attempt has failed."""

    def __init__(
        self,
        ticket_id: str,
        attempts: int,
        last_error: Optional[BaseException] = None,
        reason: Optional[str] = None
    ):
        self.ticket_id = ticket_id
        self.attempts = attempts
        self.last_error = last_error
        cause = reason or (_error_message(last_error) if last_error else "unknown error")
        super().__init__(
            f"Triage failed after {attempts} attempts: {cause}",
            {"ticket_id": ticket_id, "attempts": attempts}
        )


def _error_message(error: BaseException) -> str:
    if isinstance(error, ApplicationException):
        return error.message
    return str(error) or type(error).__name__
