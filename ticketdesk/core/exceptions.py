"""
Core Exceptions
================

Custom exceptions for the help desk core.

Every exception carries a stable ``code`` and an HTTP-style ``status_code``
so the API boundary can render it without inspecting the type.
"""

from typing import Optional, List


class ApplicationException(Exception):
    """Base exception for all application errors."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Public representation used in API error bodies."""
        body = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""

    code = "CONFIGURATION_ERROR"


class ValidationException(ApplicationException):
    """
    Exception for validation errors.

    Always carries the complete list of violated fields, never just the
    first one found.
    """

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str,
        errors: Optional[List[dict]] = None,
        details: Optional[dict] = None
    ):
        self.errors = errors or []
        super().__init__(message, details)

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationException":
        """Single-field shortcut."""
        return cls(message, [{"field": field, "message": message}])

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["errors"] = self.errors
        return body


class InvalidTransitionException(ValidationException):
    """Requested status change is not allowed from the current status."""

    code = "INVALID_TRANSITION"

    def __init__(self, current_status: str, requested_status: str):
        self.current_status = current_status
        self.requested_status = requested_status
        message = f"Cannot move ticket from '{current_status}' to '{requested_status}'"
        super().__init__(
            message,
            [{"field": "status", "message": message}],
            {"current_status": current_status, "requested_status": requested_status}
        )


class PermissionDeniedException(ApplicationException):
    """Actor's role or relationship to the ticket does not allow the action."""

    code = "PERMISSION_DENIED"
    status_code = 403

    def __init__(self, action: str, actor_id: Optional[str] = None, reason: str = ""):
        self.action = action
        self.actor_id = actor_id
        message = f"Not permitted to {action}"
        if reason:
            message += f": {reason}"
        super().__init__(message, {"action": action})


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    code = "NOT_FOUND"
    status_code = 404

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


class ConflictException(ApplicationException):
    """Concurrent update or unique-key collision (e.g. ticket number)."""

    code = "CONFLICT"
    status_code = 409


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    code = "EXTERNAL_SERVICE_ERROR"
    status_code = 502

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class DependencyUnavailableException(ExternalServiceException):
    """Staff directory or notification dispatcher could not be reached."""

    code = "DEPENDENCY_UNAVAILABLE"
    status_code = 503
