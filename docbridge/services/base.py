"""
DocBridge - Base Service Class
==============================

Provides common patterns and utilities for all services:
- Logging
- Error handling
- Organization context

Connectors, stores and the connector manager all build on BaseService
so they log and fail the same way.
"""

import uuid
from abc import ABC
from typing import Optional, Any, Union

import structlog

logger = structlog.get_logger(__name__)

ContextId = Union[str, uuid.UUID]


class ServiceException(Exception):
    """Base exception for all service errors."""

    def __init__(self, message: str, code: str = "SERVICE_ERROR", details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class ConfigurationException(ServiceException):
    """Invalid configuration error."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, code="CONFIGURATION_ERROR", details=details)


class ValidationException(ServiceException):
    """Input validation error."""

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[dict] = None):
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, code="VALIDATION_ERROR", details=details)


class NotFoundException(ServiceException):
    """Resource not found error."""

    def __init__(self, resource_type: str, resource_id: str, details: Optional[dict] = None):
        message = f"{resource_type} not found: {resource_id}"
        details = details or {}
        details["resource_type"] = resource_type
        details["resource_id"] = resource_id
        super().__init__(message, code="NOT_FOUND", details=details)


class PermissionException(ServiceException):
    """Permission denied error."""

    def __init__(self, message: str = "Permission denied", details: Optional[dict] = None):
        super().__init__(message, code="PERMISSION_DENIED", details=details)


class RateLimitException(ServiceException):
    """Rate limit exceeded error."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        details = details or {}
        if retry_after:
            details["retry_after"] = retry_after
        super().__init__(message, code="RATE_LIMIT_EXCEEDED", details=details)


class ProviderException(ServiceException):
    """External provider error (vendor API, blob storage, etc.)."""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        details = details or {}
        details["provider"] = provider
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, code="PROVIDER_ERROR", details=details)
        self.provider = provider
        self.status_code = status_code


class UnauthorizedException(ProviderException):
    """Vendor rejected the access token (HTTP 401)."""

    def __init__(self, provider: str, message: str = "Unauthorized", details: Optional[dict] = None):
        super().__init__(provider, message, status_code=401, details=details)


class NotAuthenticatedException(ServiceException):
    """No valid token is available and none can be obtained."""

    def __init__(self, message: str = "Not authenticated", details: Optional[dict] = None):
        super().__init__(message, code="NOT_AUTHENTICATED", details=details)


class AuthenticationException(ServiceException):
    """Vendor rejected the credentials; carries a re-authorization hint when known."""

    def __init__(
        self,
        message: str,
        auth_url: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        details = details or {}
        if auth_url:
            details["auth_url"] = auth_url
        super().__init__(message, code="AUTHENTICATION_FAILED", details=details)
        self.auth_url = auth_url


class BaseService(ABC):
    """
    Base class for all services.

    Provides:
    - Structured logging bound to the organization and user context
    - Common validation helpers
    """

    def __init__(
        self,
        organization_id: Optional[ContextId] = None,
        user_id: Optional[ContextId] = None,
    ):
        self._organization_id = organization_id
        self._user_id = user_id
        self._logger = structlog.get_logger(self.__class__.__name__)

    @property
    def organization_id(self) -> Optional[ContextId]:
        """Get the current organization context."""
        return self._organization_id

    @property
    def user_id(self) -> Optional[ContextId]:
        """Get the current user context."""
        return self._user_id

    def _context(self) -> dict:
        return {
            "organization_id": str(self._organization_id) if self._organization_id else None,
            "user_id": str(self._user_id) if self._user_id else None,
        }

    def log_info(self, message: str, **kwargs):
        """Log info with service context."""
        self._logger.info(message, **self._context(), **kwargs)

    def log_debug(self, message: str, **kwargs):
        """Log debug with service context."""
        self._logger.debug(message, **self._context(), **kwargs)

    def log_warning(self, message: str, **kwargs):
        """Log warning with service context."""
        self._logger.warning(message, **self._context(), **kwargs)

    def log_error(self, message: str, error: Optional[Exception] = None, **kwargs):
        """Log error with service context and optional exception."""
        self._logger.error(
            message,
            **self._context(),
            error=str(error) if error else None,
            exc_info=error is not None,
            **kwargs,
        )

    def validate_uuid(self, value: Any, field_name: str = "id") -> uuid.UUID:
        """
        Validate and convert a value to UUID.

        Raises:
            ValidationException: If value is not a valid UUID
        """
        if isinstance(value, uuid.UUID):
            return value

        if isinstance(value, str):
            try:
                return uuid.UUID(value)
            except ValueError:
                raise ValidationException(f"Invalid UUID format for {field_name}", field=field_name)

        raise ValidationException(f"{field_name} must be a UUID string or UUID object", field=field_name)
