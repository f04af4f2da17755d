"""
DocBridge - Services
====================

Service layer: base service and exceptions, blob storage, connectors.
"""

from docbridge.services.base import (
    AuthenticationException,
    BaseService,
    ConfigurationException,
    NotAuthenticatedException,
    NotFoundException,
    PermissionException,
    ProviderException,
    RateLimitException,
    ServiceException,
    UnauthorizedException,
    ValidationException,
)

__all__ = [
    "AuthenticationException",
    "BaseService",
    "ConfigurationException",
    "NotAuthenticatedException",
    "NotFoundException",
    "PermissionException",
    "ProviderException",
    "RateLimitException",
    "ServiceException",
    "UnauthorizedException",
    "ValidationException",
]
