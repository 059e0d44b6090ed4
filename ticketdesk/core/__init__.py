"""
Core Module
============

Shared core utilities and abstractions used across the application.

This module contains framework-agnostic code that defines the fundamental
building blocks of the system.
"""

from ticketdesk.core.exceptions import (
    ApplicationException,
    RepositoryException,
    ConfigurationException,
    ValidationException,
    InvalidTransitionException,
    PermissionDeniedException,
    ResourceNotFoundException,
    ConflictException,
    ExternalServiceException,
    DependencyUnavailableException,
)

__all__ = [
    "ApplicationException",
    "RepositoryException",
    "ConfigurationException",
    "ValidationException",
    "InvalidTransitionException",
    "PermissionDeniedException",
    "ResourceNotFoundException",
    "ConflictException",
    "ExternalServiceException",
    "DependencyUnavailableException",
]
