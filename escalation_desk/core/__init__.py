"""
Core Module
============

Shared core utilities and abstractions used across the application.

This module contains framework-agnostic code that defines the fundamental
building blocks of the system.
"""

from escalation_desk.core.exceptions import (
    ApplicationException,
    RepositoryException,
    ValidationException,
    AuthenticationException,
    ForbiddenException,
    ResourceNotFoundException,
    InvalidStateException,
    AlreadyClosedException,
    InvalidTargetException,
    ConfigurationException,
    ExternalServiceException,
    DeliveryException,
)

__all__ = [
    "ApplicationException",
    "RepositoryException",
    "ValidationException",
    "AuthenticationException",
    "ForbiddenException",
    "ResourceNotFoundException",
    "InvalidStateException",
    "AlreadyClosedException",
    "InvalidTargetException",
    "ConfigurationException",
    "ExternalServiceException",
    "DeliveryException",
]
