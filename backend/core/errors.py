"""
Error taxonomy for the store health engine.

Engine services raise these; the API layer maps ``status_code`` onto the
HTTP response and batch operations report ``message`` per item.
"""

from typing import Any


class StoreHealthError(Exception):
    """Base class for all engine errors."""

    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotFoundError(StoreHealthError):
    """A store, KPI definition, alert, task, escalation or call is missing."""

    status_code = 404

    def __init__(self, resource: str, resource_id: Any = None, details: dict[str, Any] | None = None):
        self.resource = resource
        self.resource_id = resource_id
        message = resource
        if resource_id is not None:
            message += f" '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationError(StoreHealthError):
    """Reference data is incomplete, e.g. no threshold resolves for a KPI."""

    status_code = 422


class ConflictError(StoreHealthError):
    """An entity is not in the state the requested transition expects."""

    status_code = 409


class ExternalProviderError(StoreHealthError):
    """A voice or notification provider call failed."""

    status_code = 502

    def __init__(self, provider: str, message: str, details: dict[str, Any] | None = None):
        self.provider = provider
        super().__init__(f"{provider}: {message}", details)


class ValidationError(StoreHealthError):
    """Required fields are missing or malformed."""

    status_code = 400
