"""
SSO Hub Notifier - Exception Hierarchy.
Structured errors carrying a stable error code and the HTTP status the API maps them to.
"""
from __future__ import annotations

from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class NotifierError(Exception):
    """Base exception for all notifier errors."""
    error_code: str = "NOTIFIER_ERROR"
    http_status: int = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.error_code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return {"error": body}


class ValidationError(NotifierError):
    error_code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(self, message: str, *, field: str | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", {}) or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details, **kwargs)


class NotFoundError(NotifierError):
    error_code = "NOT_FOUND"
    http_status = 404

    def __init__(self, resource: str, resource_id: str) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found: {resource_id}",
                         details={"resource": resource, "id": resource_id})


class ConflictError(NotifierError):
    error_code = "CONFLICT"
    http_status = 409


class TemplateError(NotifierError):
    """Base for rendering failures. Permanent for the affected delivery."""
    error_code = "TEMPLATE_ERROR"
    http_status = 400


class MissingVariable(TemplateError):
    error_code = "MISSING_VARIABLE"

    def __init__(self, template_name: str, missing: list[str]) -> None:
        self.template_name = template_name
        self.missing = sorted(missing)
        super().__init__(
            f"Template '{template_name}' is missing variables: {', '.join(self.missing)}",
            details={"template": template_name, "missing": self.missing},
        )


class UnknownTemplate(TemplateError):
    error_code = "UNKNOWN_TEMPLATE"
    http_status = 404

    def __init__(self, template_ref: str) -> None:
        self.template_ref = template_ref
        super().__init__(f"No enabled template matches '{template_ref}'",
                         details={"template": template_ref})


class UnsupportedChannel(TemplateError):
    error_code = "UNSUPPORTED_CHANNEL"

    def __init__(self, channel: str, reason: str | None = None) -> None:
        self.channel = channel
        super().__init__(reason or f"Channel '{channel}' is not supported",
                         details={"channel": channel})


class TemplateSyntaxInvalid(TemplateError):
    error_code = "TEMPLATE_SYNTAX_INVALID"

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("Template validation failed", details={"errors": errors})


class ChannelDisabledError(NotifierError):
    error_code = "CHANNEL_DISABLED"
    http_status = 409


class QueueUnavailableError(NotifierError):
    """The queue store could not be reached. New work must not be treated as queued."""
    error_code = "QUEUE_UNAVAILABLE"
    http_status = 503


class NotificationBusy(NotifierError):
    """Another worker holds the claim on this notification."""
    error_code = "NOTIFICATION_BUSY"
    http_status = 409


class RepositoryError(NotifierError):
    """Base exception for repository errors."""
    error_code = "REPOSITORY_ERROR"
    http_status = 500


class RepositoryConnectionError(RepositoryError):
    """Raised when connection to storage fails."""
    error_code = "REPOSITORY_UNAVAILABLE"
    http_status = 503


class QueryError(RepositoryError):
    """Raised when a query fails."""
    error_code = "QUERY_ERROR"
