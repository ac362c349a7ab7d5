"""
SSO Hub Notifier - REST API Endpoints.

FastAPI router for notification intake and status, template and channel
administration, and queue observability. Every route requires gateway
identity headers; health probes live on the application itself.

Architecture Layer: Interface/Adapter
Principles: REST, Input Validation, Structured Responses
"""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
import structlog

from .auth import AuthenticatedUser, get_current_user
from .domain.channels import Channel
from .domain.entities import ChannelKind, Notification, NotificationStatus, Priority, Template
from .domain.service import NotifierService, QueueResult
from .exceptions import ValidationError
from .infrastructure.queue import QueueName
from .infrastructure.store import NotificationFilter

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api", dependencies=[Depends(get_current_user)])


def get_service(request: Request) -> NotifierService:
    """Resolve the service wired into this application instance."""
    service = getattr(request.app.state, "notifier", None)
    if service is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service not initialized")
    return service


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class NotificationCreateRequest(BaseModel):
    """Create a notification from direct content or a template reference."""
    external_id: str | None = Field(default=None, max_length=255)
    type: str = Field(default="general", min_length=1, max_length=100)
    priority: Priority = Field(default=Priority.MEDIUM)
    title: str | None = Field(default=None, max_length=500)
    message: str | None = Field(default=None, max_length=10000)
    html_message: str | None = Field(default=None)
    template_name: str | None = Field(default=None, max_length=100)
    variables: dict[str, Any] = Field(default_factory=dict)
    recipients: list[str] = Field(..., min_length=1)
    channels: list[ChannelKind] = Field(default_factory=lambda: [ChannelKind.EMAIL], min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)
    max_retries: int | None = Field(default=None, ge=0, le=10)
    source_service: str | None = Field(default=None, max_length=100)
    source_tool: str | None = Field(default=None, max_length=100)
    user_id: str | None = Field(default=None, max_length=255)
    scheduled_at: datetime | None = Field(default=None)
    expires_at: datetime | None = Field(default=None)
    immediate: bool = Field(default=False)

    model_config = {"json_schema_extra": {
        "example": {
            "type": "tool_health",
            "priority": "high",
            "title": "GitHub integration degraded",
            "message": "Webhook deliveries are failing for the GitHub tool.",
            "recipients": ["ops@sso-hub.com", "#alerts"],
            "channels": ["email", "slack"],
            "source_service": "tool-health",
            "source_tool": "github",
        }
    }}

    @model_validator(mode="after")
    def check_content(self) -> NotificationCreateRequest:
        if not self.template_name and not (self.title and self.message):
            raise ValueError("either template_name or both title and message are required")
        return self

    def to_notification(self, user: AuthenticatedUser, default_max_retries: int) -> Notification:
        data = self.model_dump(exclude={"immediate", "max_retries"})
        try:
            return Notification(
                **data,
                max_retries=self.max_retries if self.max_retries is not None else default_max_retries,
                created_by=user.user_id,
            )
        except PydanticValidationError as e:
            raise ValidationError("Invalid notification",
                                  details={"errors": e.errors(include_url=False, include_context=False)}) from e


class BatchCreateRequest(BaseModel):
    notifications: list[NotificationCreateRequest] = Field(..., min_length=1)


class NotificationCreatedResponse(BaseModel):
    notification_id: UUID
    status: NotificationStatus
    queue: QueueResult


class TemplateCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: str = Field(..., min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    subject_template: str = Field(..., min_length=1)
    body_template: str = Field(..., min_length=1)
    html_template: str | None = None
    variables: list[str] = Field(default_factory=list)
    supported_channels: list[ChannelKind] = Field(default_factory=lambda: list(ChannelKind), min_length=1)
    priority: Priority = Field(default=Priority.MEDIUM)
    enabled: bool = True


class TemplateUpdateRequest(BaseModel):
    type: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    subject_template: str | None = Field(default=None, min_length=1)
    body_template: str | None = Field(default=None, min_length=1)
    html_template: str | None = None
    variables: list[str] | None = None
    supported_channels: list[ChannelKind] | None = None
    priority: Priority | None = None
    enabled: bool | None = None


class TemplateTestRequest(BaseModel):
    variables: dict[str, Any] = Field(default_factory=dict)


class ChannelCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: ChannelKind
    description: str = Field(default="", max_length=500)
    config: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True


def _notification_body(notification: Notification) -> dict[str, Any]:
    return notification.model_dump(mode="json", exclude={"claim_token", "claim_expires_at", "version"})


def _created(notification: Notification, result: QueueResult) -> NotificationCreatedResponse:
    return NotificationCreatedResponse(
        notification_id=notification.notification_id,
        status=notification.status,
        queue=result,
    )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

@router.post("/notifications", status_code=status.HTTP_201_CREATED, response_model=NotificationCreatedResponse,
             tags=["notifications"])
async def create_notification(
    request: NotificationCreateRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    service: NotifierService = Depends(get_service),
) -> NotificationCreatedResponse:
    """Create a notification and queue it for delivery."""
    notification = request.to_notification(user, service.config.retry.attempts)
    notification, result = await service.create_notification(notification, immediate=request.immediate)
    return _created(notification, result)


@router.post("/notifications/send", status_code=status.HTTP_201_CREATED,
             response_model=NotificationCreatedResponse, tags=["notifications"])
async def send_notification(
    request: NotificationCreateRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    service: NotifierService = Depends(get_service),
) -> NotificationCreatedResponse:
    """Queue a notification for immediate processing."""
    notification = request.to_notification(user, service.config.retry.attempts)
    notification, result = await service.send_notification(notification)
    return _created(notification, result)


@router.post("/notifications/batch", status_code=status.HTTP_201_CREATED, tags=["notifications"])
async def create_batch(
    request: BatchCreateRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    service: NotifierService = Depends(get_service),
) -> dict[str, Any]:
    """Queue a bulk submission on the batch queue."""
    notifications = [r.to_notification(user, service.config.retry.attempts) for r in request.notifications]
    stored, result = await service.create_batch(notifications)
    return {
        "notification_ids": [str(n.notification_id) for n in stored],
        "count": len(stored),
        "queue": result.model_dump(mode="json"),
    }


@router.get("/notifications", tags=["notifications"])
async def list_notifications(
    type: str | None = Query(default=None),
    priority: Priority | None = Query(default=None),
    status_filter: NotificationStatus | None = Query(default=None, alias="status"),
    source_service: str | None = Query(default=None),
    source_tool: str | None = Query(default=None),
    user_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    service: NotifierService = Depends(get_service),
) -> dict[str, Any]:
    filters = NotificationFilter(
        type=type,
        priority=priority.value if priority else None,
        status=status_filter.value if status_filter else None,
        source_service=source_service,
        source_tool=source_tool,
        user_id=user_id,
    )
    items, total = await service.list_notifications(filters, limit, offset)
    return {
        "notifications": [_notification_body(n) for n in items],
        "pagination": {"total": total, "limit": limit, "offset": offset},
    }


@router.get("/notifications/delivery/{notification_id}", tags=["notifications"])
async def get_delivery_status(
    notification_id: UUID,
    service: NotifierService = Depends(get_service),
) -> dict[str, Any]:
    notification, deliveries, summary = await service.get_delivery_status(notification_id)
    return {
        "notification_id": str(notification_id),
        "status": notification.status.value,
        "deliveries": [d.model_dump(mode="json") for d in deliveries],
        "summary": summary.model_dump(),
    }


@router.get("/notifications/{notification_id}", tags=["notifications"])
async def get_notification(
    notification_id: UUID,
    service: NotifierService = Depends(get_service),
) -> dict[str, Any]:
    notification, deliveries = await service.get_notification(notification_id)
    return {
        **_notification_body(notification),
        "deliveries": [d.model_dump(mode="json") for d in deliveries],
    }


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

@router.get("/templates", tags=["templates"])
async def list_templates(
    type: str | None = Query(default=None),
    enabled_only: bool = Query(default=False),
    service: NotifierService = Depends(get_service),
) -> dict[str, Any]:
    templates = await service.list_templates(type, enabled_only)
    return {"templates": [t.model_dump(mode="json") for t in templates], "total": len(templates)}


@router.post("/templates", status_code=status.HTTP_201_CREATED, tags=["templates"])
async def create_template(
    request: TemplateCreateRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    service: NotifierService = Depends(get_service),
) -> dict[str, Any]:
    template = await service.create_template(Template(**request.model_dump()), created_by=user.user_id)
    return template.model_dump(mode="json")


@router.put("/templates/{template_id}", tags=["templates"])
async def update_template(
    template_id: UUID,
    request: TemplateUpdateRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    service: NotifierService = Depends(get_service),
) -> dict[str, Any]:
    template = await service.update_template(template_id, request.model_dump(exclude_unset=True),
                                             updated_by=user.user_id)
    return template.model_dump(mode="json")


@router.post("/templates/{template_ref}/test", tags=["templates"])
async def test_template(
    template_ref: str,
    request: TemplateTestRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    service: NotifierService = Depends(get_service),
) -> dict[str, Any]:
    """Dry-run a template by id or name."""
    return await service.test_template(template_ref, request.variables, tested_by=user.user_id)


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------

@router.get("/channels", tags=["channels"])
async def list_channels(service: NotifierService = Depends(get_service)) -> dict[str, Any]:
    channels = await service.list_channels()
    return {"channels": [c.redacted() for c in channels], "total": len(channels)}


@router.post("/channels", status_code=status.HTTP_201_CREATED, tags=["channels"])
async def create_channel(
    request: ChannelCreateRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    service: NotifierService = Depends(get_service),
) -> dict[str, Any]:
    try:
        channel = Channel(
            name=request.name,
            kind=request.type,
            description=request.description,
            config=request.config,
            enabled=request.enabled,
        )
    except PydanticValidationError as e:
        raise ValidationError("Invalid channel configuration", field="config",
                              details={"errors": e.errors(include_url=False, include_context=False)}) from e
    created = await service.create_channel(channel, created_by=user.user_id)
    return created.redacted()


@router.post("/channels/{channel_id}/test", tags=["channels"])
async def test_channel(
    channel_id: UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    service: NotifierService = Depends(get_service),
) -> dict[str, Any]:
    result = await service.test_channel(channel_id, tested_by=user.user_id)
    return result.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Queues
# ---------------------------------------------------------------------------

@router.get("/queue/stats", tags=["queue"])
async def queue_stats(service: NotifierService = Depends(get_service)) -> dict[str, Any]:
    return await service.queue_stats()


def _require_admin(user: AuthenticatedUser) -> None:
    if not user.has_role("admin"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")


@router.post("/queue/pause", tags=["queue"])
async def pause_queue(
    user: AuthenticatedUser = Depends(get_current_user),
    service: NotifierService = Depends(get_service),
) -> dict[str, Any]:
    _require_admin(user)
    service.pause_processing()
    return service.pool.status()


@router.post("/queue/resume", tags=["queue"])
async def resume_queue(
    user: AuthenticatedUser = Depends(get_current_user),
    service: NotifierService = Depends(get_service),
) -> dict[str, Any]:
    _require_admin(user)
    service.resume_processing()
    return service.pool.status()


@router.delete("/queue/{queue_name}", tags=["queue"])
async def clear_queue(
    queue_name: QueueName,
    user: AuthenticatedUser = Depends(get_current_user),
    service: NotifierService = Depends(get_service),
) -> dict[str, Any]:
    _require_admin(user)
    removed = await service.clear_queue(queue_name)
    logger.warning("queue_cleared_by_admin", queue=queue_name.value, user=user.user_id, removed=removed)
    return {"queue": queue_name.value, "removed": removed}
