from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

WEBHOOK_SOURCE = "n8n-webhook-watcher"


class ChangeAction(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """Row change published by notify_workflow_change() on the workflow_changed channel.

    Values describe the post-image for INSERT/UPDATE and the pre-image for DELETE.
    ``timestamp`` is the trigger-fire time, ``updated_at`` the row's own column.
    """

    model_config = ConfigDict(frozen=True)

    action: ChangeAction
    workflow_id: str | int
    workflow_name: str | None = None
    active: bool | None = None
    updated_at: str | None = None
    timestamp: str


def parse_change_event(payload: str | bytes) -> ChangeEvent:
    """Raises pydantic.ValidationError for non-JSON or mis-shaped payloads."""
    return ChangeEvent.model_validate_json(payload)


class WorkflowDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str | int
    name: str | None
    active: bool | None
    updated_at: str | None


class WebhookPayload(BaseModel):
    """Body POSTed to the webhook for a single ChangeEvent."""

    model_config = ConfigDict(frozen=True)

    action: Literal["insert", "update", "delete"]
    workflow: WorkflowDescriptor
    timestamp: str
    source: Literal["n8n-webhook-watcher"] = WEBHOOK_SOURCE

    @classmethod
    def from_change_event(cls, event: ChangeEvent) -> WebhookPayload:
        return cls(
            action=event.action.value.lower(),
            workflow=WorkflowDescriptor(
                id=event.workflow_id,
                name=event.workflow_name,
                active=event.active,
                updated_at=event.updated_at,
            ),
            timestamp=event.timestamp,
        )

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    LISTENING = "listening"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class Notification(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["notification"] = "notification"
    payload: str


class ConnectionLost(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    kind: Literal["connection_lost"] = "connection_lost"
    error: BaseException


class ConnectionEnded(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["connection_ended"] = "connection_ended"


ListenerEvent = Notification | ConnectionLost | ConnectionEnded
