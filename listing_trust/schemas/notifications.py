from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class NotificationOut(BaseModel):
    id: str
    listing_id: str
    kind: str
    title: str
    body: str
    payload: dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    read_at: datetime | None = None
    created_at: datetime


class NotificationListOut(BaseModel):
    notifications: list[NotificationOut] = Field(default_factory=list)
    unread_count: int


class MarkNotificationsReadRequest(BaseModel):
    # Omitted means every unread notification of the caller.
    notification_ids: list[str] | None = None


class MarkNotificationsReadOut(BaseModel):
    updated: int
    unread_count: int
