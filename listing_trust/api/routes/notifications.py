from fastapi import APIRouter, Depends, Query

from listing_trust.api.deps import get_coordinator
from listing_trust.api.errors import http_error
from listing_trust.core.security import get_human_principal
from listing_trust.schemas.notifications import (
    MarkNotificationsReadOut,
    MarkNotificationsReadRequest,
    NotificationListOut,
    NotificationOut,
)
from listing_trust.services.errors import PipelineError

router = APIRouter()


@router.get("", response_model=NotificationListOut)
async def list_notifications(
    principal=Depends(get_human_principal),
    coordinator=Depends(get_coordinator),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    unread_only: bool = Query(default=False),
) -> NotificationListOut:
    try:
        events = await coordinator.list_notifications(
            principal,
            unread_only=unread_only,
            limit=limit,
            offset=offset,
        )
        unread_count = await coordinator.count_unread_notifications(principal)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return NotificationListOut(
        notifications=[NotificationOut(**event.to_dict()) for event in events],
        unread_count=unread_count,
    )


@router.post("/mark-read", response_model=MarkNotificationsReadOut)
async def mark_notifications_read(
    payload: MarkNotificationsReadRequest,
    principal=Depends(get_human_principal),
    coordinator=Depends(get_coordinator),
) -> MarkNotificationsReadOut:
    try:
        updated = await coordinator.mark_notifications_read(principal, notification_ids=payload.notification_ids)
        unread_count = await coordinator.count_unread_notifications(principal)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return MarkNotificationsReadOut(updated=updated, unread_count=unread_count)
