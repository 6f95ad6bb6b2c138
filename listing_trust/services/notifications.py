from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

import httpx
from opentelemetry import trace

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

NotificationKind = Literal[
    "listing_submitted",
    "ml_validation",
    "property_status",
    "duplicate_resolution",
    "listing_unlisted",
]
OutboxStatus = Literal["pending", "delivered", "failed"]


@dataclass(slots=True, frozen=True)
class NotificationContent:
    kind: NotificationKind
    title: str
    body: str
    payload: dict[str, Any]


@dataclass(slots=True)
class NotificationEvent:
    id: str
    owner_id: str
    listing_id: str
    kind: str
    title: str
    body: str
    payload: dict[str, Any]
    audit_entry_id: int | None
    created_at: datetime
    status: OutboxStatus = "pending"
    attempts: int = 0
    last_error: str | None = None
    is_read: bool = False
    delivered_at: datetime | None = None
    read_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "listing_id": self.listing_id,
            "kind": self.kind,
            "title": self.title,
            "body": self.body,
            "payload": dict(self.payload),
            "audit_entry_id": self.audit_entry_id,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "is_read": self.is_read,
            "created_at": self.created_at,
            "delivered_at": self.delivered_at,
            "read_at": self.read_at,
        }


@dataclass(slots=True)
class DispatchSummary:
    delivered: int = 0
    retried: int = 0
    failed: int = 0
    event_ids: list[str] = field(default_factory=list)


class NotificationDeliveryError(Exception):
    """Raised by a sender when the downstream channel rejects an event."""


def build_notification(
    *,
    action: str,
    previous_status: str | None,
    new_status: str,
    notes: str | None,
    listing_id: str,
    listing_title: str,
    details: dict[str, Any],
) -> NotificationContent:
    payload = {"listing_id": listing_id, **details}
    label = f'"{listing_title}"'

    if action == "listing_submitted":
        if new_status == "draft":
            return NotificationContent(
                kind="listing_submitted",
                title="Listing Saved as Draft",
                body=f"Your property {label} has been saved as a draft. Submit it when you are ready for verification.",
                payload=payload,
            )
        return NotificationContent(
            kind="listing_submitted",
            title="Listing Submitted",
            body=f"Your property {label} has been submitted and is awaiting document validation.",
            payload=payload,
        )

    if action == "listing_draft_submitted":
        return NotificationContent(
            kind="listing_submitted",
            title="Listing Submitted",
            body=f"Your property {label} has been submitted and is awaiting document validation.",
            payload=payload,
        )

    if action == "ml_validation_update":
        ml_status = details.get("ml_status")
        if ml_status == "passed":
            title = "ML Validation Passed"
            body = f"Your property {label} has passed ML validation and is now pending physical vetting."
        elif ml_status == "failed":
            title = "ML Validation Failed"
            body = f"Your property {label} failed ML validation. Please review and resubmit."
        else:
            title = "ML Validation Review Required"
            body = f"Your property {label} requires manual review. Our team will contact you soon."
        return NotificationContent(kind="ml_validation", title=title, body=_with_notes(body, notes), payload=payload)

    if action == "property_vetting":
        vetting_action = details.get("vetting_action")
        if vetting_action == "approve":
            title = "Property Verified"
            body = f"Your property {label} has been verified and is now live."
        elif vetting_action == "reject":
            title = "Property Rejected"
            body = f"Your property {label} has been rejected. Reason: {details.get('rejection_reason')}"
        elif vetting_action == "schedule":
            title = "Vetting Visit Scheduled"
            body = f"A vetting visit for your property {label} is scheduled for {details.get('scheduled_date')}."
        else:
            title = "Property Flagged for Review"
            body = f"Your property {label} has been flagged for additional review."
        return NotificationContent(kind="property_status", title=title, body=_with_notes(body, notes), payload=payload)

    if action == "duplicate_resolution":
        resolution = details.get("resolution_action")
        if resolution == "keep_master":
            title = "Property Marked as Duplicate"
            body = (
                f"Your property {label} has been identified as a duplicate and rejected. "
                "The original listing will remain active."
            )
        elif resolution == "reject_duplicate":
            title = "Property Rejected - Duplicate"
            body = f"Your property {label} has been rejected as a duplicate. Reason: {details.get('rejection_reason')}"
        else:
            title = "Duplicate Review Cleared"
            body = f"Your property {label} was reviewed and is not considered a duplicate."
        return NotificationContent(kind="duplicate_resolution", title=title, body=body, payload=payload)

    if action == "listing_unlisted":
        return NotificationContent(
            kind="listing_unlisted",
            title="Property Unlisted",
            body=f"Your property {label} has been unlisted. Reason: {details.get('unlisted_reason')}",
            payload=payload,
        )

    return NotificationContent(
        kind="property_status",
        title="Listing Updated",
        body=f"Your property {label} moved from {previous_status} to {new_status}.",
        payload=payload,
    )


def _with_notes(body: str, notes: str | None) -> str:
    if not notes:
        return body
    return f"{body} Notes: {notes}"


class LoggingNotificationSender:
    async def send(self, event: NotificationEvent) -> None:
        logger.info(
            "notification delivered channel=log id=%s owner_id=%s kind=%s title=%s",
            event.id,
            event.owner_id,
            event.kind,
            event.title,
        )


class WebhookNotificationSender:
    def __init__(self, url: str, *, token: str | None = None, timeout_seconds: float = 10.0) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.headers = {"Authorization": f"Bearer {token}"} if token else {}

    async def send(self, event: NotificationEvent) -> None:
        body = {
            "id": event.id,
            "recipient_id": event.owner_id,
            "listing_id": event.listing_id,
            "kind": event.kind,
            "title": event.title,
            "message": event.body,
            "data": event.payload,
            "created_at": event.created_at.isoformat(),
        }
        headers = {**self.headers, "Idempotency-Key": event.id}
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.post(self.url, json=body, headers=headers)
        if response.status_code >= 400:
            raise NotificationDeliveryError(f"webhook returned status={response.status_code}")


class NotificationDispatcher:
    """Drains the notification outbox.

    Delivery is at-least-once: an event is marked delivered only after the
    sender returns, so a crash between send and mark re-sends it. Failures are
    logged and never propagate to the transition that produced the event.
    """

    def __init__(self, repository: Any, sender: Any, *, max_attempts: int = 5) -> None:
        self.repository = repository
        self.sender = sender
        self.max_attempts = max(1, max_attempts)

    async def dispatch_pending(self, *, limit: int = 50) -> DispatchSummary:
        summary = DispatchSummary()
        events = await self.repository.claim_pending_notifications(limit=limit)
        for event in events:
            with tracer.start_as_current_span("notifications.deliver") as span:
                span.set_attribute("notification.id", event.id)
                span.set_attribute("notification.kind", event.kind)
                summary.event_ids.append(event.id)
                try:
                    await self.sender.send(event)
                except (httpx.HTTPError, NotificationDeliveryError) as exc:
                    give_up = event.attempts + 1 >= self.max_attempts
                    await self.repository.mark_notification_failed(
                        notification_id=event.id,
                        error=str(exc) or type(exc).__name__,
                        give_up=give_up,
                    )
                    if give_up:
                        summary.failed += 1
                        logger.error(
                            "notification delivery abandoned id=%s attempts=%s error=%s",
                            event.id,
                            event.attempts + 1,
                            exc,
                        )
                    else:
                        summary.retried += 1
                        logger.warning(
                            "notification delivery failed id=%s attempts=%s error=%s",
                            event.id,
                            event.attempts + 1,
                            exc,
                        )
                    continue

                await self.repository.mark_notification_delivered(notification_id=event.id)
                summary.delivered += 1
        return summary


def build_sender(*, webhook_url: str | None, token: str | None, timeout_seconds: float) -> Any:
    if not webhook_url:
        logger.info("notification webhook not configured; events are delivered to the log")
        return LoggingNotificationSender()
    return WebhookNotificationSender(webhook_url, token=token, timeout_seconds=timeout_seconds)
