from __future__ import annotations

import asyncio
import hashlib
import itertools
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from listing_trust.core.auth import parse_scopes
from listing_trust.services.audit import AUDIT_TARGET_LISTING, AuditEntry, order_trail
from listing_trust.services.duplicates import normalize_address
from listing_trust.services.errors import NotFoundError, PreconditionFailedError
from listing_trust.services.geo import haversine_km
from listing_trust.services.listings import (
    PRE_PUBLICATION_STATUSES,
    ListingDraft,
    ListingRecord,
    ListingSort,
    ListingStatus,
)
from listing_trust.services.notifications import NotificationContent, NotificationEvent
from listing_trust.services.records import ListingPage, MachineCredentialRecord, SubmissionResult, TransitionResult
from listing_trust.services.state_machine import TransitionPlan, apply_plan

NOTIFICATION_LEASE_SECONDS = 60


class InMemoryRepository:
    """Single-process store with the same contract as ``PostgresRepository``.

    All writes run under one ``asyncio.Lock``, which makes each transition
    serializable: the snapshot check, the compare-and-swap, the audit entry and
    the outbox row are applied together or not at all.
    """

    def __init__(self, credentials: list[MachineCredentialRecord] | None = None) -> None:
        self.listings: dict[str, ListingRecord] = {}
        self.audit_entries: list[AuditEntry] = []
        self.notifications: dict[str, NotificationEvent] = {}
        self.credentials = list(credentials or [])
        self._available_at: dict[str, datetime] = {}
        self._leases: dict[str, datetime] = {}
        self._counters: dict[str, tuple[int, datetime]] = {}
        self._audit_ids = itertools.count(1)
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Any) -> InMemoryRepository:
        credentials: list[MachineCredentialRecord] = []
        if settings.ml_analyzer_api_key:
            credentials.append(
                MachineCredentialRecord(
                    module_db_id=str(uuid4()),
                    module_id=settings.ml_analyzer_module_id,
                    scopes=sorted(parse_scopes(settings.ml_analyzer_scopes)),
                    key_hash=hashlib.sha256(settings.ml_analyzer_api_key.encode("utf-8")).hexdigest(),
                )
            )
        return cls(credentials=credentials)

    async def close(self) -> None:
        return None

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        return [record for record in self.credentials if record.module_id == module_id]

    async def get_listing(self, listing_id: str) -> ListingRecord:
        listing = self.listings.get(listing_id)
        if listing is None:
            raise NotFoundError("listing not found")
        return _copy(listing)

    async def list_listings(
        self,
        *,
        status: ListingStatus | None,
        is_duplicate: bool | None,
        state: str | None,
        sort: ListingSort,
        limit: int,
        offset: int,
    ) -> ListingPage:
        rows = [
            _copy(listing)
            for listing in self.listings.values()
            if (status is None or listing.status == status)
            and (is_duplicate is None or listing.is_duplicate == is_duplicate)
            and (state is None or (listing.state or "").casefold() == state.casefold())
        ]
        return ListingPage(listings=_sorted_listings(rows, sort)[offset : offset + limit], total=len(rows))

    async def list_duplicate_pool(
        self,
        *,
        owner_id: str,
        address: str | None,
        latitude: float | None,
        longitude: float | None,
        radius_km: float,
        exclude_listing_id: str | None,
    ) -> list[ListingRecord]:
        normalized = normalize_address(address)
        pool: list[ListingRecord] = []
        for listing in self.listings.values():
            if listing.id == exclude_listing_id:
                continue
            same_address = bool(normalized) and normalize_address(listing.address) == normalized
            nearby = (
                latitude is not None
                and longitude is not None
                and listing.has_coordinates
                and haversine_km(latitude, longitude, listing.latitude, listing.longitude) <= radius_km  # type: ignore[arg-type]
            )
            same_owner = listing.owner_id == owner_id and listing.status in PRE_PUBLICATION_STATUSES
            if same_owner or ((same_address or nearby) and listing.status != ListingStatus.REJECTED):
                pool.append(_copy(listing))
        return sorted(pool, key=lambda row: row.id)

    async def create_listing(
        self,
        *,
        owner_id: str,
        draft: ListingDraft,
        status: ListingStatus,
        is_duplicate: bool,
        actor_id: str,
        actor_type: str,
        action: str,
        details: dict[str, Any],
        build_content: Callable[[ListingRecord], NotificationContent | None],
    ) -> SubmissionResult:
        async with self._lock:
            now = _now()
            listing = ListingRecord(
                id=str(uuid4()),
                owner_id=owner_id,
                title=draft.title,
                address=draft.address,
                status=status,
                created_at=now,
                updated_at=now,
                description=draft.description,
                price=draft.price,
                property_type=draft.property_type,
                listing_type=draft.listing_type,
                city=draft.city,
                state=draft.state,
                latitude=draft.latitude,
                longitude=draft.longitude,
                is_duplicate=is_duplicate,
            )
            entry = self._new_audit_entry(
                actor_id=actor_id,
                actor_type=actor_type,
                action=action,
                target_id=listing.id,
                details={**details, "new_status": status.value},
                now=now,
            )
            content = build_content(listing)
            event = self._new_notification(listing, entry, content, now=now) if content else None

            self.listings[listing.id] = listing
            self.audit_entries.append(entry)
            if event is not None:
                self._enqueue(event, now=now)
            return SubmissionResult(
                listing=_copy(listing),
                audit_entry=entry,
                notification_id=event.id if event else None,
            )

    async def apply_transition(
        self,
        *,
        listing_id: str,
        expected_status: ListingStatus,
        expected_is_duplicate: bool,
        planner: Callable[[ListingRecord, datetime], TransitionPlan],
        actor_id: str,
        actor_type: str,
    ) -> TransitionResult:
        async with self._lock:
            stored = self.listings.get(listing_id)
            if stored is None:
                raise NotFoundError("listing not found")
            if stored.status != expected_status or stored.is_duplicate != expected_is_duplicate:
                raise PreconditionFailedError("listing changed since it was read")

            now = _now()
            plan = planner(_copy(stored), now)
            updated = apply_plan(_copy(stored), plan, now=now)
            entry = self._new_audit_entry(
                actor_id=actor_id,
                actor_type=actor_type,
                action=plan.action,
                target_id=listing_id,
                details=plan.details,
                now=now,
            )
            event = self._new_notification(updated, entry, plan.notification, now=now) if plan.notification else None

            self.listings[listing_id] = updated
            self.audit_entries.append(entry)
            if event is not None:
                self._enqueue(event, now=now)
            return TransitionResult(
                listing=_copy(updated),
                audit_entry=entry,
                notification_id=event.id if event else None,
                plan=plan,
            )

    async def list_audit_entries(self, *, target_id: str, limit: int, offset: int) -> list[AuditEntry]:
        trail = order_trail(
            [
                entry
                for entry in self.audit_entries
                if entry.target_type == AUDIT_TARGET_LISTING and entry.target_id == target_id
            ]
        )
        return trail[offset : offset + limit]

    async def list_notifications(
        self,
        *,
        owner_id: str,
        unread_only: bool,
        limit: int,
        offset: int,
    ) -> list[NotificationEvent]:
        rows = [
            replace(event)
            for event in self.notifications.values()
            if event.owner_id == owner_id and not (unread_only and event.is_read)
        ]
        rows.sort(key=lambda event: event.created_at, reverse=True)
        return rows[offset : offset + limit]

    async def mark_notifications_read(self, *, owner_id: str, notification_ids: list[str] | None) -> int:
        async with self._lock:
            now = _now()
            wanted = None if notification_ids is None else set(notification_ids)
            updated = 0
            for event in self.notifications.values():
                if event.owner_id != owner_id or event.is_read:
                    continue
                if wanted is not None and event.id not in wanted:
                    continue
                event.is_read = True
                event.read_at = now
                updated += 1
            return updated

    async def count_unread_notifications(self, *, owner_id: str) -> int:
        return sum(1 for event in self.notifications.values() if event.owner_id == owner_id and not event.is_read)

    async def claim_pending_notifications(self, *, limit: int) -> list[NotificationEvent]:
        async with self._lock:
            now = _now()
            due = [
                event
                for event in self.notifications.values()
                if event.status == "pending"
                and self._available_at.get(event.id, now) <= now
                and self._leases.get(event.id, now) <= now
            ]
            due.sort(key=lambda event: event.created_at)
            claimed = due[: max(1, limit)]
            for event in claimed:
                self._leases[event.id] = now + timedelta(seconds=NOTIFICATION_LEASE_SECONDS)
            return [replace(event) for event in claimed]

    async def mark_notification_delivered(self, *, notification_id: str) -> None:
        async with self._lock:
            event = self.notifications.get(notification_id)
            if event is None:
                raise NotFoundError("notification not found")
            event.status = "delivered"
            event.attempts += 1
            event.delivered_at = _now()
            event.last_error = None
            self._leases.pop(notification_id, None)
            self._available_at.pop(notification_id, None)

    async def mark_notification_failed(self, *, notification_id: str, error: str, give_up: bool) -> None:
        async with self._lock:
            event = self.notifications.get(notification_id)
            if event is None:
                raise NotFoundError("notification not found")
            delay = min(300, 5 * 2**event.attempts)
            event.status = "failed" if give_up else "pending"
            event.attempts += 1
            event.last_error = error[:1000]
            self._leases.pop(notification_id, None)
            if give_up:
                self._available_at.pop(notification_id, None)
            else:
                self._available_at[notification_id] = _now() + timedelta(seconds=delay)

    async def hit_rate_limit(self, *, key: str, limit: int, window_seconds: int) -> bool:
        async with self._lock:
            now = _now()
            count, expires_at = self._counters.get(key, (0, now))
            if expires_at <= now:
                count, expires_at = 0, now + timedelta(seconds=window_seconds)
            count += 1
            self._counters[key] = (count, expires_at)
            return count <= limit

    def _new_audit_entry(
        self,
        *,
        actor_id: str,
        actor_type: Any,
        action: str,
        target_id: str,
        details: dict[str, Any],
        now: datetime,
    ) -> AuditEntry:
        return AuditEntry(
            id=next(self._audit_ids),
            actor_id=actor_id,
            actor_type=actor_type,
            action=action,
            target_type=AUDIT_TARGET_LISTING,
            target_id=target_id,
            created_at=now,
            details=dict(details),
        )

    @staticmethod
    def _new_notification(
        listing: ListingRecord,
        entry: AuditEntry,
        content: NotificationContent | None,
        *,
        now: datetime,
    ) -> NotificationEvent:
        assert content is not None
        return NotificationEvent(
            id=str(uuid4()),
            owner_id=listing.owner_id,
            listing_id=listing.id,
            kind=content.kind,
            title=content.title,
            body=content.body,
            payload=dict(content.payload),
            audit_entry_id=entry.id,
            created_at=now,
        )

    def _enqueue(self, event: NotificationEvent, *, now: datetime) -> None:
        self.notifications[event.id] = event
        self._available_at[event.id] = now


def _copy(listing: ListingRecord) -> ListingRecord:
    return replace(listing, ml_flagged_issues=list(listing.ml_flagged_issues))


def _sorted_listings(rows: list[ListingRecord], sort: ListingSort) -> list[ListingRecord]:
    rows = sorted(rows, key=lambda row: row.id)
    if sort == "oldest":
        return sorted(rows, key=lambda row: row.created_at)
    if sort == "urgent":
        return sorted(
            rows,
            key=lambda row: (row.ml_validated_at is None, row.ml_validated_at or row.created_at, row.created_at),
        )
    if sort == "location":
        rows.sort(key=lambda row: row.created_at, reverse=True)
        return sorted(rows, key=lambda row: (row.state is None, row.state or "", row.city is None, row.city or ""))
    return sorted(rows, key=lambda row: row.created_at, reverse=True)


def _now() -> datetime:
    return datetime.now(timezone.utc)
