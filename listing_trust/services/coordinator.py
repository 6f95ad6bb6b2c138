"""Entry point for every listing pipeline operation.

The coordinator checks the caller's capability before reading any state, runs
the duplicate matcher where needed, and hands state changes to the repository
as a planner so the guard is re-evaluated against the locked row. It never
retries; callers see the first error.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any, TypeVar

from opentelemetry import trace

from listing_trust.core.auth import READ_ALL_LISTINGS_SCOPE, Principal
from listing_trust.services.audit import AuditEntry
from listing_trust.services.duplicates import (
    DEFAULT_RADIUS_KM,
    DuplicateCandidate,
    DuplicateSubject,
    find_duplicate_candidates,
    validate_radius,
)
from listing_trust.services.errors import (
    InvalidInputError,
    NotFoundError,
    OperationTimeoutError,
)
from listing_trust.services.listings import LISTING_SORTS, ListingDraft, ListingRecord, ListingSort, ListingStatus
from listing_trust.services.notifications import NotificationEvent, build_notification
from listing_trust.services.rate_limit import SharedRateLimiter
from listing_trust.services.records import ListingPage
from listing_trust.services.state_machine import (
    AUDIT_ACTION_SUBMITTED,
    DuplicateResolution,
    ListingEvent,
    MLVerdict,
    SubmitDraft,
    Unlist,
    VettingDecision,
    initial_status,
    plan_transition,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")

MAX_PAGE_SIZE = 200


class PipelineCoordinator:
    def __init__(
        self,
        repository: Any,
        *,
        timeout_seconds: float = 10.0,
        default_radius_km: float = DEFAULT_RADIUS_KM,
        rate_limiter: SharedRateLimiter | None = None,
    ) -> None:
        self.repository = repository
        self.timeout_seconds = timeout_seconds
        self.default_radius_km = default_radius_km
        self.rate_limiter = rate_limiter

    async def submit_listing(
        self,
        principal: Principal,
        draft: ListingDraft,
        *,
        save_as_draft: bool = False,
        timeout_seconds: float | None = None,
    ) -> tuple[ListingRecord, str]:
        principal.require_scope("listings:write")
        _validate_draft(draft)
        owner_id = principal.subject

        with tracer.start_as_current_span("pipeline.submit_listing") as span:
            if self.rate_limiter is not None:
                await self._bounded(
                    self.rate_limiter.check("listing_submit", owner_id),
                    operation="rate_limit",
                    timeout_seconds=timeout_seconds,
                )

            candidates = await self._match(
                DuplicateSubject(
                    listing_id=None,
                    owner_id=owner_id,
                    address=draft.address,
                    latitude=draft.latitude,
                    longitude=draft.longitude,
                ),
                radius_km=self.default_radius_km,
                timeout_seconds=timeout_seconds,
            )
            status = initial_status(save_as_draft=save_as_draft)
            details = {
                "previous_status": None,
                "notes": None,
                "save_as_draft": save_as_draft,
                "duplicate_candidates": [candidate.listing_id for candidate in candidates],
            }

            def build_content(listing: ListingRecord):
                return build_notification(
                    action=AUDIT_ACTION_SUBMITTED,
                    previous_status=None,
                    new_status=status.value,
                    notes=None,
                    listing_id=listing.id,
                    listing_title=listing.title,
                    details={**details, "new_status": status.value},
                )

            result = await self._bounded(
                self.repository.create_listing(
                    owner_id=owner_id,
                    draft=draft,
                    status=status,
                    is_duplicate=bool(candidates),
                    actor_id=principal.actor,
                    actor_type=principal.principal_type.value,
                    action=AUDIT_ACTION_SUBMITTED,
                    details=details,
                    build_content=build_content,
                ),
                operation="submit_listing",
                timeout_seconds=timeout_seconds,
            )
            listing = result.listing
            span.set_attribute("listing.id", listing.id)
            span.set_attribute("listing.is_duplicate", listing.is_duplicate)

        logger.info(
            "listing submitted listing_id=%s owner_id=%s status=%s duplicate_candidates=%s",
            listing.id,
            owner_id,
            listing.status.value,
            len(candidates),
        )
        message = "Listing saved as draft" if save_as_draft else "Listing submitted for verification"
        if candidates:
            message = f"{message}; {len(candidates)} possible duplicate(s) flagged for review"
        return listing, message

    async def submit_draft(
        self,
        principal: Principal,
        listing_id: str,
        *,
        notes: str | None = None,
        timeout_seconds: float | None = None,
    ) -> tuple[ListingRecord, str]:
        principal.require_scope("listings:write")
        return await self._transition(
            principal,
            listing_id,
            SubmitDraft(notes=notes),
            owner_only=True,
            timeout_seconds=timeout_seconds,
        )

    async def record_ml_verdict(
        self,
        principal: Principal,
        listing_id: str,
        verdict: MLVerdict,
        *,
        timeout_seconds: float | None = None,
    ) -> tuple[ListingRecord, str]:
        principal.require_scope("ml:write")
        return await self._transition(principal, listing_id, verdict, timeout_seconds=timeout_seconds)

    async def record_vetting_decision(
        self,
        principal: Principal,
        listing_id: str,
        decision: VettingDecision,
        *,
        timeout_seconds: float | None = None,
    ) -> tuple[ListingRecord, str]:
        principal.require_scope("vetting:write")
        return await self._transition(principal, listing_id, decision, timeout_seconds=timeout_seconds)

    async def resolve_duplicate(
        self,
        principal: Principal,
        listing_id: str,
        resolution: DuplicateResolution,
        *,
        timeout_seconds: float | None = None,
    ) -> tuple[ListingRecord, str]:
        principal.require_scope("duplicates:write")
        if resolution.action == "keep_master":
            if not resolution.master_listing_id:
                raise InvalidInputError("master_listing_id is required for keep_master")
            if resolution.master_listing_id == listing_id:
                raise InvalidInputError("master_listing_id must reference a different listing")
            try:
                await self._bounded(
                    self.repository.get_listing(resolution.master_listing_id),
                    operation="get_listing",
                    timeout_seconds=timeout_seconds,
                )
            except NotFoundError as exc:
                raise NotFoundError("master listing not found") from exc
        return await self._transition(principal, listing_id, resolution, timeout_seconds=timeout_seconds)

    async def unlist_listing(
        self,
        principal: Principal,
        listing_id: str,
        *,
        reason: str,
        notes: str | None = None,
        timeout_seconds: float | None = None,
    ) -> tuple[ListingRecord, str]:
        principal.require_scope("admin:write")
        return await self._transition(
            principal,
            listing_id,
            Unlist(reason=reason, notes=notes),
            timeout_seconds=timeout_seconds,
        )

    async def check_duplicates(
        self,
        principal: Principal,
        listing_id: str,
        *,
        address: str | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        radius_km: float | None = None,
        timeout_seconds: float | None = None,
    ) -> list[DuplicateCandidate]:
        principal.require_scope("listings:read")
        radius = validate_radius(radius_km if radius_km is not None else self.default_radius_km)
        if (latitude is None) != (longitude is None):
            raise InvalidInputError("latitude and longitude must be supplied together")

        listing = await self._bounded(
            self.repository.get_listing(listing_id),
            operation="get_listing",
            timeout_seconds=timeout_seconds,
        )
        if not principal.owns(listing.owner_id):
            raise NotFoundError("listing not found")

        subject = DuplicateSubject.from_listing(listing, address=address, latitude=latitude, longitude=longitude)
        if not subject.address and not subject.has_coordinates:
            raise InvalidInputError("an address or a coordinate pair is required")

        with tracer.start_as_current_span("pipeline.check_duplicates") as span:
            span.set_attribute("listing.id", listing_id)
            candidates = await self._match(subject, radius_km=radius, timeout_seconds=timeout_seconds)
            span.set_attribute("duplicates.count", len(candidates))
        return candidates

    async def get_listing(
        self,
        principal: Principal,
        listing_id: str,
        *,
        timeout_seconds: float | None = None,
    ) -> ListingRecord:
        principal.require_scope("listings:read")
        listing = await self._bounded(
            self.repository.get_listing(listing_id),
            operation="get_listing",
            timeout_seconds=timeout_seconds,
        )
        if not principal.can_view(listing.owner_id):
            raise NotFoundError("listing not found")
        return listing

    async def list_listings(
        self,
        principal: Principal,
        *,
        status: ListingStatus | None = None,
        is_duplicate: bool | None = None,
        state: str | None = None,
        sort: ListingSort = "newest",
        limit: int = 20,
        offset: int = 0,
        timeout_seconds: float | None = None,
    ) -> ListingPage:
        """Work queue for reviewers, e.g. ``status=pending_vetting`` or ``is_duplicate=True``."""
        principal.require_scope(READ_ALL_LISTINGS_SCOPE)
        if sort not in LISTING_SORTS:
            raise InvalidInputError(f"sort must be one of {', '.join(LISTING_SORTS)}")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise InvalidInputError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise InvalidInputError("offset must not be negative")
        return await self._bounded(
            self.repository.list_listings(
                status=status,
                is_duplicate=is_duplicate,
                state=state.strip() if state and state.strip() else None,
                sort=sort,
                limit=limit,
                offset=offset,
            ),
            operation="list_listings",
            timeout_seconds=timeout_seconds,
        )

    async def list_audit_trail(
        self,
        principal: Principal,
        listing_id: str,
        *,
        limit: int = 100,
        offset: int = 0,
        timeout_seconds: float | None = None,
    ) -> list[AuditEntry]:
        principal.require_scope("audit:read")
        await self._bounded(
            self.repository.get_listing(listing_id),
            operation="get_listing",
            timeout_seconds=timeout_seconds,
        )
        return await self._bounded(
            self.repository.list_audit_entries(target_id=listing_id, limit=limit, offset=offset),
            operation="list_audit_entries",
            timeout_seconds=timeout_seconds,
        )

    async def list_notifications(
        self,
        principal: Principal,
        *,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0,
        timeout_seconds: float | None = None,
    ) -> list[NotificationEvent]:
        principal.require_scope("notifications:read")
        return await self._bounded(
            self.repository.list_notifications(
                owner_id=principal.subject,
                unread_only=unread_only,
                limit=limit,
                offset=offset,
            ),
            operation="list_notifications",
            timeout_seconds=timeout_seconds,
        )

    async def count_unread_notifications(
        self,
        principal: Principal,
        *,
        timeout_seconds: float | None = None,
    ) -> int:
        principal.require_scope("notifications:read")
        return await self._bounded(
            self.repository.count_unread_notifications(owner_id=principal.subject),
            operation="count_unread_notifications",
            timeout_seconds=timeout_seconds,
        )

    async def mark_notifications_read(
        self,
        principal: Principal,
        *,
        notification_ids: list[str] | None = None,
        timeout_seconds: float | None = None,
    ) -> int:
        """Mark the caller's notifications read; ``None`` marks all of them.

        Ids belonging to another recipient are ignored, so the count only covers
        the caller's own unread notifications.
        """
        principal.require_scope("notifications:read")
        if notification_ids is not None and not notification_ids:
            raise InvalidInputError("notification_ids must not be empty")
        updated = await self._bounded(
            self.repository.mark_notifications_read(owner_id=principal.subject, notification_ids=notification_ids),
            operation="mark_notifications_read",
            timeout_seconds=timeout_seconds,
        )
        logger.info("notifications marked read owner_id=%s updated=%s", principal.subject, updated)
        return updated

    async def _transition(
        self,
        principal: Principal,
        listing_id: str,
        event: ListingEvent,
        *,
        owner_only: bool = False,
        timeout_seconds: float | None = None,
    ) -> tuple[ListingRecord, str]:
        actor_id = principal.actor
        with tracer.start_as_current_span("pipeline.transition") as span:
            span.set_attribute("listing.id", listing_id)
            span.set_attribute("pipeline.event", type(event).__name__)

            snapshot = await self._bounded(
                self.repository.get_listing(listing_id),
                operation="get_listing",
                timeout_seconds=timeout_seconds,
            )
            if owner_only and not principal.owns(snapshot.owner_id):
                raise NotFoundError("listing not found")

            result = await self._bounded(
                self.repository.apply_transition(
                    listing_id=listing_id,
                    expected_status=snapshot.status,
                    expected_is_duplicate=snapshot.is_duplicate,
                    planner=lambda listing, now: plan_transition(listing, event, actor_id=actor_id, now=now),
                    actor_id=actor_id,
                    actor_type=principal.principal_type.value,
                ),
                operation="apply_transition",
                timeout_seconds=timeout_seconds,
            )
            span.set_attribute("listing.status", result.listing.status.value)

        logger.info(
            "listing transition listing_id=%s action=%s from=%s to=%s actor_id=%s audit_entry_id=%s",
            listing_id,
            result.plan.action,
            result.plan.from_status.value,
            result.plan.to_status.value,
            actor_id,
            result.audit_entry.id,
        )
        return result.listing, result.plan.message

    async def _match(
        self,
        subject: DuplicateSubject,
        *,
        radius_km: float,
        timeout_seconds: float | None,
    ) -> list[DuplicateCandidate]:
        pool = await self._bounded(
            self.repository.list_duplicate_pool(
                owner_id=subject.owner_id,
                address=subject.address,
                latitude=subject.latitude,
                longitude=subject.longitude,
                radius_km=radius_km,
                exclude_listing_id=subject.listing_id,
            ),
            operation="list_duplicate_pool",
            timeout_seconds=timeout_seconds,
        )
        return find_duplicate_candidates(subject=subject, pool=pool, radius_km=radius_km)

    async def _bounded(
        self,
        awaitable: Awaitable[T],
        *,
        operation: str,
        timeout_seconds: float | None,
    ) -> T:
        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("pipeline operation timed out operation=%s timeout_seconds=%s", operation, timeout)
            raise OperationTimeoutError(f"{operation} exceeded {timeout}s") from exc


def _validate_draft(draft: ListingDraft) -> None:
    if not draft.title or not draft.title.strip():
        raise InvalidInputError("title is required")
    if not draft.address or not draft.address.strip():
        raise InvalidInputError("address is required")
    if (draft.latitude is None) != (draft.longitude is None):
        raise InvalidInputError("latitude and longitude must be supplied together")
    if draft.latitude is not None and not -90.0 <= draft.latitude <= 90.0:
        raise InvalidInputError("latitude must be between -90 and 90")
    if draft.longitude is not None and not -180.0 <= draft.longitude <= 180.0:
        raise InvalidInputError("longitude must be between -180 and 180")
    if draft.price is not None and draft.price < 0:
        raise InvalidInputError("price must not be negative")
