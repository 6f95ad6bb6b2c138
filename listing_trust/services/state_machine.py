"""Verification state machine for listings.

Each planner is a pure function of the currently persisted listing and an
incoming event. It either raises (``PreconditionFailedError`` when the guard does
not hold, ``InvalidInputError`` when the event is malformed) or returns a
``TransitionPlan`` describing the new status, the columns to write, the audit
payload, and the owner notification. Persisting a plan atomically is the
repository's job.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Union

from listing_trust.services.errors import InvalidInputError, PreconditionFailedError
from listing_trust.services.listings import MUTABLE_FIELDS, ListingRecord, ListingStatus
from listing_trust.services.notifications import NotificationContent, build_notification

MLVerdictStatus = Literal["passed", "failed", "review_required"]
VettingAction = Literal["approve", "reject", "schedule", "flag_issue"]
ResolutionAction = Literal["keep_both", "keep_master", "reject_duplicate"]

VETTING_REJECTION_REASONS = frozenset(
    {
        "property_not_found",
        "documents_fraudulent",
        "owner_unresponsive",
        "property_condition_poor",
        "location_inaccurate",
        "pricing_inaccurate",
        "other",
    }
)

# keep_master and reject_duplicate force the listing into rejected; live listings
# are unpublished immediately.
DUPLICATE_REJECTABLE_STATUSES = frozenset(
    {
        ListingStatus.DUPLICATE_CHECK,
        ListingStatus.LIVE,
        ListingStatus.DRAFT,
        ListingStatus.PENDING_ML_VALIDATION,
        ListingStatus.PENDING_VETTING,
    }
)
UNLISTABLE_STATUSES = frozenset(
    {
        ListingStatus.DRAFT,
        ListingStatus.PENDING_ML_VALIDATION,
        ListingStatus.PENDING_VETTING,
        ListingStatus.DUPLICATE_CHECK,
    }
)

AUDIT_ACTION_SUBMITTED = "listing_submitted"
AUDIT_ACTION_DRAFT_SUBMITTED = "listing_draft_submitted"
AUDIT_ACTION_ML_VALIDATION = "ml_validation_update"
AUDIT_ACTION_VETTING = "property_vetting"
AUDIT_ACTION_DUPLICATE_RESOLUTION = "duplicate_resolution"
AUDIT_ACTION_UNLISTED = "listing_unlisted"


@dataclass(slots=True)
class MLVerdict:
    verdict: MLVerdictStatus
    confidence_score: float | None = None
    notes: str | None = None
    flagged_issues: list[str] = field(default_factory=list)


@dataclass(slots=True)
class VettingDecision:
    action: VettingAction
    notes: str | None = None
    scheduled_date: datetime | None = None
    rejection_reason: str | None = None
    issue_details: str | None = None


@dataclass(slots=True)
class DuplicateResolution:
    action: ResolutionAction
    master_listing_id: str | None = None
    rejection_reason: str | None = None
    notes: str | None = None


@dataclass(slots=True)
class SubmitDraft:
    notes: str | None = None


@dataclass(slots=True)
class Unlist:
    reason: str
    notes: str | None = None


ListingEvent = Union[MLVerdict, VettingDecision, DuplicateResolution, SubmitDraft, Unlist]


@dataclass(slots=True)
class TransitionPlan:
    action: str
    from_status: ListingStatus
    to_status: ListingStatus
    expected_is_duplicate: bool
    changes: dict[str, Any]
    details: dict[str, Any]
    notification: NotificationContent | None
    message: str

    @property
    def changes_status(self) -> bool:
        return self.from_status != self.to_status


def initial_status(*, save_as_draft: bool) -> ListingStatus:
    return ListingStatus.DRAFT if save_as_draft else ListingStatus.PENDING_ML_VALIDATION


def plan_transition(listing: ListingRecord, event: ListingEvent, *, actor_id: str, now: datetime) -> TransitionPlan:
    if isinstance(event, MLVerdict):
        return plan_ml_verdict(listing, event, now=now)
    if isinstance(event, VettingDecision):
        return plan_vetting_decision(listing, event, actor_id=actor_id, now=now)
    if isinstance(event, DuplicateResolution):
        return plan_duplicate_resolution(listing, event, actor_id=actor_id, now=now)
    if isinstance(event, SubmitDraft):
        return plan_submit_draft(listing, event)
    if isinstance(event, Unlist):
        return plan_unlist(listing, event)
    raise InvalidInputError(f"unsupported listing event: {type(event).__name__}")


def plan_submit_draft(listing: ListingRecord, event: SubmitDraft) -> TransitionPlan:
    _require_status(listing, {ListingStatus.DRAFT}, event="submit_draft")
    details = _details(listing, ListingStatus.PENDING_ML_VALIDATION, notes=event.notes)
    return _plan(
        listing,
        action=AUDIT_ACTION_DRAFT_SUBMITTED,
        to_status=ListingStatus.PENDING_ML_VALIDATION,
        changes={},
        details=details,
        message="Listing submitted for verification",
    )


def plan_ml_verdict(listing: ListingRecord, event: MLVerdict, *, now: datetime) -> TransitionPlan:
    _require_status(listing, {ListingStatus.PENDING_ML_VALIDATION}, event="ml_verdict")
    if event.verdict not in {"passed", "failed", "review_required"}:
        raise InvalidInputError(f"unsupported ml verdict: {event.verdict}")
    if event.confidence_score is not None and not 0.0 <= event.confidence_score <= 1.0:
        raise InvalidInputError("confidence_score must be between 0 and 1")

    to_status = ListingStatus.PENDING_VETTING if event.verdict == "passed" else ListingStatus.PENDING_ML_VALIDATION
    details = _details(
        listing,
        to_status,
        notes=event.notes,
        ml_status=event.verdict,
        confidence_score=event.confidence_score,
        flagged_issues=list(event.flagged_issues),
    )
    return _plan(
        listing,
        action=AUDIT_ACTION_ML_VALIDATION,
        to_status=to_status,
        changes={
            "ml_validation_status": event.verdict,
            "ml_confidence_score": event.confidence_score,
            "ml_flagged_issues": list(event.flagged_issues),
            "ml_validated_at": now,
        },
        details=details,
        message=f"ML validation {event.verdict} - listing status is {to_status.value}",
    )


def plan_vetting_decision(
    listing: ListingRecord,
    event: VettingDecision,
    *,
    actor_id: str,
    now: datetime,
) -> TransitionPlan:
    _require_status(listing, {ListingStatus.PENDING_VETTING}, event="vetting")

    changes: dict[str, Any] = {}
    if event.notes:
        changes["admin_notes"] = event.notes

    if event.action == "approve":
        to_status = ListingStatus.LIVE
        changes.update({"verified_at": now, "vetted_by": actor_id, "vetted_at": now})
        message = "Listing approved and is now live"
    elif event.action == "reject":
        if not event.rejection_reason:
            raise InvalidInputError("rejection_reason is required for reject")
        if event.rejection_reason not in VETTING_REJECTION_REASONS:
            raise InvalidInputError(f"unsupported rejection_reason: {event.rejection_reason}")
        to_status = ListingStatus.REJECTED
        changes.update({"rejection_reason": event.rejection_reason, "vetted_by": actor_id, "vetted_at": now})
        message = "Listing rejected"
    elif event.action == "schedule":
        if event.scheduled_date is None:
            raise InvalidInputError("scheduled_date is required for schedule")
        to_status = ListingStatus.PENDING_VETTING
        changes["scheduled_vetting_date"] = event.scheduled_date
        message = "Vetting visit scheduled"
    elif event.action == "flag_issue":
        to_status = ListingStatus.PENDING_VETTING
        changes.update({"flagged_for_review": True, "review_notes": event.issue_details or event.notes})
        message = "Listing flagged for additional review"
    else:
        raise InvalidInputError(f"unsupported vetting action: {event.action}")

    details = _details(
        listing,
        to_status,
        notes=event.notes,
        vetting_action=event.action,
        scheduled_date=event.scheduled_date.isoformat() if event.scheduled_date else None,
        rejection_reason=event.rejection_reason,
        issue_details=event.issue_details,
    )
    return _plan(
        listing,
        action=AUDIT_ACTION_VETTING,
        to_status=to_status,
        changes=changes,
        details=details,
        message=message,
    )


def plan_duplicate_resolution(
    listing: ListingRecord,
    event: DuplicateResolution,
    *,
    actor_id: str,
    now: datetime,
) -> TransitionPlan:
    if not listing.is_duplicate:
        raise PreconditionFailedError("listing is not flagged as a duplicate")

    changes: dict[str, Any] = {
        "is_duplicate": False,
        "duplicate_resolution_action": event.action,
        "duplicate_resolved_at": now,
    }
    if event.notes:
        changes["admin_notes"] = event.notes

    if event.action == "keep_both":
        to_status = listing.status
        message = "Duplicate resolved: keep_both"
    elif event.action == "keep_master":
        if not event.master_listing_id:
            raise InvalidInputError("master_listing_id is required for keep_master")
        if event.master_listing_id == listing.id:
            raise InvalidInputError("master_listing_id must reference a different listing")
        _require_status(listing, DUPLICATE_REJECTABLE_STATUSES, event="keep_master")
        to_status = ListingStatus.REJECTED
        changes["rejection_reason"] = f"Duplicate of listing {event.master_listing_id}"
        message = "Duplicate resolved: keep_master"
    elif event.action == "reject_duplicate":
        if not event.rejection_reason:
            raise InvalidInputError("rejection_reason is required for reject_duplicate")
        _require_status(listing, DUPLICATE_REJECTABLE_STATUSES, event="reject_duplicate")
        to_status = ListingStatus.REJECTED
        changes["rejection_reason"] = event.rejection_reason
        message = "Duplicate resolved: reject_duplicate"
    else:
        raise InvalidInputError(f"unsupported resolution action: {event.action}")

    details = _details(
        listing,
        to_status,
        notes=event.notes,
        resolution_action=event.action,
        master_listing_id=event.master_listing_id,
        rejection_reason=changes.get("rejection_reason"),
        resolved_by=actor_id,
        resolved_at=now.isoformat(),
    )
    return _plan(
        listing,
        action=AUDIT_ACTION_DUPLICATE_RESOLUTION,
        to_status=to_status,
        changes=changes,
        details=details,
        message=message,
    )


def plan_unlist(listing: ListingRecord, event: Unlist) -> TransitionPlan:
    if not event.reason:
        raise InvalidInputError("reason is required to unlist a listing")
    _require_status(listing, UNLISTABLE_STATUSES, event="unlist")
    details = _details(listing, ListingStatus.UNLISTED, notes=event.notes, unlisted_reason=event.reason)
    changes: dict[str, Any] = {"unlisted_reason": event.reason}
    if event.notes:
        changes["admin_notes"] = event.notes
    return _plan(
        listing,
        action=AUDIT_ACTION_UNLISTED,
        to_status=ListingStatus.UNLISTED,
        changes=changes,
        details=details,
        message="Listing unlisted",
    )


def apply_plan(listing: ListingRecord, plan: TransitionPlan, *, now: datetime) -> ListingRecord:
    """Return the listing as it reads after ``plan`` is committed."""
    for key, value in plan.changes.items():
        setattr(listing, key, value)
    listing.status = plan.to_status
    listing.updated_at = now
    listing.version += 1
    return listing


def _require_status(listing: ListingRecord, allowed: set[ListingStatus] | frozenset[ListingStatus], *, event: str) -> None:
    if listing.status not in allowed:
        raise PreconditionFailedError(f"{event} not allowed while listing is {listing.status.value}")


def _details(listing: ListingRecord, to_status: ListingStatus, *, notes: str | None, **extra: Any) -> dict[str, Any]:
    details: dict[str, Any] = {
        "previous_status": listing.status.value,
        "new_status": to_status.value,
        "notes": notes,
    }
    details.update(extra)
    return details


def _plan(
    listing: ListingRecord,
    *,
    action: str,
    to_status: ListingStatus,
    changes: dict[str, Any],
    details: dict[str, Any],
    message: str,
) -> TransitionPlan:
    unknown = set(changes) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"transition writes unsupported columns: {sorted(unknown)}")
    notification = build_notification(
        action=action,
        previous_status=listing.status.value,
        new_status=to_status.value,
        notes=details.get("notes"),
        listing_id=listing.id,
        listing_title=listing.title,
        details=details,
    )
    return TransitionPlan(
        action=action,
        from_status=listing.status,
        to_status=to_status,
        expected_is_duplicate=listing.is_duplicate,
        changes=changes,
        details=details,
        notification=notification,
        message=message,
    )
