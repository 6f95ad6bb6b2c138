from datetime import datetime, timedelta, timezone

import pytest

from listing_trust.services.errors import InvalidInputError, PreconditionFailedError
from listing_trust.services.listings import ListingRecord, ListingStatus
from listing_trust.services.state_machine import (
    DuplicateResolution,
    MLVerdict,
    SubmitDraft,
    Unlist,
    VettingDecision,
    apply_plan,
    initial_status,
    plan_transition,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_initial_status_depends_on_draft_flag() -> None:
    assert initial_status(save_as_draft=False) == ListingStatus.PENDING_ML_VALIDATION
    assert initial_status(save_as_draft=True) == ListingStatus.DRAFT


def test_submit_draft_moves_to_ml_validation() -> None:
    plan = _plan(_listing(ListingStatus.DRAFT), SubmitDraft())

    assert plan.to_status == ListingStatus.PENDING_ML_VALIDATION
    assert plan.notification is not None
    assert plan.notification.title == "Listing Submitted"


def test_submit_draft_rejected_outside_draft() -> None:
    with pytest.raises(PreconditionFailedError):
        _plan(_listing(ListingStatus.PENDING_VETTING), SubmitDraft())


def test_ml_verdict_passed_moves_to_vetting() -> None:
    plan = _plan(
        _listing(ListingStatus.PENDING_ML_VALIDATION),
        MLVerdict(verdict="passed", confidence_score=0.91, flagged_issues=[]),
    )

    assert plan.to_status == ListingStatus.PENDING_VETTING
    assert plan.changes["ml_validation_status"] == "passed"
    assert plan.changes["ml_validated_at"] == NOW
    assert plan.notification is not None
    assert plan.notification.title == "ML Validation Passed"


@pytest.mark.parametrize(
    ("verdict", "title"),
    [("failed", "ML Validation Failed"), ("review_required", "ML Validation Review Required")],
)
def test_ml_verdict_without_pass_keeps_status_but_records_verdict(verdict: str, title: str) -> None:
    plan = _plan(
        _listing(ListingStatus.PENDING_ML_VALIDATION),
        MLVerdict(verdict=verdict, notes="blurry deed", flagged_issues=["document_quality"]),  # type: ignore[arg-type]
    )

    assert plan.to_status == ListingStatus.PENDING_ML_VALIDATION
    assert not plan.changes_status
    assert plan.changes["ml_flagged_issues"] == ["document_quality"]
    assert plan.details["notes"] == "blurry deed"
    assert plan.notification is not None
    assert plan.notification.title == title


@pytest.mark.parametrize(
    "status",
    [status for status in ListingStatus if status != ListingStatus.PENDING_ML_VALIDATION],
)
def test_ml_verdict_outside_ml_validation_fails_precondition(status: ListingStatus) -> None:
    with pytest.raises(PreconditionFailedError):
        _plan(_listing(status), MLVerdict(verdict="passed"))


def test_ml_verdict_rejects_out_of_range_score() -> None:
    with pytest.raises(InvalidInputError):
        _plan(_listing(ListingStatus.PENDING_ML_VALIDATION), MLVerdict(verdict="passed", confidence_score=1.5))


def test_vetting_approve_goes_live() -> None:
    plan = _plan(_listing(ListingStatus.PENDING_VETTING), VettingDecision(action="approve"), actor_id="agent-1")

    assert plan.to_status == ListingStatus.LIVE
    assert plan.changes["verified_at"] == NOW
    assert plan.changes["vetted_by"] == "agent-1"
    assert plan.message == "Listing approved and is now live"


def test_vetting_reject_requires_known_reason() -> None:
    listing = _listing(ListingStatus.PENDING_VETTING)
    with pytest.raises(InvalidInputError):
        _plan(listing, VettingDecision(action="reject"))
    with pytest.raises(InvalidInputError):
        _plan(listing, VettingDecision(action="reject", rejection_reason="looks odd"))

    plan = _plan(listing, VettingDecision(action="reject", rejection_reason="documents_fraudulent"))
    assert plan.to_status == ListingStatus.REJECTED
    assert plan.changes["rejection_reason"] == "documents_fraudulent"
    assert plan.notification is not None
    assert plan.notification.title == "Property Rejected"


def test_vetting_schedule_and_flag_keep_status() -> None:
    listing = _listing(ListingStatus.PENDING_VETTING)
    visit = NOW + timedelta(days=3)

    scheduled = _plan(listing, VettingDecision(action="schedule", scheduled_date=visit))
    flagged = _plan(listing, VettingDecision(action="flag_issue", issue_details="roof damage"))

    assert scheduled.to_status == ListingStatus.PENDING_VETTING
    assert scheduled.changes["scheduled_vetting_date"] == visit
    assert flagged.to_status == ListingStatus.PENDING_VETTING
    assert flagged.changes["flagged_for_review"] is True
    assert flagged.changes["review_notes"] == "roof damage"


def test_vetting_schedule_requires_date() -> None:
    with pytest.raises(InvalidInputError):
        _plan(_listing(ListingStatus.PENDING_VETTING), VettingDecision(action="schedule"))


@pytest.mark.parametrize("status", [ListingStatus.LIVE, ListingStatus.REJECTED, ListingStatus.UNLISTED])
def test_terminal_states_refuse_vetting(status: ListingStatus) -> None:
    with pytest.raises(PreconditionFailedError):
        _plan(_listing(status), VettingDecision(action="approve"))


def test_resolution_requires_duplicate_flag() -> None:
    with pytest.raises(PreconditionFailedError):
        _plan(_listing(ListingStatus.LIVE), DuplicateResolution(action="keep_both"))


def test_keep_both_clears_flag_and_keeps_status() -> None:
    plan = _plan(_listing(ListingStatus.LIVE, is_duplicate=True), DuplicateResolution(action="keep_both"))

    assert plan.to_status == ListingStatus.LIVE
    assert plan.changes["is_duplicate"] is False
    assert plan.expected_is_duplicate is True


def test_keep_master_rejects_live_duplicate() -> None:
    plan = _plan(
        _listing(ListingStatus.LIVE, is_duplicate=True),
        DuplicateResolution(action="keep_master", master_listing_id="master-1"),
    )

    assert plan.to_status == ListingStatus.REJECTED
    assert plan.changes["rejection_reason"] == "Duplicate of listing master-1"
    assert plan.notification is not None
    assert plan.notification.title == "Property Marked as Duplicate"


def test_keep_master_refuses_self_and_missing_master() -> None:
    listing = _listing(ListingStatus.DUPLICATE_CHECK, is_duplicate=True)
    with pytest.raises(InvalidInputError):
        _plan(listing, DuplicateResolution(action="keep_master"))
    with pytest.raises(InvalidInputError):
        _plan(listing, DuplicateResolution(action="keep_master", master_listing_id=listing.id))


def test_reject_duplicate_needs_reason_and_allowed_status() -> None:
    with pytest.raises(InvalidInputError):
        _plan(_listing(ListingStatus.LIVE, is_duplicate=True), DuplicateResolution(action="reject_duplicate"))
    with pytest.raises(PreconditionFailedError):
        _plan(
            _listing(ListingStatus.UNLISTED, is_duplicate=True),
            DuplicateResolution(action="reject_duplicate", rejection_reason="copied photos"),
        )

    plan = _plan(
        _listing(ListingStatus.DUPLICATE_CHECK, is_duplicate=True),
        DuplicateResolution(action="reject_duplicate", rejection_reason="copied photos"),
    )
    assert plan.to_status == ListingStatus.REJECTED
    assert plan.notification is not None
    assert plan.notification.title == "Property Rejected - Duplicate"


def test_unlist_requires_reason_and_pre_publication_status() -> None:
    with pytest.raises(InvalidInputError):
        _plan(_listing(ListingStatus.DRAFT), Unlist(reason=""))
    with pytest.raises(PreconditionFailedError):
        _plan(_listing(ListingStatus.LIVE), Unlist(reason="owner request"))

    plan = _plan(_listing(ListingStatus.PENDING_VETTING), Unlist(reason="owner request"))
    assert plan.to_status == ListingStatus.UNLISTED
    assert plan.changes["unlisted_reason"] == "owner request"


def test_apply_plan_writes_changes_and_bumps_version() -> None:
    listing = _listing(ListingStatus.PENDING_VETTING)
    plan = _plan(listing, VettingDecision(action="approve"))

    updated = apply_plan(listing, plan, now=NOW)

    assert updated.status == ListingStatus.LIVE
    assert updated.verified_at == NOW
    assert updated.updated_at == NOW
    assert updated.version == 2


def _plan(listing: ListingRecord, event, *, actor_id: str = "admin-1"):
    return plan_transition(listing, event, actor_id=actor_id, now=NOW)


def _listing(status: ListingStatus, *, is_duplicate: bool = False) -> ListingRecord:
    created = NOW - timedelta(days=1)
    return ListingRecord(
        id="listing-1",
        owner_id="owner-1",
        title="Three bedroom flat",
        address="12 Admiralty Way, Lekki",
        status=status,
        created_at=created,
        updated_at=created,
        is_duplicate=is_duplicate,
    )
