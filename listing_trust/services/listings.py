from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal


class ListingStatus(str, Enum):
    DRAFT = "draft"
    PENDING_ML_VALIDATION = "pending_ml_validation"
    PENDING_VETTING = "pending_vetting"
    LIVE = "live"
    REJECTED = "rejected"
    UNLISTED = "unlisted"
    DUPLICATE_CHECK = "duplicate_check"


PRE_PUBLICATION_STATUSES = frozenset(
    {
        ListingStatus.DRAFT,
        ListingStatus.PENDING_ML_VALIDATION,
        ListingStatus.PENDING_VETTING,
    }
)
TERMINAL_STATUSES = frozenset({ListingStatus.LIVE, ListingStatus.REJECTED, ListingStatus.UNLISTED})

# "urgent" puts the longest wait since the ML verdict first.
ListingSort = Literal["newest", "oldest", "urgent", "location"]
LISTING_SORTS: tuple[str, ...] = ("newest", "oldest", "urgent", "location")


@dataclass(slots=True)
class ListingDraft:
    title: str
    address: str
    description: str | None = None
    price: float | None = None
    property_type: str | None = None
    listing_type: str | None = None
    city: str | None = None
    state: str | None = None
    latitude: float | None = None
    longitude: float | None = None


@dataclass(slots=True)
class ListingRecord:
    """Persisted listing row.

    ``status`` is the only source of truth for visibility. ``is_duplicate`` and
    ``flagged_for_review`` are orthogonal annotations: the former is set by the
    duplicate pre-check and cleared only by a resolution action, the latter is
    set only by the vetting ``flag_issue`` action. ``rejected`` combined with
    ``is_duplicate`` is a legal state. ``version`` increases on every mutation
    and keys the compare-and-swap update.
    """

    id: str
    owner_id: str
    title: str
    address: str
    status: ListingStatus
    created_at: datetime
    updated_at: datetime
    description: str | None = None
    price: float | None = None
    property_type: str | None = None
    listing_type: str | None = None
    city: str | None = None
    state: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    is_duplicate: bool = False
    flagged_for_review: bool = False
    verified_at: datetime | None = None
    rejection_reason: str | None = None
    scheduled_vetting_date: datetime | None = None
    review_notes: str | None = None
    vetted_by: str | None = None
    vetted_at: datetime | None = None
    unlisted_reason: str | None = None
    ml_validation_status: str | None = None
    ml_confidence_score: float | None = None
    ml_flagged_issues: list[str] = field(default_factory=list)
    ml_validated_at: datetime | None = None
    duplicate_resolution_action: str | None = None
    duplicate_resolved_at: datetime | None = None
    admin_notes: str | None = None
    version: int = 1

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["ml_flagged_issues"] = list(self.ml_flagged_issues)
        return data


# Columns a transition plan may write. Identity, ownership, and timestamps are not listed.
MUTABLE_FIELDS = frozenset(
    {
        "is_duplicate",
        "flagged_for_review",
        "verified_at",
        "rejection_reason",
        "scheduled_vetting_date",
        "review_notes",
        "vetted_by",
        "vetted_at",
        "unlisted_reason",
        "ml_validation_status",
        "ml_confidence_score",
        "ml_flagged_issues",
        "ml_validated_at",
        "duplicate_resolution_action",
        "duplicate_resolved_at",
        "admin_notes",
    }
)
