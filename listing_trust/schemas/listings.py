from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

ListingStatusValue = Literal[
    "draft",
    "pending_ml_validation",
    "pending_vetting",
    "live",
    "rejected",
    "unlisted",
    "duplicate_check",
]
ListingType = Literal["sale", "rent", "lease"]
VettingRejectionReason = Literal[
    "property_not_found",
    "documents_fraudulent",
    "owner_unresponsive",
    "property_condition_poor",
    "location_inaccurate",
    "pricing_inaccurate",
    "other",
]


class ListingCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    address: str = Field(min_length=1, max_length=500)
    description: str | None = None
    price: float | None = Field(default=None, ge=0)
    property_type: str | None = None
    listing_type: ListingType | None = None
    city: str | None = None
    state: str | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    save_as_draft: bool = False


class ListingOut(BaseModel):
    id: str
    owner_id: str
    title: str
    address: str
    status: ListingStatusValue
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
    ml_flagged_issues: list[str] = Field(default_factory=list)
    ml_validated_at: datetime | None = None
    duplicate_resolution_action: str | None = None
    duplicate_resolved_at: datetime | None = None
    admin_notes: str | None = None
    version: int
    created_at: datetime
    updated_at: datetime


class ListingActionOut(BaseModel):
    listing: ListingOut
    message: str


class SubmitDraftRequest(BaseModel):
    notes: str | None = None


class DuplicateCheckRequest(BaseModel):
    address: str | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    radius_km: float | None = Field(default=None, ge=0.01, le=10)


class DuplicateCandidateOut(BaseModel):
    listing_id: str
    duplicate_type: Literal["exact_address", "geospatial_proximity", "same_owner"]
    confidence: Literal["high", "medium", "low"]
    distance_km: float | None = None
    title: str
    address: str
    status: str
    latitude: float | None = None
    longitude: float | None = None


class DuplicateCheckOut(BaseModel):
    listing_id: str
    has_duplicates: bool
    candidates: list[DuplicateCandidateOut] = Field(default_factory=list)


class MLVerdictRequest(BaseModel):
    ml_status: Literal["passed", "failed", "review_required"]
    confidence_score: float | None = Field(default=None, ge=0, le=1)
    notes: str | None = None
    flagged_issues: list[str] = Field(default_factory=list)


class VettingDecisionRequest(BaseModel):
    action: Literal["approve", "reject", "schedule", "flag_issue"]
    notes: str | None = None
    scheduled_date: datetime | None = None
    rejection_reason: VettingRejectionReason | None = None
    issue_details: str | None = None


class DuplicateResolutionRequest(BaseModel):
    action: Literal["keep_both", "keep_master", "reject_duplicate"]
    master_listing_id: str | None = None
    rejection_reason: str | None = None
    notes: str | None = None


class UnlistRequest(BaseModel):
    reason: str = Field(min_length=1)
    notes: str | None = None


class ListingPageOut(BaseModel):
    listings: list[ListingOut] = Field(default_factory=list)
    total: int
    limit: int
    offset: int
