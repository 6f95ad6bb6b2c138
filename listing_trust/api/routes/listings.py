from fastapi import APIRouter, Depends, status

from listing_trust.api.deps import get_coordinator
from listing_trust.api.errors import http_error
from listing_trust.core.security import get_human_principal
from listing_trust.schemas.listings import (
    DuplicateCandidateOut,
    DuplicateCheckOut,
    DuplicateCheckRequest,
    ListingActionOut,
    ListingCreateRequest,
    ListingOut,
    SubmitDraftRequest,
)
from listing_trust.services.errors import PipelineError
from listing_trust.services.listings import ListingDraft, ListingRecord

router = APIRouter()


def listing_out(listing: ListingRecord) -> ListingOut:
    return ListingOut(**listing.to_dict())


@router.post("", response_model=ListingActionOut, status_code=status.HTTP_201_CREATED)
async def submit_listing(
    payload: ListingCreateRequest,
    principal=Depends(get_human_principal),
    coordinator=Depends(get_coordinator),
) -> ListingActionOut:
    draft = ListingDraft(**payload.model_dump(exclude={"save_as_draft"}))
    try:
        listing, message = await coordinator.submit_listing(principal, draft, save_as_draft=payload.save_as_draft)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return ListingActionOut(listing=listing_out(listing), message=message)


@router.get("/{listing_id}", response_model=ListingOut)
async def get_listing(
    listing_id: str,
    principal=Depends(get_human_principal),
    coordinator=Depends(get_coordinator),
) -> ListingOut:
    try:
        listing = await coordinator.get_listing(principal, listing_id)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return listing_out(listing)


@router.post("/{listing_id}/submit", response_model=ListingActionOut)
async def submit_draft(
    listing_id: str,
    payload: SubmitDraftRequest | None = None,
    principal=Depends(get_human_principal),
    coordinator=Depends(get_coordinator),
) -> ListingActionOut:
    try:
        listing, message = await coordinator.submit_draft(
            principal,
            listing_id,
            notes=payload.notes if payload else None,
        )
    except PipelineError as exc:
        raise http_error(exc) from exc
    return ListingActionOut(listing=listing_out(listing), message=message)


@router.post("/{listing_id}/duplicate-check", response_model=DuplicateCheckOut)
async def check_duplicates(
    listing_id: str,
    payload: DuplicateCheckRequest,
    principal=Depends(get_human_principal),
    coordinator=Depends(get_coordinator),
) -> DuplicateCheckOut:
    try:
        candidates = await coordinator.check_duplicates(
            principal,
            listing_id,
            address=payload.address,
            latitude=payload.latitude,
            longitude=payload.longitude,
            radius_km=payload.radius_km,
        )
    except PipelineError as exc:
        raise http_error(exc) from exc
    return DuplicateCheckOut(
        listing_id=listing_id,
        has_duplicates=bool(candidates),
        candidates=[DuplicateCandidateOut(**candidate.to_dict()) for candidate in candidates],
    )
