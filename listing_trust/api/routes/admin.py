from typing import Literal

from fastapi import APIRouter, Depends, Query

from listing_trust.api.deps import get_coordinator
from listing_trust.api.errors import http_error
from listing_trust.api.routes.listings import listing_out
from listing_trust.core.security import get_analyzer_or_human_principal, get_human_principal
from listing_trust.schemas.audit import AuditEntryOut
from listing_trust.schemas.listings import (
    DuplicateResolutionRequest,
    ListingActionOut,
    ListingPageOut,
    ListingStatusValue,
    MLVerdictRequest,
    UnlistRequest,
    VettingDecisionRequest,
)
from listing_trust.services.errors import PipelineError
from listing_trust.services.listings import ListingStatus
from listing_trust.services.records import ListingPage
from listing_trust.services.state_machine import DuplicateResolution, MLVerdict, VettingDecision

router = APIRouter()

ListingSortValue = Literal["newest", "oldest", "urgent", "location"]


def _page_out(page: ListingPage, *, limit: int, offset: int) -> ListingPageOut:
    return ListingPageOut(
        listings=[listing_out(listing) for listing in page.listings],
        total=page.total,
        limit=limit,
        offset=offset,
    )


@router.get("/listings", response_model=ListingPageOut)
async def list_listings(
    principal=Depends(get_human_principal),
    coordinator=Depends(get_coordinator),
    status: ListingStatusValue | None = Query(default=None),
    is_duplicate: bool | None = Query(default=None),
    state: str | None = Query(default=None),
    sort: ListingSortValue = Query(default="newest"),
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> ListingPageOut:
    try:
        page = await coordinator.list_listings(
            principal,
            status=ListingStatus(status) if status else None,
            is_duplicate=is_duplicate,
            state=state,
            sort=sort,
            limit=limit,
            offset=offset,
        )
    except PipelineError as exc:
        raise http_error(exc) from exc
    return _page_out(page, limit=limit, offset=offset)


@router.get("/duplicates", response_model=ListingPageOut)
async def list_duplicates(
    principal=Depends(get_human_principal),
    coordinator=Depends(get_coordinator),
    state: str | None = Query(default=None),
    sort: ListingSortValue = Query(default="newest"),
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> ListingPageOut:
    try:
        page = await coordinator.list_listings(
            principal,
            is_duplicate=True,
            state=state,
            sort=sort,
            limit=limit,
            offset=offset,
        )
    except PipelineError as exc:
        raise http_error(exc) from exc
    return _page_out(page, limit=limit, offset=offset)


@router.put("/listings/{listing_id}/ml-verdict", response_model=ListingActionOut)
async def record_ml_verdict(
    listing_id: str,
    payload: MLVerdictRequest,
    principal=Depends(get_analyzer_or_human_principal),
    coordinator=Depends(get_coordinator),
) -> ListingActionOut:
    verdict = MLVerdict(
        verdict=payload.ml_status,
        confidence_score=payload.confidence_score,
        notes=payload.notes,
        flagged_issues=list(payload.flagged_issues),
    )
    try:
        listing, message = await coordinator.record_ml_verdict(principal, listing_id, verdict)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return ListingActionOut(listing=listing_out(listing), message=message)


@router.post("/listings/{listing_id}/vetting", response_model=ListingActionOut)
async def record_vetting_decision(
    listing_id: str,
    payload: VettingDecisionRequest,
    principal=Depends(get_human_principal),
    coordinator=Depends(get_coordinator),
) -> ListingActionOut:
    decision = VettingDecision(
        action=payload.action,
        notes=payload.notes,
        scheduled_date=payload.scheduled_date,
        rejection_reason=payload.rejection_reason,
        issue_details=payload.issue_details,
    )
    try:
        listing, message = await coordinator.record_vetting_decision(principal, listing_id, decision)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return ListingActionOut(listing=listing_out(listing), message=message)


@router.put("/duplicates/{listing_id}/resolve", response_model=ListingActionOut)
async def resolve_duplicate(
    listing_id: str,
    payload: DuplicateResolutionRequest,
    principal=Depends(get_human_principal),
    coordinator=Depends(get_coordinator),
) -> ListingActionOut:
    resolution = DuplicateResolution(
        action=payload.action,
        master_listing_id=payload.master_listing_id,
        rejection_reason=payload.rejection_reason,
        notes=payload.notes,
    )
    try:
        listing, message = await coordinator.resolve_duplicate(principal, listing_id, resolution)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return ListingActionOut(listing=listing_out(listing), message=message)


@router.post("/listings/{listing_id}/unlist", response_model=ListingActionOut)
async def unlist_listing(
    listing_id: str,
    payload: UnlistRequest,
    principal=Depends(get_human_principal),
    coordinator=Depends(get_coordinator),
) -> ListingActionOut:
    try:
        listing, message = await coordinator.unlist_listing(
            principal,
            listing_id,
            reason=payload.reason,
            notes=payload.notes,
        )
    except PipelineError as exc:
        raise http_error(exc) from exc
    return ListingActionOut(listing=listing_out(listing), message=message)


@router.get("/listings/{listing_id}/audit", response_model=list[AuditEntryOut])
async def list_audit_trail(
    listing_id: str,
    principal=Depends(get_human_principal),
    coordinator=Depends(get_coordinator),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[AuditEntryOut]:
    try:
        entries = await coordinator.list_audit_trail(principal, listing_id, limit=limit, offset=offset)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return [AuditEntryOut(**entry.to_dict()) for entry in entries]
