from datetime import datetime, timezone

import pytest

from listing_trust.services.duplicates import (
    DuplicateSubject,
    find_duplicate_candidates,
    normalize_address,
    proximity_confidence,
)
from listing_trust.services.errors import InvalidInputError
from listing_trust.services.listings import ListingRecord, ListingStatus


def test_normalize_address_ignores_case_punctuation_and_spacing() -> None:
    assert normalize_address("12, Admiralty  Way. LEKKI") == "12 admiralty way lekki"
    assert normalize_address("  ") == ""
    assert normalize_address(None) == ""


def test_exact_address_match_is_symmetric() -> None:
    first = _listing("l1", owner_id="owner-a", address="12 Admiralty Way, Lekki", status=ListingStatus.LIVE)
    second = _listing("l2", owner_id="owner-b", address="12 admiralty way lekki", status=ListingStatus.PENDING_VETTING)
    pool = [first, second]

    forward = find_duplicate_candidates(subject=_subject(first), pool=pool)
    backward = find_duplicate_candidates(subject=_subject(second), pool=pool)

    assert [(row.listing_id, row.duplicate_type, row.confidence) for row in forward] == [
        ("l2", "exact_address", "high")
    ]
    assert [(row.listing_id, row.duplicate_type, row.confidence) for row in backward] == [
        ("l1", "exact_address", "high")
    ]


def test_exact_address_scenario_against_live_listing() -> None:
    existing = _listing("l2", owner_id="owner-b", address="12 Admiralty Way, Lekki", status=ListingStatus.LIVE)
    incoming = _listing(
        "l1",
        owner_id="owner-a",
        address="12 Admiralty Way, Lekki",
        status=ListingStatus.PENDING_ML_VALIDATION,
    )

    candidates = find_duplicate_candidates(subject=_subject(incoming), pool=[incoming, existing])

    assert len(candidates) == 1
    assert candidates[0].listing_id == "l2"
    assert candidates[0].duplicate_type == "exact_address"
    assert candidates[0].confidence == "high"


def test_rejected_listings_never_match_on_address_or_distance() -> None:
    rejected = _listing(
        "l9",
        owner_id="owner-b",
        address="1 Main Street",
        status=ListingStatus.REJECTED,
        latitude=6.4281,
        longitude=3.4219,
    )
    subject = DuplicateSubject(
        listing_id="l1",
        owner_id="owner-a",
        address="1 Main Street",
        latitude=6.4281,
        longitude=3.4219,
    )

    assert find_duplicate_candidates(subject=subject, pool=[rejected]) == []


def test_proximity_scenario_is_medium_confidence() -> None:
    l3 = _listing("l3", owner_id="owner-a", address="Plot 3", status=ListingStatus.LIVE, latitude=6.4281, longitude=3.4219)
    l4 = _listing("l4", owner_id="owner-b", address="Plot 4", status=ListingStatus.LIVE, latitude=6.4285, longitude=3.4223)

    candidates = find_duplicate_candidates(subject=_subject(l3), pool=[l3, l4], radius_km=0.1)

    assert len(candidates) == 1
    match = candidates[0]
    assert match.listing_id == "l4"
    assert match.duplicate_type == "geospatial_proximity"
    assert match.confidence == "medium"
    assert match.distance_km == pytest.approx(0.06, abs=0.01)


def test_proximity_respects_radius() -> None:
    near = _listing("near", owner_id="owner-b", address="A", status=ListingStatus.LIVE, latitude=6.4281, longitude=3.4219)
    subject = DuplicateSubject(listing_id=None, owner_id="owner-a", address="B", latitude=6.4381, longitude=3.4219)

    assert find_duplicate_candidates(subject=subject, pool=[near], radius_km=0.5) == []
    wide = find_duplicate_candidates(subject=subject, pool=[near], radius_km=2.0)
    assert [row.confidence for row in wide] == ["low"]


def test_same_owner_scenario_includes_draft() -> None:
    l5 = _listing("l5", owner_id="owner-o", address="5 Palm Avenue", status=ListingStatus.DRAFT)
    l6 = _listing("l6", owner_id="owner-o", address="6 Cedar Road", status=ListingStatus.PENDING_ML_VALIDATION)
    live = _listing("l7", owner_id="owner-o", address="7 Oak Lane", status=ListingStatus.LIVE)

    candidates = find_duplicate_candidates(subject=_subject(l6), pool=[l5, l6, live])

    assert [(row.listing_id, row.duplicate_type, row.confidence) for row in candidates] == [
        ("l5", "same_owner", "high")
    ]


def test_listing_matching_several_passes_keeps_best_and_earliest_pass() -> None:
    other = _listing(
        "l2",
        owner_id="owner-a",
        address="10 Harbour Road",
        status=ListingStatus.PENDING_VETTING,
        latitude=6.4281,
        longitude=3.4219,
    )
    subject = DuplicateSubject(
        listing_id="l1",
        owner_id="owner-a",
        address="10 harbour road",
        latitude=6.4281,
        longitude=3.4219,
    )

    candidates = find_duplicate_candidates(subject=subject, pool=[other])

    assert len(candidates) == 1
    assert candidates[0].duplicate_type == "exact_address"
    assert candidates[0].confidence == "high"


def test_output_is_stable_and_excludes_subject() -> None:
    subject_row = _listing("b", owner_id="owner-a", address="1 Shared Way", status=ListingStatus.DRAFT)
    pool = [
        _listing("c", owner_id="owner-b", address="1 Shared Way", status=ListingStatus.LIVE),
        _listing("a", owner_id="owner-c", address="1 shared way", status=ListingStatus.LIVE),
        subject_row,
    ]

    first = find_duplicate_candidates(subject=_subject(subject_row), pool=pool)
    second = find_duplicate_candidates(subject=_subject(subject_row), pool=list(reversed(pool)))

    assert [row.listing_id for row in first] == ["a", "c"]
    assert first == second


def test_radius_out_of_range_is_invalid_input() -> None:
    subject = DuplicateSubject(listing_id=None, owner_id="o", address="x", latitude=None, longitude=None)
    with pytest.raises(InvalidInputError):
        find_duplicate_candidates(subject=subject, pool=[], radius_km=0.001)
    with pytest.raises(InvalidInputError):
        find_duplicate_candidates(subject=subject, pool=[], radius_km=25)


def test_proximity_confidence_bands() -> None:
    assert proximity_confidence(0.0) == "high"
    assert proximity_confidence(0.049) == "high"
    assert proximity_confidence(0.05) == "medium"
    assert proximity_confidence(0.199) == "medium"
    assert proximity_confidence(0.2) == "low"


def _subject(listing: ListingRecord) -> DuplicateSubject:
    return DuplicateSubject.from_listing(listing)


def _listing(
    listing_id: str,
    *,
    owner_id: str,
    address: str,
    status: ListingStatus,
    latitude: float | None = None,
    longitude: float | None = None,
) -> ListingRecord:
    now = datetime.now(timezone.utc)
    return ListingRecord(
        id=listing_id,
        owner_id=owner_id,
        title=f"Listing {listing_id}",
        address=address,
        status=status,
        created_at=now,
        updated_at=now,
        latitude=latitude,
        longitude=longitude,
    )
