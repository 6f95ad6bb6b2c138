from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Literal

from listing_trust.services.errors import InvalidInputError
from listing_trust.services.geo import haversine_km
from listing_trust.services.listings import PRE_PUBLICATION_STATUSES, ListingRecord, ListingStatus

_PUNCTUATION_RE = re.compile(r"[^\w\s]+")
_WHITESPACE_RE = re.compile(r"\s+")

DuplicateType = Literal["exact_address", "geospatial_proximity", "same_owner"]
Confidence = Literal["high", "medium", "low"]

MIN_RADIUS_KM = 0.01
MAX_RADIUS_KM = 10.0
DEFAULT_RADIUS_KM = 0.1
HIGH_PROXIMITY_KM = 0.05
MEDIUM_PROXIMITY_KM = 0.2

_CONFIDENCE_RANK: dict[str, int] = {"high": 0, "medium": 1, "low": 2}
_PASS_RANK: dict[str, int] = {"exact_address": 0, "geospatial_proximity": 1, "same_owner": 2}


@dataclass(slots=True)
class DuplicateSubject:
    listing_id: str | None
    owner_id: str
    address: str | None
    latitude: float | None
    longitude: float | None

    @classmethod
    def from_listing(
        cls,
        listing: ListingRecord,
        *,
        address: str | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
    ) -> DuplicateSubject:
        return cls(
            listing_id=listing.id,
            owner_id=listing.owner_id,
            address=address or listing.address,
            latitude=latitude if latitude is not None else listing.latitude,
            longitude=longitude if longitude is not None else listing.longitude,
        )

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass(slots=True, frozen=True)
class DuplicateCandidate:
    listing_id: str
    duplicate_type: DuplicateType
    confidence: Confidence
    distance_km: float | None
    title: str
    address: str
    status: str
    latitude: float | None
    longitude: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "listing_id": self.listing_id,
            "duplicate_type": self.duplicate_type,
            "confidence": self.confidence,
            "distance_km": self.distance_km,
            "title": self.title,
            "address": self.address,
            "status": self.status,
            "latitude": self.latitude,
            "longitude": self.longitude,
        }


def normalize_address(raw: str | None) -> str:
    if not raw:
        return ""
    stripped = _PUNCTUATION_RE.sub("", raw.casefold()).replace("_", "")
    return _WHITESPACE_RE.sub(" ", stripped).strip()


def validate_radius(radius_km: float) -> float:
    if not MIN_RADIUS_KM <= radius_km <= MAX_RADIUS_KM:
        raise InvalidInputError(f"radius_km must be between {MIN_RADIUS_KM} and {MAX_RADIUS_KM}")
    return radius_km


def proximity_confidence(distance_km: float) -> Confidence:
    if distance_km < HIGH_PROXIMITY_KM:
        return "high"
    if distance_km < MEDIUM_PROXIMITY_KM:
        return "medium"
    return "low"


def find_duplicate_candidates(
    *,
    subject: DuplicateSubject,
    pool: list[ListingRecord],
    radius_km: float = DEFAULT_RADIUS_KM,
) -> list[DuplicateCandidate]:
    validate_radius(radius_km)
    others = [row for row in pool if row.id != subject.listing_id]

    matches: list[DuplicateCandidate] = []
    matches.extend(_exact_address_matches(subject, others))
    matches.extend(_proximity_matches(subject, others, radius_km))
    matches.extend(_same_owner_matches(subject, others))
    return _merge_matches(matches)


def _exact_address_matches(subject: DuplicateSubject, others: list[ListingRecord]) -> list[DuplicateCandidate]:
    target = normalize_address(subject.address)
    if not target:
        return []
    return [
        _candidate(row, duplicate_type="exact_address", confidence="high")
        for row in others
        if row.status != ListingStatus.REJECTED and normalize_address(row.address) == target
    ]


def _proximity_matches(
    subject: DuplicateSubject,
    others: list[ListingRecord],
    radius_km: float,
) -> list[DuplicateCandidate]:
    if not subject.has_coordinates:
        return []
    assert subject.latitude is not None and subject.longitude is not None

    matches: list[DuplicateCandidate] = []
    for row in others:
        if row.status == ListingStatus.REJECTED or row.latitude is None or row.longitude is None:
            continue
        distance = haversine_km(subject.latitude, subject.longitude, row.latitude, row.longitude)
        if distance > radius_km:
            continue
        matches.append(
            _candidate(
                row,
                duplicate_type="geospatial_proximity",
                confidence=proximity_confidence(distance),
                distance_km=round(distance, 6),
            )
        )
    return matches


def _same_owner_matches(subject: DuplicateSubject, others: list[ListingRecord]) -> list[DuplicateCandidate]:
    return [
        _candidate(row, duplicate_type="same_owner", confidence="high")
        for row in others
        if row.owner_id == subject.owner_id and row.status in PRE_PUBLICATION_STATUSES
    ]


def _merge_matches(matches: list[DuplicateCandidate]) -> list[DuplicateCandidate]:
    best: dict[str, DuplicateCandidate] = {}
    for match in matches:
        current = best.get(match.listing_id)
        if current is None or _match_rank(match) < _match_rank(current):
            best[match.listing_id] = match
    return sorted(best.values(), key=lambda row: (_CONFIDENCE_RANK[row.confidence], row.listing_id))


def _match_rank(match: DuplicateCandidate) -> tuple[int, int]:
    return (_CONFIDENCE_RANK[match.confidence], _PASS_RANK[match.duplicate_type])


def _candidate(
    row: ListingRecord,
    *,
    duplicate_type: DuplicateType,
    confidence: Confidence,
    distance_km: float | None = None,
) -> DuplicateCandidate:
    return DuplicateCandidate(
        listing_id=row.id,
        duplicate_type=duplicate_type,
        confidence=confidence,
        distance_km=distance_km,
        title=row.title,
        address=row.address,
        status=row.status.value,
        latitude=row.latitude,
        longitude=row.longitude,
    )
