from __future__ import annotations

from dataclasses import dataclass

from listing_trust.services.audit import AuditEntry
from listing_trust.services.listings import ListingRecord
from listing_trust.services.state_machine import TransitionPlan


@dataclass(slots=True)
class MachineCredentialRecord:
    module_db_id: str
    module_id: str
    scopes: list[str]
    key_hash: str


@dataclass(slots=True)
class TransitionResult:
    listing: ListingRecord
    audit_entry: AuditEntry
    notification_id: str | None
    plan: TransitionPlan


@dataclass(slots=True)
class SubmissionResult:
    listing: ListingRecord
    audit_entry: AuditEntry
    notification_id: str | None


@dataclass(slots=True)
class ListingPage:
    listings: list[ListingRecord]
    total: int
