from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

ActorType = Literal["human", "machine"]
AUDIT_TARGET_LISTING = "listing"


@dataclass(slots=True, frozen=True)
class AuditEntry:
    """Append-only record of a state-changing action. Never updated or deleted."""

    id: int
    actor_id: str
    actor_type: ActorType
    action: str
    target_type: str
    target_id: str
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "actor_id": self.actor_id,
            "actor_type": self.actor_type,
            "action": self.action,
            "target_type": self.target_type,
            "target_id": self.target_id,
            "details": dict(self.details),
            "created_at": self.created_at,
        }


def encode_details(details: dict[str, Any]) -> str:
    return json.dumps(details, default=str, sort_keys=True)


def decode_details(raw: Any) -> dict[str, Any]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return {}
    if not isinstance(raw, dict):
        return {}
    return raw


def order_trail(entries: list[AuditEntry]) -> list[AuditEntry]:
    return sorted(entries, key=lambda entry: (entry.created_at, entry.id))
