from dataclasses import dataclass
from enum import Enum

from listing_trust.services.errors import ForbiddenError

READ_ALL_LISTINGS_SCOPE = "listings:read_all"


class PrincipalType(str, Enum):
    HUMAN = "human"
    MACHINE = "machine"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]
    role: str | None = None
    actor_id: str | None = None

    @property
    def actor(self) -> str:
        """Identifier recorded in audit entries; machine modules use their database id."""
        return self.actor_id or self.subject

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes

    def require_scope(self, scope: str) -> None:
        if scope not in self.scopes:
            raise ForbiddenError(f"missing required scope: {scope}")

    def owns(self, owner_id: str) -> bool:
        return self.principal_type == PrincipalType.HUMAN and self.subject == owner_id

    def can_view(self, owner_id: str) -> bool:
        return self.owns(owner_id) or self.has_scope(READ_ALL_LISTINGS_SCOPE)


def parse_scopes(raw: str | None) -> set[str]:
    if not raw:
        return set()
    return {chunk.strip() for chunk in raw.split(",") if chunk.strip()}
