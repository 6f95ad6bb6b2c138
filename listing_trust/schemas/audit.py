from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class AuditEntryOut(BaseModel):
    id: int
    actor_id: str
    actor_type: Literal["human", "machine"]
    action: str
    target_type: str
    target_id: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
