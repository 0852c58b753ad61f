"""
Audit trail data models.
Entries are frozen: the recorder exposes no update or delete path.
"""

from datetime import datetime
from typing import Optional, Dict, Any
from uuid import uuid4
from pydantic import BaseModel, ConfigDict, Field, field_validator

from models.enums import AuditAction, SubjectType, ModerationStatus
from models.moderation import utc_now


class AuditEntry(BaseModel):
    """Immutable record of a transition or privileged action."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    subject_id: str
    subject_type: SubjectType = SubjectType.MEDIA
    action: AuditAction
    actor_id: str
    reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    # Set for lifecycle transitions
    previous_status: Optional[ModerationStatus] = None
    new_status: Optional[ModerationStatus] = None

    ip_address: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)

    @field_validator("actor_id")
    @classmethod
    def _actor_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("actor_id must not be empty")
        return value


class AuditQuery(BaseModel):
    """Filter for the admin activity view."""
    subject_id: Optional[str] = None
    actor_id: Optional[str] = None
    action: Optional[AuditAction] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    page: int = Field(ge=1, default=1)
    limit: int = Field(ge=1, le=200, default=50)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def matches(self, entry: AuditEntry) -> bool:
        if self.subject_id and entry.subject_id != self.subject_id:
            return False
        if self.actor_id and entry.actor_id != self.actor_id:
            return False
        if self.action and entry.action != self.action:
            return False
        if self.since and entry.timestamp < self.since:
            return False
        if self.until and entry.timestamp > self.until:
            return False
        return True
