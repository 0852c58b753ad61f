"""
User report data models.
One report per reporter per media item; rows are never deleted.
"""

from datetime import datetime
from typing import Optional
from uuid import uuid4
from pydantic import BaseModel, Field, field_validator

from models.enums import ReportReason, ReportStatus
from models.moderation import utc_now

DESCRIPTION_MAX_LENGTH = 1000
ADMIN_NOTES_MAX_LENGTH = 2000


class ReportEntry(BaseModel):
    """A single user report against a media item."""
    id: str = Field(default_factory=lambda: str(uuid4()))
    media_id: str
    reporter_id: str
    reason: ReportReason
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    status: ReportStatus = ReportStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)

    # Admin review
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    admin_notes: Optional[str] = Field(default=None, max_length=ADMIN_NOTES_MAX_LENGTH)

    @field_validator("description", mode="before")
    @classmethod
    def _trim_description(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = str(value).strip()
        return value or None


class ReportSubmission(BaseModel):
    """Outcome of a successful report submission."""
    report: ReportEntry
    report_count: int
