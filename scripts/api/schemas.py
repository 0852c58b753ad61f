"""Request and response bodies for the moderation API."""

from typing import List, Optional

from pydantic import BaseModel, Field

from models.audit import AuditEntry
from models.enums import ModerationStatus, ReportReason, ReportStatus
from models.moderation import ModerationRecord, QueueItem
from models.report import ADMIN_NOTES_MAX_LENGTH, DESCRIPTION_MAX_LENGTH, ReportEntry


class ReportRequest(BaseModel):
    reason: ReportReason
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)


class ReportResponse(BaseModel):
    success: bool = True
    message: str = "Media reported successfully"
    report_id: str
    report_count: int


class VisibilityResponse(BaseModel):
    media_id: str
    status: ModerationStatus
    is_visible: bool


class StatusUpdateRequest(BaseModel):
    status: ModerationStatus
    admin_notes: Optional[str] = Field(default=None, max_length=ADMIN_NOTES_MAX_LENGTH)


class TransitionResponse(BaseModel):
    success: bool = True
    media_id: str
    previous_status: ModerationStatus
    record: ModerationRecord


class ReportCountResetRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=ADMIN_NOTES_MAX_LENGTH)


class ReportReviewRequest(BaseModel):
    status: ReportStatus
    admin_notes: Optional[str] = Field(default=None, max_length=ADMIN_NOTES_MAX_LENGTH)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def of(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(page=page, limit=limit, total=total, pages=(total + limit - 1) // limit)


class QueuePage(BaseModel):
    items: List[QueueItem]
    pagination: Pagination


class ReportList(BaseModel):
    reports: List[ReportEntry]
    pagination: Optional[Pagination] = None


class ActivityPage(BaseModel):
    entries: List[AuditEntry]
    pagination: Pagination
