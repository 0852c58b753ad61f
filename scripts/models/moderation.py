"""
Moderation record and classification data models.
Pydantic models for the per-media lifecycle tracked by the moderation engine.
"""

from datetime import datetime, timezone
from typing import Optional, List, Set
from pydantic import BaseModel, Field, field_validator

from models.enums import ModerationStatus, ClassifierVerdict


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MediaSummary(BaseModel):
    """
    Read-only view of an uploaded media item.
    Owned by the media catalog; the pipeline only needs owner and title.
    """
    media_id: str
    owner_id: str
    title: str = ""
    content_type: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class ModerationRecord(BaseModel):
    """
    One record per media item.
    Only the moderation engine writes status, flags and the escalation marker.
    """
    media_id: str
    status: ModerationStatus = ModerationStatus.PENDING
    flags: Set[str] = Field(default_factory=set)

    # Report escalation
    report_count: int = Field(ge=0, default=0)
    threshold_escalated: bool = False

    # Last classifier verdict applied (re-delivery of the same verdict is a no-op)
    last_verdict: Optional[ClassifierVerdict] = None
    classifier_confidence: Optional[float] = None
    classifier_reason: Optional[str] = None

    admin_notes: Optional[str] = None

    # Timestamps / actors
    created_at: datetime = Field(default_factory=utc_now)
    last_transition_at: Optional[datetime] = None
    last_transition_by: Optional[str] = None

    @property
    def is_visible(self) -> bool:
        """Rejected content is hidden from public listing."""
        return self.status != ModerationStatus.REJECTED


class ClassificationResult(BaseModel):
    """
    Verdict delivered by the classification adapter for one media item.
    Delivered at least once per upload.
    """
    media_id: str
    verdict: ClassifierVerdict
    flags: List[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0, default=0.0)
    reason: Optional[str] = None
    transcript: Optional[str] = None

    @field_validator("flags")
    @classmethod
    def _strip_flags(cls, flags: List[str]) -> List[str]:
        return [f.strip() for f in flags if f and f.strip()]


class ContentSignals(BaseModel):
    """Raw signals handed to a classifier (produced by extraction/transcription upstream)."""
    media_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    transcript: Optional[str] = None
    visual_tags: List[str] = Field(default_factory=list)
    content_type: Optional[str] = None


class UploadCompleted(BaseModel):
    """Event emitted by the upload flow once the media item is stored."""
    media_id: str
    owner_id: str
    title: str = ""
    content_type: Optional[str] = None
    description: Optional[str] = None
    transcript: Optional[str] = None
    visual_tags: List[str] = Field(default_factory=list)

    def to_summary(self) -> MediaSummary:
        return MediaSummary(
            media_id=self.media_id,
            owner_id=self.owner_id,
            title=self.title,
            content_type=self.content_type,
        )

    def to_signals(self) -> ContentSignals:
        return ContentSignals(
            media_id=self.media_id,
            title=self.title,
            description=self.description,
            transcript=self.transcript,
            visual_tags=self.visual_tags,
            content_type=self.content_type,
        )


class QueueItem(BaseModel):
    """Moderation record joined with its media summary, for the admin queue."""
    record: ModerationRecord
    media: Optional[MediaSummary] = None
