"""
Notification intent models.
Intents are produced by the moderation engine and consumed by the dispatcher;
they live in the outbox only until drained.
"""

from datetime import datetime
from typing import Optional, List
from uuid import uuid4
from pydantic import BaseModel, Field

from models.enums import NotificationAudience, TemplateKind
from models.moderation import utc_now


class NotificationPayload(BaseModel):
    """Data a template needs to render a message."""
    media_id: str
    media_title: str = ""
    owner_id: Optional[str] = None
    flags: List[str] = Field(default_factory=list)
    report_count: int = 0
    reason: Optional[str] = None
    reporter_id: Optional[str] = None
    report_id: Optional[str] = None
    priority: str = "medium"  # medium | high


class NotificationIntent(BaseModel):
    """Instruction to inform an audience; delivery is best-effort."""
    id: str = Field(default_factory=lambda: str(uuid4()))
    audience: NotificationAudience
    template_kind: TemplateKind
    payload: NotificationPayload
    created_at: datetime = Field(default_factory=utc_now)


class RenderedMessage(BaseModel):
    """One message for one recipient."""
    recipient_id: str
    template_kind: TemplateKind
    title: str
    body: str
    priority: str = "medium"
    payload: NotificationPayload
