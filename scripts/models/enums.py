"""
Enumeration definitions for the media moderation pipeline.
Lifecycle states, classifier verdicts, report reasons and notification kinds.
"""

from enum import Enum


class ModerationStatus(str, Enum):
    """Lifecycle state of a media item's moderation record."""
    PENDING = "pending"             # Awaiting classifier verdict
    UNDER_REVIEW = "under_review"   # Waiting on a human decision
    APPROVED = "approved"           # Visible on the platform
    REJECTED = "rejected"           # Hidden from public listing


TERMINAL_STATUSES = frozenset({ModerationStatus.APPROVED, ModerationStatus.REJECTED})


class ClassifierVerdict(str, Enum):
    """Verdict returned by the content-safety classifier."""
    CLEAN = "clean"
    FLAGGED = "flagged"
    REJECTED = "rejected"


class ReportReason(str, Enum):
    """Why a user reported a media item."""
    INAPPROPRIATE_CONTENT = "inappropriate_content"
    NON_GOSPEL_CONTENT = "non_gospel_content"
    EXPLICIT_LANGUAGE = "explicit_language"
    VIOLENCE = "violence"
    SEXUAL_CONTENT = "sexual_content"
    BLASPHEMY = "blasphemy"
    SPAM = "spam"
    COPYRIGHT = "copyright"
    OTHER = "other"


class ReportStatus(str, Enum):
    """Review state of an individual report."""
    PENDING = "pending"
    REVIEWED = "reviewed"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class NotificationAudience(str, Enum):
    """Who a notification intent is addressed to."""
    ADMINS = "admins"
    OWNER = "owner"


class TemplateKind(str, Enum):
    """Message template used to render a notification."""
    FLAGGED_FOR_REVIEW = "flagged_for_review"
    CONTENT_REJECTED = "content_rejected"
    REPORT_THRESHOLD_REACHED = "report_threshold_reached"
    CONTENT_REPORTED = "content_reported"


class AuditAction(str, Enum):
    """Actions written to the audit trail."""
    MEDIA_REGISTERED = "media_registered"
    CLASSIFICATION_APPLIED = "classification_applied"
    REPORT_THRESHOLD_REACHED = "report_threshold_reached"
    ADMIN_STATUS_UPDATE = "update_moderation_status"
    REPORT_SUBMITTED = "report_submitted"
    REPORT_REVIEWED = "report_reviewed"
    REPORT_COUNT_RESET = "report_count_reset"


# Actions that correspond to a row of the lifecycle transition table
TRANSITION_ACTIONS = frozenset({
    AuditAction.CLASSIFICATION_APPLIED,
    AuditAction.REPORT_THRESHOLD_REACHED,
    AuditAction.ADMIN_STATUS_UPDATE,
})


class SubjectType(str, Enum):
    """Kind of entity an audit entry is about."""
    MEDIA = "media"
    REPORT = "report"
    USER = "user"


class SystemActor(str, Enum):
    """Non-human actors that drive transitions."""
    CLASSIFIER = "system:classifier"
    REPORT_THRESHOLD = "system:report-threshold"
    UPLOAD = "system:upload"
