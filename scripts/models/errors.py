"""
Exception hierarchy for the moderation pipeline.

Policy and validation errors are raised before anything is written, so the
caller can rely on "no state change, no audit entry" when one surfaces.
Dependency errors are absorbed by the component that talks to the
dependency; only consistency errors are retried.
"""

from typing import Optional


class ModerationError(Exception):
    """Base class for all pipeline errors."""


# Validation

class InvalidInputError(ModerationError):
    """Malformed input rejected before any state is read."""


class MediaNotFoundError(ModerationError):
    def __init__(self, media_id: str):
        super().__init__(f"Media not found: {media_id}")
        self.media_id = media_id


class ReportNotFoundError(ModerationError):
    def __init__(self, report_id: str):
        super().__init__(f"Report not found: {report_id}")
        self.report_id = report_id


# Policy

class PolicyError(ModerationError):
    """A well-formed request the moderation rules refuse."""


class SelfReportError(PolicyError):
    def __init__(self, media_id: str, reporter_id: str):
        super().__init__("You cannot report your own content")
        self.media_id = media_id
        self.reporter_id = reporter_id


class DuplicateReportError(PolicyError):
    def __init__(self, media_id: str, reporter_id: str):
        super().__init__("You have already reported this media")
        self.media_id = media_id
        self.reporter_id = reporter_id


class InvalidTransitionError(PolicyError):
    def __init__(self, media_id: str, current: str, requested: str, detail: Optional[str] = None):
        message = f"Cannot move media {media_id} from {current} to {requested}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.media_id = media_id
        self.current = current
        self.requested = requested


# Dependency

class DependencyError(ModerationError):
    """An external collaborator failed or did not answer in time."""


class ClassifierUnavailableError(DependencyError):
    pass


class DirectoryUnavailableError(DependencyError):
    pass


class TransportError(DependencyError):
    pass


# Consistency

class ConcurrencyConflictError(ModerationError):
    """Optimistic-concurrency or lock conflict; safe to retry."""


class TransientModerationError(ModerationError):
    """A retryable conflict persisted past the retry budget."""
