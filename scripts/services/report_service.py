"""
Report Aggregator.
Accepts user reports, enforces one report per reporter per media item,
keeps the report counter exact under concurrent submissions, and asks the
moderation engine to re-check the escalation threshold.
"""

import logging
import time
from typing import Callable, List, Optional, Tuple, TypeVar

from pydantic import ValidationError

from lib.config import ModerationSettings
from lib.metrics import metrics
from lib.stores import ModerationStore
from models.audit import AuditEntry
from models.enums import (
    AuditAction, NotificationAudience, ReportReason, ReportStatus, SubjectType, TemplateKind
)
from models.errors import (
    ConcurrencyConflictError, DuplicateReportError, InvalidInputError,
    MediaNotFoundError, ReportNotFoundError, SelfReportError, TransientModerationError
)
from models.moderation import utc_now
from models.notification import NotificationIntent, NotificationPayload
from models.report import ReportEntry, ReportSubmission
from services.audit_service import AuditRecorder
from services.moderation_engine import ModerationEngine

logger = logging.getLogger(__name__)

T = TypeVar("T")

REVIEW_STATUSES = (ReportStatus.REVIEWED, ReportStatus.RESOLVED, ReportStatus.DISMISSED)


class ReportAggregator:
    """Entry point for user reports and the admin report-review flow."""

    def __init__(
        self,
        store: ModerationStore,
        engine: ModerationEngine,
        settings: Optional[ModerationSettings] = None,
        audit: Optional[AuditRecorder] = None,
        retry_backoff_seconds: float = 0.05,
    ):
        self.store = store
        self.engine = engine
        self.settings = settings or engine.settings
        self.audit = audit or engine.audit
        self.retry_backoff_seconds = retry_backoff_seconds

    # ============================================
    # Submission
    # ============================================

    @metrics.track_operation("submit_report")
    def submit_report(
        self,
        media_id: str,
        reporter_id: str,
        reason,
        description: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> ReportSubmission:
        """
        Record a report and bump the media item's report count.

        Raises SelfReportError / DuplicateReportError (nothing written),
        MediaNotFoundError, InvalidInputError, or TransientModerationError
        once the conflict retries are exhausted.
        """
        if not reporter_id:
            raise InvalidInputError("reporter_id is required")
        try:
            reason = ReportReason(reason)
        except ValueError:
            raise InvalidInputError(
                f"Invalid reason. Must be one of: {', '.join(r.value for r in ReportReason)}"
            )
        if description is not None:
            description = description.strip() or None
        if description and len(description) > self.settings.report_description_max_length:
            raise InvalidInputError(
                f"description must be at most {self.settings.report_description_max_length} characters"
            )

        media = self.store.get_media(media_id)
        if media is None or self.store.get_record(media_id) is None:
            raise MediaNotFoundError(media_id)

        if media.owner_id == reporter_id:
            metrics.record_report(reason.value, "self_report")
            metrics.record_policy_rejection("self_report")
            raise SelfReportError(media_id, reporter_id)

        try:
            report = ReportEntry(
                media_id=media_id,
                reporter_id=reporter_id,
                reason=reason,
                description=description,
            )
        except ValidationError as e:
            raise InvalidInputError(str(e)) from e

        try:
            report_count = self._with_retries(
                "submit_report",
                lambda: self._insert_and_count(report, ip_address),
            )
        except DuplicateReportError:
            metrics.record_report(reason.value, "duplicate")
            metrics.record_policy_rejection("duplicate_report")
            raise

        metrics.record_report(reason.value, "accepted")
        logger.info(f"Report {report.id} on media {media_id} by {reporter_id} ({reason.value}); count={report_count}")

        # Threshold check runs as its own locked unit and re-reads the count
        try:
            self._with_retries(
                "evaluate_report_threshold",
                lambda: self.engine.evaluate_report_threshold(media_id),
            )
        except TransientModerationError as e:
            # The report is committed; the next report re-runs the check
            logger.error(f"Threshold evaluation for media {media_id} gave up: {e}")

        return ReportSubmission(report=report, report_count=report_count)

    def _insert_and_count(self, report: ReportEntry, ip_address: Optional[str]) -> int:
        with self.store.transaction(report.media_id) as tx:
            if tx.record is None:
                raise MediaNotFoundError(report.media_id)
            tx.insert_report(report)
            report_count = tx.increment_report_count()
            self.audit.record(
                AuditEntry(
                    subject_id=report.media_id,
                    action=AuditAction.REPORT_SUBMITTED,
                    actor_id=report.reporter_id,
                    reason=report.reason.value,
                    metadata={"report_id": report.id, "report_count": report_count},
                    ip_address=ip_address,
                ),
                tx=tx,
            )
            tx.enqueue(self._report_notice(tx, report, report_count))
        if self.engine.relay is not None:
            self.engine.relay.wake()
        return report_count

    def _report_notice(self, tx, report: ReportEntry, report_count: int) -> NotificationIntent:
        media = tx.get_media()
        record = tx.record
        return NotificationIntent(
            audience=NotificationAudience.ADMINS,
            template_kind=TemplateKind.CONTENT_REPORTED,
            payload=NotificationPayload(
                media_id=report.media_id,
                media_title=media.title if media else "",
                owner_id=media.owner_id if media else None,
                flags=sorted(record.flags) if record else [],
                report_count=report_count,
                reason=report.reason.value,
                reporter_id=report.reporter_id,
                report_id=report.id,
                priority="high" if report_count >= self.engine.report_threshold else "medium",
            ),
        )

    def _with_retries(self, operation: str, fn: Callable[[], T]) -> T:
        attempts = self.settings.increment_max_retries
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except ConcurrencyConflictError as e:
                metrics.record_conflict_retry(operation)
                if attempt == attempts:
                    raise TransientModerationError(
                        f"{operation} still conflicting after {attempts} attempts"
                    ) from e
                logger.warning(f"{operation} conflict (attempt {attempt}/{attempts}): {e}")
                time.sleep(self.retry_backoff_seconds * attempt)

    # ============================================
    # Admin review
    # ============================================

    def review_report(
        self,
        report_id: str,
        admin_id: str,
        status,
        admin_notes: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> ReportEntry:
        """Mark a report reviewed, resolved or dismissed. Media status is not touched."""
        try:
            status = ReportStatus(status)
        except ValueError:
            status = None
        if status not in REVIEW_STATUSES:
            raise InvalidInputError(
                f"Invalid status. Must be one of: {', '.join(s.value for s in REVIEW_STATUSES)}"
            )
        if not admin_id:
            raise InvalidInputError("admin_id is required")
        if admin_notes is not None:
            admin_notes = admin_notes.strip() or None
        if admin_notes and len(admin_notes) > self.settings.admin_notes_max_length:
            raise InvalidInputError(
                f"admin_notes must be at most {self.settings.admin_notes_max_length} characters"
            )

        located = self.store.get_report(report_id)
        if located is None:
            raise ReportNotFoundError(report_id)

        with self.store.transaction(located.media_id) as tx:
            # Re-read under the media lock
            report = tx.get_report(report_id)
            if report is None:
                raise ReportNotFoundError(report_id)
            previous = report.status
            report.status = status
            report.reviewed_by = admin_id
            report.reviewed_at = utc_now()
            if admin_notes:
                report.admin_notes = admin_notes
            tx.save_report(report)
            self.audit.record(
                AuditEntry(
                    subject_id=report.id,
                    subject_type=SubjectType.REPORT,
                    action=AuditAction.REPORT_REVIEWED,
                    actor_id=admin_id,
                    reason=admin_notes,
                    metadata={
                        "media_id": report.media_id,
                        "previous_status": previous.value,
                        "status": status.value,
                    },
                    ip_address=ip_address,
                ),
                tx=tx,
            )

        logger.info(f"Report {report_id} marked {status.value} by {admin_id}")
        return report

    # ============================================
    # Queries
    # ============================================

    def list_reports(self, media_id: str) -> List[ReportEntry]:
        """Every report on a media item, newest first."""
        if self.store.get_record(media_id) is None:
            raise MediaNotFoundError(media_id)
        return self.store.list_reports(media_id)

    def list_pending_reports(self, page: int = 1, limit: int = 20) -> Tuple[List[ReportEntry], int]:
        return self.store.list_reports_by_status(
            ReportStatus.PENDING, offset=(page - 1) * limit, limit=limit
        )
