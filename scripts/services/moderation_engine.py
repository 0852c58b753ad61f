"""
Moderation Engine.
The per-media state machine: applies classifier verdicts, report-threshold
escalations and admin decisions, and decides which notifications follow.

Each transition writes the new record state, its audit entry and any
notification intents in one store transaction; the outbox relay is woken
only after that transaction has committed.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from lib.config import ModerationSettings
from lib.metrics import metrics
from lib.stores import ModerationStore, StoreTransaction
from models.audit import AuditEntry
from models.enums import (
    AuditAction, ClassifierVerdict, ModerationStatus, NotificationAudience,
    SystemActor, TemplateKind, TERMINAL_STATUSES
)
from models.errors import InvalidInputError, InvalidTransitionError, MediaNotFoundError
from models.moderation import (
    ClassificationResult, MediaSummary, ModerationRecord, QueueItem, utc_now
)
from models.notification import NotificationIntent, NotificationPayload
from services.audit_service import AuditRecorder

logger = logging.getLogger(__name__)

# Status a classifier verdict moves a pending record to
VERDICT_TARGETS = {
    ClassifierVerdict.CLEAN: ModerationStatus.APPROVED,
    ClassifierVerdict.FLAGGED: ModerationStatus.UNDER_REVIEW,
    ClassifierVerdict.REJECTED: ModerationStatus.REJECTED,
}

ADMIN_DECISIONS = (
    ModerationStatus.APPROVED,
    ModerationStatus.REJECTED,
    ModerationStatus.UNDER_REVIEW,
)

# Default admin queue: everything still waiting on a decision
OPEN_STATUSES = (ModerationStatus.PENDING, ModerationStatus.UNDER_REVIEW)


@dataclass
class TransitionOutcome:
    """Result of applying one event to a moderation record."""
    media_id: str
    previous_status: ModerationStatus
    record: ModerationRecord
    audit_entry: Optional[AuditEntry] = None
    intents: List[NotificationIntent] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """True when the status moved."""
        return self.record.status != self.previous_status

    @property
    def recorded(self) -> bool:
        """True when the event produced an audit entry."""
        return self.audit_entry is not None


class ModerationEngine:
    """
    Sole writer of ModerationRecord.status, flags and the escalation marker.
    """

    def __init__(
        self,
        store: ModerationStore,
        settings: Optional[ModerationSettings] = None,
        audit: Optional[AuditRecorder] = None,
        relay=None,
    ):
        self.store = store
        self.settings = settings or ModerationSettings()
        self.audit = audit or AuditRecorder(store)
        self.relay = relay

    @property
    def report_threshold(self) -> int:
        return self.settings.report_threshold

    # ============================================
    # Records
    # ============================================

    def register_media(self, media: MediaSummary, actor_id: str = SystemActor.UPLOAD.value) -> ModerationRecord:
        """Called on upload completion: store the media summary and open a pending record."""
        self.store.upsert_media(media)
        return self.ensure_record(media.media_id, actor_id=actor_id)

    def ensure_record(self, media_id: str, actor_id: str = SystemActor.UPLOAD.value) -> ModerationRecord:
        """Return the record for media_id, creating it as pending if it does not exist yet."""
        record, created = self.store.create_record(
            ModerationRecord(media_id=media_id),
            AuditEntry(
                subject_id=media_id,
                action=AuditAction.MEDIA_REGISTERED,
                actor_id=actor_id,
                new_status=ModerationStatus.PENDING,
            ),
        )
        if created:
            logger.info(f"Opened moderation record for media {media_id}")
        return record

    def get_record(self, media_id: str) -> ModerationRecord:
        record = self.store.get_record(media_id)
        if record is None:
            raise MediaNotFoundError(media_id)
        return record

    def is_visible(self, media_id: str) -> bool:
        """Contract for the content-serving layer: everything except rejected is listable."""
        return self.get_record(media_id).is_visible

    # ============================================
    # Events
    # ============================================

    def apply_classification(self, result: ClassificationResult) -> TransitionOutcome:
        """
        Apply a classifier verdict. Safe to call again with the same verdict
        (at-least-once delivery); never moves a terminal record.
        """
        with self.store.transaction(result.media_id) as tx:
            outcome = self._apply_classification(tx, result)
        self._after_commit(outcome)
        return outcome

    def evaluate_report_threshold(self, media_id: str) -> TransitionOutcome:
        """
        Escalate to under_review the first time report_count reaches the
        threshold. Re-evaluating after the crossing is a no-op.
        """
        with self.store.transaction(media_id) as tx:
            outcome = self._evaluate_threshold(tx, media_id)
        self._after_commit(outcome)
        return outcome

    def apply_admin_decision(
        self,
        media_id: str,
        admin_id: str,
        decision: ModerationStatus,
        admin_notes: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TransitionOutcome:
        """Apply an explicit admin decision (approve, reject, or hold for review)."""
        decision = ModerationStatus(decision)
        if decision not in ADMIN_DECISIONS:
            raise InvalidInputError(f"Invalid status. Must be one of: {', '.join(s.value for s in ADMIN_DECISIONS)}")
        if not admin_id:
            raise InvalidInputError("admin_id is required")
        if admin_notes is not None:
            admin_notes = admin_notes.strip() or None
        if admin_notes and len(admin_notes) > self.settings.admin_notes_max_length:
            raise InvalidInputError(
                f"admin_notes must be at most {self.settings.admin_notes_max_length} characters"
            )

        with self.store.transaction(media_id) as tx:
            outcome = self._apply_admin_decision(tx, media_id, admin_id, decision, admin_notes, ip_address)
        self._after_commit(outcome)
        return outcome

    def reset_report_count(
        self,
        media_id: str,
        admin_id: str,
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> ModerationRecord:
        """Admin reset: report_count back to zero and the threshold re-armed. Reports are kept."""
        if not admin_id:
            raise InvalidInputError("admin_id is required")
        with self.store.transaction(media_id) as tx:
            record = self._require(tx, media_id)
            previous_count = record.report_count
            record.report_count = 0
            record.threshold_escalated = False
            tx.save_record(record)
            self.audit.record(
                AuditEntry(
                    subject_id=media_id,
                    action=AuditAction.REPORT_COUNT_RESET,
                    actor_id=admin_id,
                    reason=reason,
                    metadata={"previous_count": previous_count},
                    ip_address=ip_address,
                ),
                tx=tx,
            )
        logger.info(f"Report count for media {media_id} reset from {previous_count} by {admin_id}")
        return record

    # ============================================
    # Queries
    # ============================================

    def list_queue(
        self,
        status: Optional[ModerationStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[QueueItem], int]:
        """Paginated admin queue; defaults to pending and under_review."""
        statuses = [status] if status else list(OPEN_STATUSES)
        return self.store.list_records(statuses, offset=(page - 1) * limit, limit=limit)

    def list_stale_pending(self, older_than_minutes: Optional[int] = None, limit: int = 100) -> List[QueueItem]:
        """Pending records whose classification never arrived within the window."""
        minutes = older_than_minutes or self.settings.stale_pending_minutes
        return self.store.list_stale_pending(utc_now() - timedelta(minutes=minutes), limit=limit)

    def status_summary(self) -> Dict[str, int]:
        counts = self.store.count_by_status()
        metrics.update_queue_depth(counts)
        return counts

    # ============================================
    # Transition rules
    # ============================================

    def _apply_classification(self, tx: StoreTransaction, result: ClassificationResult) -> TransitionOutcome:
        media_id = result.media_id
        record = self._require(tx, media_id)
        previous = record.status
        target = VERDICT_TARGETS[result.verdict]

        if record.last_verdict == result.verdict or (previous in TERMINAL_STATUSES and previous == target):
            logger.debug(f"Verdict {result.verdict.value} for media {media_id} already applied")
            return TransitionOutcome(media_id=media_id, previous_status=previous, record=record)

        if previous in TERMINAL_STATUSES:
            metrics.record_policy_rejection("classifier_terminal")
            raise InvalidTransitionError(
                media_id, previous.value, target.value,
                "classifier verdicts cannot move a terminal state; an admin decision is required",
            )

        record.flags.update(result.flags)
        record.last_verdict = result.verdict
        record.classifier_confidence = result.confidence
        record.classifier_reason = result.reason

        if previous == ModerationStatus.UNDER_REVIEW and target != ModerationStatus.REJECTED:
            # Already waiting on a human; keep the new flags for the reviewer
            tx.save_record(record)
            return TransitionOutcome(media_id=media_id, previous_status=previous, record=record)

        intents: List[NotificationIntent] = []
        if target == ModerationStatus.UNDER_REVIEW:
            intents.append(self._intent(tx, record, NotificationAudience.ADMINS, TemplateKind.FLAGGED_FOR_REVIEW, result.reason))
        elif target == ModerationStatus.REJECTED:
            intents.append(self._intent(tx, record, NotificationAudience.OWNER, TemplateKind.CONTENT_REJECTED, result.reason))
            intents.append(self._intent(tx, record, NotificationAudience.ADMINS, TemplateKind.CONTENT_REJECTED, result.reason))

        return self._transition(
            tx, record, target,
            actor_id=SystemActor.CLASSIFIER.value,
            action=AuditAction.CLASSIFICATION_APPLIED,
            reason=result.reason,
            metadata={
                "verdict": result.verdict.value,
                "flags": sorted(result.flags),
                "confidence": result.confidence,
            },
            intents=intents,
        )

    def _evaluate_threshold(self, tx: StoreTransaction, media_id: str) -> TransitionOutcome:
        record = self._require(tx, media_id)
        previous = record.status

        if record.report_count < self.report_threshold or record.threshold_escalated:
            return TransitionOutcome(media_id=media_id, previous_status=previous, record=record)

        # No escalation for rejected items; the marker stays unset until one fires
        if previous == ModerationStatus.REJECTED:
            return TransitionOutcome(media_id=media_id, previous_status=previous, record=record)

        record.threshold_escalated = True
        reason = f"Content has been reported {record.report_count} times"
        record.flags.add("multiple_reports")
        outcome = self._transition(
            tx, record, ModerationStatus.UNDER_REVIEW,
            actor_id=SystemActor.REPORT_THRESHOLD.value,
            action=AuditAction.REPORT_THRESHOLD_REACHED,
            reason=reason,
            metadata={"report_count": record.report_count, "threshold": self.report_threshold},
            intents=[
                self._intent(tx, record, NotificationAudience.ADMINS, TemplateKind.REPORT_THRESHOLD_REACHED, reason),
            ],
        )
        metrics.record_escalation()
        return outcome

    def _apply_admin_decision(
        self,
        tx: StoreTransaction,
        media_id: str,
        admin_id: str,
        decision: ModerationStatus,
        admin_notes: Optional[str],
        ip_address: Optional[str],
    ) -> TransitionOutcome:
        record = self._require(tx, media_id)
        previous = record.status

        if decision != ModerationStatus.UNDER_REVIEW:
            if decision == previous:
                metrics.record_policy_rejection("admin_same_status")
                raise InvalidTransitionError(media_id, previous.value, decision.value, f"media is already {previous.value}")
            if previous == ModerationStatus.APPROVED:
                metrics.record_policy_rejection("admin_terminal")
                raise InvalidTransitionError(
                    media_id, previous.value, decision.value,
                    "approved content must be placed under review before it can be rejected",
                )

        # Decisions outside the under_review path override the normal flow
        override = previous != ModerationStatus.UNDER_REVIEW and decision != ModerationStatus.UNDER_REVIEW
        if admin_notes:
            record.admin_notes = admin_notes

        intents: List[NotificationIntent] = []
        if decision == ModerationStatus.REJECTED:
            reason = admin_notes or record.classifier_reason
            intents.append(self._intent(tx, record, NotificationAudience.OWNER, TemplateKind.CONTENT_REJECTED, reason))

        return self._transition(
            tx, record, decision,
            actor_id=admin_id,
            action=AuditAction.ADMIN_STATUS_UPDATE,
            reason=admin_notes or ("override" if override else None),
            metadata={"status": decision.value, "admin_notes": admin_notes, "override": override},
            intents=intents,
            ip_address=ip_address,
        )

    # ============================================
    # Helpers
    # ============================================

    def _require(self, tx: StoreTransaction, media_id: str) -> ModerationRecord:
        if tx.record is None:
            raise MediaNotFoundError(media_id)
        return tx.record

    def _transition(
        self,
        tx: StoreTransaction,
        record: ModerationRecord,
        new_status: ModerationStatus,
        actor_id: str,
        action: AuditAction,
        reason: Optional[str],
        metadata: dict,
        intents: List[NotificationIntent],
        ip_address: Optional[str] = None,
    ) -> TransitionOutcome:
        """Write state, audit entry and intents into the same unit."""
        previous = record.status
        record.status = new_status
        record.last_transition_at = utc_now()
        record.last_transition_by = actor_id
        tx.save_record(record)

        entry = self.audit.record(
            AuditEntry(
                subject_id=record.media_id,
                action=action,
                actor_id=actor_id,
                reason=reason,
                metadata=metadata,
                previous_status=previous,
                new_status=new_status,
                ip_address=ip_address,
            ),
            tx=tx,
        )
        for intent in intents:
            tx.enqueue(intent)

        return TransitionOutcome(
            media_id=record.media_id,
            previous_status=previous,
            record=record,
            audit_entry=entry,
            intents=intents,
        )

    def _intent(
        self,
        tx: StoreTransaction,
        record: ModerationRecord,
        audience: NotificationAudience,
        template_kind: TemplateKind,
        reason: Optional[str] = None,
    ) -> NotificationIntent:
        media = tx.get_media()
        return NotificationIntent(
            audience=audience,
            template_kind=template_kind,
            payload=NotificationPayload(
                media_id=record.media_id,
                media_title=media.title if media else "",
                owner_id=media.owner_id if media else None,
                flags=sorted(record.flags),
                report_count=record.report_count,
                reason=reason,
            ),
        )

    def _after_commit(self, outcome: TransitionOutcome) -> None:
        if not outcome.recorded:
            return
        entry = outcome.audit_entry
        metrics.record_transition(outcome.previous_status.value, outcome.record.status.value, entry.actor_id)
        logger.info(
            f"Media {outcome.media_id}: {outcome.previous_status.value} -> {outcome.record.status.value} "
            f"({entry.action.value} by {entry.actor_id})"
        )
        if outcome.intents and self.relay is not None:
            self.relay.wake()
