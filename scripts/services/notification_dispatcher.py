"""
Notification Dispatcher.
Turns notification intents into one message per recipient and hands each to
an external transport. Delivery is best-effort: nothing raised here ever
reaches the moderation engine, because the transition that produced the
intent is already committed and audited.
"""

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from lib.metrics import metrics
from lib.stores import ModerationStore
from models.enums import NotificationAudience, TemplateKind
from models.errors import DirectoryUnavailableError, TransportError
from models.notification import NotificationIntent, RenderedMessage

logger = logging.getLogger(__name__)


# ============================================
# Collaborator interfaces
# ============================================

class UserDirectory(ABC):
    """Looks up who counts as an active admin."""

    @abstractmethod
    def active_admin_ids(self) -> List[str]:
        pass


class StaticUserDirectory(UserDirectory):
    """Admin ids from configuration."""

    def __init__(self, admin_ids: Optional[List[str]] = None):
        self.admin_ids = list(admin_ids or [])

    def active_admin_ids(self) -> List[str]:
        return list(self.admin_ids)


class PostgresUserDirectory(UserDirectory):
    """Admins from the users table (role = 'admin', is_active)."""

    def __init__(self, database):
        self.db = database

    def active_admin_ids(self) -> List[str]:
        try:
            return self.db.get_active_admin_ids()
        except Exception as e:
            raise DirectoryUnavailableError(f"Admin lookup failed: {e}") from e


class NotificationTransport(ABC):
    """Delivery channel (email/push live behind it)."""

    @abstractmethod
    def send(self, message: RenderedMessage) -> bool:
        """Deliver one message. Returns False or raises TransportError on failure."""
        pass


class LoggingTransport(NotificationTransport):
    """Writes messages to the log; used in development."""

    def send(self, message: RenderedMessage) -> bool:
        logger.info(f"[notify:{message.template_kind.value}] to={message.recipient_id} {message.title}")
        return True


class KafkaNotificationTransport(NotificationTransport):
    """Publishes rendered messages for the delivery service to pick up."""

    def __init__(self, broker):
        self.broker = broker

    def send(self, message: RenderedMessage) -> bool:
        return self.broker.publish_notification(message.model_dump(mode="json"))


# ============================================
# Templates
# ============================================

TEMPLATES: Dict[TemplateKind, Tuple[str, str]] = {
    TemplateKind.FLAGGED_FOR_REVIEW: (
        "Content Moderation Alert",
        'Content "{title}" requires review. Flags: {flags}.',
    ),
    TemplateKind.CONTENT_REJECTED: (
        "Content Removed",
        'Content "{title}" has been removed. Reason: {reason}. Flags: {flags}.',
    ),
    TemplateKind.REPORT_THRESHOLD_REACHED: (
        "Content Reported Multiple Times",
        'Content "{title}" has been reported {report_count} times and is now under review.',
    ),
    TemplateKind.CONTENT_REPORTED: (
        "New Content Report",
        '{reporter} reported "{title}" - Reason: {reason}. Total reports: {report_count}.',
    ),
}


def render(intent: NotificationIntent, recipient_id: str) -> RenderedMessage:
    """Render the intent's template for one recipient."""
    title, body = TEMPLATES[intent.template_kind]
    payload = intent.payload
    return RenderedMessage(
        recipient_id=recipient_id,
        template_kind=intent.template_kind,
        title=title,
        body=body.format(
            title=payload.media_title or payload.media_id,
            flags=", ".join(payload.flags) or "none",
            reason=payload.reason or "Content violates community guidelines",
            report_count=payload.report_count,
            reporter=payload.reporter_id or "A user",
        ),
        priority=payload.priority,
        payload=payload,
    )


# ============================================
# Dispatcher
# ============================================

@dataclass
class DispatchReport:
    """What happened to one intent."""
    intent_id: str
    template_kind: TemplateKind
    recipients: List[str] = field(default_factory=list)
    delivered: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    dropped_reason: Optional[str] = None


class NotificationDispatcher:
    """Resolves audiences, renders and sends. Never raises."""

    def __init__(self, directory: UserDirectory, transport: NotificationTransport):
        self.directory = directory
        self.transport = transport

    def resolve_recipients(self, intent: NotificationIntent) -> List[str]:
        if intent.audience == NotificationAudience.OWNER:
            return [intent.payload.owner_id] if intent.payload.owner_id else []
        # Preserve order, drop duplicates
        return list(dict.fromkeys(self.directory.active_admin_ids()))

    def dispatch(self, intent: NotificationIntent) -> DispatchReport:
        report = DispatchReport(intent_id=intent.id, template_kind=intent.template_kind)
        kind = intent.template_kind.value

        try:
            report.recipients = self.resolve_recipients(intent)
        except Exception as e:
            report.dropped_reason = f"recipient lookup failed: {e}"
            logger.warning(f"Dropping notification {intent.id} ({kind}) for media {intent.payload.media_id}: {e}")
            metrics.record_notification_drop(kind, "directory")
            return report

        if not report.recipients:
            report.dropped_reason = "no recipients"
            logger.warning(f"Notification {intent.id} ({kind}) has no {intent.audience.value} recipients")
            metrics.record_notification_drop(kind, "no_recipients")
            return report

        for recipient_id in report.recipients:
            try:
                message = render(intent, recipient_id)
                success = self.transport.send(message)
            except TransportError as e:
                success = False
                logger.error(f"Transport failed for {recipient_id} on notification {intent.id} ({kind}): {e}")
            except Exception as e:
                success = False
                logger.error(f"Unexpected error notifying {recipient_id} on notification {intent.id} ({kind}): {e}")
            else:
                if not success:
                    logger.error(f"Transport rejected message for {recipient_id} on notification {intent.id} ({kind})")

            metrics.record_notification(kind, success)
            if success:
                report.delivered.append(recipient_id)
            else:
                report.failed.append(recipient_id)

        logger.info(
            f"Notification {intent.id} ({kind}) for media {intent.payload.media_id}: "
            f"{len(report.delivered)} delivered, {len(report.failed)} failed"
        )
        return report

    def drain_outbox(self, store: ModerationStore, limit: int = 100) -> List[DispatchReport]:
        """
        Dispatch every pending intent in the outbox.
        Intents are marked dispatched whatever the delivery outcome.
        """
        reports = []
        for intent in store.pending_intents(limit=limit):
            reports.append(self.dispatch(intent))
            store.mark_dispatched(intent.id)
        metrics.record_outbox_drain(len(reports))
        return reports


class OutboxRelay:
    """
    Drains the outbox after each committed transition.
    With an executor the drain runs in the background; without one it runs
    inline on the caller's thread (still after commit).
    """

    def __init__(
        self,
        store: ModerationStore,
        dispatcher: NotificationDispatcher,
        executor: Optional[Executor] = None,
        batch_size: int = 100,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.executor = executor
        self.batch_size = batch_size
        self._drain_lock = threading.Lock()

    def wake(self) -> None:
        if self.executor is None:
            self.drain()
        else:
            self.executor.submit(self.drain)

    def drain(self) -> List[DispatchReport]:
        reports: List[DispatchReport] = []
        with self._drain_lock:
            try:
                while True:
                    batch = self.dispatcher.drain_outbox(self.store, limit=self.batch_size)
                    reports.extend(batch)
                    if len(batch) < self.batch_size:
                        break
            except Exception as e:
                # Undelivered intents stay in the outbox for the next drain
                logger.error(f"Outbox drain failed: {e}")
        return reports

    def shutdown(self) -> None:
        if self.executor is not None:
            self.executor.shutdown(wait=True)
