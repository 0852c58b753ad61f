"""
Storage interface for moderation records, reports, audit entries and the
notification outbox, plus the in-process implementation used for development
and tests.

All writes that must land together (a transition, its audit entry and the
notification intents it produced) go through a single StoreTransaction,
which holds the per-media lock for its whole lifetime.
"""

import copy
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from models.audit import AuditEntry, AuditQuery
from models.enums import ModerationStatus, ReportStatus
from models.errors import DuplicateReportError, MediaNotFoundError
from models.moderation import MediaSummary, ModerationRecord, QueueItem
from models.notification import NotificationIntent
from models.report import ReportEntry


# ============================================
# Interfaces
# ============================================

class StoreTransaction(ABC):
    """Unit of work scoped to one media item, executed under its lock."""

    record: Optional[ModerationRecord]

    @abstractmethod
    def get_media(self) -> Optional[MediaSummary]:
        """Media summary for this unit's media item, read on the same connection."""
        pass

    @abstractmethod
    def get_report(self, report_id: str) -> Optional[ReportEntry]:
        """Current state of a report, read under this unit's lock."""
        pass

    @abstractmethod
    def save_record(self, record: ModerationRecord) -> None:
        """Persist the record's new state."""
        pass

    @abstractmethod
    def increment_report_count(self) -> int:
        """Atomically add one to report_count and return the re-read value."""
        pass

    @abstractmethod
    def insert_report(self, report: ReportEntry) -> None:
        """Insert a report; raises DuplicateReportError on (media, reporter) clash."""
        pass

    @abstractmethod
    def save_report(self, report: ReportEntry) -> None:
        """Persist an admin review of an existing report."""
        pass

    @abstractmethod
    def append_audit(self, entry: AuditEntry) -> None:
        pass

    @abstractmethod
    def enqueue(self, intent: NotificationIntent) -> None:
        """Add a notification intent to the outbox."""
        pass


class ModerationStore(ABC):
    """Durable storage for the moderation pipeline."""

    # Media catalog (read-mostly copy of the upload service's data)

    @abstractmethod
    def upsert_media(self, media: MediaSummary) -> MediaSummary:
        pass

    @abstractmethod
    def get_media(self, media_id: str) -> Optional[MediaSummary]:
        pass

    # Moderation records

    @abstractmethod
    def get_record(self, media_id: str) -> Optional[ModerationRecord]:
        pass

    @abstractmethod
    def create_record(
        self, record: ModerationRecord, audit: Optional[AuditEntry] = None
    ) -> Tuple[ModerationRecord, bool]:
        """Insert the record if absent. Returns (record, created)."""
        pass

    @abstractmethod
    def transaction(self, media_id: str):
        """Context manager yielding a StoreTransaction for media_id."""
        pass

    @abstractmethod
    def list_records(
        self,
        statuses: Optional[Sequence[ModerationStatus]] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[QueueItem], int]:
        pass

    @abstractmethod
    def list_stale_pending(self, older_than: datetime, limit: int = 100) -> List[QueueItem]:
        pass

    @abstractmethod
    def count_by_status(self) -> Dict[str, int]:
        pass

    # Reports

    @abstractmethod
    def get_report(self, report_id: str) -> Optional[ReportEntry]:
        pass

    @abstractmethod
    def list_reports(self, media_id: str) -> List[ReportEntry]:
        pass

    @abstractmethod
    def list_reports_by_status(
        self, status: ReportStatus, offset: int = 0, limit: int = 20
    ) -> Tuple[List[ReportEntry], int]:
        pass

    # Audit

    @abstractmethod
    def append_audit(self, entry: AuditEntry) -> None:
        pass

    @abstractmethod
    def query_audit(self, query: AuditQuery) -> Tuple[List[AuditEntry], int]:
        pass

    # Outbox

    @abstractmethod
    def pending_intents(self, limit: int = 100) -> List[NotificationIntent]:
        pass

    @abstractmethod
    def mark_dispatched(self, intent_id: str) -> None:
        pass


# ============================================
# In-memory implementation
# ============================================

class _InMemoryTransaction(StoreTransaction):
    """
    Buffers every write and applies them on commit, so an exception raised
    inside the unit leaves the store untouched.
    """

    def __init__(self, store: "InMemoryModerationStore", media_id: str):
        self._store = store
        self._media_id = media_id
        committed = store._records.get(media_id)
        self.record = committed.model_copy(deep=True) if committed else None
        self._record_dirty = False
        self._new_reports: List[ReportEntry] = []
        self._updated_reports: List[ReportEntry] = []
        self._audit: List[AuditEntry] = []
        self._intents: List[NotificationIntent] = []

    def get_media(self) -> Optional[MediaSummary]:
        with self._store._guard:
            media = self._store._media.get(self._media_id)
            return media.model_copy() if media else None

    def get_report(self, report_id: str) -> Optional[ReportEntry]:
        for report in reversed(self._updated_reports):
            if report.id == report_id:
                return report.model_copy()
        with self._store._guard:
            report = self._store._reports.get(report_id)
            return report.model_copy() if report else None

    def save_record(self, record: ModerationRecord) -> None:
        self.record = record.model_copy(deep=True)
        self._record_dirty = True

    def increment_report_count(self) -> int:
        if self.record is None:
            raise MediaNotFoundError(self._media_id)
        self.record.report_count += 1
        self._record_dirty = True
        return self.record.report_count

    def insert_report(self, report: ReportEntry) -> None:
        key = (report.media_id, report.reporter_id)
        pending_keys = {(r.media_id, r.reporter_id) for r in self._new_reports}
        with self._store._guard:
            exists = key in self._store._report_keys
        if exists or key in pending_keys:
            raise DuplicateReportError(report.media_id, report.reporter_id)
        self._new_reports.append(report.model_copy())

    def save_report(self, report: ReportEntry) -> None:
        self._updated_reports.append(report.model_copy())

    def append_audit(self, entry: AuditEntry) -> None:
        self._audit.append(entry)

    def enqueue(self, intent: NotificationIntent) -> None:
        self._intents.append(intent)

    def commit(self) -> None:
        store = self._store
        with store._guard:
            for report in self._new_reports:
                key = (report.media_id, report.reporter_id)
                if key in store._report_keys:
                    raise DuplicateReportError(report.media_id, report.reporter_id)
            if self._record_dirty and self.record is not None:
                store._records[self._media_id] = self.record.model_copy(deep=True)
            for report in self._new_reports:
                store._reports[report.id] = report
                store._report_keys.add((report.media_id, report.reporter_id))
            for report in self._updated_reports:
                store._reports[report.id] = report
            store._audit.extend(self._audit)
            for intent in self._intents:
                store._outbox[intent.id] = intent


class InMemoryModerationStore(ModerationStore):
    """
    Process-local store.
    Per-media RLocks serialize transactions; one guard lock protects the dicts.
    """

    def __init__(self):
        self._guard = threading.RLock()
        self._media_locks: Dict[str, threading.RLock] = {}

        self._media: Dict[str, MediaSummary] = {}
        self._records: Dict[str, ModerationRecord] = {}
        self._reports: Dict[str, ReportEntry] = {}
        self._report_keys: set = set()
        self._audit: List[AuditEntry] = []
        self._outbox: Dict[str, NotificationIntent] = {}
        self._dispatched: Dict[str, NotificationIntent] = {}

    def _lock_for(self, media_id: str, create: bool = True) -> threading.RLock:
        with self._guard:
            lock = self._media_locks.get(media_id)
            if lock is None:
                lock = threading.RLock()
                # Unknown ids get a throwaway lock and are never remembered
                if create or media_id in self._records:
                    self._media_locks[media_id] = lock
            return lock

    # Media

    def upsert_media(self, media: MediaSummary) -> MediaSummary:
        with self._guard:
            self._media[media.media_id] = media.model_copy()
        return media

    def get_media(self, media_id: str) -> Optional[MediaSummary]:
        with self._guard:
            media = self._media.get(media_id)
            return media.model_copy() if media else None

    # Records

    def get_record(self, media_id: str) -> Optional[ModerationRecord]:
        with self._guard:
            record = self._records.get(media_id)
            return record.model_copy(deep=True) if record else None

    def create_record(
        self, record: ModerationRecord, audit: Optional[AuditEntry] = None
    ) -> Tuple[ModerationRecord, bool]:
        with self._lock_for(record.media_id), self._guard:
            existing = self._records.get(record.media_id)
            if existing is not None:
                return existing.model_copy(deep=True), False
            self._records[record.media_id] = record.model_copy(deep=True)
            if audit is not None:
                self._audit.append(audit)
            return record.model_copy(deep=True), True

    @contextmanager
    def transaction(self, media_id: str) -> Iterator[StoreTransaction]:
        while True:
            lock = self._lock_for(media_id, create=False)
            lock.acquire()
            with self._guard:
                # Snapshot under the guard: a throwaway lock only ever sees no record
                if self._media_locks.get(media_id) is lock or media_id not in self._records:
                    tx = _InMemoryTransaction(self, media_id)
                    break
            lock.release()
        try:
            yield tx
            tx.commit()
        finally:
            lock.release()

    def _queue_item(self, record: ModerationRecord) -> QueueItem:
        media = self._media.get(record.media_id)
        return QueueItem(
            record=record.model_copy(deep=True),
            media=media.model_copy() if media else None,
        )

    def list_records(
        self,
        statuses: Optional[Sequence[ModerationStatus]] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[QueueItem], int]:
        with self._guard:
            records = [
                r for r in self._records.values()
                if not statuses or r.status in statuses
            ]
            records.sort(key=lambda r: r.created_at, reverse=True)
            page = [self._queue_item(r) for r in records[offset:offset + limit]]
            return page, len(records)

    def list_stale_pending(self, older_than: datetime, limit: int = 100) -> List[QueueItem]:
        with self._guard:
            stale = [
                r for r in self._records.values()
                if r.status == ModerationStatus.PENDING and r.created_at <= older_than
            ]
            stale.sort(key=lambda r: r.created_at)
            return [self._queue_item(r) for r in stale[:limit]]

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in ModerationStatus}
        with self._guard:
            for record in self._records.values():
                counts[record.status.value] += 1
        return counts

    # Reports

    def get_report(self, report_id: str) -> Optional[ReportEntry]:
        with self._guard:
            report = self._reports.get(report_id)
            return report.model_copy() if report else None

    def list_reports(self, media_id: str) -> List[ReportEntry]:
        with self._guard:
            reports = [r.model_copy() for r in self._reports.values() if r.media_id == media_id]
        reports.sort(key=lambda r: r.created_at, reverse=True)
        return reports

    def list_reports_by_status(
        self, status: ReportStatus, offset: int = 0, limit: int = 20
    ) -> Tuple[List[ReportEntry], int]:
        with self._guard:
            reports = [r.model_copy() for r in self._reports.values() if r.status == status]
        reports.sort(key=lambda r: r.created_at, reverse=True)
        return reports[offset:offset + limit], len(reports)

    # Audit

    def append_audit(self, entry: AuditEntry) -> None:
        with self._guard:
            self._audit.append(entry)

    def query_audit(self, query: AuditQuery) -> Tuple[List[AuditEntry], int]:
        with self._guard:
            # Newest first; entries sharing a timestamp keep append order reversed
            matched = [e for e in reversed(self._audit) if query.matches(e)]
        matched.sort(key=lambda e: e.timestamp, reverse=True)
        return matched[query.offset:query.offset + query.limit], len(matched)

    # Outbox

    def pending_intents(self, limit: int = 100) -> List[NotificationIntent]:
        with self._guard:
            intents = sorted(self._outbox.values(), key=lambda i: i.created_at)
            return [copy.deepcopy(i) for i in intents[:limit]]

    def mark_dispatched(self, intent_id: str) -> None:
        with self._guard:
            intent = self._outbox.pop(intent_id, None)
            if intent is not None:
                self._dispatched[intent_id] = intent

    def all_intents(self) -> List[NotificationIntent]:
        """Every intent ever enqueued, dispatched or not, oldest first."""
        with self._guard:
            intents = list(self._outbox.values()) + list(self._dispatched.values())
        return sorted(intents, key=lambda i: i.created_at)
