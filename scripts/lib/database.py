"""
PostgreSQL connection pool and the Postgres-backed moderation store
"""
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import List, Dict, Any, Optional, Sequence, Tuple

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2 import pool
from psycopg2.extras import Json, RealDictCursor

from lib.config import DatabaseSettings
from lib.stores import ModerationStore, StoreTransaction
from models.audit import AuditEntry, AuditQuery
from models.enums import ModerationStatus, ReportStatus
from models.errors import (
    ConcurrencyConflictError, DuplicateReportError, MediaNotFoundError, ModerationError
)
from models.moderation import MediaSummary, ModerationRecord, QueueItem
from models.notification import NotificationIntent
from models.report import ReportEntry

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

# Errors that mean "another writer got there first; try again"
RETRYABLE_ERRORS = (
    pg_errors.SerializationFailure,
    pg_errors.DeadlockDetected,
    pg_errors.LockNotAvailable,
)


class DatabaseConnection:
    """PostgreSQL connection pool manager (connects on first use)"""

    def __init__(self, settings: Optional[DatabaseSettings] = None):
        self.settings = settings
        self.connection_pool = None
        self._pool_lock = threading.Lock()

    def _initialize_pool(self):
        """Create connection pool"""
        settings = self.settings or DatabaseSettings.from_env()
        try:
            self.connection_pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=settings.min_connections,
                maxconn=settings.max_connections,
                host=settings.host,
                port=int(settings.port),
                database=settings.database,
                user=settings.user,
                password=settings.password
            )
            logger.info("Database connection pool initialized")
        except Exception as e:
            logger.error(f"Failed to create connection pool: {e}")
            raise

    def _pool(self):
        if self.connection_pool is None:
            with self._pool_lock:
                if self.connection_pool is None:
                    self._initialize_pool()
        return self.connection_pool

    @contextmanager
    def connection(self):
        """Borrow a connection; commit on success, roll back on error"""
        connection_pool = self._pool()
        conn = connection_pool.getconn()
        try:
            yield conn
            conn.commit()
        except ModerationError as e:
            conn.rollback()
            logger.debug(f"Rolled back: {e}")
            raise
        except Exception as e:
            conn.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            connection_pool.putconn(conn)

    @contextmanager
    def get_cursor(self, cursor_factory=RealDictCursor):
        """Get database cursor with automatic connection handling"""
        with self.connection() as conn:
            cursor = conn.cursor(cursor_factory=cursor_factory)
            try:
                yield cursor
            finally:
                cursor.close()

    def initialize_schema(self):
        """Create tables and indexes if they do not exist"""
        with self.get_cursor() as cursor:
            cursor.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
        logger.info("Database schema ensured")

    def upsert_user(self, user: Dict[str, Any]) -> str:
        """Ensure a user exists (keeps the admin directory populated)."""
        user_id = str(user["id"])
        with self.get_cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO users (id, username, email, role, is_active)
                VALUES (%(id)s, %(username)s, %(email)s, COALESCE(%(role)s, 'user'), COALESCE(%(is_active)s, TRUE))
                ON CONFLICT (id) DO UPDATE SET
                    username = COALESCE(EXCLUDED.username, users.username),
                    email = COALESCE(EXCLUDED.email, users.email),
                    role = COALESCE(%(role)s, users.role),
                    is_active = COALESCE(%(is_active)s, users.is_active),
                    updated_at = CURRENT_TIMESTAMP
                RETURNING id
                """,
                {
                    "id": user_id,
                    "username": user.get("username") or f"user_{user_id[:8]}",
                    "email": user.get("email"),
                    "role": user.get("role"),
                    "is_active": user.get("is_active"),
                },
            )
            return str(cursor.fetchone()["id"])

    def get_active_admin_ids(self) -> List[str]:
        with self.get_cursor() as cursor:
            cursor.execute(
                "SELECT id FROM users WHERE role = 'admin' AND is_active = TRUE ORDER BY id"
            )
            return [str(row["id"]) for row in cursor.fetchall()]

    def close(self):
        """Close all connections in pool"""
        if self.connection_pool:
            self.connection_pool.closeall()
            self.connection_pool = None
            logger.info("Database connection pool closed")


# ============================================
# Row mapping
# ============================================

RECORD_COLUMNS = """
    r.media_id, r.status, r.flags, r.report_count, r.threshold_escalated,
    r.last_verdict, r.classifier_confidence, r.classifier_reason, r.admin_notes,
    r.created_at, r.last_transition_at, r.last_transition_by
"""

MEDIA_COLUMNS = """
    m.id AS m_id, m.owner_id AS m_owner_id, m.title AS m_title,
    m.content_type AS m_content_type, m.created_at AS m_created_at
"""


def _record_from_row(row: Dict[str, Any]) -> ModerationRecord:
    return ModerationRecord(
        media_id=row["media_id"],
        status=row["status"],
        flags=set(row.get("flags") or []),
        report_count=int(row.get("report_count") or 0),
        threshold_escalated=bool(row.get("threshold_escalated")),
        last_verdict=row.get("last_verdict"),
        classifier_confidence=row.get("classifier_confidence"),
        classifier_reason=row.get("classifier_reason"),
        admin_notes=row.get("admin_notes"),
        created_at=row["created_at"],
        last_transition_at=row.get("last_transition_at"),
        last_transition_by=row.get("last_transition_by"),
    )


def _queue_item_from_row(row: Dict[str, Any]) -> QueueItem:
    media = None
    if row.get("m_id"):
        media = MediaSummary(
            media_id=row["m_id"],
            owner_id=row["m_owner_id"],
            title=row.get("m_title") or "",
            content_type=row.get("m_content_type"),
            created_at=row["m_created_at"],
        )
    return QueueItem(record=_record_from_row(row), media=media)


def _media_from_row(row: Dict[str, Any]) -> MediaSummary:
    return MediaSummary(
        media_id=row["id"],
        owner_id=row["owner_id"],
        title=row.get("title") or "",
        content_type=row.get("content_type"),
        created_at=row["created_at"],
    )


def _report_from_row(row: Dict[str, Any]) -> ReportEntry:
    return ReportEntry(
        id=row["id"],
        media_id=row["media_id"],
        reporter_id=row["reporter_id"],
        reason=row["reason"],
        description=row.get("description"),
        status=row["status"],
        created_at=row["created_at"],
        reviewed_by=row.get("reviewed_by"),
        reviewed_at=row.get("reviewed_at"),
        admin_notes=row.get("admin_notes"),
    )


def _audit_from_row(row: Dict[str, Any]) -> AuditEntry:
    return AuditEntry(
        id=row["id"],
        subject_id=row["subject_id"],
        subject_type=row["subject_type"],
        action=row["action"],
        actor_id=row["actor_id"],
        reason=row.get("reason"),
        metadata=row.get("metadata") or {},
        previous_status=row.get("previous_status"),
        new_status=row.get("new_status"),
        ip_address=row.get("ip_address"),
        timestamp=row["created_at"],
    )


def _insert_audit(cursor, entry: AuditEntry) -> None:
    cursor.execute(
        """
        INSERT INTO audit_log (
            id, subject_id, subject_type, action, actor_id, reason, metadata,
            previous_status, new_status, ip_address, created_at
        )
        VALUES (
            %(id)s, %(subject_id)s, %(subject_type)s, %(action)s, %(actor_id)s,
            %(reason)s, %(metadata)s, %(previous_status)s, %(new_status)s,
            %(ip_address)s, %(created_at)s
        )
        """,
        {
            "id": entry.id,
            "subject_id": entry.subject_id,
            "subject_type": entry.subject_type.value,
            "action": entry.action.value,
            "actor_id": entry.actor_id,
            "reason": entry.reason,
            "metadata": Json(entry.metadata, dumps=_json_dumps),
            "previous_status": entry.previous_status.value if entry.previous_status else None,
            "new_status": entry.new_status.value if entry.new_status else None,
            "ip_address": entry.ip_address,
            "created_at": entry.timestamp,
        },
    )


def _json_dumps(value: Any) -> str:
    return json.dumps(value, default=str)


# ============================================
# Store
# ============================================

class PostgresTransaction(StoreTransaction):
    """Unit of work on one connection; the record row is held FOR UPDATE."""

    def __init__(self, cursor, media_id: str, record: Optional[ModerationRecord]):
        self.cursor = cursor
        self.media_id = media_id
        self.record = record

    def get_media(self) -> Optional[MediaSummary]:
        self.cursor.execute(
            "SELECT id, owner_id, title, content_type, created_at FROM media WHERE id = %s",
            (self.media_id,),
        )
        row = self.cursor.fetchone()
        return _media_from_row(row) if row else None

    def get_report(self, report_id: str) -> Optional[ReportEntry]:
        self.cursor.execute("SELECT * FROM media_reports WHERE id = %s FOR UPDATE", (report_id,))
        row = self.cursor.fetchone()
        return _report_from_row(row) if row else None

    def save_record(self, record: ModerationRecord) -> None:
        self.cursor.execute(
            """
            UPDATE moderation_records SET
                status = %(status)s,
                flags = %(flags)s,
                threshold_escalated = %(threshold_escalated)s,
                report_count = %(report_count)s,
                last_verdict = %(last_verdict)s,
                classifier_confidence = %(classifier_confidence)s,
                classifier_reason = %(classifier_reason)s,
                admin_notes = %(admin_notes)s,
                last_transition_at = %(last_transition_at)s,
                last_transition_by = %(last_transition_by)s
            WHERE media_id = %(media_id)s
            """,
            {
                "media_id": record.media_id,
                "status": record.status.value,
                "flags": sorted(record.flags),
                "threshold_escalated": record.threshold_escalated,
                "report_count": record.report_count,
                "last_verdict": record.last_verdict.value if record.last_verdict else None,
                "classifier_confidence": record.classifier_confidence,
                "classifier_reason": record.classifier_reason,
                "admin_notes": record.admin_notes,
                "last_transition_at": record.last_transition_at,
                "last_transition_by": record.last_transition_by,
            },
        )
        self.record = record

    def increment_report_count(self) -> int:
        self.cursor.execute(
            """
            UPDATE moderation_records
            SET report_count = report_count + 1
            WHERE media_id = %s
            RETURNING report_count
            """,
            (self.media_id,),
        )
        row = self.cursor.fetchone()
        if row is None:
            raise MediaNotFoundError(self.media_id)
        count = int(row["report_count"])
        if self.record is not None:
            self.record.report_count = count
        return count

    def insert_report(self, report: ReportEntry) -> None:
        try:
            self.cursor.execute(
                """
                INSERT INTO media_reports (
                    id, media_id, reporter_id, reason, description, status, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    report.id, report.media_id, report.reporter_id, report.reason.value,
                    report.description, report.status.value, report.created_at,
                ),
            )
        except pg_errors.UniqueViolation:
            raise DuplicateReportError(report.media_id, report.reporter_id)

    def save_report(self, report: ReportEntry) -> None:
        self.cursor.execute(
            """
            UPDATE media_reports
            SET status = %s, reviewed_by = %s, reviewed_at = %s, admin_notes = %s
            WHERE id = %s
            """,
            (report.status.value, report.reviewed_by, report.reviewed_at, report.admin_notes, report.id),
        )

    def append_audit(self, entry: AuditEntry) -> None:
        _insert_audit(self.cursor, entry)

    def enqueue(self, intent: NotificationIntent) -> None:
        self.cursor.execute(
            """
            INSERT INTO notification_outbox (id, audience, template_kind, payload, created_at)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (
                intent.id,
                intent.audience.value,
                intent.template_kind.value,
                Json(intent.payload.model_dump(), dumps=_json_dumps),
                intent.created_at,
            ),
        )


class PostgresModerationStore(ModerationStore):
    """ModerationStore backed by PostgreSQL (see schema.sql)."""

    def __init__(self, database: DatabaseConnection):
        self.db = database

    # Media

    def upsert_media(self, media: MediaSummary) -> MediaSummary:
        with self.db.get_cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO media (id, owner_id, title, content_type, created_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    title = EXCLUDED.title,
                    content_type = COALESCE(EXCLUDED.content_type, media.content_type)
                """,
                (media.media_id, media.owner_id, media.title, media.content_type, media.created_at),
            )
        return media

    def get_media(self, media_id: str) -> Optional[MediaSummary]:
        with self.db.get_cursor() as cursor:
            cursor.execute(
                "SELECT id, owner_id, title, content_type, created_at FROM media WHERE id = %s",
                (media_id,),
            )
            row = cursor.fetchone()
        return _media_from_row(row) if row else None

    # Records

    def get_record(self, media_id: str) -> Optional[ModerationRecord]:
        with self.db.get_cursor() as cursor:
            cursor.execute(
                f"SELECT {RECORD_COLUMNS} FROM moderation_records r WHERE r.media_id = %s",
                (media_id,),
            )
            row = cursor.fetchone()
        return _record_from_row(row) if row else None

    def create_record(
        self, record: ModerationRecord, audit: Optional[AuditEntry] = None
    ) -> Tuple[ModerationRecord, bool]:
        with self.db.get_cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO moderation_records (media_id, status, flags, created_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (media_id) DO NOTHING
                RETURNING media_id
                """,
                (record.media_id, record.status.value, sorted(record.flags), record.created_at),
            )
            created = cursor.fetchone() is not None
            if created and audit is not None:
                _insert_audit(cursor, audit)
            if not created:
                cursor.execute(
                    f"SELECT {RECORD_COLUMNS} FROM moderation_records r WHERE r.media_id = %s",
                    (record.media_id,),
                )
                return _record_from_row(cursor.fetchone()), False
        return record, True

    @contextmanager
    def transaction(self, media_id: str):
        try:
            with self.db.connection() as conn:
                cursor = conn.cursor(cursor_factory=RealDictCursor)
                try:
                    cursor.execute(
                        f"SELECT {RECORD_COLUMNS} FROM moderation_records r "
                        "WHERE r.media_id = %s FOR UPDATE",
                        (media_id,),
                    )
                    row = cursor.fetchone()
                    record = _record_from_row(row) if row else None
                    yield PostgresTransaction(cursor, media_id, record)
                finally:
                    cursor.close()
        except RETRYABLE_ERRORS as e:
            raise ConcurrencyConflictError(str(e)) from e

    def list_records(
        self,
        statuses: Optional[Sequence[ModerationStatus]] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[QueueItem], int]:
        where = ""
        params: List[Any] = []
        if statuses:
            where = "WHERE r.status = ANY(%s)"
            params.append([s.value for s in statuses])

        with self.db.get_cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) AS cnt FROM moderation_records r {where}", tuple(params))
            total = int(cursor.fetchone()["cnt"])
            cursor.execute(
                f"""
                SELECT {RECORD_COLUMNS}, {MEDIA_COLUMNS}
                FROM moderation_records r
                LEFT JOIN media m ON m.id = r.media_id
                {where}
                ORDER BY r.created_at DESC
                LIMIT %s OFFSET %s
                """,
                tuple(params + [limit, offset]),
            )
            rows = cursor.fetchall()
        return [_queue_item_from_row(row) for row in rows], total

    def list_stale_pending(self, older_than: datetime, limit: int = 100) -> List[QueueItem]:
        with self.db.get_cursor() as cursor:
            cursor.execute(
                f"""
                SELECT {RECORD_COLUMNS}, {MEDIA_COLUMNS}
                FROM moderation_records r
                LEFT JOIN media m ON m.id = r.media_id
                WHERE r.status = 'pending' AND r.created_at <= %s
                ORDER BY r.created_at ASC
                LIMIT %s
                """,
                (older_than, limit),
            )
            rows = cursor.fetchall()
        return [_queue_item_from_row(row) for row in rows]

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in ModerationStatus}
        with self.db.get_cursor() as cursor:
            cursor.execute("SELECT status, COUNT(*) AS cnt FROM moderation_records GROUP BY status")
            for row in cursor.fetchall():
                counts[row["status"]] = int(row["cnt"])
        return counts

    # Reports

    def get_report(self, report_id: str) -> Optional[ReportEntry]:
        with self.db.get_cursor() as cursor:
            cursor.execute("SELECT * FROM media_reports WHERE id = %s", (report_id,))
            row = cursor.fetchone()
        return _report_from_row(row) if row else None

    def list_reports(self, media_id: str) -> List[ReportEntry]:
        with self.db.get_cursor() as cursor:
            cursor.execute(
                "SELECT * FROM media_reports WHERE media_id = %s ORDER BY created_at DESC",
                (media_id,),
            )
            return [_report_from_row(row) for row in cursor.fetchall()]

    def list_reports_by_status(
        self, status: ReportStatus, offset: int = 0, limit: int = 20
    ) -> Tuple[List[ReportEntry], int]:
        with self.db.get_cursor() as cursor:
            cursor.execute(
                "SELECT COUNT(*) AS cnt FROM media_reports WHERE status = %s", (status.value,)
            )
            total = int(cursor.fetchone()["cnt"])
            cursor.execute(
                """
                SELECT * FROM media_reports
                WHERE status = %s
                ORDER BY created_at DESC
                LIMIT %s OFFSET %s
                """,
                (status.value, limit, offset),
            )
            return [_report_from_row(row) for row in cursor.fetchall()], total

    # Audit

    def append_audit(self, entry: AuditEntry) -> None:
        with self.db.get_cursor() as cursor:
            _insert_audit(cursor, entry)

    def query_audit(self, query: AuditQuery) -> Tuple[List[AuditEntry], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if query.subject_id:
            clauses.append("subject_id = %s")
            params.append(query.subject_id)
        if query.actor_id:
            clauses.append("actor_id = %s")
            params.append(query.actor_id)
        if query.action:
            clauses.append("action = %s")
            params.append(query.action.value)
        if query.since:
            clauses.append("created_at >= %s")
            params.append(query.since)
        if query.until:
            clauses.append("created_at <= %s")
            params.append(query.until)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self.db.get_cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) AS cnt FROM audit_log {where}", tuple(params))
            total = int(cursor.fetchone()["cnt"])
            cursor.execute(
                f"""
                SELECT * FROM audit_log {where}
                ORDER BY created_at DESC
                LIMIT %s OFFSET %s
                """,
                tuple(params + [query.limit, query.offset]),
            )
            return [_audit_from_row(row) for row in cursor.fetchall()], total

    # Outbox

    def pending_intents(self, limit: int = 100) -> List[NotificationIntent]:
        with self.db.get_cursor() as cursor:
            cursor.execute(
                """
                SELECT id, audience, template_kind, payload, created_at
                FROM notification_outbox
                WHERE dispatched_at IS NULL
                ORDER BY created_at ASC
                LIMIT %s
                """,
                (limit,),
            )
            rows = cursor.fetchall()
        return [
            NotificationIntent(
                id=row["id"],
                audience=row["audience"],
                template_kind=row["template_kind"],
                payload=row["payload"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def mark_dispatched(self, intent_id: str) -> None:
        with self.db.get_cursor() as cursor:
            cursor.execute(
                "UPDATE notification_outbox SET dispatched_at = CURRENT_TIMESTAMP WHERE id = %s",
                (intent_id,),
            )


# Singleton instance
db = DatabaseConnection()
