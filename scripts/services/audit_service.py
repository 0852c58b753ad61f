"""
Audit Recorder.
Append-only trail of lifecycle transitions and privileged actions.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from lib.stores import ModerationStore, StoreTransaction
from models.audit import AuditEntry, AuditQuery

logger = logging.getLogger(__name__)


@dataclass
class AuditPage:
    """One page of the admin activity view."""
    entries: List[AuditEntry]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


class AuditRecorder:
    """
    Writes audit entries and answers activity queries.

    There is no update or delete path. A failed write propagates to the caller:
    when the entry is written inside a store transaction, the failure aborts
    the transition it describes.
    """

    def __init__(self, store: ModerationStore):
        self.store = store

    def record(self, entry: AuditEntry, tx: Optional[StoreTransaction] = None) -> AuditEntry:
        """Append an entry, inside `tx` when given so it commits with the change it describes."""
        if tx is not None:
            tx.append_audit(entry)
        else:
            self.store.append_audit(entry)
        logger.debug(
            f"Audit {entry.action.value} on {entry.subject_type.value}:{entry.subject_id} by {entry.actor_id}"
        )
        return entry

    def query(self, query: AuditQuery) -> AuditPage:
        """Filter by subject, actor, action and time range; newest first."""
        entries, total = self.store.query_audit(query)
        return AuditPage(entries=entries, total=total, page=query.page, limit=query.limit)

    def history(self, subject_id: str, limit: int = 200) -> List[AuditEntry]:
        """All entries for one subject, newest first."""
        return self.query(AuditQuery(subject_id=subject_id, limit=limit)).entries
