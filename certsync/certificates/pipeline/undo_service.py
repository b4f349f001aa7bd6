"""
Session-scoped undo history for insert actions.

Sessions are explicit records opened and disposed through
``UndoSessionRegistry``; an ``UndoStack`` is bound to one session id. Each
session keeps a short window of non-undone entries: before a push, if
``UNDO_TRIM_THRESHOLD`` or more are held, all but the newest
``UNDO_RETAINED_ENTRIES`` are pruned.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from certsync.models import AuditOperation, UndoEntry, UndoSession, db

from ..errors import StoreError, UndoSessionClosed
from ..metrics import record_undo
from .audit import record_audit
from .store import EntityKind, EntityStore, entity_snapshot, key_attribute

logger = logging.getLogger(__name__)

UNDO_TRIM_THRESHOLD = 5
UNDO_RETAINED_ENTRIES = 4
UNDO_HISTORY_LIMIT = 5

INSERT_ORGANIZATION = "insert_organization"
INSERT_PRODUCT = "insert_product"

REVERSIBLE_ACTIONS: dict[str, EntityKind] = {
    INSERT_ORGANIZATION: EntityKind.ORGANIZATION,
    INSERT_PRODUCT: EntityKind.PRODUCT,
}

# Pushes for one session are serialized so trimming sees a stable count
_session_locks: dict[str, threading.Lock] = {}
_session_locks_guard = threading.Lock()


def _lock_for(session_id: str) -> threading.Lock:
    with _session_locks_guard:
        return _session_locks.setdefault(session_id, threading.Lock())


class UndoSessionRegistry:
    """Open, look up, and dispose undo sessions."""

    def __init__(self, session: Session | None = None):
        self.session: Session = session or db.session

    def open(self, created_by: str | None = None) -> UndoSession:
        undo_session = UndoSession(id=str(uuid.uuid4()), created_by=created_by)
        self.session.add(undo_session)
        self.session.commit()
        return undo_session

    def get(self, session_id: str) -> UndoSession | None:
        return self.session.get(UndoSession, session_id)

    def dispose(self, session_id: str) -> None:
        undo_session = self.get(session_id)
        if undo_session is None:
            raise ValueError(f"Undo session {session_id} not found")
        if undo_session.disposed_at is None:
            undo_session.disposed_at = datetime.now(timezone.utc)
            self.session.commit()
        with _session_locks_guard:
            _session_locks.pop(session_id, None)

    def stack(self, session_id: str) -> "UndoStack":
        return UndoStack(session_id, session=self.session)


class UndoStack:
    def __init__(self, session_id: str, *, session: Session | None = None, store: EntityStore | None = None):
        self.session_id = session_id
        self.session: Session = session or db.session
        self.store = store or EntityStore(self.session)

    def ensure_active(self) -> UndoSession:
        """The backing session row; raises if it is unknown or disposed."""
        undo_session = self.session.get(UndoSession, self.session_id)
        if undo_session is None:
            raise ValueError(f"Undo session {self.session_id} not found")
        if not undo_session.is_active:
            raise UndoSessionClosed(f"Undo session {self.session_id} has been disposed")
        return undo_session

    def _pending_query(self):
        return (
            select(UndoEntry)
            .where(UndoEntry.session_id == self.session_id, UndoEntry.is_undone.is_(False))
            .order_by(UndoEntry.id.desc())
        )

    def push(
        self,
        action_type: str,
        payload: Mapping[str, Any],
        *,
        batch_id: int | None = None,
        created_by: str | None = None,
    ) -> UndoEntry:
        """Record an action, pruning the oldest entries beyond the window first."""

        with _lock_for(self.session_id):
            self.ensure_active()
            pending = list(self.session.execute(self._pending_query()).scalars())
            pruned = 0
            if len(pending) >= UNDO_TRIM_THRESHOLD:
                for stale in pending[UNDO_RETAINED_ENTRIES:]:
                    self.session.delete(stale)
                    pruned += 1
            entry = UndoEntry(
                session_id=self.session_id,
                batch_id=batch_id,
                action_type=action_type,
                action_payload=dict(payload),
                created_by=created_by,
                is_undone=False,
            )
            self.session.add(entry)
            self.session.commit()

        record_undo("pushed")
        record_undo("pruned", pruned)
        return entry

    def list_entries(self, limit: int = UNDO_HISTORY_LIMIT) -> list[UndoEntry]:
        """Non-undone entries, newest first."""

        return list(self.session.execute(self._pending_query().limit(limit)).scalars())

    def undo(self, entry_id: int, actor: str | None = None) -> bool:
        """
        Reverse an insert by deleting the row it created.

        Returns False for unknown, already-undone, or non-reversible entries.
        Store failures are rolled back and reported as False.
        """
        entry = self.session.get(UndoEntry, entry_id)
        if entry is None or entry.session_id != self.session_id or entry.is_undone:
            record_undo("rejected")
            return False
        kind = REVERSIBLE_ACTIONS.get(entry.action_type)
        if kind is None:
            logger.info(
                "Undo requested for non-reversible action",
                extra={"certificates_undo_entry_id": entry_id, "certificates_undo_action": entry.action_type},
            )
            record_undo("rejected")
            return False

        key = (entry.action_payload or {}).get(key_attribute(kind))
        try:
            live = self.store.get_by_key(kind, key)
            previous = entity_snapshot(live) if live is not None else None
            self.store.delete(kind, key)
            record_audit(
                self.session,
                entity_type=kind.value,
                entity_key=key or "",
                operation=AuditOperation.DELETE,
                batch_id=entry.batch_id,
                previous_values=previous,
                performed_by=actor,
                notes=f"Undo of {entry.action_type} (undo entry {entry.id})",
            )
            entry.is_undone = True
            entry.undone_at = datetime.now(timezone.utc)
            self.session.commit()
        except (StoreError, SQLAlchemyError):
            self.session.rollback()
            logger.warning(
                "Undo failed",
                exc_info=True,
                extra={"certificates_undo_entry_id": entry_id, "certificates_undo_session": self.session_id},
            )
            record_undo("rejected")
            return False

        record_undo("undone")
        logger.info(
            "Undo applied",
            extra={
                "certificates_undo_entry_id": entry_id,
                "certificates_undo_action": entry.action_type,
                "certificates_undo_session": self.session_id,
            },
        )
        return True
