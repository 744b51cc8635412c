"""Physical-count sessions.

Starting a session copies every book's total_quantity into one pending item.
That copy is never re-read from the live row, so loans issued or returned
while the count is under way do not change what should have been on the
shelf. Counting records what was found; it never changes recorded stock.
"""

import logging
import sqlite3
from typing import Any, List, Optional

from . import audit
from .database import connection, transaction
from .errors import NotFound, SessionAlreadyClosed, SessionAlreadyOpen, SessionClosed
from .models import (
    AuditAction,
    InventoryItem,
    InventorySession,
    InventoryStats,
    ItemStatus,
    SessionStatus,
    SessionType,
    new_id,
    today_iso,
)
from .validators import ChoiceValidator, QuantityValidator, TextValidator

logger = logging.getLogger(__name__)

_ITEM_WITH_BOOK = """
    SELECT ii.*, b.title AS book_title, b.author AS book_author
    FROM inventory_items ii
    JOIN books b ON ii.book_id = b.id
"""


class InventoryReconciler:
    def __init__(self, db_file: str) -> None:
        self.db_file = db_file

    # ------------------------- Mutations ------------------------- #
    def start_inventory_session(self, name: str, session_type: str = SessionType.ANNUAL.value,
                                notes: Optional[str] = None) -> InventorySession:
        name = TextValidator.require_text(name, "name")
        session_type = ChoiceValidator.require_choice(session_type, SessionType, "session_type")
        notes = TextValidator.optional_text(notes, "notes")

        with transaction(self.db_file) as conn:
            open_session = conn.execute(
                "SELECT id FROM inventory_sessions WHERE status = 'in_progress'"
            ).fetchone()
            if open_session is not None:
                raise SessionAlreadyOpen(f"Inventory session {open_session['id']} is already in progress.")

            session_id = new_id()
            try:
                conn.execute(
                    """
                    INSERT INTO inventory_sessions (id, name, session_type, start_date, status, notes)
                    VALUES (?, ?, ?, ?, 'in_progress', ?)
                    """,
                    (session_id, name, session_type, today_iso(), notes),
                )
            except sqlite3.IntegrityError as e:
                # The partial unique index is the authoritative guard
                raise SessionAlreadyOpen("Another inventory session is already in progress.") from e

            books = conn.execute("SELECT id, total_quantity FROM books").fetchall()
            conn.executemany(
                """
                INSERT INTO inventory_items (id, session_id, book_id, expected_quantity, status)
                VALUES (?, ?, ?, ?, 'pending')
                """,
                [(new_id(), session_id, row["id"], row["total_quantity"]) for row in books],
            )
            audit.record(conn, AuditAction.CREATE, "inventory", "inventory_session", session_id,
                         {"name": name, "session_type": session_type, "total_books": len(books)})
            session = self.load_session(conn, session_id)

        logger.info(f"Inventory session {session_id} started with {len(books)} item(s)")
        return session

    def check_inventory_item(self, item_id: str, found_quantity: int, notes: Optional[str] = None) -> InventoryItem:
        found_quantity = QuantityValidator.require_int(found_quantity, "found_quantity", minimum=0)
        notes = TextValidator.optional_text(notes, "notes")

        with transaction(self.db_file) as conn:
            item = self.load_item(conn, item_id)
            session = self.load_session(conn, item.session_id)
            if not session.is_open:
                raise SessionClosed(f"Inventory session {session.id} is {session.status}.")

            status = InventoryItem.derive_status(item.expected_quantity, found_quantity)
            conn.execute(
                """
                UPDATE inventory_items
                SET found_quantity = ?, status = ?, notes = ?, checked_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (found_quantity, status, notes, item_id),
            )
            audit.record(conn, AuditAction.UPDATE, "inventory", "inventory_item", item_id,
                         {"found_quantity": found_quantity, "status": status})
            return self.load_item(conn, item_id)

    def complete_inventory_session(self, session_id: str) -> InventorySession:
        session = self._close(session_id, SessionStatus.COMPLETED)
        logger.info(f"Inventory session {session_id} completed")
        return session

    def cancel_inventory_session(self, session_id: str) -> InventorySession:
        session = self._close(session_id, SessionStatus.CANCELLED)
        logger.info(f"Inventory session {session_id} cancelled")
        return session

    def delete_inventory_session(self, session_id: str) -> None:
        with transaction(self.db_file) as conn:
            session = self.load_session(conn, session_id)
            # Items go with it (ON DELETE CASCADE)
            conn.execute("DELETE FROM inventory_sessions WHERE id = ?", (session_id,))
            audit.record(conn, AuditAction.DELETE, "inventory", "inventory_session", session_id,
                         {"name": session.name, "status": session.status})

    def _close(self, session_id: str, final_status: SessionStatus) -> InventorySession:
        with transaction(self.db_file) as conn:
            session = self.load_session(conn, session_id)
            if not session.is_open:
                raise SessionAlreadyClosed(f"Inventory session {session_id} is already {session.status}.")
            conn.execute(
                "UPDATE inventory_sessions SET status = ?, end_date = ? WHERE id = ?",
                (final_status.value, today_iso(), session_id),
            )
            audit.record(conn, AuditAction.UPDATE, "inventory", "inventory_session", session_id,
                         {"status": final_status.value})
            return self.load_session(conn, session_id)

    # ------------------------- Reads ------------------------- #
    def get_inventory_session(self, session_id: str) -> InventorySession:
        with connection(self.db_file) as conn:
            return self.load_session(conn, session_id)

    def list_inventory_sessions(self, status: Optional[str] = None) -> List[InventorySession]:
        query = "SELECT * FROM inventory_sessions"
        params: List[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(ChoiceValidator.require_choice(status, SessionStatus, "status"))
        query += " ORDER BY created_at DESC, rowid DESC"
        with connection(self.db_file) as conn:
            return [InventorySession.from_row(row) for row in conn.execute(query, params).fetchall()]

    def list_inventory_items(self, session_id: str, status: Optional[str] = None) -> List[InventoryItem]:
        query = _ITEM_WITH_BOOK + " WHERE ii.session_id = ?"
        params: List[Any] = [session_id]
        if status is not None:
            query += " AND ii.status = ?"
            params.append(ChoiceValidator.require_choice(status, ItemStatus, "status"))
        query += " ORDER BY b.title ASC"
        with connection(self.db_file) as conn:
            self.load_session(conn, session_id)
            return [InventoryItem.from_row(row) for row in conn.execute(query, params).fetchall()]

    def get_inventory_item(self, item_id: str) -> InventoryItem:
        with connection(self.db_file) as conn:
            return self.load_item(conn, item_id)

    def get_inventory_stats(self, session_id: str) -> InventoryStats:
        with connection(self.db_file) as conn:
            session = self.load_session(conn, session_id)
            row = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(status = 'checked'), 0) AS checked,
                       COALESCE(SUM(status = 'discrepancy'), 0) AS discrepancies,
                       COALESCE(SUM(status = 'pending'), 0) AS pending
                FROM inventory_items WHERE session_id = ?
                """,
                (session_id,),
            ).fetchone()
        return InventoryStats(
            session_id=session_id,
            status=session.status,
            total_items=row["total"],
            checked=row["checked"],
            discrepancies=row["discrepancies"],
            pending=row["pending"],
        )

    @staticmethod
    def load_session(conn: sqlite3.Connection, session_id: str) -> InventorySession:
        row = conn.execute("SELECT * FROM inventory_sessions WHERE id = ?", (session_id,)).fetchone()
        if row is None:
            raise NotFound(f"Inventory session {session_id} not found.")
        return InventorySession.from_row(row)

    @staticmethod
    def load_item(conn: sqlite3.Connection, item_id: str) -> InventoryItem:
        row = conn.execute(_ITEM_WITH_BOOK + " WHERE ii.id = ?", (item_id,)).fetchone()
        if row is None:
            raise NotFound(f"Inventory item {item_id} not found.")
        return InventoryItem.from_row(row)
