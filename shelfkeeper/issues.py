import logging
import sqlite3
from typing import Any, Dict, List, Optional

from . import audit
from .catalog import Catalog
from .circulation import CirculationLedger
from .database import connection, transaction
from .errors import AlreadyResolved, NotFound, ValidationError
from .inventory import InventoryReconciler
from .models import AuditAction, BookIssue, IssueStatus, IssueType, new_id, today_iso
from .stock import BookStock
from .validators import ChoiceValidator, QuantityValidator, TextValidator

logger = logging.getLogger(__name__)

_ISSUE_WITH_BOOK = """
    SELECT bi.*, b.title AS book_title
    FROM book_issues bi
    JOIN books b ON bi.book_id = b.id
"""

# Outcomes a resolution may end in.
_RESOLUTION_OUTCOMES = (IssueStatus.RESOLVED.value, IssueStatus.WRITTEN_OFF.value)


class IssueTracker:
    """Damage and loss reports, and the write-offs that may follow them.

    Reporting never touches stock: the copy is already unavailable through an
    open loan or a count discrepancy. Only a write-off resolution shrinks the
    catalog.
    """

    def __init__(self, db_file: str, stock: BookStock, catalog: Catalog) -> None:
        self.db_file = db_file
        self.stock = stock
        self.catalog = catalog

    # ------------------------- Mutations ------------------------- #
    def report_issue(self, book_id: str, issue_type: str, quantity: int = 1,
                     borrower_name: Optional[str] = None, loan_id: Optional[str] = None,
                     notes: Optional[str] = None) -> BookIssue:
        issue_type = ChoiceValidator.require_choice(issue_type, IssueType, "issue_type")
        quantity = QuantityValidator.require_int(quantity, "quantity", minimum=1)
        borrower_name = TextValidator.optional_text(borrower_name, "borrower_name", max_length=200)
        notes = TextValidator.optional_text(notes, "notes")

        with transaction(self.db_file) as conn:
            issue = self._insert(conn, book_id, issue_type, quantity, borrower_name, loan_id, notes)

        logger.info(f"Issue {issue.id} reported: {issue_type} x{quantity} for book {book_id}")
        return issue

    def report_shortfall(self, item_id: str, issue_type: str = IssueType.LOST.value,
                         notes: Optional[str] = None) -> BookIssue:
        """Open an issue for the copies a count found missing.

        The item must be a discrepancy with fewer copies found than expected;
        the issue quantity is the difference.
        """
        issue_type = ChoiceValidator.require_choice(issue_type, IssueType, "issue_type")
        notes = TextValidator.optional_text(notes, "notes")

        with transaction(self.db_file) as conn:
            item = InventoryReconciler.load_item(conn, item_id)
            if item.shortfall < 1:
                raise ValidationError(f"Inventory item {item_id} shows no shortfall.")
            session = InventoryReconciler.load_session(conn, item.session_id)
            borrower_name = CirculationLedger.last_borrower_on(conn, item.book_id)
            note = notes or (
                f"Inventory '{session.name}': expected {item.expected_quantity}, found {item.found_quantity}"
            )
            issue = self._insert(conn, item.book_id, issue_type, item.shortfall, borrower_name, None, note)

        logger.info(f"Issue {issue.id} reported from inventory item {item_id}: {item.shortfall} missing")
        return issue

    def resolve_issue(self, issue_id: str, outcome: str = IssueStatus.RESOLVED.value,
                      resolution_notes: Optional[str] = None, adjust_quantity: bool = False) -> BookIssue:
        if isinstance(outcome, IssueStatus):
            outcome = outcome.value
        if outcome not in _RESOLUTION_OUTCOMES:
            raise ValidationError(f"outcome must be one of: {', '.join(_RESOLUTION_OUTCOMES)}.")
        resolution_notes = TextValidator.optional_text(resolution_notes, "resolution_notes")

        with transaction(self.db_file) as conn:
            issue = self._get(conn, issue_id)
            if issue.status != IssueStatus.OPEN.value:
                raise AlreadyResolved(f"Issue {issue_id} is already {issue.status}.")
            adjusted = outcome == IssueStatus.WRITTEN_OFF.value and bool(adjust_quantity)
            conn.execute(
                """
                UPDATE book_issues
                SET status = ?, resolution_notes = ?, resolved_at = CURRENT_TIMESTAMP, stock_adjusted = ?
                WHERE id = ?
                """,
                (outcome, resolution_notes, int(adjusted), issue_id),
            )
            details: Dict[str, Any] = {"status": outcome}
            if adjusted:
                before = self.stock.get_book(conn, issue.book_id)
                after = self.stock.adjust_total(conn, issue.book_id, -issue.quantity, -issue.quantity)
                details["total_quantity"] = [before.total_quantity, after.total_quantity]
                details["available_copies"] = [before.available_copies, after.available_copies]
                logger.info(
                    f"Book {issue.book_id} written off by {issue.quantity}: "
                    f"total {before.total_quantity} -> {after.total_quantity}"
                )
            audit.record(conn, AuditAction.UPDATE, "book_issues", "book_issue", issue_id, details)
            return self._get(conn, issue_id)

    def delete_issue(self, issue_id: str) -> None:
        with transaction(self.db_file) as conn:
            issue = self._get(conn, issue_id)
            conn.execute("DELETE FROM book_issues WHERE id = ?", (issue_id,))
            audit.record(conn, AuditAction.DELETE, "book_issues", "book_issue", issue_id,
                         {"book_id": issue.book_id, "status": issue.status})

    # ------------------------- Reads ------------------------- #
    def get_issue(self, issue_id: str) -> BookIssue:
        with connection(self.db_file) as conn:
            return self._get(conn, issue_id)

    def list_issues(self, book_id: Optional[str] = None, status: Optional[str] = None,
                    issue_type: Optional[str] = None) -> List[BookIssue]:
        query = _ISSUE_WITH_BOOK + " WHERE 1=1"
        params: List[Any] = []
        if book_id:
            query += " AND bi.book_id = ?"
            params.append(book_id)
        if status is not None:
            query += " AND bi.status = ?"
            params.append(ChoiceValidator.require_choice(status, IssueStatus, "status"))
        if issue_type is not None:
            query += " AND bi.issue_type = ?"
            params.append(ChoiceValidator.require_choice(issue_type, IssueType, "issue_type"))
        query += " ORDER BY bi.report_date DESC, bi.rowid DESC"
        with connection(self.db_file) as conn:
            return [BookIssue.from_row(row) for row in conn.execute(query, params).fetchall()]

    def list_open_issues(self) -> List[BookIssue]:
        return self.list_issues(status=IssueStatus.OPEN.value)

    def get_issue_stats(self) -> Dict[str, Any]:
        with connection(self.db_file) as conn:
            counts = {
                row["status"]: row["count"]
                for row in conn.execute("SELECT status, COUNT(*) AS count FROM book_issues GROUP BY status")
            }
            by_type = [
                {"issue_type": row["issue_type"], "count": row["count"], "total_quantity": row["total_quantity"]}
                for row in conn.execute(
                    """
                    SELECT issue_type, COUNT(*) AS count, SUM(quantity) AS total_quantity
                    FROM book_issues GROUP BY issue_type ORDER BY issue_type
                    """
                )
            ]
        return {
            "total": sum(counts.values()),
            "open": counts.get(IssueStatus.OPEN.value, 0),
            "resolved": counts.get(IssueStatus.RESOLVED.value, 0),
            "written_off": counts.get(IssueStatus.WRITTEN_OFF.value, 0),
            "by_type": by_type,
        }

    # ------------------------- Helpers ------------------------- #
    def _insert(self, conn: sqlite3.Connection, book_id: str, issue_type: str, quantity: int,
                borrower_name: Optional[str], loan_id: Optional[str], notes: Optional[str]) -> BookIssue:
        if not self.catalog.book_exists(conn, book_id):
            raise NotFound(f"Book {book_id} not found.")
        if loan_id:
            loan = CirculationLedger.load_loan(conn, loan_id)
            if loan.book_id != book_id:
                raise ValidationError(f"Loan {loan_id} is not a loan of book {book_id}.")
            borrower_name = borrower_name or loan.borrower_name

        issue_id = new_id()
        conn.execute(
            """
            INSERT INTO book_issues (id, book_id, issue_type, quantity, borrower_name, loan_id,
                                     notes, report_date, status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'open')
            """,
            (issue_id, book_id, issue_type, quantity, borrower_name, loan_id or None, notes, today_iso()),
        )
        audit.record(conn, AuditAction.CREATE, "book_issues", "book_issue", issue_id,
                     {"book_id": book_id, "issue_type": issue_type, "quantity": quantity})
        return self._get(conn, issue_id)

    @staticmethod
    def _get(conn: sqlite3.Connection, issue_id: str) -> BookIssue:
        row = conn.execute(_ISSUE_WITH_BOOK + " WHERE bi.id = ?", (issue_id,)).fetchone()
        if row is None:
            raise NotFound(f"Issue {issue_id} not found.")
        return BookIssue.from_row(row)
