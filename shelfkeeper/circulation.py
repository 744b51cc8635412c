import logging
import sqlite3
from typing import Any, Dict, List, Optional

from . import audit
from .catalog import Catalog
from .database import connection, transaction
from .errors import AlreadyReturned, LoanLimitExceeded, LoanStillOpen, NotFound, Unavailable
from .models import (
    LOAN_LIMIT,
    AuditAction,
    BorrowerType,
    Loan,
    LoanStatus,
    new_id,
    today_iso,
)
from .stock import BookStock
from .validators import ChoiceValidator, DateValidator, TextValidator

logger = logging.getLogger(__name__)


class BorrowerDirectory:
    """Borrower lookups used by the ledger.

    The default directory knows nothing about rosters: every id is accepted
    and open loans are counted from the loans table on the caller's
    connection, i.e. inside the issuing transaction.
    """

    def borrower_exists(self, conn: sqlite3.Connection, borrower_id: str) -> bool:
        return True

    def count_open_loans(self, conn: sqlite3.Connection, borrower_id: str) -> int:
        return conn.execute(
            "SELECT COUNT(*) FROM loans WHERE borrower_id = ? AND status != 'returned'",
            (borrower_id,),
        ).fetchone()[0]


def sweep_overdue(conn: sqlite3.Connection, today: Optional[str] = None) -> int:
    """Flag active loans past their due date as overdue.

    Conditional and idempotent, so any number of concurrent readers may run
    it. Never touches stock. Returns the number of loans flagged.
    """
    cursor = conn.execute(
        "UPDATE loans SET status = 'overdue' WHERE status = 'active' AND due_date < ?",
        (today or today_iso(),),
    )
    return cursor.rowcount


class CirculationLedger:
    """Loan life cycle: issue, return, renew and the lazy overdue sweep."""

    def __init__(self, db_file: str, stock: BookStock, catalog: Catalog,
                 borrowers: Optional[BorrowerDirectory] = None) -> None:
        self.db_file = db_file
        self.stock = stock
        self.catalog = catalog
        self.borrowers = borrowers or BorrowerDirectory()

    # ------------------------- Mutations ------------------------- #
    def issue_loan(self, book_id: str, borrower_type: str, borrower_id: str, borrower_name: str,
                   due_date: Any) -> Loan:
        borrower_type = ChoiceValidator.require_choice(borrower_type, BorrowerType, "borrower_type")
        borrower_id = TextValidator.require_text(borrower_id, "borrower_id")
        borrower_name = TextValidator.require_text(borrower_name, "borrower_name")
        loan_date = today_iso()
        due = DateValidator.parse_iso_date(due_date, "due_date")

        with transaction(self.db_file) as conn:
            book = self.stock.get_book(conn, book_id)
            if book.available_copies < 1:
                raise Unavailable(f"No copies of '{book.title}' are available.")
            if not self.borrowers.borrower_exists(conn, borrower_id):
                raise NotFound(f"Borrower {borrower_id} not found.")
            open_loans = self.borrowers.count_open_loans(conn, borrower_id)
            if open_loans >= LOAN_LIMIT:
                raise LoanLimitExceeded(
                    f"Borrower has reached maximum loan limit ({LOAN_LIMIT})."
                )

            self.stock.adjust_available(conn, book_id, -1)
            loan_id = new_id()
            conn.execute(
                """
                INSERT INTO loans (id, book_id, borrower_type, borrower_id, borrower_name,
                                   loan_date, due_date, status)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'active')
                """,
                (loan_id, book_id, borrower_type, borrower_id, borrower_name, loan_date, due.isoformat()),
            )
            audit.record(conn, AuditAction.CREATE, "loans", "loan", loan_id,
                         {"book_id": book_id, "borrower_name": borrower_name})
            loan = self.load_loan(conn, loan_id)

        logger.info(f"Loan {loan.id} issued: book {book_id} to {borrower_name} until {loan.due_date}")
        return loan

    def return_loan(self, loan_id: str) -> Loan:
        with transaction(self.db_file) as conn:
            loan = self.load_loan(conn, loan_id)
            if loan.status == LoanStatus.RETURNED.value:
                raise AlreadyReturned(f"Loan {loan_id} was already returned on {loan.return_date}.")
            conn.execute(
                "UPDATE loans SET status = 'returned', return_date = ? WHERE id = ?",
                (today_iso(), loan_id),
            )
            details: Dict[str, Any] = {"action": "return"}
            book = self.stock.get_book(conn, loan.book_id)
            restocked = book.available_copies < book.total_quantity or not self._write_off_applied(conn, loan.book_id)
            if restocked:
                self.stock.adjust_available(conn, loan.book_id, +1)
            else:
                # A write-off already took this copy's unit out of the catalog
                details["restocked"] = False
            audit.record(conn, AuditAction.UPDATE, "loans", "loan", loan_id, details)
            loan = self.load_loan(conn, loan_id)

        if restocked:
            logger.info(f"Loan {loan_id} returned")
        else:
            logger.info(f"Loan {loan_id} returned; copy already written off, stock unchanged")
        return loan

    def renew_loan(self, loan_id: str, new_due_date: Any) -> Loan:
        due = DateValidator.parse_iso_date(new_due_date, "due_date")

        with transaction(self.db_file) as conn:
            loan = self.load_loan(conn, loan_id)
            if loan.status == LoanStatus.RETURNED.value:
                raise AlreadyReturned(f"Cannot renew returned loan {loan_id}.")
            # Renewing clears an overdue flag; the copy stays out.
            conn.execute(
                "UPDATE loans SET due_date = ?, status = 'active' WHERE id = ?",
                (due.isoformat(), loan_id),
            )
            audit.record(conn, AuditAction.UPDATE, "loans", "loan", loan_id,
                         {"action": "renew", "new_due_date": due.isoformat()})
            loan = self.load_loan(conn, loan_id)

        logger.info(f"Loan {loan_id} renewed until {loan.due_date}")
        return loan

    def delete_loan(self, loan_id: str) -> None:
        """Purge a returned loan. Open loans cannot be deleted."""
        with transaction(self.db_file) as conn:
            loan = self.load_loan(conn, loan_id)
            if loan.is_open:
                raise LoanStillOpen(f"Cannot delete open loan {loan_id}. Return the book first.")
            conn.execute("DELETE FROM loans WHERE id = ?", (loan_id,))
            audit.record(conn, AuditAction.DELETE, "loans", "loan", loan_id, {"book_id": loan.book_id})

    # ------------------------- Reads ------------------------- #
    def list_loans(self, status: Optional[str] = None, borrower_id: Optional[str] = None,
                   book_id: Optional[str] = None) -> List[Loan]:
        if status is not None:
            status = ChoiceValidator.require_choice(status, LoanStatus, "status")
        query = "SELECT * FROM loans WHERE 1=1"
        params: List[Any] = []
        if status:
            query += " AND status = ?"
            params.append(status)
        if borrower_id:
            query += " AND borrower_id = ?"
            params.append(borrower_id)
        if book_id:
            query += " AND book_id = ?"
            params.append(book_id)
        query += " ORDER BY created_at DESC, rowid DESC"

        with transaction(self.db_file) as conn:
            sweep_overdue(conn)
            rows = conn.execute(query, params).fetchall()
        return [Loan.from_row(row) for row in rows]

    def get_loan(self, loan_id: str) -> Loan:
        with transaction(self.db_file) as conn:
            sweep_overdue(conn)
            return self.load_loan(conn, loan_id)

    def last_borrower(self, book_id: str) -> Optional[str]:
        """Name of whoever borrowed this book most recently, if anyone."""
        with connection(self.db_file) as conn:
            return self.last_borrower_on(conn, book_id)

    @staticmethod
    def last_borrower_on(conn: sqlite3.Connection, book_id: str) -> Optional[str]:
        row = conn.execute(
            "SELECT borrower_name FROM loans WHERE book_id = ? ORDER BY loan_date DESC, rowid DESC LIMIT 1",
            (book_id,),
        ).fetchone()
        return row["borrower_name"] if row else None

    @staticmethod
    def _write_off_applied(conn: sqlite3.Connection, book_id: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM book_issues WHERE book_id = ? AND status = 'written_off' AND stock_adjusted = 1 LIMIT 1",
            (book_id,),
        ).fetchone()
        return row is not None

    @staticmethod
    def load_loan(conn: sqlite3.Connection, loan_id: str) -> Loan:
        row = conn.execute("SELECT * FROM loans WHERE id = ?", (loan_id,)).fetchone()
        if row is None:
            raise NotFound(f"Loan {loan_id} not found.")
        return Loan.from_row(row)
