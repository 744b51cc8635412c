import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from . import audit
from .book import Book
from .catalog import Catalog
from .circulation import BorrowerDirectory, CirculationLedger, sweep_overdue
from .config import settings
from .database import connection, initialize_database, transaction
from .errors import NotFound, ValidationError
from .inventory import InventoryReconciler
from .issues import IssueTracker
from .models import AuditEntry, BookIssue, InventoryItem, InventorySession, InventoryStats, Loan
from .stock import BookStock
from .validators import ISBNValidator, QuantityValidator, TextValidator

logger = logging.getLogger(__name__)


class Library:
    """Manages the collection of books, loans, inventory counts and issues.

    One Library is bound to one SQLite file. Every call opens its own
    short-lived connection, so a single instance can be shared between
    request handlers and threads.
    """

    def __init__(self, db_file: Optional[str] = None, borrowers: Optional[BorrowerDirectory] = None) -> None:
        self.db_file = initialize_database(db_file)  # Ensure DB and tables exist
        self.catalog = Catalog()
        self.stock = BookStock(self.catalog)
        self.circulation = CirculationLedger(self.db_file, self.stock, self.catalog, borrowers)
        self.inventory = InventoryReconciler(self.db_file)
        self.issues = IssueTracker(self.db_file, self.stock, self.catalog)

    # ------------------------- Catalog ------------------------- #
    def add_book(self, title: str, author: str, quantity: int = 1, isbn: Optional[str] = None) -> Book:
        """Add a new title with every copy on the shelf."""
        title = TextValidator.require_text(title, "title")
        author = TextValidator.require_text(author, "author")
        quantity = QuantityValidator.require_int(quantity, "quantity", minimum=1)
        if isbn is not None and isbn.strip():
            if not ISBNValidator.is_valid_isbn(isbn):
                raise ValidationError("Invalid ISBN format.")
            isbn = ISBNValidator.normalize_isbn(isbn)
        else:
            isbn = None

        with transaction(self.db_file) as conn:
            return self.catalog.add_book(conn, title, author, quantity, isbn)

    def remove_book(self, book_id: str) -> None:
        with transaction(self.db_file) as conn:
            self.catalog.remove_book(conn, book_id)

    def list_books(self) -> List[Book]:
        with connection(self.db_file) as conn:
            return self.catalog.list_books(conn)

    def search_books(self, query: str) -> List[Book]:
        """Search for books by title or author."""
        with connection(self.db_file) as conn:
            return self.catalog.list_books(conn, query=query)

    def get_book(self, book_id: str) -> Book:
        with connection(self.db_file) as conn:
            return self.catalog.get_book(conn, book_id)

    def find_book(self, book_id: str) -> Optional[Book]:
        try:
            return self.get_book(book_id)
        except NotFound:
            return None

    # ------------------------- Circulation ------------------------- #
    def issue_loan(self, book_id: str, borrower_type: str, borrower_id: str, borrower_name: str,
                   due_date: Any = None) -> Loan:
        if due_date is None:
            due_date = date.today() + timedelta(days=settings.default_loan_days)
        return self.circulation.issue_loan(book_id, borrower_type, borrower_id, borrower_name, due_date)

    def return_loan(self, loan_id: str) -> Loan:
        return self.circulation.return_loan(loan_id)

    def renew_loan(self, loan_id: str, new_due_date: Any) -> Loan:
        return self.circulation.renew_loan(loan_id, new_due_date)

    def delete_loan(self, loan_id: str) -> None:
        self.circulation.delete_loan(loan_id)

    def list_loans(self, status: Optional[str] = None, borrower_id: Optional[str] = None,
                   book_id: Optional[str] = None) -> List[Loan]:
        return self.circulation.list_loans(status=status, borrower_id=borrower_id, book_id=book_id)

    def get_loan(self, loan_id: str) -> Loan:
        return self.circulation.get_loan(loan_id)

    def last_borrower(self, book_id: str) -> Optional[str]:
        return self.circulation.last_borrower(book_id)

    # ------------------------- Inventory ------------------------- #
    def start_inventory_session(self, name: str, session_type: str = "annual",
                                notes: Optional[str] = None) -> InventorySession:
        return self.inventory.start_inventory_session(name, session_type, notes)

    def check_inventory_item(self, item_id: str, found_quantity: int, notes: Optional[str] = None) -> InventoryItem:
        return self.inventory.check_inventory_item(item_id, found_quantity, notes)

    def complete_inventory_session(self, session_id: str) -> InventorySession:
        return self.inventory.complete_inventory_session(session_id)

    def cancel_inventory_session(self, session_id: str) -> InventorySession:
        return self.inventory.cancel_inventory_session(session_id)

    def delete_inventory_session(self, session_id: str) -> None:
        self.inventory.delete_inventory_session(session_id)

    def get_inventory_session(self, session_id: str) -> InventorySession:
        return self.inventory.get_inventory_session(session_id)

    def list_inventory_sessions(self, status: Optional[str] = None) -> List[InventorySession]:
        return self.inventory.list_inventory_sessions(status)

    def list_inventory_items(self, session_id: str, status: Optional[str] = None) -> List[InventoryItem]:
        return self.inventory.list_inventory_items(session_id, status)

    def get_inventory_item(self, item_id: str) -> InventoryItem:
        return self.inventory.get_inventory_item(item_id)

    def get_inventory_stats(self, session_id: str) -> InventoryStats:
        return self.inventory.get_inventory_stats(session_id)

    # ------------------------- Issues ------------------------- #
    def report_issue(self, book_id: str, issue_type: str, quantity: int = 1,
                     borrower_name: Optional[str] = None, loan_id: Optional[str] = None,
                     notes: Optional[str] = None) -> BookIssue:
        return self.issues.report_issue(book_id, issue_type, quantity, borrower_name, loan_id, notes)

    def report_shortfall(self, item_id: str, issue_type: str = "lost", notes: Optional[str] = None) -> BookIssue:
        return self.issues.report_shortfall(item_id, issue_type, notes)

    def resolve_issue(self, issue_id: str, outcome: str = "resolved", resolution_notes: Optional[str] = None,
                      adjust_quantity: bool = False) -> BookIssue:
        return self.issues.resolve_issue(issue_id, outcome, resolution_notes, adjust_quantity)

    def delete_issue(self, issue_id: str) -> None:
        self.issues.delete_issue(issue_id)

    def get_issue(self, issue_id: str) -> BookIssue:
        return self.issues.get_issue(issue_id)

    def list_issues(self, book_id: Optional[str] = None, status: Optional[str] = None,
                    issue_type: Optional[str] = None) -> List[BookIssue]:
        return self.issues.list_issues(book_id=book_id, status=status, issue_type=issue_type)

    def list_open_issues(self) -> List[BookIssue]:
        return self.issues.list_open_issues()

    def get_issue_stats(self) -> Dict[str, Any]:
        return self.issues.get_issue_stats()

    # ------------------------- Reporting ------------------------- #
    def list_audit_log(self, module: Optional[str] = None, action: Optional[str] = None,
                       entity_id: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[AuditEntry]:
        limit = max(1, min(limit, settings.max_page_size))
        with connection(self.db_file) as conn:
            return audit.list_entries(conn, module=module, action=action, entity_id=entity_id,
                                      limit=limit, offset=max(0, offset))

    def get_statistics(self) -> Dict[str, Any]:
        """Get library statistics."""
        with transaction(self.db_file) as conn:
            # Loan counts below must reflect today's overdue flags
            sweep_overdue(conn)
            books = conn.execute(
                """
                SELECT COUNT(*) AS titles,
                       COALESCE(SUM(total_quantity), 0) AS total_copies,
                       COALESCE(SUM(available_copies), 0) AS available_copies,
                       COUNT(DISTINCT author) AS unique_authors
                FROM books
                """
            ).fetchone()
            loans = {
                row["status"]: row["count"]
                for row in conn.execute("SELECT status, COUNT(*) AS count FROM loans GROUP BY status")
            }
            open_issues = conn.execute("SELECT COUNT(*) FROM book_issues WHERE status = 'open'").fetchone()[0]
            open_session = conn.execute(
                "SELECT id FROM inventory_sessions WHERE status = 'in_progress'"
            ).fetchone()

        return {
            "total_books": books["titles"],
            "total_copies": books["total_copies"],
            "available_copies": books["available_copies"],
            "unique_authors": books["unique_authors"],
            "active_loans": loans.get("active", 0),
            "overdue_loans": loans.get("overdue", 0),
            "returned_loans": loans.get("returned", 0),
            "open_issues": open_issues,
            "open_inventory_session": open_session["id"] if open_session else None,
        }

    def close(self) -> None:
        """Compatibility helper for tests.

        Connections are opened per operation, so there is nothing to release.
        """
        return None
