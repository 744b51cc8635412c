"""Stock counters for each title.

BookStock is the only writer of books.total_quantity and
books.available_copies. Both operations take the caller's connection so they
run inside the caller's transaction, and each one is a single conditional
UPDATE whose WHERE clause carries the bound check, so an out-of-range result
is never written.
"""

import logging
import sqlite3

from .book import Book
from .catalog import Catalog
from .errors import InvariantViolation

logger = logging.getLogger(__name__)


class BookStock:
    def __init__(self, catalog: Catalog) -> None:
        self.catalog = catalog

    def get_book(self, conn: sqlite3.Connection, book_id: str) -> Book:
        return self.catalog.get_book(conn, book_id)

    def book_exists(self, conn: sqlite3.Connection, book_id: str) -> bool:
        return self.catalog.book_exists(conn, book_id)

    def adjust_available(self, conn: sqlite3.Connection, book_id: str, delta: int) -> Book:
        """Apply available_copies += delta, keeping it within [0, total_quantity]."""
        cursor = conn.execute(
            """
            UPDATE books SET available_copies = available_copies + ?
            WHERE id = ?
              AND available_copies + ? >= 0
              AND available_copies + ? <= total_quantity
            """,
            (delta, book_id, delta, delta),
        )
        if cursor.rowcount == 0:
            # Raises NotFound for an unknown id
            book = self.catalog.get_book(conn, book_id)
            self._violation(book, f"available_copies {book.available_copies} {delta:+d} "
                                  f"leaves [0, {book.total_quantity}]")
        return self._checked(conn, book_id)

    def adjust_total(self, conn: sqlite3.Connection, book_id: str, delta_total: int, delta_available: int) -> Book:
        """Shift both counters together, each floored at 0.

        Used by write-offs only: shrinking the catalog by N copies also takes
        up to N copies off the shelf.
        """
        book = self.catalog.get_book(conn, book_id)
        new_total = max(0, book.total_quantity + delta_total)
        new_available = max(0, book.available_copies + delta_available)
        if new_available > new_total:
            self._violation(book, f"available_copies {new_available} would exceed total_quantity {new_total}")
        conn.execute(
            "UPDATE books SET total_quantity = ?, available_copies = ? WHERE id = ?",
            (new_total, new_available, book_id),
        )
        return self._checked(conn, book_id)

    def _checked(self, conn: sqlite3.Connection, book_id: str) -> Book:
        book = self.catalog.get_book(conn, book_id)
        if not book.stock_is_consistent():
            self._violation(book, "post-update check failed")
        return book

    @staticmethod
    def _violation(book: Book, detail: str) -> None:
        message = f"Stock invariant broken for book {book.id}: {detail}"
        logger.error(message)
        raise InvariantViolation(message)
