"""Minimal catalog collaborator.

Title metadata belongs to the catalog; the quantity columns on the same row
are written only through shelfkeeper.stock.BookStock once a book exists.
"""

import logging
import sqlite3
from typing import List, Optional

from . import audit
from .book import Book
from .errors import BookInUse, NotFound
from .models import AuditAction, new_id

logger = logging.getLogger(__name__)

_BOOK_COLUMNS = "id, title, author, isbn, total_quantity, available_copies, created_at"


class Catalog:
    """Book lookups and book row creation/removal."""

    def get_book(self, conn: sqlite3.Connection, book_id: str) -> Book:
        row = conn.execute(f"SELECT {_BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
        if row is None:
            raise NotFound(f"Book {book_id} not found.")
        return Book.from_dict(dict(row))

    def book_exists(self, conn: sqlite3.Connection, book_id: str) -> bool:
        return conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone() is not None

    def list_books(self, conn: sqlite3.Connection, query: Optional[str] = None) -> List[Book]:
        if query:
            rows = conn.execute(
                f"SELECT {_BOOK_COLUMNS} FROM books WHERE title LIKE ? OR author LIKE ? ORDER BY title",
                (f"%{query}%", f"%{query}%"),
            ).fetchall()
        else:
            rows = conn.execute(f"SELECT {_BOOK_COLUMNS} FROM books ORDER BY title").fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def add_book(self, conn: sqlite3.Connection, title: str, author: str, quantity: int,
                 isbn: Optional[str] = None) -> Book:
        """Insert a new title with every copy on the shelf."""
        book_id = new_id()
        conn.execute(
            """
            INSERT INTO books (id, title, author, isbn, total_quantity, available_copies)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (book_id, title, author, isbn, quantity, quantity),
        )
        audit.record(conn, AuditAction.CREATE, "books", "book", book_id,
                     {"title": title, "author": author, "quantity": quantity})
        logger.info(f"Book added: {title!r} x{quantity} ({book_id})")
        return self.get_book(conn, book_id)

    def remove_book(self, conn: sqlite3.Connection, book_id: str) -> None:
        """Delete a title; refused while any copy is out on an open loan."""
        book = self.get_book(conn, book_id)
        open_loans = conn.execute(
            "SELECT COUNT(*) FROM loans WHERE book_id = ? AND status != 'returned'", (book_id,)
        ).fetchone()[0]
        if open_loans > 0:
            raise BookInUse(f"Book {book_id} has {open_loans} open loan(s); return them first.")
        conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
        audit.record(conn, AuditAction.DELETE, "books", "book", book_id, {"title": book.title})
        logger.info(f"Book removed: {book.title!r} ({book_id})")
