import logging
import os
import sqlite3
import tempfile
from contextlib import contextmanager
from typing import Iterator, Optional

from .config import settings  # loads .env before the environment is read

logger = logging.getLogger(__name__)


def default_database_file() -> str:
    """Return the database file to use when none is given explicitly.

    Precedence:
    1) SHELFKEEPER_DB_FILE
    2) LIBRARY_DB_FILE (older name, still honoured)
    3) a per-process temp file
    """
    return (
        os.environ.get("SHELFKEEPER_DB_FILE")
        or os.environ.get("LIBRARY_DB_FILE")
        or os.path.join(tempfile.gettempdir(), f"shelfkeeper_{os.getpid()}.db")
    )


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode; multi-statement work must go through
    transaction() so that it is wrapped in BEGIN IMMEDIATE ... COMMIT.
    """
    conn = sqlite3.connect(
        db_file or default_database_file(),
        timeout=settings.db_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA synchronous = NORMAL;")
    return conn


@contextmanager
def transaction(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Run the enclosed block as one write transaction.

    BEGIN IMMEDIATE takes the database write lock up front, so two callers
    racing for the same row are serialized: the second one only reads after
    the first has committed. Any exception rolls everything back.
    """
    conn = get_db_connection(db_file)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.rollback()
            raise
        conn.commit()
    finally:
        conn.close()


@contextmanager
def connection(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Plain read connection, closed on exit."""
    conn = get_db_connection(db_file)
    try:
        yield conn
    finally:
        conn.close()


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the tables and indexes if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        cursor.execute("BEGIN")
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                isbn TEXT,
                total_quantity INTEGER NOT NULL CHECK(total_quantity >= 0),
                available_copies INTEGER NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                CHECK(available_copies >= 0 AND available_copies <= total_quantity)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS loans (
                id TEXT PRIMARY KEY,
                book_id TEXT NOT NULL,
                borrower_type TEXT NOT NULL CHECK(borrower_type IN ('participant', 'other_reader')),
                borrower_id TEXT NOT NULL,
                borrower_name TEXT NOT NULL,
                loan_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'overdue', 'returned')),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS inventory_sessions (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                session_type TEXT NOT NULL CHECK(session_type IN ('annual', 'adhoc')),
                start_date TEXT NOT NULL,
                end_date TEXT,
                status TEXT NOT NULL DEFAULT 'in_progress'
                    CHECK(status IN ('in_progress', 'completed', 'cancelled')),
                notes TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS inventory_items (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                book_id TEXT NOT NULL,
                expected_quantity INTEGER NOT NULL CHECK(expected_quantity >= 0),
                found_quantity INTEGER CHECK(found_quantity IS NULL OR found_quantity >= 0),
                status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending', 'checked', 'discrepancy')),
                notes TEXT,
                checked_at TIMESTAMP,
                UNIQUE (session_id, book_id),
                FOREIGN KEY (session_id) REFERENCES inventory_sessions(id) ON DELETE CASCADE,
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS book_issues (
                id TEXT PRIMARY KEY,
                book_id TEXT NOT NULL,
                issue_type TEXT NOT NULL CHECK(issue_type IN ('not_returned', 'damaged', 'torn', 'lost', 'other')),
                quantity INTEGER NOT NULL DEFAULT 1 CHECK(quantity >= 1),
                borrower_name TEXT,
                loan_id TEXT,
                notes TEXT,
                report_date TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'open' CHECK(status IN ('open', 'resolved', 'written_off')),
                resolution_notes TEXT,
                resolved_at TIMESTAMP,
                stock_adjusted INTEGER NOT NULL DEFAULT 0 CHECK(stock_adjusted IN (0, 1)),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE,
                FOREIGN KEY (loan_id) REFERENCES loans(id) ON DELETE SET NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS audit_log (
                id TEXT PRIMARY KEY,
                timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                action TEXT NOT NULL CHECK(action IN ('CREATE', 'UPDATE', 'DELETE')),
                module TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                details TEXT
            )
        """)

        # At most one reconciliation pass may be open at any time.
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_inventory_sessions_one_open
            ON inventory_sessions(status) WHERE status = 'in_progress'
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_book_id ON loans(book_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_borrower_status ON loans(borrower_id, status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_status_due_date ON loans(status, due_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_inventory_items_session ON inventory_items(session_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_book_issues_book_id ON book_issues(book_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_book_issues_status ON book_issues(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_log_module ON audit_log(module, timestamp DESC)")

        conn.commit()
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> str:
    """Initialize the database and return the file it lives in."""
    path = db_file or default_database_file()
    create_tables(path)
    logger.debug(f"Database ready at {path}")
    return path
