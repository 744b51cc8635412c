import sqlite3

import pytest

from shelfkeeper.database import transaction
from shelfkeeper.errors import InvariantViolation, NotFound


def test_adjust_available_within_bounds(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=2)

    with transaction(lib.db_file) as conn:
        after = lib.stock.adjust_available(conn, book.id, -2)
    assert after.available_copies == 0

    with transaction(lib.db_file) as conn:
        after = lib.stock.adjust_available(conn, book.id, +1)
    assert after.available_copies == 1
    assert after.total_quantity == 2


def test_adjust_available_below_zero_is_rejected_and_rolled_back(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=1)

    with pytest.raises(InvariantViolation):
        with transaction(lib.db_file) as conn:
            lib.stock.adjust_available(conn, book.id, -2)

    assert lib.get_book(book.id).available_copies == 1


def test_adjust_available_above_total_is_rejected(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=1)

    with pytest.raises(InvariantViolation):
        with transaction(lib.db_file) as conn:
            lib.stock.adjust_available(conn, book.id, +1)

    assert lib.get_book(book.id).available_copies == 1


def test_adjust_available_unknown_book(lib):
    with pytest.raises(NotFound):
        with transaction(lib.db_file) as conn:
            lib.stock.adjust_available(conn, "missing", -1)


def test_adjust_total_floors_at_zero(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=2)

    with transaction(lib.db_file) as conn:
        after = lib.stock.adjust_total(conn, book.id, -5, -5)

    assert after.total_quantity == 0
    assert after.available_copies == 0


def test_adjust_total_refuses_more_available_than_total(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=2)

    with pytest.raises(InvariantViolation):
        with transaction(lib.db_file) as conn:
            lib.stock.adjust_total(conn, book.id, -1, 0)

    book = lib.get_book(book.id)
    assert (book.total_quantity, book.available_copies) == (2, 2)


def test_check_constraint_backs_up_the_counters(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=1)

    with pytest.raises(sqlite3.IntegrityError):
        with transaction(lib.db_file) as conn:
            conn.execute("UPDATE books SET available_copies = 5 WHERE id = ?", (book.id,))


def test_return_onto_a_full_shelf_without_write_off_is_refused(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=1)
    loan = lib.issue_loan(book.id, "participant", "p-1", "Ada", "2099-01-01")
    with transaction(lib.db_file) as conn:
        conn.execute("UPDATE books SET available_copies = 1 WHERE id = ?", (book.id,))

    with pytest.raises(InvariantViolation):
        lib.return_loan(loan.id)
    assert lib.get_loan(loan.id).status == "active"
