import sqlite3
from datetime import date, timedelta

import pytest

from shelfkeeper.database import transaction
from shelfkeeper.errors import NotFound, SessionAlreadyClosed, SessionAlreadyOpen, SessionClosed, ValidationError


def _due() -> str:
    return (date.today() + timedelta(days=14)).isoformat()


def _item_for(lib, session_id, book_id):
    return next(i for i in lib.list_inventory_items(session_id) if i.book_id == book_id)


def test_count_session_scenario(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=2)

    session = lib.start_inventory_session("Spot check", session_type="adhoc")
    assert session.status == "in_progress"
    assert session.session_type == "adhoc"

    item = _item_for(lib, session.id, book.id)
    assert item.expected_quantity == 2
    assert item.status == "pending"
    assert item.found_quantity is None
    assert item.book_title == "Dune"

    item = lib.check_inventory_item(item.id, 1)
    assert item.status == "discrepancy"
    assert item.found_quantity == 1
    assert item.checked_at is not None

    closed = lib.complete_inventory_session(session.id)
    assert closed.status == "completed"
    assert closed.end_date == date.today().isoformat()

    with pytest.raises(SessionClosed):
        lib.check_inventory_item(item.id, 2)
    assert lib.get_inventory_item(item.id).found_quantity == 1


def test_matching_count_is_checked(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=3)
    session = lib.start_inventory_session("Annual 2025")

    item = lib.check_inventory_item(_item_for(lib, session.id, book.id).id, 3, notes="all there")
    assert item.status == "checked"
    assert item.notes == "all there"


def test_counting_never_changes_stock(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=2)
    session = lib.start_inventory_session("Annual 2025")

    lib.check_inventory_item(_item_for(lib, session.id, book.id).id, 0)
    book = lib.get_book(book.id)
    assert (book.total_quantity, book.available_copies) == (2, 2)


def test_expected_quantity_is_frozen_at_start(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=3)
    session = lib.start_inventory_session("Annual 2025")

    loan = lib.issue_loan(book.id, "participant", "p-1", "Ada", _due())
    with transaction(lib.db_file) as conn:
        lib.stock.adjust_total(conn, book.id, -1, -1)
    lib.return_loan(loan.id)

    assert _item_for(lib, session.id, book.id).expected_quantity == 3


def test_books_added_later_are_not_in_the_session(lib):
    lib.add_book("Dune", "Frank Herbert", quantity=1)
    session = lib.start_inventory_session("Annual 2025")
    lib.add_book("Emma", "Jane Austen", quantity=1)

    assert [i.book_title for i in lib.list_inventory_items(session.id)] == ["Dune"]


def test_only_one_open_session(lib):
    lib.add_book("Dune", "Frank Herbert", quantity=1)
    first = lib.start_inventory_session("First")

    with pytest.raises(SessionAlreadyOpen):
        lib.start_inventory_session("Second")
    assert len(lib.list_inventory_sessions()) == 1

    lib.complete_inventory_session(first.id)
    second = lib.start_inventory_session("Second")
    assert second.status == "in_progress"


def test_open_session_index_rejects_a_second_row(lib):
    lib.start_inventory_session("First")

    with pytest.raises(sqlite3.IntegrityError):
        with transaction(lib.db_file) as conn:
            conn.execute(
                "INSERT INTO inventory_sessions (id, name, session_type, start_date, status) "
                "VALUES ('x', 'Sneaky', 'adhoc', '2025-01-01', 'in_progress')"
            )


def test_second_completion_fails(lib):
    session = lib.start_inventory_session("Annual 2025")
    lib.complete_inventory_session(session.id)

    with pytest.raises(SessionAlreadyClosed):
        lib.complete_inventory_session(session.id)
    with pytest.raises(SessionAlreadyClosed):
        lib.cancel_inventory_session(session.id)


def test_cancel_session(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=1)
    session = lib.start_inventory_session("Oops")

    cancelled = lib.cancel_inventory_session(session.id)
    assert cancelled.status == "cancelled"
    with pytest.raises(SessionClosed):
        lib.check_inventory_item(_item_for(lib, session.id, book.id).id, 1)

    # A cancelled session does not block a new one
    lib.start_inventory_session("Retry")


def test_delete_session_removes_items(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=1)
    session = lib.start_inventory_session("Annual 2025")
    item = _item_for(lib, session.id, book.id)

    lib.delete_inventory_session(session.id)

    with pytest.raises(NotFound):
        lib.get_inventory_session(session.id)
    with pytest.raises(NotFound):
        lib.get_inventory_item(item.id)


def test_stats(lib):
    books = [lib.add_book(f"Book {i}", "Author", quantity=2) for i in range(4)]
    session = lib.start_inventory_session("Annual 2025")
    items = {i.book_id: i for i in lib.list_inventory_items(session.id)}

    lib.check_inventory_item(items[books[0].id].id, 2)
    lib.check_inventory_item(items[books[1].id].id, 1)

    stats = lib.get_inventory_stats(session.id)
    assert stats.total_items == 4
    assert stats.checked == 1
    assert stats.discrepancies == 1
    assert stats.pending == 2
    assert stats.progress == 0.5

    # Still readable once closed
    lib.complete_inventory_session(session.id)
    stats = lib.get_inventory_stats(session.id)
    assert stats.status == "completed"
    assert stats.pending == 2


def test_list_items_by_status(lib):
    books = [lib.add_book(f"Book {i}", "Author", quantity=2) for i in range(3)]
    session = lib.start_inventory_session("Annual 2025")
    items = {i.book_id: i for i in lib.list_inventory_items(session.id)}
    lib.check_inventory_item(items[books[0].id].id, 0)

    assert [i.book_id for i in lib.list_inventory_items(session.id, status="discrepancy")] == [books[0].id]
    assert len(lib.list_inventory_items(session.id, status="pending")) == 2


def test_negative_found_quantity_is_rejected(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=1)
    session = lib.start_inventory_session("Annual 2025")

    with pytest.raises(ValidationError):
        lib.check_inventory_item(_item_for(lib, session.id, book.id).id, -1)
    with pytest.raises(ValidationError):
        lib.start_inventory_session("Bad type", session_type="monthly")


def test_unknown_session(lib):
    with pytest.raises(NotFound):
        lib.complete_inventory_session("missing")
    with pytest.raises(NotFound):
        lib.get_inventory_stats("missing")
    with pytest.raises(NotFound):
        lib.check_inventory_item("missing", 1)
