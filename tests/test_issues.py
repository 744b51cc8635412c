from datetime import date, timedelta

import pytest

from shelfkeeper.errors import AlreadyResolved, NotFound, ValidationError


def _due() -> str:
    return (date.today() + timedelta(days=14)).isoformat()


def test_write_off_scenario(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=2)
    lib.issue_loan(book.id, "participant", "p-1", "Ada", _due())

    issue = lib.report_issue(book.id, "lost", quantity=1)
    assert issue.status == "open"
    assert issue.book_title == "Dune"
    # Reporting leaves stock alone
    assert lib.get_book(book.id).available_copies == 1

    resolved = lib.resolve_issue(issue.id, "written_off", adjust_quantity=True)
    assert resolved.status == "written_off"
    assert resolved.resolved_at is not None

    book = lib.get_book(book.id)
    assert book.total_quantity == 1
    assert book.available_copies == 0


def test_resolved_outcome_has_no_stock_effect(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=2)
    issue = lib.report_issue(book.id, "damaged")

    lib.resolve_issue(issue.id, "resolved", resolution_notes="rebound", adjust_quantity=True)

    book = lib.get_book(book.id)
    assert (book.total_quantity, book.available_copies) == (2, 2)
    assert lib.get_issue(issue.id).resolution_notes == "rebound"


def test_write_off_without_adjustment_keeps_stock(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=2)
    issue = lib.report_issue(book.id, "torn")

    lib.resolve_issue(issue.id, "written_off")
    assert lib.get_book(book.id).total_quantity == 2


def test_write_off_floors_at_zero(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=2)
    issue = lib.report_issue(book.id, "lost", quantity=5)

    lib.resolve_issue(issue.id, "written_off", adjust_quantity=True)

    book = lib.get_book(book.id)
    assert (book.total_quantity, book.available_copies) == (0, 0)


def test_write_off_with_every_copy_out(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=2)
    lib.issue_loan(book.id, "participant", "p-1", "Ada", _due())
    lib.issue_loan(book.id, "participant", "p-2", "Grace", _due())
    issue = lib.report_issue(book.id, "lost", quantity=1)

    # Available is already 0; only the total shrinks
    lib.resolve_issue(issue.id, "written_off", adjust_quantity=True)
    book = lib.get_book(book.id)
    assert (book.total_quantity, book.available_copies) == (1, 0)


def test_loan_for_a_written_off_copy_can_still_be_closed(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=1)
    loan = lib.issue_loan(book.id, "participant", "p-1", "Ada", _due())
    issue = lib.report_issue(book.id, "not_returned", loan_id=loan.id)
    resolved = lib.resolve_issue(issue.id, "written_off", adjust_quantity=True)
    assert resolved.stock_adjusted is True

    returned = lib.return_loan(loan.id)
    assert returned.status == "returned"
    book = lib.get_book(book.id)
    assert (book.total_quantity, book.available_copies) == (0, 0)
    assert lib.list_loans(borrower_id="p-1", status="active") == []
    assert lib.list_audit_log(entity_id=loan.id)[0].details == {"action": "return", "restocked": False}

    lib.delete_loan(loan.id)
    assert lib.list_loans(borrower_id="p-1") == []


def test_return_after_write_off_restocks_while_below_total(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=2)
    loan = lib.issue_loan(book.id, "participant", "p-1", "Ada", _due())
    issue = lib.report_issue(book.id, "not_returned", loan_id=loan.id)
    lib.resolve_issue(issue.id, "written_off", adjust_quantity=True)
    # The floor took the shelf copy's unit too
    book = lib.get_book(book.id)
    assert (book.total_quantity, book.available_copies) == (1, 0)

    lib.return_loan(loan.id)
    book = lib.get_book(book.id)
    assert (book.total_quantity, book.available_copies) == (1, 1)


def test_write_off_without_adjustment_is_not_marked(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=1)
    issue = lib.report_issue(book.id, "lost")
    assert issue.stock_adjusted is False
    assert lib.resolve_issue(issue.id, "written_off").stock_adjusted is False


def test_second_resolution_fails(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=2)
    issue = lib.report_issue(book.id, "lost")
    lib.resolve_issue(issue.id, "written_off", adjust_quantity=True)

    with pytest.raises(AlreadyResolved):
        lib.resolve_issue(issue.id, "written_off", adjust_quantity=True)
    assert lib.get_book(book.id).total_quantity == 1


def test_invalid_reports_are_rejected(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=2)

    with pytest.raises(ValidationError):
        lib.report_issue(book.id, "lost", quantity=0)
    with pytest.raises(ValidationError):
        lib.report_issue(book.id, "stolen")
    with pytest.raises(NotFound):
        lib.report_issue("missing", "lost")
    with pytest.raises(NotFound):
        lib.report_issue(book.id, "lost", loan_id="missing")

    issue = lib.report_issue(book.id, "lost")
    with pytest.raises(ValidationError):
        lib.resolve_issue(issue.id, "open")
    assert lib.list_issues() == [lib.get_issue(issue.id)]


def test_loan_supplies_borrower_name(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=2)
    loan = lib.issue_loan(book.id, "participant", "p-1", "Ada", _due())

    issue = lib.report_issue(book.id, "damaged", loan_id=loan.id)
    assert issue.borrower_name == "Ada"
    assert issue.loan_id == loan.id

    named = lib.report_issue(book.id, "damaged", loan_id=loan.id, borrower_name="Ada L.")
    assert named.borrower_name == "Ada L."


def test_loan_must_belong_to_the_book(lib):
    a = lib.add_book("Dune", "Frank Herbert", quantity=1)
    b = lib.add_book("Emma", "Jane Austen", quantity=1)
    loan = lib.issue_loan(a.id, "participant", "p-1", "Ada", _due())

    with pytest.raises(ValidationError):
        lib.report_issue(b.id, "damaged", loan_id=loan.id)


def test_list_open_issues(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=3)
    first = lib.report_issue(book.id, "lost")
    second = lib.report_issue(book.id, "damaged")
    lib.resolve_issue(first.id)

    assert [i.id for i in lib.list_open_issues()] == [second.id]
    assert [i.id for i in lib.list_issues(issue_type="lost")] == [first.id]


def test_issue_stats(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=5)
    lost = lib.report_issue(book.id, "lost", quantity=2)
    damaged = lib.report_issue(book.id, "damaged")
    lib.report_issue(book.id, "damaged")
    lib.resolve_issue(lost.id, "written_off")
    lib.resolve_issue(damaged.id)

    stats = lib.get_issue_stats()
    assert stats["total"] == 3
    assert stats["open"] == 1
    assert stats["resolved"] == 1
    assert stats["written_off"] == 1
    assert stats["by_type"] == [
        {"issue_type": "damaged", "count": 2, "total_quantity": 2},
        {"issue_type": "lost", "count": 1, "total_quantity": 2},
    ]


def test_delete_issue(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=1)
    issue = lib.report_issue(book.id, "lost")

    lib.delete_issue(issue.id)
    with pytest.raises(NotFound):
        lib.get_issue(issue.id)
    assert lib.get_book(book.id).total_quantity == 1


def test_report_shortfall_from_inventory(lib):
    book = lib.add_book("Dune", "Frank Herbert", quantity=3)
    loan = lib.issue_loan(book.id, "participant", "p-1", "Ada", _due())
    lib.return_loan(loan.id)

    session = lib.start_inventory_session("Annual 2025")
    item = lib.list_inventory_items(session.id)[0]
    lib.check_inventory_item(item.id, 1)

    issue = lib.report_shortfall(item.id)
    assert issue.issue_type == "lost"
    assert issue.quantity == 2
    assert issue.borrower_name == "Ada"
    assert issue.notes == "Inventory 'Annual 2025': expected 3, found 1"
    assert lib.get_book(book.id).total_quantity == 3


def test_report_shortfall_needs_missing_copies(lib):
    lib.add_book("Dune", "Frank Herbert", quantity=2)
    session = lib.start_inventory_session("Annual 2025")
    item = lib.list_inventory_items(session.id)[0]

    with pytest.raises(ValidationError):
        lib.report_shortfall(item.id)

    lib.check_inventory_item(item.id, 3)
    with pytest.raises(ValidationError):
        lib.report_shortfall(item.id)
