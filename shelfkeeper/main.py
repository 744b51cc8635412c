import logging
import subprocess
import sys
from functools import wraps
from typing import Dict, Optional

import typer
from rich.console import Console

from .config import settings
from .database import default_database_file
from .errors import LibraryError
from .library import Library
from .ui_helpers import (
    print_book_list,
    print_issue_list,
    print_item_list,
    print_loan_list,
    print_session_list,
    print_stats_result,
    set_output_mode,
)

APP_NAME = f"{settings.app_name} CLI"

console = Console()
logger = logging.getLogger(__name__)

_libraries: Dict[str, Library] = {}


def get_library() -> Library:
    """Library for the current database file, created once per file."""
    db_file = default_database_file()
    if db_file not in _libraries:
        _libraries[db_file] = Library(db_file=db_file)
    return _libraries[db_file]


def handle_errors(func):
    """Print domain errors instead of a traceback and exit with status 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except LibraryError as e:
            print(f"Error: {e.message}")
            raise typer.Exit(code=1)
    return wrapper


# --- Typer CLI Application ---
app = typer.Typer(help=APP_NAME)
books_app = typer.Typer(help="Catalog titles and their stock")
loans_app = typer.Typer(help="Issue, return and renew loans")
inventory_app = typer.Typer(help="Physical-count sessions")
issues_app = typer.Typer(help="Damage and loss reports")
app.add_typer(books_app, name="books")
app.add_typer(loans_app, name="loans")
app.add_typer(inventory_app, name="inventory")
app.add_typer(issues_app, name="issues")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global options for the CLI (e.g. output mode)."""
    logging.basicConfig(level=settings.log_level, format="%(levelname)s %(name)s: %(message)s")
    if output:
        set_output_mode(output)


@app.command("stats")
def cli_stats():
    """Show library statistics."""
    print_stats_result(get_library().get_statistics())


@app.command("serve")
def cli_serve(host: Optional[str] = typer.Option(None, "--host"),
              port: Optional[int] = typer.Option(None, "--port"),
              reload: bool = typer.Option(False, "--reload", help="Restart on code changes")):
    """Start the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "shelfkeeper.api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] `uvicorn` could not be started. Make sure it is installed.")


# --- Books ---
@books_app.command("list")
def books_list(query: Optional[str] = typer.Option(None, "--query", "-q", help="Search title or author")):
    """List all books, or those matching a search."""
    lib = get_library()
    print_book_list(lib.search_books(query) if query else lib.list_books())


@books_app.command("add")
@handle_errors
def books_add(title: str, author: str,
              quantity: int = typer.Option(1, "--quantity", "-n"),
              isbn: Optional[str] = typer.Option(None, "--isbn")):
    """Add a title with QUANTITY copies on the shelf."""
    book = get_library().add_book(title, author, quantity, isbn)
    print(f"Added: {book.title} by {book.author} ({book.id})")


@books_app.command("find")
def books_find(book_id: str):
    """Show one book's stock."""
    book = get_library().find_book(book_id)
    if book is None:
        print(f"Book {book_id} not found.")
        raise typer.Exit(code=1)
    print("Book Found")
    print(f"Title: {book.title}")
    print(f"Author: {book.author}")
    print(f"Available: {book.available_copies}/{book.total_quantity}")


@books_app.command("remove")
@handle_errors
def books_remove(book_id: str):
    """Remove a title that has no open loans."""
    get_library().remove_book(book_id)
    print(f"Book {book_id} has been removed.")


# --- Loans ---
@loans_app.command("list")
@handle_errors
def loans_list(status: Optional[str] = typer.Option(None, "--status"),
               borrower_id: Optional[str] = typer.Option(None, "--borrower"),
               book_id: Optional[str] = typer.Option(None, "--book")):
    """List loans, flagging overdue ones first."""
    print_loan_list(get_library().list_loans(status=status, borrower_id=borrower_id, book_id=book_id))


@loans_app.command("issue")
@handle_errors
def loans_issue(book_id: str, borrower_id: str, borrower_name: str,
                borrower_type: str = typer.Option("participant", "--type"),
                due_date: Optional[str] = typer.Option(None, "--due", help="YYYY-MM-DD")):
    """Lend one copy of a book."""
    loan = get_library().issue_loan(book_id, borrower_type, borrower_id, borrower_name, due_date)
    print(f"Loan {loan.id} issued to {loan.borrower_name}, due {loan.due_date}")


@loans_app.command("return")
@handle_errors
def loans_return(loan_id: str):
    loan = get_library().return_loan(loan_id)
    print(f"Loan {loan.id} returned on {loan.return_date}")


@loans_app.command("renew")
@handle_errors
def loans_renew(loan_id: str, due_date: str):
    loan = get_library().renew_loan(loan_id, due_date)
    print(f"Loan {loan.id} renewed until {loan.due_date}")


@loans_app.command("delete")
@handle_errors
def loans_delete(loan_id: str):
    get_library().delete_loan(loan_id)
    print(f"Loan {loan_id} deleted.")


# --- Inventory ---
@inventory_app.command("list")
@handle_errors
def inventory_list(status: Optional[str] = typer.Option(None, "--status")):
    print_session_list(get_library().list_inventory_sessions(status))


@inventory_app.command("start")
@handle_errors
def inventory_start(name: str,
                    session_type: str = typer.Option("annual", "--type"),
                    notes: Optional[str] = typer.Option(None, "--notes")):
    """Open a count session and snapshot every title's expected quantity."""
    session = get_library().start_inventory_session(name, session_type, notes)
    print(f"Inventory session {session.id} started: {session.name}")


@inventory_app.command("items")
@handle_errors
def inventory_items(session_id: str, status: Optional[str] = typer.Option(None, "--status")):
    print_item_list(get_library().list_inventory_items(session_id, status))


@inventory_app.command("check")
@handle_errors
def inventory_check(item_id: str, found_quantity: int,
                    notes: Optional[str] = typer.Option(None, "--notes")):
    """Record how many copies were found on the shelf."""
    item = get_library().check_inventory_item(item_id, found_quantity, notes)
    print(f"Item {item.id}: expected {item.expected_quantity}, found {item.found_quantity} ({item.status})")


@inventory_app.command("complete")
@handle_errors
def inventory_complete(session_id: str):
    session = get_library().complete_inventory_session(session_id)
    print(f"Inventory session {session.id} completed on {session.end_date}")


@inventory_app.command("cancel")
@handle_errors
def inventory_cancel(session_id: str):
    session = get_library().cancel_inventory_session(session_id)
    print(f"Inventory session {session.id} cancelled")


@inventory_app.command("stats")
@handle_errors
def inventory_stats(session_id: str):
    print_stats_result(get_library().get_inventory_stats(session_id).to_dict(), title="Inventory")


# --- Issues ---
@issues_app.command("list")
@handle_errors
def issues_list(open_only: bool = typer.Option(False, "--open", help="Only unresolved issues"),
                book_id: Optional[str] = typer.Option(None, "--book"),
                issue_type: Optional[str] = typer.Option(None, "--type")):
    lib = get_library()
    status = "open" if open_only else None
    print_issue_list(lib.list_issues(book_id=book_id, status=status, issue_type=issue_type))


@issues_app.command("report")
@handle_errors
def issues_report(book_id: str, issue_type: str,
                  quantity: int = typer.Option(1, "--quantity", "-n"),
                  borrower_name: Optional[str] = typer.Option(None, "--borrower"),
                  loan_id: Optional[str] = typer.Option(None, "--loan"),
                  notes: Optional[str] = typer.Option(None, "--notes")):
    """Report damaged, lost or unreturned copies."""
    issue = get_library().report_issue(book_id, issue_type, quantity, borrower_name, loan_id, notes)
    print(f"Issue {issue.id} reported: {issue.issue_type} x{issue.quantity}")


@issues_app.command("shortfall")
@handle_errors
def issues_shortfall(item_id: str, issue_type: str = typer.Option("lost", "--type")):
    """Report the copies an inventory count found missing."""
    issue = get_library().report_shortfall(item_id, issue_type)
    print(f"Issue {issue.id} reported: {issue.issue_type} x{issue.quantity}")


@issues_app.command("resolve")
@handle_errors
def issues_resolve(issue_id: str,
                   write_off: bool = typer.Option(False, "--write-off", help="Resolve as written off"),
                   adjust_quantity: bool = typer.Option(False, "--adjust-quantity",
                                                        help="Remove the copies from the catalog"),
                   notes: Optional[str] = typer.Option(None, "--notes")):
    outcome = "written_off" if write_off else "resolved"
    issue = get_library().resolve_issue(issue_id, outcome, notes, adjust_quantity)
    print(f"Issue {issue.id} {issue.status}")


@issues_app.command("stats")
def issues_stats():
    print_stats_result(get_library().get_issue_stats(), title="Issues")


if __name__ == "__main__":
    app()
