import json
import os
from typing import Any, Dict, List, Sequence, Tuple

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable that selects the CLI output mode.
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "SHELFKEEPER_CLI_OUTPUT"

_console = Console()

# (attribute, column header) pairs per record kind
BOOK_COLUMNS = [("id", "ID"), ("title", "Title"), ("author", "Author"),
                ("available_copies", "Available"), ("total_quantity", "Total")]
LOAN_COLUMNS = [("id", "ID"), ("book_id", "Book"), ("borrower_name", "Borrower"),
                ("due_date", "Due"), ("status", "Status")]
SESSION_COLUMNS = [("id", "ID"), ("name", "Name"), ("session_type", "Type"),
                   ("start_date", "Started"), ("status", "Status")]
ITEM_COLUMNS = [("id", "ID"), ("book_title", "Book"), ("expected_quantity", "Expected"),
                ("found_quantity", "Found"), ("status", "Status")]
ISSUE_COLUMNS = [("id", "ID"), ("book_title", "Book"), ("issue_type", "Type"),
                 ("quantity", "Qty"), ("status", "Status")]


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _cell(record: Any, attr: str) -> str:
    value = getattr(record, attr, None)
    return "-" if value is None else str(value)


def print_records(records: Sequence[Any], columns: List[Tuple[str, str]], title: str, empty_message: str) -> None:
    """Print records in the current output mode.

    - plain: one line per record, fields joined by ' | '
    - json: array of objects from each record's to_dict()
    - rich: a Rich table with the given columns
    """
    mode = get_output_mode()

    if not records:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps([r.to_dict() for r in records], ensure_ascii=False, default=str))
    elif mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for i, (_, header) in enumerate(columns):
            table.add_column(header, style="magenta" if i == 0 else "white", no_wrap=i == 0)
        for r in records:
            table.add_row(*(_cell(r, attr) for attr, _ in columns))
        _console.print(table)
    else:
        for r in records:
            print(" | ".join(_cell(r, attr) for attr, _ in columns))


def print_book_list(books: Sequence[Any]) -> None:
    print_records(books, BOOK_COLUMNS, "Books", "No books in library.")


def print_loan_list(loans: Sequence[Any]) -> None:
    print_records(loans, LOAN_COLUMNS, "Loans", "No loans found.")


def print_session_list(sessions: Sequence[Any]) -> None:
    print_records(sessions, SESSION_COLUMNS, "Inventory sessions", "No inventory sessions.")


def print_item_list(items: Sequence[Any]) -> None:
    print_records(items, ITEM_COLUMNS, "Inventory items", "No inventory items.")


def print_issue_list(issues: Sequence[Any]) -> None:
    print_records(issues, ISSUE_COLUMNS, "Issues", "No issues found.")


def print_stats_result(stats: Dict[str, Any], title: str = "Stats") -> None:
    """Print a flat statistics mapping.

    - plain: 'Label: value' lines
    - json: JSON object
    - rich: Panel with the metrics
    """
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False, default=str))
        return

    lines = [(key.replace("_", " ").title(), value) for key, value in stats.items() if not isinstance(value, list)]
    if mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {value}" for label, value in lines)
        _console.print(Panel.fit(content, title=title, border_style="blue"))
    else:
        for label, value in lines:
            print(f"{label}: {value}")
