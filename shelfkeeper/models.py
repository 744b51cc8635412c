"""Records owned by the circulation, inventory and issue modules."""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass
from datetime import date
from enum import Enum
from typing import Any, Dict, Optional

# Maximum number of open (active or overdue) loans per borrower.
LOAN_LIMIT = 3


def today_iso() -> str:
    return date.today().isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


class BorrowerType(str, Enum):
    PARTICIPANT = "participant"
    OTHER_READER = "other_reader"


class LoanStatus(str, Enum):
    ACTIVE = "active"
    OVERDUE = "overdue"
    RETURNED = "returned"


class SessionType(str, Enum):
    ANNUAL = "annual"
    ADHOC = "adhoc"


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ItemStatus(str, Enum):
    PENDING = "pending"
    CHECKED = "checked"
    DISCREPANCY = "discrepancy"


class IssueType(str, Enum):
    NOT_RETURNED = "not_returned"
    DAMAGED = "damaged"
    TORN = "torn"
    LOST = "lost"
    OTHER = "other"


class IssueStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    WRITTEN_OFF = "written_off"


class AuditAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


def _row_to_dict(row: Any) -> Dict[str, Any]:
    return dict(row) if not isinstance(row, dict) else row


@dataclass
class Loan:
    id: str
    book_id: str
    borrower_type: str
    borrower_id: str
    borrower_name: str
    loan_date: str
    due_date: str
    status: str
    return_date: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status != LoanStatus.RETURNED.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Any) -> "Loan":
        data = _row_to_dict(row)
        return cls(
            id=data["id"],
            book_id=data["book_id"],
            borrower_type=data["borrower_type"],
            borrower_id=data["borrower_id"],
            borrower_name=data["borrower_name"],
            loan_date=data["loan_date"],
            due_date=data["due_date"],
            status=data["status"],
            return_date=data.get("return_date"),
            created_at=data.get("created_at"),
        )


@dataclass
class InventorySession:
    id: str
    name: str
    session_type: str
    start_date: str
    status: str
    end_date: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status == SessionStatus.IN_PROGRESS.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Any) -> "InventorySession":
        data = _row_to_dict(row)
        return cls(
            id=data["id"],
            name=data["name"],
            session_type=data["session_type"],
            start_date=data["start_date"],
            status=data["status"],
            end_date=data.get("end_date"),
            notes=data.get("notes"),
            created_at=data.get("created_at"),
        )


@dataclass
class InventoryItem:
    id: str
    session_id: str
    book_id: str
    expected_quantity: int
    status: str
    found_quantity: Optional[int] = None
    notes: Optional[str] = None
    checked_at: Optional[str] = None
    # Joined from books when listing a session's items
    book_title: Optional[str] = None
    book_author: Optional[str] = None

    @property
    def shortfall(self) -> int:
        """Copies expected but not found; 0 when unchecked or not short."""
        if self.found_quantity is None:
            return 0
        return max(0, self.expected_quantity - self.found_quantity)

    @staticmethod
    def derive_status(expected_quantity: int, found_quantity: Optional[int]) -> str:
        if found_quantity is None:
            return ItemStatus.PENDING.value
        if found_quantity == expected_quantity:
            return ItemStatus.CHECKED.value
        return ItemStatus.DISCREPANCY.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Any) -> "InventoryItem":
        data = _row_to_dict(row)
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            book_id=data["book_id"],
            expected_quantity=int(data["expected_quantity"]),
            status=data["status"],
            found_quantity=data.get("found_quantity"),
            notes=data.get("notes"),
            checked_at=data.get("checked_at"),
            book_title=data.get("book_title"),
            book_author=data.get("book_author"),
        )


@dataclass
class InventoryStats:
    session_id: str
    status: str
    total_items: int
    checked: int
    discrepancies: int
    pending: int

    @property
    def progress(self) -> float:
        if self.total_items == 0:
            return 1.0
        return (self.total_items - self.pending) / self.total_items

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["progress"] = round(self.progress, 4)
        return data


@dataclass
class BookIssue:
    id: str
    book_id: str
    issue_type: str
    quantity: int
    report_date: str
    status: str
    borrower_name: Optional[str] = None
    loan_id: Optional[str] = None
    notes: Optional[str] = None
    resolution_notes: Optional[str] = None
    resolved_at: Optional[str] = None
    stock_adjusted: bool = False
    created_at: Optional[str] = None
    book_title: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Any) -> "BookIssue":
        data = _row_to_dict(row)
        return cls(
            id=data["id"],
            book_id=data["book_id"],
            issue_type=data["issue_type"],
            quantity=int(data["quantity"]),
            report_date=data["report_date"],
            status=data["status"],
            borrower_name=data.get("borrower_name"),
            loan_id=data.get("loan_id"),
            notes=data.get("notes"),
            resolution_notes=data.get("resolution_notes"),
            resolved_at=data.get("resolved_at"),
            stock_adjusted=bool(data.get("stock_adjusted")),
            created_at=data.get("created_at"),
            book_title=data.get("book_title"),
        )


@dataclass
class AuditEntry:
    id: str
    timestamp: str
    action: str
    module: str
    entity_type: str
    entity_id: str
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Any) -> "AuditEntry":
        data = _row_to_dict(row)
        details = data.get("details")
        if isinstance(details, str):
            try:
                details = json.loads(details)
            except json.JSONDecodeError:
                details = {"message": details}
        return cls(
            id=data["id"],
            timestamp=str(data["timestamp"]),
            action=data["action"],
            module=data["module"],
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            details=details,
        )
