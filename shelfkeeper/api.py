import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .config import settings
from .database import connection
from .errors import ConflictError, InvariantViolation, LibraryError, NotFound, ValidationError
from .library import Library

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

library = Library()

app = FastAPI(title=f"{settings.app_name} API", version=settings.app_version, debug=settings.debug)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_library() -> Library:
    return library


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that checks the API key on write endpoints."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


# --- Error mapping ---
def _status_for(exc: LibraryError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, ConflictError):
        return 409
    return 500


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    status_code = _status_for(exc)
    if isinstance(exc, InvariantViolation):
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    elif isinstance(exc, ConflictError):
        logger.warning(f"{request.method} {request.url.path} refused ({exc.code}): {exc.message}")
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "code": exc.code})


# --- Models ---
class BookModel(BaseModel):
    id: str
    title: str
    author: str
    isbn: str | None = None
    total_quantity: int
    available_copies: int
    created_at: str | None = None


class BookCreateModel(BaseModel):
    title: str
    author: str
    quantity: int = Field(default=1, description="Number of copies; all start on the shelf")
    isbn: str | None = None


class LoanModel(BaseModel):
    id: str
    book_id: str
    borrower_type: str
    borrower_id: str
    borrower_name: str
    loan_date: str
    due_date: str
    return_date: str | None = None
    status: str
    created_at: str | None = None


class LoanCreateModel(BaseModel):
    book_id: str
    borrower_type: str
    borrower_id: str
    borrower_name: str
    due_date: str | None = Field(default=None, description="YYYY-MM-DD; defaults to the standard loan length")


class RenewModel(BaseModel):
    due_date: str


class SessionModel(BaseModel):
    id: str
    name: str
    session_type: str
    start_date: str
    end_date: str | None = None
    status: str
    notes: str | None = None
    created_at: str | None = None


class SessionCreateModel(BaseModel):
    name: str
    session_type: str = "annual"
    notes: str | None = None


class ItemModel(BaseModel):
    id: str
    session_id: str
    book_id: str
    expected_quantity: int
    found_quantity: int | None = None
    status: str
    notes: str | None = None
    checked_at: str | None = None
    book_title: str | None = None
    book_author: str | None = None


class ItemCheckModel(BaseModel):
    found_quantity: int
    notes: str | None = None


class InventoryStatsModel(BaseModel):
    session_id: str
    status: str
    total_items: int
    checked: int
    discrepancies: int
    pending: int
    progress: float


class IssueModel(BaseModel):
    id: str
    book_id: str
    book_title: str | None = None
    issue_type: str
    quantity: int
    borrower_name: str | None = None
    loan_id: str | None = None
    notes: str | None = None
    report_date: str
    status: str
    resolution_notes: str | None = None
    resolved_at: str | None = None
    stock_adjusted: bool = False
    created_at: str | None = None


class IssueCreateModel(BaseModel):
    book_id: str
    issue_type: str
    quantity: int = 1
    borrower_name: str | None = None
    loan_id: str | None = None
    notes: str | None = None


class ShortfallModel(BaseModel):
    item_id: str
    issue_type: str = "lost"
    notes: str | None = None


class ResolveModel(BaseModel):
    outcome: str = "resolved"
    resolution_notes: str | None = None
    adjust_quantity: bool = False


class AuditEntryModel(BaseModel):
    id: str
    timestamp: str
    action: str
    module: str
    entity_type: str
    entity_id: str
    details: Dict[str, Any] | None = None


class StatsModel(BaseModel):
    total_books: int
    total_copies: int
    available_copies: int
    unique_authors: int
    active_loans: int
    overdue_loans: int
    returned_loans: int
    open_issues: int
    open_inventory_session: str | None = None


# --- Health ---
@app.get("/health")
def health(lib: Library = Depends(get_library)):
    """Lightweight health endpoint: a quick database round trip."""
    db_ok = True
    try:
        with connection(lib.db_file) as conn:
            conn.execute("SELECT 1")
    except Exception as e:
        logger.error(f"Health check could not reach the database: {e}")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
        "version": settings.app_version,
        "environment": settings.environment,
    }


@app.get("/stats", response_model=StatsModel)
def get_stats(lib: Library = Depends(get_library)):
    return StatsModel(**lib.get_statistics())


# --- Books ---
@app.get("/books", response_model=List[BookModel])
def list_books(q: Optional[str] = Query(default=None, description="Search title or author"),
               lib: Library = Depends(get_library)):
    books = lib.search_books(q) if q else lib.list_books()
    return [BookModel(**book.to_dict()) for book in books]


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: str, lib: Library = Depends(get_library)):
    return BookModel(**lib.get_book(book_id).to_dict())


@app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_book(payload: BookCreateModel, lib: Library = Depends(get_library)):
    book = lib.add_book(payload.title, payload.author, payload.quantity, payload.isbn)
    return BookModel(**book.to_dict())


@app.delete("/books/{book_id}", dependencies=[Depends(get_api_key)])
def delete_book(book_id: str, lib: Library = Depends(get_library)):
    lib.remove_book(book_id)
    return {"message": "Book removed."}


# --- Loans ---
@app.get("/loans", response_model=List[LoanModel])
def list_loans(status: Optional[str] = None, borrower_id: Optional[str] = None, book_id: Optional[str] = None,
               lib: Library = Depends(get_library)):
    loans = lib.list_loans(status=status, borrower_id=borrower_id, book_id=book_id)
    return [LoanModel(**loan.to_dict()) for loan in loans]


@app.get("/loans/{loan_id}", response_model=LoanModel)
def get_loan(loan_id: str, lib: Library = Depends(get_library)):
    return LoanModel(**lib.get_loan(loan_id).to_dict())


@app.post("/loans", response_model=LoanModel, status_code=201, dependencies=[Depends(get_api_key)])
def issue_loan(payload: LoanCreateModel, lib: Library = Depends(get_library)):
    loan = lib.issue_loan(payload.book_id, payload.borrower_type, payload.borrower_id,
                          payload.borrower_name, payload.due_date)
    return LoanModel(**loan.to_dict())


@app.post("/loans/{loan_id}/return", response_model=LoanModel, dependencies=[Depends(get_api_key)])
def return_loan(loan_id: str, lib: Library = Depends(get_library)):
    return LoanModel(**lib.return_loan(loan_id).to_dict())


@app.post("/loans/{loan_id}/renew", response_model=LoanModel, dependencies=[Depends(get_api_key)])
def renew_loan(loan_id: str, payload: RenewModel, lib: Library = Depends(get_library)):
    return LoanModel(**lib.renew_loan(loan_id, payload.due_date).to_dict())


@app.delete("/loans/{loan_id}", dependencies=[Depends(get_api_key)])
def delete_loan(loan_id: str, lib: Library = Depends(get_library)):
    lib.delete_loan(loan_id)
    return {"message": "Loan deleted."}


# --- Inventory ---
@app.get("/inventory", response_model=List[SessionModel])
def list_sessions(status: Optional[str] = None, lib: Library = Depends(get_library)):
    return [SessionModel(**s.to_dict()) for s in lib.list_inventory_sessions(status)]


@app.post("/inventory", response_model=SessionModel, status_code=201, dependencies=[Depends(get_api_key)])
def start_session(payload: SessionCreateModel, lib: Library = Depends(get_library)):
    session = lib.start_inventory_session(payload.name, payload.session_type, payload.notes)
    return SessionModel(**session.to_dict())


@app.get("/inventory/{session_id}", response_model=SessionModel)
def get_session(session_id: str, lib: Library = Depends(get_library)):
    return SessionModel(**lib.get_inventory_session(session_id).to_dict())


@app.get("/inventory/{session_id}/items", response_model=List[ItemModel])
def list_items(session_id: str, status: Optional[str] = None, lib: Library = Depends(get_library)):
    return [ItemModel(**item.to_dict()) for item in lib.list_inventory_items(session_id, status)]


@app.get("/inventory/{session_id}/stats", response_model=InventoryStatsModel)
def session_stats(session_id: str, lib: Library = Depends(get_library)):
    return InventoryStatsModel(**lib.get_inventory_stats(session_id).to_dict())


@app.put("/inventory/items/{item_id}", response_model=ItemModel, dependencies=[Depends(get_api_key)])
def check_item(item_id: str, payload: ItemCheckModel, lib: Library = Depends(get_library)):
    item = lib.check_inventory_item(item_id, payload.found_quantity, payload.notes)
    return ItemModel(**item.to_dict())


@app.post("/inventory/{session_id}/complete", response_model=SessionModel, dependencies=[Depends(get_api_key)])
def complete_session(session_id: str, lib: Library = Depends(get_library)):
    return SessionModel(**lib.complete_inventory_session(session_id).to_dict())


@app.post("/inventory/{session_id}/cancel", response_model=SessionModel, dependencies=[Depends(get_api_key)])
def cancel_session(session_id: str, lib: Library = Depends(get_library)):
    return SessionModel(**lib.cancel_inventory_session(session_id).to_dict())


@app.delete("/inventory/{session_id}", dependencies=[Depends(get_api_key)])
def delete_session(session_id: str, lib: Library = Depends(get_library)):
    lib.delete_inventory_session(session_id)
    return {"message": "Inventory session deleted."}


# --- Issues ---
@app.get("/issues", response_model=List[IssueModel])
def list_issues(book_id: Optional[str] = None, status: Optional[str] = None, issue_type: Optional[str] = None,
                lib: Library = Depends(get_library)):
    issues = lib.list_issues(book_id=book_id, status=status, issue_type=issue_type)
    return [IssueModel(**issue.to_dict()) for issue in issues]


@app.get("/issues/stats")
def issue_stats(lib: Library = Depends(get_library)):
    return lib.get_issue_stats()


@app.get("/issues/{issue_id}", response_model=IssueModel)
def get_issue(issue_id: str, lib: Library = Depends(get_library)):
    return IssueModel(**lib.get_issue(issue_id).to_dict())


@app.post("/issues", response_model=IssueModel, status_code=201, dependencies=[Depends(get_api_key)])
def report_issue(payload: IssueCreateModel, lib: Library = Depends(get_library)):
    issue = lib.report_issue(payload.book_id, payload.issue_type, payload.quantity,
                             payload.borrower_name, payload.loan_id, payload.notes)
    return IssueModel(**issue.to_dict())


@app.post("/issues/from-inventory", response_model=IssueModel, status_code=201,
          dependencies=[Depends(get_api_key)])
def report_shortfall(payload: ShortfallModel, lib: Library = Depends(get_library)):
    issue = lib.report_shortfall(payload.item_id, payload.issue_type, payload.notes)
    return IssueModel(**issue.to_dict())


@app.post("/issues/{issue_id}/resolve", response_model=IssueModel, dependencies=[Depends(get_api_key)])
def resolve_issue(issue_id: str, payload: ResolveModel, lib: Library = Depends(get_library)):
    issue = lib.resolve_issue(issue_id, payload.outcome, payload.resolution_notes, payload.adjust_quantity)
    return IssueModel(**issue.to_dict())


@app.delete("/issues/{issue_id}", dependencies=[Depends(get_api_key)])
def delete_issue(issue_id: str, lib: Library = Depends(get_library)):
    lib.delete_issue(issue_id)
    return {"message": "Issue deleted."}


# --- Audit log ---
@app.get("/audit-log", response_model=List[AuditEntryModel])
def audit_log(module: Optional[str] = None, action: Optional[str] = None, entity_id: Optional[str] = None,
              limit: int = Query(default=settings.default_page_size, ge=1, le=settings.max_page_size),
              offset: int = Query(default=0, ge=0),
              lib: Library = Depends(get_library)):
    entries = lib.list_audit_log(module=module, action=action, entity_id=entity_id, limit=limit, offset=offset)
    return [AuditEntryModel(**entry.to_dict()) for entry in entries]
