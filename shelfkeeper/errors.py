"""Exception taxonomy shared by the circulation, inventory and issue modules.

NotFound and ValidationError are caller mistakes, ConflictError subclasses are
legitimate business-rule refusals, and InvariantViolation means one of the
guarded transactions has a bug.
"""


class LibraryError(Exception):
    """Base class for every error raised by the library core."""

    code = "library_error"

    def __init__(self, message: str = "") -> None:
        # The class docstring doubles as the default message.
        self.message = message or (self.__class__.__doc__ or self.code).strip()
        super().__init__(self.message)


class NotFound(LibraryError, LookupError):
    """Unknown identifier."""

    code = "not_found"


class ValidationError(LibraryError, ValueError):
    """Malformed quantity, date or enum value."""

    code = "validation_error"


class ConflictError(LibraryError):
    """A business rule refused the operation."""

    code = "conflict"


class Unavailable(ConflictError):
    """No copies of this book are available."""

    code = "unavailable"


class LoanLimitExceeded(ConflictError):
    """Borrower has reached the maximum number of open loans."""

    code = "loan_limit_exceeded"


class AlreadyReturned(ConflictError):
    """Loan has already been returned."""

    code = "already_returned"


class LoanStillOpen(ConflictError):
    """Loan must be returned before it can be deleted."""

    code = "loan_still_open"


class BookInUse(ConflictError):
    """Book still has open loans."""

    code = "book_in_use"


class SessionAlreadyOpen(ConflictError):
    """Another inventory session is already in progress."""

    code = "session_already_open"


class SessionClosed(ConflictError):
    """Inventory session is closed; its items can no longer change."""

    code = "session_closed"


class SessionAlreadyClosed(ConflictError):
    """Inventory session is already closed."""

    code = "session_already_closed"


class AlreadyResolved(ConflictError):
    """Issue has already been resolved."""

    code = "already_resolved"


class InvariantViolation(LibraryError):
    """Stock invariant would be broken."""

    code = "invariant_violation"
