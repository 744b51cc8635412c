import re
from datetime import date
from enum import Enum
from typing import Optional, Type

from .errors import ValidationError

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class ISBNValidator:
    """Lenient ISBN handling for catalog entries.

    The ISBN is opaque metadata here, so only the shape is checked, not the
    checksum.
    """

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> Optional[str]:
        if raw is None:
            return None
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper() or None

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        s = ISBNValidator.normalize_isbn(isbn)
        if not s:
            return False
        if len(s) == 10:
            return s[:9].isdigit() and (s[9].isdigit() or s[9] == "X")
        if len(s) == 13:
            return s.isdigit()
        return False


class TextValidator:
    """Validation of free-text fields (names, titles, notes)."""

    @staticmethod
    def require_text(value: Optional[str], field: str, max_length: int = 200) -> str:
        if value is None or not value.strip():
            raise ValidationError(f"{field} must not be empty.")
        value = value.strip()
        if len(value) > max_length:
            raise ValidationError(f"{field} must be at most {max_length} characters.")
        return value

    @staticmethod
    def optional_text(value: Optional[str], field: str, max_length: int = 1000) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if not value:
            return None
        if len(value) > max_length:
            raise ValidationError(f"{field} must be at most {max_length} characters.")
        return value


class QuantityValidator:
    @staticmethod
    def require_int(value, field: str, minimum: int = 0) -> int:
        # bool is an int subclass; True must not count as one copy
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{field} must be an integer.")
        if value < minimum:
            raise ValidationError(f"{field} must be >= {minimum}.")
        return value


class DateValidator:
    @staticmethod
    def parse_iso_date(value, field: str) -> date:
        """Accept a date or a YYYY-MM-DD string and return a date."""
        if isinstance(value, date):
            return value
        if not isinstance(value, str) or not _ISO_DATE.match(value.strip()):
            raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD).")
        try:
            return date.fromisoformat(value.strip())
        except ValueError as e:
            raise ValidationError(f"{field} is not a valid calendar date.") from e


class ChoiceValidator:
    @staticmethod
    def require_choice(value, enum_cls: Type[Enum], field: str) -> str:
        """Return the enum's string value, or raise ValidationError."""
        if isinstance(value, enum_cls):
            return value.value
        allowed = [member.value for member in enum_cls]
        if value not in allowed:
            raise ValidationError(f"{field} must be one of: {', '.join(allowed)}.")
        return value
