from __future__ import annotations


class Book:
    """Represents one catalog title and its stock counters."""

    def __init__(self, id: str, title: str, author: str, total_quantity: int, available_copies: int,
                 isbn: str | None = None, created_at: str | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn.strip() if isbn else None
        self.total_quantity = total_quantity
        self.available_copies = available_copies
        self.created_at = created_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.available_copies}/{self.total_quantity} on shelf)"

    @property
    def copies_out(self) -> int:
        return self.total_quantity - self.available_copies

    def stock_is_consistent(self) -> bool:
        return 0 <= self.available_copies <= self.total_quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "total_quantity": self.total_quantity,
            "available_copies": self.available_copies,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            isbn=data.get("isbn"),
            total_quantity=int(data["total_quantity"]),
            available_copies=int(data["available_copies"]),
            created_at=data.get("created_at"),
        )
