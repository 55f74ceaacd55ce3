from __future__ import annotations


class Book:
    """A lendable title and its capacity counters."""

    def __init__(self, title: str, author: str, isbn: str, total_pages: int, capacity: int = 3,
                 reserved: int = 0, total_loan_count: int = 0, created_at: str | None = None) -> None:
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn.strip()
        self.total_pages = total_pages
        self.capacity = capacity
        # Counters below are owned by the inventory ledger
        self.reserved = reserved
        self.total_loan_count = total_loan_count
        self.created_at = created_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    @property
    def available(self) -> int:
        return max(self.capacity - self.reserved, 0)

    @property
    def is_available_for_loan(self) -> bool:
        return self.reserved < self.capacity

    def to_dict(self) -> dict:
        return {
            "isbn": self.isbn,
            "title": self.title,
            "author": self.author,
            "total_pages": self.total_pages,
            "capacity": self.capacity,
            "reserved": self.reserved,
            "available": self.available,
            "total_loan_count": self.total_loan_count,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        created = data.get("created_at")
        return Book(
            title=data["title"],
            author=data["author"],
            isbn=data["isbn"],
            total_pages=int(data["total_pages"]),
            capacity=int(data.get("capacity", 3)),
            reserved=int(data.get("reserved", 0)),
            total_loan_count=int(data.get("total_loan_count", 0)),
            created_at=str(created) if created is not None else None,
        )


def normalize_isbn(raw: str | None) -> str:
    if raw is None:
        return ""
    cleaned = "".join(ch for ch in raw if ch.isalnum())
    return cleaned.upper()
