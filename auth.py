"""Identity contract consumed by the lending engine.

Authentication happens upstream. By the time a request reaches the engine the
identity layer has produced a ``Principal``; its fields are trusted verbatim.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from config import settings


class Role(str, Enum):
    USER = "user"
    LIBRARIAN = "librarian"
    ADMIN = "admin"


STAFF_ROLES = (Role.LIBRARIAN, Role.ADMIN)


@dataclass(frozen=True)
class Principal:
    """The verified requester."""

    user_id: str
    role: Role = Role.USER
    is_active: bool = True
    max_books_allowed: int = settings.default_max_books

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    def owns(self, user_id: str) -> bool:
        return self.user_id == user_id

    def can_manage(self, user_id: str) -> bool:
        """Staff may act on any loan; a self-service user only on their own."""
        return self.is_staff or self.owns(user_id)


def parse_role(raw: str | None) -> Role:
    """Return the Role for a raw string, defaulting to ``Role.USER``."""
    if not raw:
        return Role.USER
    try:
        return Role(raw.strip().lower())
    except ValueError:
        raise ValueError(f"Unknown role: {raw}") from None
