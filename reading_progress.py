"""Reading progress for a single loan.

Progress only ratchets forward: reporting an earlier page changes nothing and
records no session.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from config import settings
from errors import ValidationError
from loan import MAX_SESSION_SECONDS, Loan, ReadingSession, ensure_utc, reading_progress, utcnow


@dataclass(frozen=True)
class ProgressUpdate:
    last_read_page: int
    progress_percent: int
    session: Optional[ReadingSession] = None

    def to_dict(self) -> dict:
        return {
            "last_read_page": self.last_read_page,
            "progress_percent": self.progress_percent,
            "session": self.session.to_dict() if self.session else None,
        }


class ReadingProgressTracker:
    def __init__(
        self,
        default_session_seconds: int = settings.default_session_seconds,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.default_session_seconds = default_session_seconds
        self.clock = clock

    @staticmethod
    def _validate_page(page_number, total_pages: int) -> int:
        if page_number is None:
            raise ValidationError("Page number is required")
        if isinstance(page_number, bool) or not isinstance(page_number, int):
            raise ValidationError("Page number must be an integer")
        if page_number > total_pages:
            raise ValidationError(f"Page number cannot exceed total pages ({total_pages})")
        return max(page_number, 1)

    def update_progress(
        self,
        loan: Loan,
        page_number: int,
        total_pages: int,
        session_duration_seconds: Optional[float] = None,
    ) -> ProgressUpdate:
        page = self._validate_page(page_number, total_pages)
        duration = self.default_session_seconds if session_duration_seconds is None else session_duration_seconds
        if isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration < 0:
            raise ValidationError("Session duration must be a non-negative number of seconds")
        if not duration <= MAX_SESSION_SECONDS:  # also rejects NaN
            raise ValidationError(f"Session duration cannot exceed {MAX_SESSION_SECONDS} seconds")

        session = None
        if page > loan.last_read_page:
            now = ensure_utc(self.clock())
            session = ReadingSession(
                start_time=now - timedelta(seconds=duration),
                end_time=now,
                pages_read=page - loan.last_read_page,
            )
            loan.reading_sessions.append(session)
            loan.last_read_page = page

        return ProgressUpdate(
            last_read_page=loan.last_read_page,
            progress_percent=reading_progress(loan.last_read_page, total_pages),
            session=session,
        )

    @staticmethod
    def summary(loan: Loan, total_pages: int) -> dict:
        sessions = loan.reading_sessions
        return {
            "last_read_page": loan.last_read_page,
            "total_pages": total_pages,
            "progress_percent": reading_progress(loan.last_read_page, total_pages),
            "session_count": len(sessions),
            "pages_read": sum(s.pages_read for s in sessions),
            "reading_seconds": int(sum(s.duration_seconds for s in sessions)),
        }
