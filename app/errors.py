from __future__ import annotations

import datetime


class ReportEngineError(Exception):
    """Base class for daily report engine failures."""


class FetchError(ReportEngineError):
    """Raised when reading report records or rows from the store fails."""


class WriteError(ReportEngineError):
    """Raised when creating a report or replacing its rows fails."""


class DateLockedError(WriteError):
    """Raised when a flush targets a date that has been finalized and locked."""

    def __init__(self, report_date: datetime.date, locked_by: str | None = None) -> None:
        super().__init__(f"Report date {report_date.isoformat()} is locked")
        self.report_date = report_date
        self.locked_by = locked_by


class InvariantViolationError(ReportEngineError):
    """Raised when a caller asks for a row operation that would break list invariants."""
