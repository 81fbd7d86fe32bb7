from __future__ import annotations

from typing import Optional


class TimetrackerError(Exception):
    """Base class for errors raised by the time tracker core."""


class TimesheetFormatError(TimetrackerError):
    """The timesheet text could not be read at all."""


class RowParseError(TimetrackerError):
    """A single row of the timesheet could not be parsed."""

    def __init__(self, reason: str, *, line_no: Optional[int] = None, raw: str = "") -> None:
        super().__init__(reason)
        self.reason = reason
        self.line_no = line_no
        self.raw = raw

    def __str__(self) -> str:
        if self.line_no is None:
            return self.reason
        return f"line {self.line_no}: {self.reason}"


class TimerError(TimetrackerError):
    """A timer operation was invoked in a way that is never allowed."""


class InvariantViolation(TimetrackerError):
    """An operation would leave the timesheet in an inconsistent state."""
