"""Exceptions raised by cron evaluation and schedule management."""


class SchedulingError(Exception):
    """Base exception for scheduling errors."""

    pass


class InvalidCronError(SchedulingError):
    """Cron expression could not be parsed.

    Raised when the expression does not have exactly five fields, a field
    contains a malformed token or out-of-range value, a field resolves to
    no candidate values, or the timezone is unknown.
    """

    def __init__(self, message: str, expression: str = "") -> None:
        super().__init__(message)
        self.expression = expression


class NoUpcomingRunError(SchedulingError):
    """No instant within the search horizon satisfies the cron expression.

    Example: "0 0 29 2 1" (February 29th on a Monday) has no run within a year.
    """

    def __init__(self, message: str, expression: str = "") -> None:
        super().__init__(message)
        self.expression = expression


class InvalidScheduleError(SchedulingError):
    """Schedule configuration rejected at creation or update time."""

    pass
