"""Persistence layer exceptions.

All persistence exceptions inherit from PersistenceError so callers can
catch every storage failure with one except clause.
"""


class PersistenceError(Exception):
    """Base exception for all persistence layer errors."""

    pass


class DatabaseConnectionError(PersistenceError):
    """Database URL invalid, database unreachable, or not initialized."""

    pass


class RecordNotFoundError(PersistenceError):
    """A record that must exist (e.g. a job whose status is being set) is missing.

    Optional lookups return None instead of raising this.
    """

    pass


class DataIntegrityError(PersistenceError):
    """A database constraint was violated (duplicate key, bad reference)."""

    pass
