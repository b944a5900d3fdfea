"""Persistence layer: SQLite/SQLAlchemy storage for schedules, jobs and dispatches."""

from .database import close_database, get_engine, get_session, init_database
from .exceptions import (
    DatabaseConnectionError,
    DataIntegrityError,
    PersistenceError,
    RecordNotFoundError,
)
from .repositories import (
    DispatchRecordRepository,
    JobRepository,
    ScheduledNotificationRepository,
    ScheduleRepository,
)
from .stores import (
    SqlDeferredStore,
    SqlDispatchRecordStore,
    SqlJobQueue,
    SqlScheduleStore,
)

__all__ = [
    # Database
    "init_database",
    "get_session",
    "get_engine",
    "close_database",
    # Repositories
    "ScheduleRepository",
    "JobRepository",
    "ScheduledNotificationRepository",
    "DispatchRecordRepository",
    # Stores
    "SqlScheduleStore",
    "SqlJobQueue",
    "SqlDeferredStore",
    "SqlDispatchRecordStore",
    # Exceptions
    "PersistenceError",
    "DatabaseConnectionError",
    "RecordNotFoundError",
    "DataIntegrityError",
]
