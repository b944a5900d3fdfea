"""Cron-driven scheduling of recurring jobs.

- Cron evaluator: parse_cron / next_run
- ScheduleRegistry: authoritative set of schedules with store-first writes
- SchedulerLoop: periodic tick that fires due schedules through a JobCreator
"""

from .collaborators import (
    InMemoryJobQueue,
    InMemoryScheduleStore,
    JobCreator,
    RunCounter,
    ScheduleListener,
    ScheduleStore,
)
from .cron import CronExpression, next_run, parse_cron, validate_cron
from .exceptions import (
    InvalidCronError,
    InvalidScheduleError,
    NoUpcomingRunError,
    SchedulingError,
)
from .loop import SchedulerLoop
from .models import (
    FireResult,
    JobDescriptor,
    JobHandle,
    ScheduleConfig,
    ScheduleSpec,
    ScheduleUpdate,
    TickResult,
)
from .registry import ScheduleRegistry

__all__ = [
    # Cron
    "CronExpression",
    "parse_cron",
    "next_run",
    "validate_cron",
    # Registry and loop
    "ScheduleRegistry",
    "SchedulerLoop",
    # Models
    "JobDescriptor",
    "ScheduleSpec",
    "ScheduleConfig",
    "ScheduleUpdate",
    "JobHandle",
    "FireResult",
    "TickResult",
    # Collaborators
    "JobCreator",
    "RunCounter",
    "ScheduleStore",
    "ScheduleListener",
    "InMemoryScheduleStore",
    "InMemoryJobQueue",
    # Exceptions
    "SchedulingError",
    "InvalidCronError",
    "NoUpcomingRunError",
    "InvalidScheduleError",
]
