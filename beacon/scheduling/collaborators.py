"""Interfaces the scheduler depends on, plus in-memory implementations.

The SQLAlchemy-backed implementations live in beacon.persistence.stores.
"""

import itertools
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from beacon.logging import get_logger

from .models import JobHandle, ScheduleConfig

logger = get_logger(__name__, component="scheduler")


class JobCreator(ABC):
    """Creates jobs when a schedule fires."""

    @abstractmethod
    def create_job(
        self,
        job_type: str,
        params: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> JobHandle:
        """Create a job and return its handle. May raise on failure."""


class RunCounter(ABC):
    """Counts currently running jobs spawned by a schedule."""

    @abstractmethod
    def count_running(self, job_type: str, schedule_id: str) -> int:
        """Return how many jobs of this type are running for the schedule."""


class ScheduleStore(ABC):
    """Durable storage for schedules."""

    @abstractmethod
    def save_schedule(self, schedule: ScheduleConfig) -> None:
        """Insert or replace a schedule."""

    @abstractmethod
    def delete_schedule(self, schedule_id: str) -> None:
        """Delete a schedule; deleting an unknown id is not an error."""

    @abstractmethod
    def load_all_schedules(self) -> List[ScheduleConfig]:
        """Load every stored schedule."""


class ScheduleListener:
    """Observer for schedule lifecycle transitions.

    Every hook is called at most once per transition, after the transition
    has been persisted. Exceptions raised by a hook are logged and ignored.
    Subclasses override only the hooks they need.
    """

    def on_schedule_added(self, schedule: ScheduleConfig) -> None:
        pass

    def on_schedule_updated(self, schedule: ScheduleConfig) -> None:
        pass

    def on_schedule_removed(self, schedule: ScheduleConfig) -> None:
        pass

    def on_job_scheduled(self, schedule: ScheduleConfig, job: JobHandle) -> None:
        pass

    def on_schedule_error(self, schedule: ScheduleConfig, error: Exception) -> None:
        pass


def notify_listeners(listeners: List[ScheduleListener], hook: str, *args) -> None:
    """Invoke `hook` on every listener, logging (not raising) listener failures."""
    for listener in listeners:
        try:
            getattr(listener, hook)(*args)
        except Exception as e:
            logger.error(
                f"Schedule listener {type(listener).__name__}.{hook} failed: {e}",
                exc_info=True,
                extra={"event": "schedule.listener.failed", "hook": hook},
            )


class InMemoryScheduleStore(ScheduleStore):
    """Dictionary-backed schedule store for tests and store-less runs."""

    def __init__(self, schedules: Optional[List[ScheduleConfig]] = None):
        self._schedules: Dict[str, ScheduleConfig] = {s.id: s for s in schedules or []}
        self._lock = threading.Lock()

    def save_schedule(self, schedule: ScheduleConfig) -> None:
        with self._lock:
            self._schedules[schedule.id] = schedule.model_copy(deep=True)

    def delete_schedule(self, schedule_id: str) -> None:
        with self._lock:
            self._schedules.pop(schedule_id, None)

    def load_all_schedules(self) -> List[ScheduleConfig]:
        with self._lock:
            return [s.model_copy(deep=True) for s in self._schedules.values()]


class InMemoryJobQueue(JobCreator, RunCounter):
    """Job queue that records created jobs in memory.

    Jobs start as "pending"; tests flip them to "running" with mark_status()
    to exercise concurrency caps.
    """

    def __init__(self):
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def create_job(
        self,
        job_type: str,
        params: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> JobHandle:
        with self._lock:
            job_id = f"job_{next(self._ids)}"
            self.jobs[job_id] = {
                "type": job_type,
                "params": dict(params),
                "metadata": dict(metadata or {}),
                "status": "pending",
            }
        logger.debug(
            f"Created in-memory job {job_id}",
            extra={"event": "job.created", "job_id": job_id, "job_type": job_type},
        )
        return JobHandle(id=job_id, status="pending")

    def mark_status(self, job_id: str, status: str) -> None:
        with self._lock:
            self.jobs[job_id]["status"] = status

    def count_running(self, job_type: str, schedule_id: str) -> int:
        with self._lock:
            return sum(
                1
                for job in self.jobs.values()
                if job["type"] == job_type
                and job["status"] == "running"
                and job["metadata"].get("schedule_id") == schedule_id
            )
