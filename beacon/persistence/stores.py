"""SQLAlchemy-backed implementations of the scheduler and dispatch stores.

Each call opens its own session through get_session(), so the stores are
safe to share between the scheduler thread, delivery workers and the
record writer.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from beacon.dispatch.collaborators import (
    DeferredStore,
    DispatchRecordStore,
    ScheduledNotification,
)
from beacon.dispatch.models import DispatchRequest, Recipient
from beacon.domain.models import DeliveryOutcome
from beacon.logging import get_logger
from beacon.scheduling.collaborators import JobCreator, RunCounter, ScheduleStore
from beacon.scheduling.models import JobHandle, ScheduleConfig

from .database import get_session
from .repositories import (
    DispatchRecordRepository,
    JobRepository,
    ScheduledNotificationRepository,
    ScheduleRepository,
)

logger = get_logger(__name__, component="database")


class SqlScheduleStore(ScheduleStore):
    def save_schedule(self, schedule: ScheduleConfig) -> None:
        with get_session() as session:
            ScheduleRepository(session).upsert(schedule)

    def delete_schedule(self, schedule_id: str) -> None:
        with get_session() as session:
            ScheduleRepository(session).delete(schedule_id)

    def load_all_schedules(self) -> List[ScheduleConfig]:
        with get_session() as session:
            return ScheduleRepository(session).list_all()


class SqlJobQueue(JobCreator, RunCounter):
    """Job queue backed by the jobs table.

    Workers that execute jobs report progress through mark_status(); the
    scheduler only creates jobs and counts the running ones.
    """

    def create_job(
        self,
        job_type: str,
        params: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> JobHandle:
        with get_session() as session:
            job = JobRepository(session).create(job_type, params, metadata)
            handle = JobHandle(id=job.id, status=job.status)

        logger.info(
            f"Created {job_type} job {handle.id}",
            extra={
                "event": "job.created",
                "job_id": handle.id,
                "job_type": job_type,
                "schedule_id": (metadata or {}).get("schedule_id"),
            },
        )
        return handle

    def mark_status(self, job_id: str, status: str) -> None:
        with get_session() as session:
            JobRepository(session).set_status(job_id, status)

    def count_running(self, job_type: str, schedule_id: str) -> int:
        with get_session() as session:
            return JobRepository(session).count_running(job_type, schedule_id)


class SqlDeferredStore(DeferredStore):
    def save_scheduled(
        self, request: DispatchRequest, recipients: Sequence[Recipient], scheduled_for: datetime
    ) -> str:
        with get_session() as session:
            return ScheduledNotificationRepository(session).add(request, recipients, scheduled_for)

    def claim_due(self, now: datetime) -> List[ScheduledNotification]:
        with get_session() as session:
            return ScheduledNotificationRepository(session).claim_due(now)


class SqlDispatchRecordStore(DispatchRecordStore):
    def save_dispatch_result(
        self, dispatch_id: str, request: DispatchRequest, outcomes: Sequence[DeliveryOutcome]
    ) -> None:
        with get_session() as session:
            DispatchRecordRepository(session).record(dispatch_id, request, outcomes)
