"""Data access layer (repositories) for persistence operations.

Repositories wrap one session and return domain objects rather than ORM
rows. Transaction boundaries belong to the caller (see get_session()).
"""

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from beacon.dispatch.collaborators import ScheduledNotification
from beacon.dispatch.models import DispatchRequest, Recipient
from beacon.domain.models import DeliveryOutcome
from beacon.logging import get_logger
from beacon.scheduling.models import ScheduleConfig
from beacon.utils.timestamps import utc_now

from .exceptions import DataIntegrityError, PersistenceError, RecordNotFoundError
from .schema import (
    DeliveryOutcomeModel,
    DispatchRecordModel,
    JobModel,
    ScheduledNotificationModel,
    ScheduleModel,
    format_db_timestamp,
)

logger = get_logger(__name__, component="database")


class ScheduleRepository:
    """Repository for schedule rows."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, schedule_id: str) -> Optional[ScheduleConfig]:
        try:
            model = self.session.get(ScheduleModel, schedule_id)
            return model.to_domain() if model else None
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving schedule {schedule_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve schedule: {e}") from e

    def list_all(self) -> List[ScheduleConfig]:
        try:
            stmt = select(ScheduleModel).order_by(ScheduleModel.created_at, ScheduleModel.id)
            return [model.to_domain() for model in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error listing schedules: {e}", exc_info=True)
            raise PersistenceError(f"Failed to list schedules: {e}") from e

    def upsert(self, schedule: ScheduleConfig) -> ScheduleConfig:
        """Insert a schedule or overwrite every field of an existing one.

        Raises:
            DataIntegrityError: If a constraint is violated
            PersistenceError: If a database error occurs
        """
        now = utc_now()
        try:
            existing = self.session.get(ScheduleModel, schedule.id)
            if existing:
                existing.apply_domain(schedule, now)
                self.session.flush()
                return existing.to_domain()

            model = ScheduleModel.from_domain(schedule, now)
            self.session.add(model)
            self.session.flush()
            return model.to_domain()

        except IntegrityError as e:
            logger.error(f"Integrity error saving schedule {schedule.id}: {e}", exc_info=True)
            raise DataIntegrityError(f"Failed to save schedule due to constraint violation: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"Error saving schedule {schedule.id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to save schedule: {e}") from e

    def delete(self, schedule_id: str) -> bool:
        """Delete a schedule. Returns False when it did not exist."""
        try:
            result = self.session.execute(delete(ScheduleModel).where(ScheduleModel.id == schedule_id))
            self.session.flush()
            return result.rowcount > 0
        except SQLAlchemyError as e:
            logger.error(f"Error deleting schedule {schedule_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to delete schedule: {e}") from e


class JobRepository:
    """Repository for jobs created by the scheduler."""

    def __init__(self, session: Session):
        self.session = session

    def create(
        self,
        job_type: str,
        params: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> JobModel:
        """Insert a pending job.

        The schedule_id metadata key, when present, is copied to its own
        column so running jobs can be counted per schedule.
        """
        metadata = dict(metadata or {})
        now = format_db_timestamp(utc_now())
        model = JobModel(
            id=f"job_{uuid.uuid4().hex[:16]}",
            job_type=job_type,
            params=json.dumps(params, default=str),
            job_metadata=json.dumps(metadata, default=str),
            schedule_id=metadata.get("schedule_id"),
            status="pending",
            created_at=now,
            updated_at=now,
        )
        try:
            self.session.add(model)
            self.session.flush()
            return model
        except IntegrityError as e:
            logger.error(f"Integrity error creating {job_type} job: {e}", exc_info=True)
            raise DataIntegrityError(f"Failed to create job due to constraint violation: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"Error creating {job_type} job: {e}", exc_info=True)
            raise PersistenceError(f"Failed to create job: {e}") from e

    def get(self, job_id: str) -> Optional[JobModel]:
        try:
            return self.session.get(JobModel, job_id)
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving job {job_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve job: {e}") from e

    def set_status(self, job_id: str, status: str) -> None:
        """
        Raises:
            RecordNotFoundError: If the job does not exist
            PersistenceError: If a database error occurs
        """
        try:
            stmt = (
                update(JobModel)
                .where(JobModel.id == job_id)
                .values(status=status, updated_at=format_db_timestamp(utc_now()))
            )
            result = self.session.execute(stmt)
            self.session.flush()

            if result.rowcount == 0:
                raise RecordNotFoundError(f"Job {job_id} not found")

        except RecordNotFoundError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Error updating status of job {job_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to update job status: {e}") from e

    def count_running(self, job_type: str, schedule_id: str) -> int:
        try:
            stmt = select(func.count()).select_from(JobModel).where(
                JobModel.job_type == job_type,
                JobModel.schedule_id == schedule_id,
                JobModel.status == "running",
            )
            return int(self.session.execute(stmt).scalar_one())
        except SQLAlchemyError as e:
            logger.error(f"Error counting running jobs for {schedule_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to count running jobs: {e}") from e


class ScheduledNotificationRepository:
    """Repository for deferred notifications."""

    def __init__(self, session: Session):
        self.session = session

    def add(
        self,
        request: DispatchRequest,
        recipients: Sequence[Recipient],
        scheduled_for: datetime,
    ) -> str:
        scheduled_id = f"scheduled_{uuid.uuid4().hex[:16]}"
        try:
            self.session.add(
                ScheduledNotificationModel.from_domain(
                    scheduled_id, request, list(recipients), scheduled_for, utc_now()
                )
            )
            self.session.flush()
            return scheduled_id
        except SQLAlchemyError as e:
            logger.error(f"Error saving deferred notification {request.id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to save deferred notification: {e}") from e

    def claim_due(self, now: datetime) -> List[ScheduledNotification]:
        """Delete and return every notification scheduled at or before `now`.

        Returned in scheduled_for order. Selection and deletion happen in the
        caller's transaction, so a failed claim leaves the rows in place.
        """
        try:
            stmt = (
                select(ScheduledNotificationModel)
                .where(ScheduledNotificationModel.scheduled_for <= format_db_timestamp(now))
                .order_by(ScheduledNotificationModel.scheduled_for)
            )
            models = self.session.execute(stmt).scalars().all()
            if not models:
                return []

            claimed = [model.to_domain() for model in models]
            self.session.execute(
                delete(ScheduledNotificationModel).where(
                    ScheduledNotificationModel.id.in_([model.id for model in models])
                )
            )
            self.session.flush()
            return claimed

        except SQLAlchemyError as e:
            logger.error(f"Error claiming due notifications: {e}", exc_info=True)
            raise PersistenceError(f"Failed to claim due notifications: {e}") from e

    def count_pending(self) -> int:
        try:
            stmt = select(func.count()).select_from(ScheduledNotificationModel)
            return int(self.session.execute(stmt).scalar_one())
        except SQLAlchemyError as e:
            logger.error(f"Error counting deferred notifications: {e}", exc_info=True)
            raise PersistenceError(f"Failed to count deferred notifications: {e}") from e


class DispatchRecordRepository:
    """Repository for the dispatch audit trail."""

    def __init__(self, session: Session):
        self.session = session

    def record(
        self,
        dispatch_id: str,
        request: DispatchRequest,
        outcomes: Sequence[DeliveryOutcome],
    ) -> DispatchRecordModel:
        """
        Raises:
            DataIntegrityError: If the dispatch id was already recorded
            PersistenceError: If a database error occurs
        """
        successful = sum(1 for outcome in outcomes if outcome.success)
        model = DispatchRecordModel(
            dispatch_id=dispatch_id,
            notification_type=request.type,
            category=request.category.value,
            severity=request.severity.value,
            title=request.title,
            request_json=request.model_dump_json(),
            successful_count=successful,
            failed_count=len(outcomes) - successful,
            recorded_at=format_db_timestamp(utc_now()),
            outcomes=[DeliveryOutcomeModel.from_domain(outcome) for outcome in outcomes],
        )
        try:
            self.session.add(model)
            self.session.flush()
            return model
        except IntegrityError as e:
            logger.error(f"Integrity error recording dispatch {dispatch_id}: {e}", exc_info=True)
            raise DataIntegrityError(f"Dispatch {dispatch_id} already recorded: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"Error recording dispatch {dispatch_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to record dispatch: {e}") from e

    def get_outcomes(self, dispatch_id: str) -> List[DeliveryOutcome]:
        try:
            stmt = (
                select(DeliveryOutcomeModel)
                .where(DeliveryOutcomeModel.dispatch_id == dispatch_id)
                .order_by(DeliveryOutcomeModel.id)
            )
            return [model.to_domain() for model in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving outcomes of dispatch {dispatch_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve outcomes: {e}") from e

    def list_recent(self, limit: int = 50) -> List[DispatchRecordModel]:
        try:
            stmt = (
                select(DispatchRecordModel)
                .order_by(DispatchRecordModel.recorded_at.desc())
                .limit(limit)
            )
            return list(self.session.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error listing dispatch records: {e}", exc_info=True)
            raise PersistenceError(f"Failed to list dispatch records: {e}") from e
