"""Database schema definition and ORM models.

Timestamps are stored as ISO 8601 UTC strings with microseconds, which keeps
them fixed-width so string comparison orders them correctly. Structured
fields (job parameters, dispatch requests, recipients) are stored as JSON text.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship

from beacon.dispatch.collaborators import ScheduledNotification
from beacon.dispatch.models import DispatchRequest, Recipient
from beacon.domain.models import ChannelType, DeliveryOutcome
from beacon.logging import get_logger
from beacon.scheduling.models import JobDescriptor, ScheduleConfig
from beacon.utils.timestamps import format_timestamp, parse_iso_datetime

logger = get_logger(__name__, component="database")

Base = declarative_base()


class ScheduleModel(Base):
    """ORM model for the schedules table."""

    __tablename__ = "schedules"

    id = Column(String(100), primary_key=True, nullable=False)
    name = Column(String(255), nullable=False)
    cron = Column(String(255), nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")
    job_type = Column(String(100), nullable=False)
    job_params = Column(Text, nullable=False, default="{}")
    enabled = Column(Boolean, nullable=False, default=True)
    max_concurrent_runs = Column(Integer, nullable=True)
    created_by = Column(String(255), nullable=True)

    last_run = Column(String(50), nullable=True)
    next_run = Column(String(50), nullable=True)
    created_at = Column(String(50), nullable=False)
    updated_at = Column(String(50), nullable=False)

    __table_args__ = (
        Index("idx_schedules_due", "enabled", "next_run"),
        Index("idx_schedules_job_type", "job_type"),
    )

    def to_domain(self) -> ScheduleConfig:
        return ScheduleConfig(
            id=self.id,
            name=self.name,
            cron=self.cron,
            timezone=self.timezone,
            job=JobDescriptor(type=self.job_type, params=_load_json(self.job_params, {})),
            enabled=self.enabled,
            max_concurrent_runs=self.max_concurrent_runs,
            created_by=self.created_by,
            last_run=parse_db_timestamp(self.last_run),
            next_run=parse_db_timestamp(self.next_run),
        )

    def apply_domain(self, schedule: ScheduleConfig, now: datetime) -> None:
        """Copy every schedule field onto this row, leaving created_at alone."""
        self.name = schedule.name
        self.cron = schedule.cron
        self.timezone = schedule.timezone
        self.job_type = schedule.job.type
        self.job_params = json.dumps(schedule.job.params, default=str)
        self.enabled = schedule.enabled
        self.max_concurrent_runs = schedule.max_concurrent_runs
        self.created_by = schedule.created_by
        self.last_run = format_db_timestamp(schedule.last_run)
        self.next_run = format_db_timestamp(schedule.next_run)
        self.updated_at = format_db_timestamp(now)

    @classmethod
    def from_domain(cls, schedule: ScheduleConfig, now: datetime) -> "ScheduleModel":
        model = cls(id=schedule.id, created_at=format_db_timestamp(now))
        model.apply_domain(schedule, now)
        return model

    def __repr__(self) -> str:
        return f"<ScheduleModel(id={self.id!r}, cron={self.cron!r}, enabled={self.enabled})>"


class JobModel(Base):
    """ORM model for jobs created by schedule fires or manual triggers.

    schedule_id is deliberately not a foreign key: jobs outlive the
    schedule that spawned them.
    """

    __tablename__ = "jobs"

    id = Column(String(64), primary_key=True, nullable=False)
    job_type = Column(String(100), nullable=False)
    params = Column(Text, nullable=False, default="{}")
    # "metadata" is reserved on declarative classes
    job_metadata = Column("metadata", Text, nullable=False, default="{}")
    schedule_id = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False, default="pending")
    created_at = Column(String(50), nullable=False)
    updated_at = Column(String(50), nullable=False)

    __table_args__ = (
        Index("idx_jobs_running", "job_type", "schedule_id", "status"),
        Index("idx_jobs_created_at", "created_at"),
    )

    @property
    def metadata_dict(self) -> Dict[str, Any]:
        return _load_json(self.job_metadata, {})

    @property
    def params_dict(self) -> Dict[str, Any]:
        return _load_json(self.params, {})

    def __repr__(self) -> str:
        return f"<JobModel(id={self.id!r}, type={self.job_type!r}, status={self.status!r})>"


class ScheduledNotificationModel(Base):
    """ORM model for deferred notifications awaiting their delivery instant."""

    __tablename__ = "scheduled_notifications"

    id = Column(String(64), primary_key=True, nullable=False)
    request_id = Column(String(64), nullable=True)
    request_json = Column(Text, nullable=False)
    recipients_json = Column(Text, nullable=False)
    scheduled_for = Column(String(50), nullable=False)
    created_at = Column(String(50), nullable=False)

    __table_args__ = (Index("idx_scheduled_notifications_due", "scheduled_for"),)

    def to_domain(self) -> ScheduledNotification:
        recipients = [Recipient.model_validate(item) for item in _load_json(self.recipients_json, [])]
        return ScheduledNotification(
            id=self.id,
            request=DispatchRequest.model_validate_json(self.request_json),
            recipients=recipients,
            scheduled_for=parse_db_timestamp(self.scheduled_for),
        )

    @classmethod
    def from_domain(
        cls,
        scheduled_id: str,
        request: DispatchRequest,
        recipients: List[Recipient],
        scheduled_for: datetime,
        now: datetime,
    ) -> "ScheduledNotificationModel":
        return cls(
            id=scheduled_id,
            request_id=request.id,
            request_json=request.model_dump_json(),
            recipients_json=json.dumps([r.model_dump(mode="json") for r in recipients]),
            scheduled_for=format_db_timestamp(scheduled_for),
            created_at=format_db_timestamp(now),
        )


class DispatchRecordModel(Base):
    """ORM model for one completed dispatch; outcomes live in delivery_outcomes."""

    __tablename__ = "dispatch_records"

    dispatch_id = Column(String(64), primary_key=True, nullable=False)
    notification_type = Column(String(100), nullable=False)
    category = Column(String(20), nullable=False)
    severity = Column(String(20), nullable=False)
    title = Column(Text, nullable=False)
    request_json = Column(Text, nullable=False)
    successful_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    recorded_at = Column(String(50), nullable=False)

    outcomes = relationship(
        "DeliveryOutcomeModel",
        back_populates="record",
        cascade="all, delete-orphan",
        order_by="DeliveryOutcomeModel.id",
    )

    __table_args__ = (
        Index("idx_dispatch_records_recorded_at", "recorded_at"),
        Index("idx_dispatch_records_category", "category"),
    )

    def __repr__(self) -> str:
        return (
            f"<DispatchRecordModel(dispatch_id={self.dispatch_id!r}, "
            f"ok={self.successful_count}, failed={self.failed_count})>"
        )


class DeliveryOutcomeModel(Base):
    """ORM model for the outcome of one (recipient, channel) delivery."""

    __tablename__ = "delivery_outcomes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dispatch_id = Column(
        String(64), ForeignKey("dispatch_records.dispatch_id", ondelete="CASCADE"), nullable=False
    )
    channel = Column(String(20), nullable=False)
    recipient = Column(String(255), nullable=False)
    recipient_id = Column(String(100), nullable=True)
    success = Column(Boolean, nullable=False)
    provider = Column(String(100), nullable=True)
    message_id = Column(String(255), nullable=True)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    timestamp = Column(String(50), nullable=False)

    record = relationship("DispatchRecordModel", back_populates="outcomes")

    __table_args__ = (Index("idx_delivery_outcomes_dispatch", "dispatch_id"),)

    def to_domain(self) -> DeliveryOutcome:
        return DeliveryOutcome(
            channel=ChannelType(self.channel),
            recipient=self.recipient,
            recipient_id=self.recipient_id,
            success=self.success,
            provider=self.provider,
            message_id=self.message_id,
            error=self.error,
            attempts=self.attempts,
            timestamp=parse_db_timestamp(self.timestamp),
        )

    @classmethod
    def from_domain(cls, outcome: DeliveryOutcome) -> "DeliveryOutcomeModel":
        return cls(
            channel=outcome.channel.value,
            recipient=outcome.recipient,
            recipient_id=outcome.recipient_id,
            success=outcome.success,
            provider=outcome.provider,
            message_id=outcome.message_id,
            error=outcome.error,
            attempts=outcome.attempts,
            timestamp=format_db_timestamp(outcome.timestamp),
        )


def format_db_timestamp(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return format_timestamp(dt, include_microseconds=True)


def parse_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    return parse_iso_datetime(value)


def _load_json(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        logger.warning(
            "Stored JSON column could not be decoded; using default",
            extra={"event": "database.json.invalid"},
        )
        return default


def create_schema(engine: Engine) -> None:
    """Create all tables and indexes that do not exist yet.

    Idempotent; existing tables are left untouched.
    """
    logger.info("Creating database schema", extra={"event": "database.schema.creating"})
    Base.metadata.create_all(engine, checkfirst=True)
    logger.info(
        "Database schema ready",
        extra={"event": "database.schema.ready", "tables": sorted(Base.metadata.tables)},
    )
