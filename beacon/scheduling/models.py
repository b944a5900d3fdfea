"""Schedule domain models."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from beacon.utils.timestamps import ensure_utc


class JobDescriptor(BaseModel):
    """Job template fired by a schedule: job type plus parameters."""

    type: str = Field(..., min_length=1, description="Job type understood by the job queue")
    params: Dict[str, Any] = Field(default_factory=dict, description="Job parameters")

    @field_validator("type")
    @classmethod
    def strip_type(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("Job type cannot be empty or whitespace-only")
        return stripped


class ScheduleSpec(BaseModel):
    """Definition of a schedule as supplied by callers or the config file.

    `id` is optional; the registry assigns one when it is missing.
    """

    id: Optional[str] = Field(None, description="Stable identifier (assigned when omitted)")
    name: str = Field(..., min_length=1, description="Human-readable name")
    cron: str = Field(..., description="Five-field cron expression")
    timezone: str = Field("UTC", description="IANA timezone the cron fields are evaluated in")
    job: JobDescriptor = Field(..., description="Job fired on each run")
    enabled: bool = Field(True, description="Whether the schedule fires")
    max_concurrent_runs: Optional[int] = Field(
        None, ge=1, description="Skip firing while this many jobs are still running"
    )
    created_by: Optional[str] = Field(None, description="Owner of the schedule")

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("Schedule name cannot be empty or whitespace-only")
        return stripped

    @field_validator("cron")
    @classmethod
    def normalize_cron(cls, v: str) -> str:
        return " ".join(v.split())


class ScheduleConfig(ScheduleSpec):
    """A registered schedule.

    Instances are immutable; the registry replaces them on every change.
    `next_run` is the earliest matching instant after the last evaluation,
    or None while the schedule is disabled. `last_run` and `next_run` are
    only changed by the scheduler loop after a fire or by explicit update.
    """

    id: str = Field(..., min_length=1, description="Unique schedule identifier")
    last_run: Optional[datetime] = Field(None, description="When the schedule last fired (UTC)")
    next_run: Optional[datetime] = Field(None, description="When the schedule fires next (UTC)")

    @field_validator("last_run", "next_run")
    @classmethod
    def to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @property
    def job_type(self) -> str:
        return self.job.type

    def is_due(self, now: datetime) -> bool:
        """True when the schedule is enabled and its next run is not in the future."""
        return self.enabled and self.next_run is not None and self.next_run <= now

    model_config = {"frozen": True, "json_schema_extra": {"example": {
        "id": "sched_daily_cleanup",
        "name": "Daily Cleanup",
        "cron": "0 2 * * *",
        "timezone": "UTC",
        "job": {"type": "cleanup", "params": {"target_table": "jobs", "batch_size": 100}},
        "enabled": True,
        "max_concurrent_runs": 1,
    }}}


class ScheduleUpdate(BaseModel):
    """Partial update for a schedule; only fields that are set are applied."""

    name: Optional[str] = None
    cron: Optional[str] = None
    timezone: Optional[str] = None
    job: Optional[JobDescriptor] = None
    enabled: Optional[bool] = None
    max_concurrent_runs: Optional[int] = Field(None, ge=1)
    created_by: Optional[str] = None
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None


@dataclass(frozen=True)
class JobHandle:
    """Job created by the job queue in response to a fire."""

    id: str
    status: str


@dataclass
class FireResult:
    """Outcome of firing one schedule within a tick (or a manual trigger)."""

    schedule_id: str
    fired_at: datetime
    success: bool
    job: Optional[JobHandle] = None
    next_run: Optional[datetime] = None
    error: Optional[str] = None
    disabled: bool = False


@dataclass
class TickResult:
    """Summary of one scheduler tick."""

    tick_id: str
    started_at: datetime
    fired: List[FireResult] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> List[FireResult]:
        return [result for result in self.fired if result.success]

    @property
    def failed(self) -> List[FireResult]:
        return [result for result in self.fired if not result.success]
