"""Configuration schema models using Pydantic."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from beacon.dispatch.models import NotificationRule
from beacon.scheduling.cron import validate_cron
from beacon.scheduling.exceptions import InvalidCronError
from beacon.scheduling.models import JobDescriptor, ScheduleSpec

from .duration import DurationParseError, parse_duration, validate_duration_range


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    KEY_VALUE = "key-value"


def _duration_validator(value: str, min_seconds: int, max_seconds: int, label: str) -> str:
    try:
        validate_duration_range(parse_duration(value), min_seconds, max_seconds, label)
    except DurationParseError as e:
        raise ValueError(str(e)) from e
    return value


class ScheduleDefinition(BaseModel):
    """A schedule declared in the config file, seeded into the registry on startup."""

    id: Optional[str] = Field(None, description="Stable id; defaults to a slug of the name")
    name: str = Field(..., min_length=1)
    cron: str = Field(..., description="Five-field cron expression")
    timezone: str = Field("UTC")
    job_type: str = Field(..., min_length=1)
    job_params: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    max_concurrent_runs: Optional[int] = Field(None, ge=1)
    created_by: Optional[str] = None

    @field_validator("name", "job_type")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("Field cannot be empty or whitespace-only")
        return stripped

    @model_validator(mode="after")
    def validate_timing(self):
        try:
            validate_cron(self.cron, self.timezone)
        except InvalidCronError as e:
            raise ValueError(f"Schedule '{self.name}': {e}") from e
        return self

    @property
    def schedule_id(self) -> str:
        if self.id:
            return self.id
        slug = "".join(c if c.isalnum() else "_" for c in self.name.lower()).strip("_")
        return f"sched_{slug}"

    def to_spec(self) -> ScheduleSpec:
        return ScheduleSpec(
            id=self.schedule_id,
            name=self.name,
            cron=self.cron,
            timezone=self.timezone,
            job=JobDescriptor(type=self.job_type, params=self.job_params),
            enabled=self.enabled,
            max_concurrent_runs=self.max_concurrent_runs,
            created_by=self.created_by,
        )


class SchedulerConfig(BaseModel):
    """Scheduler loop settings."""

    tick_interval: str = Field("60s", description="Interval between scheduler ticks")
    max_concurrent_fires: int = Field(4, ge=1, le=64, description="Schedules fired in parallel per tick")
    schedules: List[ScheduleDefinition] = Field(default_factory=list)

    @field_validator("tick_interval")
    @classmethod
    def validate_tick_interval(cls, v: str) -> str:
        return _duration_validator(v, 10, 3600, "Tick interval")

    @model_validator(mode="after")
    def check_unique_schedules(self):
        seen = set()
        for definition in self.schedules:
            if definition.schedule_id in seen:
                raise ValueError(f"Duplicate schedule id: {definition.schedule_id}")
            seen.add(definition.schedule_id)
        return self

    @property
    def tick_interval_seconds(self) -> int:
        return parse_duration(self.tick_interval)


class DispatchConfig(BaseModel):
    """Dispatch engine settings."""

    batch_interval: str = Field("5m", description="Flush interval for batched notifications")
    max_retries: int = Field(3, ge=1, le=10, description="Rounds through each channel's providers")
    retry_base_delay: float = Field(1.0, ge=0.0, le=60.0, description="Seconds before the second round")
    max_delivery_workers: int = Field(8, ge=1, le=128)
    fallback_channel: Optional[str] = Field(
        None, description="Chat channel notified when no recipient is eligible"
    )
    deferred_poll_interval: str = Field("1m", description="Interval between deferred-notification polls")

    @field_validator("batch_interval")
    @classmethod
    def validate_batch_interval(cls, v: str) -> str:
        return _duration_validator(v, 10, 86400, "Batch interval")

    @field_validator("deferred_poll_interval")
    @classmethod
    def validate_poll_interval(cls, v: str) -> str:
        return _duration_validator(v, 5, 3600, "Deferred poll interval")

    @property
    def batch_interval_seconds(self) -> int:
        return parse_duration(self.batch_interval)

    @property
    def deferred_poll_interval_seconds(self) -> int:
        return parse_duration(self.deferred_poll_interval)


class SMTPProviderConfig(BaseModel):
    """An additional SMTP relay, tried after the environment-configured one."""

    name: str = Field(..., min_length=1)
    host: str = Field(..., min_length=1)
    port: int = Field(587, ge=1, le=65535)
    use_tls: bool = True
    username: Optional[str] = None
    password_env: Optional[str] = Field(
        None, description="Environment variable holding the password"
    )
    sender_name: str = "Beacon"
    sender_address: Optional[str] = None
    timeout: float = Field(30.0, gt=0, le=300)


class SlackSettings(BaseModel):
    api_url: str = Field("https://slack.com/api")
    timeout: float = Field(10.0, gt=0, le=120)


class WebhookSettings(BaseModel):
    timeout: float = Field(10.0, gt=0, le=120)
    user_agent: str = Field("Beacon-Notifications/1.0", min_length=1)

    @field_validator("user_agent")
    @classmethod
    def strip_user_agent(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("user_agent cannot be empty")
        return stripped


class ProvidersConfig(BaseModel):
    """Transport settings; credentials come from the environment."""

    smtp: List[SMTPProviderConfig] = Field(default_factory=list)
    smtp_use_tls: bool = Field(True, description="STARTTLS for the environment-configured relay")
    smtp_timeout: float = Field(30.0, gt=0, le=300)
    slack: SlackSettings = Field(default_factory=SlackSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    @model_validator(mode="after")
    def check_unique_names(self):
        names = [p.name for p in self.smtp]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate provider names: {', '.join(duplicates)}")
        return self


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = Field(LogLevel.INFO, description="Log level")
    format: LogFormat = Field(LogFormat.KEY_VALUE, description="Log output format (json or key-value)")

    model_config = {"use_enum_values": True}


class AppConfig(BaseModel):
    """Root configuration object."""

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    rules: List[NotificationRule] = Field(default_factory=list)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def check_unique_rules(self):
        seen = set()
        for rule in self.rules:
            if rule.id in seen:
                raise ValueError(f"Duplicate rule id: {rule.id}")
            seen.add(rule.id)
        return self

    def get_enabled_schedules(self) -> List[ScheduleDefinition]:
        return [s for s in self.scheduler.schedules if s.enabled]
