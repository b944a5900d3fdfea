"""Dispatch domain models: recipients, requests, rules and results."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from beacon.domain.models import (
    Category,
    ChannelType,
    DeliveryFrequency,
    DeliveryOutcome,
    Severity,
)
from beacon.utils.timestamps import (
    ensure_utc,
    local_minute_of_day,
    parse_clock_time,
    resolve_timezone,
)


class TimeWindow(BaseModel):
    """Daily wall-clock window in a timezone, e.g. quiet hours 22:00-06:00.

    A window whose start is after its end wraps past midnight. Both ends
    are inclusive at minute granularity.
    """

    start: str = Field(..., description="Window start, HH:MM")
    end: str = Field(..., description="Window end, HH:MM")
    timezone: str = Field("UTC", description="IANA timezone the window is evaluated in")

    @field_validator("start", "end")
    @classmethod
    def validate_clock(cls, v: str) -> str:
        parse_clock_time(v)
        return v.strip()

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        resolve_timezone(v)
        return v

    def contains(self, instant: datetime) -> bool:
        """Check whether an instant falls inside the window."""
        current = local_minute_of_day(instant, resolve_timezone(self.timezone))
        start = parse_clock_time(self.start)
        end = parse_clock_time(self.end)

        if start > end:
            return current >= start or current <= end
        return start <= current <= end


class ChannelPreference(BaseModel):
    """One channel a recipient can be reached on.

    `config` carries channel-specific settings; for webhooks it holds the
    `url` and optionally `method` and `headers`.
    """

    type: ChannelType
    enabled: bool = True
    priority: int = Field(0, description="Higher priority channels are preferred")
    config: Dict[str, Any] = Field(default_factory=dict)


class RecipientPreferences(BaseModel):
    channels: List[ChannelPreference] = Field(default_factory=list)
    frequency: DeliveryFrequency = DeliveryFrequency.IMMEDIATE
    categories: List[Category] = Field(
        default_factory=lambda: list(Category),
        description="Categories the recipient opted into",
    )
    minimum_severity: Optional[Severity] = None
    quiet_hours: Optional[TimeWindow] = None

    def enabled_channels(self) -> List[ChannelPreference]:
        """Enabled channels, highest priority first (stable for equal priorities)."""
        enabled = [c for c in self.channels if c.enabled]
        return sorted(enabled, key=lambda c: c.priority, reverse=True)

    def channel_config(self, channel: ChannelType) -> Dict[str, Any]:
        for preference in self.channels:
            if preference.type == channel:
                return preference.config
        return {}


class Recipient(BaseModel):
    """Someone who can receive notifications, with one address per channel."""

    id: str = Field(..., min_length=1)
    email: Optional[str] = None
    slack_user_id: Optional[str] = None
    phone_number: Optional[str] = None
    preferences: RecipientPreferences = Field(default_factory=RecipientPreferences)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v

    @property
    def label(self) -> str:
        """Placeholder shown when the recipient has no address for a channel."""
        return f"user_{self.id}"

    def address_for(self, channel: ChannelType) -> Optional[str]:
        """Return the recipient's address on a channel, or None if unknown."""
        if channel == ChannelType.EMAIL:
            return self.email
        if channel == ChannelType.SLACK:
            return self.slack_user_id
        if channel == ChannelType.WEBHOOK:
            return self.preferences.channel_config(ChannelType.WEBHOOK).get("url")
        if channel == ChannelType.SMS:
            return self.phone_number
        return None

    model_config = {"json_schema_extra": {"example": {
        "id": "42",
        "email": "ops@example.com",
        "slack_user_id": "U024BE7LH",
        "preferences": {
            "channels": [
                {"type": "slack", "priority": 2},
                {"type": "email", "priority": 1},
            ],
            "frequency": "immediate",
            "categories": ["alert", "system"],
            "minimum_severity": "medium",
            "quiet_hours": {"start": "22:00", "end": "06:00", "timezone": "Europe/Berlin"},
        },
    }}}


class DispatchRequest(BaseModel):
    """One notification to deliver to a set of recipients.

    Requests are immutable; the rule engine derives modified copies.
    """

    id: Optional[str] = None
    type: str = Field(..., min_length=1, description="Notification type, e.g. job_failed")
    category: Category
    severity: Severity
    title: str
    message: str
    recipients: List[Recipient] = Field(default_factory=list)
    channels: Optional[List[ChannelType]] = Field(
        None, description="Restrict delivery to these channels"
    )
    template: Optional[str] = None
    template_data: Dict[str, Any] = Field(default_factory=dict)
    scheduled_for: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("scheduled_for", "expires_at")
    @classmethod
    def to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_deferred(self, now: datetime) -> bool:
        return self.scheduled_for is not None and self.scheduled_for > now

    def allows(self, channel: ChannelType) -> bool:
        return self.channels is None or channel in self.channels

    model_config = {"frozen": True}


class RuleConditions(BaseModel):
    """Conditions of a rule; absent conditions always match."""

    categories: Optional[List[Category]] = None
    severities: Optional[List[Severity]] = None
    keywords: Optional[List[str]] = None
    time_range: Optional[TimeWindow] = None

    @field_validator("keywords")
    @classmethod
    def normalize_keywords(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return None
        return [k.strip().lower() for k in v if k and k.strip()]


class RuleActions(BaseModel):
    channels: Optional[List[ChannelType]] = None
    delay_minutes: Optional[int] = Field(None, ge=0)
    template: Optional[str] = None

    @property
    def delay(self) -> Optional[timedelta]:
        return timedelta(minutes=self.delay_minutes) if self.delay_minutes else None


class NotificationRule(BaseModel):
    """Rule that rewrites matching requests."""

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: str = ""
    conditions: RuleConditions = Field(default_factory=RuleConditions)
    actions: RuleActions = Field(default_factory=RuleActions)
    is_active: bool = True
    priority: int = 0

    @model_validator(mode="after")
    def require_action(self):
        actions = self.actions
        if actions.channels is None and not actions.delay_minutes and actions.template is None:
            raise ValueError(f"Rule '{self.id}' must define at least one action")
        return self

    model_config = {"json_schema_extra": {"example": {
        "id": "critical-to-slack",
        "name": "Critical alerts go to Slack",
        "conditions": {"categories": ["alert"], "severities": ["critical"]},
        "actions": {"channels": ["slack"]},
        "priority": 100,
    }}}


DISPATCH_STATUSES = ("delivered", "batched", "scheduled", "no_recipients", "expired", "fallback")


@dataclass
class DispatchResult:
    """Aggregate of every delivery outcome for one dispatch call.

    `success` is True iff at least one delivery succeeded, except for the
    batched and scheduled paths which succeed with no deliveries. A
    successful result with a non-empty `error` is a partial failure.
    """

    dispatch_id: str
    success: bool
    status: str = "delivered"
    outcomes: List[DeliveryOutcome] = field(default_factory=list)
    total_recipients: int = 0
    error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def successful_count(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)

    @property
    def successful(self) -> List[DeliveryOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def failed(self) -> List[DeliveryOutcome]:
        return [o for o in self.outcomes if not o.success]
