"""Core enumerations and the delivery outcome record.

- Severity: ordered urgency of a notification (low < medium < high < critical)
- Category: fixed set of notification categories
- ChannelType: delivery media a recipient can be reached on
- DeliveryFrequency: how a recipient wants non-critical notifications delivered
- DeliveryOutcome: result of delivering one notification to one recipient on one channel
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from beacon.utils.timestamps import ensure_utc, utc_now


class Severity(str, Enum):
    """Notification severity, ordered by `rank`."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: "Severity") -> bool:
        return self.rank >= Severity(other).rank


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class Category(str, Enum):
    DIGEST = "digest"
    ALERT = "alert"
    SYSTEM = "system"
    USER = "user"
    JOB = "job"


class ChannelType(str, Enum):
    EMAIL = "email"
    SLACK = "slack"
    WEBHOOK = "webhook"
    SMS = "sms"


class DeliveryFrequency(str, Enum):
    IMMEDIATE = "immediate"
    BATCHED = "batched"
    DIGEST = "digest"


class DeliveryOutcome(BaseModel):
    """Result of one (recipient, channel) delivery.

    Produced once per pair per dispatch attempt and never modified afterwards.
    `recipient` is the address delivered to, or a `user_<id>` label when the
    recipient has no address for the channel.
    """

    channel: ChannelType = Field(..., description="Channel the delivery went through")
    recipient: str = Field(..., description="Recipient address or label")
    recipient_id: Optional[str] = Field(None, description="Recipient identifier")
    success: bool = Field(..., description="Whether a provider accepted the message")
    provider: Optional[str] = Field(None, description="Provider that accepted (or last tried)")
    message_id: Optional[str] = Field(None, description="Provider message identifier on success")
    error: Optional[str] = Field(None, description="Failure description")
    attempts: int = Field(0, ge=0, description="Number of provider send calls made")
    timestamp: datetime = Field(default_factory=utc_now, description="When the outcome was recorded (UTC)")

    @field_validator("timestamp")
    @classmethod
    def to_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    model_config = {"frozen": True, "json_schema_extra": {"example": {
        "channel": "email",
        "recipient": "ops@example.com",
        "recipient_id": "user_42",
        "success": True,
        "provider": "primary-smtp",
        "message_id": "<171234.5678@example.com>",
        "attempts": 1,
        "timestamp": "2024-01-01T02:00:05Z",
    }}}
