"""
Data models for disruption alerts.

``Alert`` is the persisted record; ``AlertCandidate`` is a validated but not yet
persisted record proposed by the generative service. Datetimes are always
timezone-aware UTC.
"""
from datetime import datetime, timezone, tzinfo
from enum import StrEnum
from typing import Any, Optional
from uuid import uuid4

from dateutil import parser as date_parser
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CREATED_BY_AUTOMATION = "automated-system"


def ensure_utc(value: datetime, default_tz: Optional[tzinfo] = None) -> datetime:
    """Attach ``default_tz`` (UTC if unset) to naive datetimes and convert to UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=default_tz or timezone.utc)
    return value.astimezone(timezone.utc)


def parse_date_str(value: Any, default_tz: Optional[tzinfo] = None) -> Optional[datetime]:
    """
    Parse a loosely formatted date or datetime into an aware UTC datetime.

    :param value: String, datetime or None.
    :param default_tz: Zone for values without an offset; UTC if unset.
    :return: Parsed datetime, or None for empty input.
    :raises ValueError: If the value cannot be parsed.
    """
    if value is None:
        return None
    if not isinstance(value, (str, datetime)):
        raise ValueError(f"Unsupported date value: {value!r}")
    if isinstance(value, str) and not value.strip():
        return None
    try:
        parsed = value if isinstance(value, datetime) else date_parser.parse(value.strip())
        return ensure_utc(parsed, default_tz)
    except (ValueError, OverflowError) as e:
        raise ValueError(f"Unparseable date: {value!r}") from e


class AlertStatus(StrEnum):
    """Moderation lifecycle status."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ImpactLevel(StrEnum):
    """Severity of the disruption."""

    LOW = "Low"
    MODERATE = "Moderate"
    HIGH = "High"


class Priority(StrEnum):
    """Priority derived from impact level."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


PRIORITY_BY_IMPACT: dict[ImpactLevel, Priority] = {
    ImpactLevel.LOW: Priority.LOW,
    ImpactLevel.MODERATE: Priority.MEDIUM,
    ImpactLevel.HIGH: Priority.HIGH,
}


class UpdateSource(StrEnum):
    """Who triggered an update check."""

    AUTO = "auto"
    ADMIN = "admin"


class Location(BaseModel):
    """A named place with range-checked coordinates."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    city: str
    country: str = ""
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class AlertCandidate(BaseModel):
    """A structured record that passed validation and awaits deduplication."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    category: str
    sub_category: Optional[str] = None
    target_audiences: list[str] = Field(default_factory=list)
    impact_level: ImpactLevel = ImpactLevel.MODERATE
    origin_location: Location
    impact_locations: list[Location] = Field(default_factory=list)
    expected_start: Optional[datetime] = None
    expected_end: Optional[datetime] = None
    confidence: float = Field(ge=0, le=1)
    source_name: str = ""
    source_url: str
    mitigation: Optional[str] = None
    recommended_action: Optional[str] = None

    @property
    def priority(self) -> Priority:
        """Priority derived 1:1 from impact level."""
        return PRIORITY_BY_IMPACT[self.impact_level]


class Alert(BaseModel):
    """Persisted disruption alert."""

    model_config = ConfigDict(
        extra="forbid",
        validate_assignment=True,
        from_attributes=True,
    )

    # identity
    id: str = Field(default_factory=lambda: uuid4().hex)
    created_at: datetime
    updated_at: datetime

    # content
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    category: str
    sub_category: Optional[str] = None
    target_audiences: list[str] = Field(default_factory=list)
    impact_level: ImpactLevel = ImpactLevel.MODERATE
    priority: Priority = Priority.MEDIUM
    mitigation: Optional[str] = None
    recommended_action: Optional[str] = None

    # location
    origin_location: Location
    impact_locations: list[Location] = Field(default_factory=list)

    # timing
    expected_start: Optional[datetime] = None
    expected_end: Optional[datetime] = None

    # provenance and quality
    confidence: float = Field(ge=0, le=1)
    source_name: str = ""
    source_url: str
    created_by: str = CREATED_BY_AUTOMATION
    segment: Optional[str] = None
    add_to_email_summary: bool = False

    # lifecycle
    status: AlertStatus
    alert_group_id: Optional[str] = None
    duplicate_of: Optional[str] = None
    duplicate_similarity: Optional[float] = Field(default=None, ge=0, le=1)

    # update chain
    is_update_of: Optional[str] = None
    update_history: list[str] = Field(default_factory=list)
    update_count: int = Field(default=0, ge=0)
    update_source: Optional[UpdateSource] = None
    previous_version_notes: Optional[str] = None
    last_update_at: Optional[datetime] = None
    last_update_by: Optional[str] = None

    # auto-update controls
    auto_update_enabled: bool = True
    last_auto_update_check_at: Optional[datetime] = None
    auto_update_suppressed: bool = False
    auto_update_suppressed_by: Optional[str] = None
    auto_update_suppressed_at: Optional[datetime] = None
    auto_update_suppressed_reason: Optional[str] = None

    # followers
    followed_by: list[str] = Field(default_factory=list)
    follow_count: int = Field(default=0, ge=0)

    @field_validator(
        "created_at", "updated_at", "expected_start", "expected_end", "last_update_at",
        "last_auto_update_check_at", "auto_update_suppressed_at",
        mode="before",
    )
    @classmethod
    def normalize_datetime(cls, v: Any) -> Any:
        """Store every timestamp as aware UTC."""
        return parse_date_str(v)

    @model_validator(mode="after")
    def window_ordered(self) -> "Alert":
        """expected_start must not be after expected_end."""
        if self.expected_start and self.expected_end and self.expected_start > self.expected_end:
            raise ValueError("expected_start must be <= expected_end")
        if self.is_update_of is not None and self.is_update_of == self.id:
            raise ValueError("an alert cannot be an update of itself")
        return self

    @property
    def follower_count(self) -> int:
        """Followers known from either the follower set or the stored counter."""
        return max(len(self.followed_by), self.follow_count)

    def prompt_context(self) -> dict[str, Any]:
        """Fields shown to the generative service during an update check."""
        return {
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "sub_category": self.sub_category or "",
            "impact_level": self.impact_level.value,
            "origin_city": self.origin_location.city,
            "expected_start": self.expected_start.isoformat() if self.expected_start else "unknown",
            "expected_end": self.expected_end.isoformat() if self.expected_end else "unknown",
            "status": self.status.value,
        }
