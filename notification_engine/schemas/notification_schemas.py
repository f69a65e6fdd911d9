from datetime import datetime
from typing import Any, Dict, List, Optional, Set
from pydantic import BaseModel, ConfigDict, Field, field_validator

from notification_engine.db.models import ChannelType, Priority
from notification_engine.utils.datetime_utils import to_naive_utc


class TimeWindow(BaseModel):
    start: datetime = Field(..., description="Inclusive lower bound (naive UTC)")
    end: datetime = Field(..., description="Inclusive upper bound (naive UTC)")
    offset_label: Optional[str] = Field(
        None, description="Offset label the window was computed for"
    )

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


class Candidate(BaseModel):
    kind: str = Field(..., description="Notification kind code")
    recipient_id: str = Field(..., description="User to notify")
    related_entity_id: Optional[str] = Field(
        None, description="Event, registration or other entity the notice is about"
    )
    occurrence_key: str = Field(
        "", description="Discriminates repeated notices of one kind for one entity"
    )
    target_time: Optional[datetime] = Field(
        None, description="Timestamp the window was matched against"
    )
    data: Dict[str, Any] = Field(
        default_factory=dict, description="Rendering context for the content builder"
    )

    @field_validator("target_time")
    @classmethod
    def normalise_target_time(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v) if v is not None else None


class RenderedContent(BaseModel):
    title: str
    message: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class RecipientPreferences(BaseModel):
    user_id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    push_tokens: List[str] = Field(default_factory=list)
    email_enabled: bool = True
    push_enabled: bool = True
    sms_enabled: bool = False
    muted_kinds: Set[str] = Field(
        default_factory=set,
        description="Kinds limited to in-app delivery for this recipient",
    )


class CapacitySnapshot(BaseModel):
    capacity: int = Field(..., ge=0)
    committed: int = Field(..., ge=0)

    @property
    def available_slots(self) -> int:
        return max(0, self.capacity - self.committed)


class MutationResult(BaseModel):
    ok: bool
    conflict: bool = False
    error: Optional[str] = None


class WaitlistEntry(BaseModel):
    registration_id: str
    recipient_id: str
    parent_entity_id: str
    position: int = Field(..., ge=1)
    joined_at: datetime
    auto_promote: bool = True
    expires_at: Optional[datetime] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("joined_at", "expires_at")
    @classmethod
    def normalise_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Store timestamps may be timezone-aware; the engine compares naive UTC"""
        return to_naive_utc(v) if v is not None else None

    def is_eligible(self, now: datetime) -> bool:
        return self.auto_promote and (self.expires_at is None or self.expires_at > now)


class TransportResult(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    permanent: bool = False


class ChannelAttempt(BaseModel):
    model_config = ConfigDict(frozen=True)

    channel: ChannelType
    attempted: bool = True
    delivered: bool
    error: Optional[str] = None
    permanent: bool = False
    timestamp: datetime


class DeliveryResult(BaseModel):
    attempts: List[ChannelAttempt] = Field(default_factory=list)

    @property
    def channels_succeeded(self) -> Set[ChannelType]:
        return {a.channel for a in self.attempts if a.delivered}

    @property
    def channels_failed(self) -> Dict[ChannelType, str]:
        return {
            a.channel: a.error or "unknown error"
            for a in self.attempts
            if a.attempted and not a.delivered
        }

    @property
    def permanent_failures(self) -> Set[ChannelType]:
        return {a.channel for a in self.attempts if not a.delivered and a.permanent}

    @property
    def partial_success(self) -> bool:
        return bool(self.channels_succeeded)

    @property
    def total_failure(self) -> bool:
        return not self.channels_succeeded

    @property
    def only_permanent_failures(self) -> bool:
        failed = set(self.channels_failed)
        return bool(failed) and failed == self.permanent_failures

    def error_summary(self) -> Optional[str]:
        failed = self.channels_failed
        if not failed:
            return None
        return "; ".join(f"{channel.value}: {error}" for channel, error in failed.items())


class KindRunReport(BaseModel):
    kind: str
    candidates: int = 0
    sent: int = 0
    retry_scheduled: int = 0
    failed_permanent: int = 0
    deduplicated: int = 0
    errors: int = 0
    aborted: bool = False
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump()


class PriorityAssignment(BaseModel):
    """A candidate paired with the priority its offset maps to."""

    candidate: Candidate
    priority: Priority


class OutboundMessageCreate(BaseModel):
    recipient_address: str = Field(..., min_length=1, description="Email, phone or user id")
    channel: ChannelType = ChannelType.EMAIL
    recipient_id: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    template_id: Optional[str] = None
    template_data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(0, description="Higher numbers are sent first")
    scheduled_for: Optional[datetime] = Field(
        None, description="Earliest send time (naive UTC); defaults to now"
    )
