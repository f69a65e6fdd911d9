import enum
import uuid
from typing import List, Optional
from datetime import datetime
from sqlalchemy import (
    String,
    Boolean,
    Integer,
    Text,
    ForeignKey,
    Enum,
    Index,
    UniqueConstraint,
    CheckConstraint,
    DateTime,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from notification_engine.utils.datetime_utils import naive_utc_now


class Base(DeclarativeBase):
    pass


def generate_uuid() -> str:
    return str(uuid.uuid4())


# Enums
class Priority(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANKS[self]


_PRIORITY_RANKS = {
    Priority.LOW: 1,
    Priority.MEDIUM: 5,
    Priority.HIGH: 8,
    Priority.URGENT: 10,
}


class ChannelType(enum.Enum):
    IN_APP = "in_app"
    EMAIL = "email"
    PUSH = "push"
    SMS = "sms"


class NotificationRecordStatus(enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED_PERMANENT = "failed_permanent"
    CANCELLED = "cancelled"


TERMINAL_RECORD_STATUSES = frozenset(
    {
        NotificationRecordStatus.SENT,
        NotificationRecordStatus.FAILED_PERMANENT,
        NotificationRecordStatus.CANCELLED,
    }
)


class OutboundMessageStatus(enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    FAILED_PERMANENT = "failed_permanent"


# Base model with common audit fields
class AuditMixin:
    """Mixin for common audit fields"""

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, onupdate=naive_utc_now, nullable=False
    )


# Models
class NotificationRecord(Base, AuditMixin):
    __tablename__ = "notification_records"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    related_entity_id: Mapped[Optional[str]] = mapped_column(String(64))
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    occurrence_key: Mapped[str] = mapped_column(String(100), nullable=False)
    # sha256 of (recipient, related entity or "", kind, occurrence key)
    dedup_key: Mapped[str] = mapped_column(String(64), nullable=False)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    # JSON stored as Text - serialize/deserialize in application
    payload: Mapped[Optional[str]] = mapped_column(Text)
    priority: Mapped[Priority] = mapped_column(
        Enum(Priority), default=Priority.MEDIUM, nullable=False
    )

    status: Mapped[NotificationRecordStatus] = mapped_column(
        Enum(NotificationRecordStatus),
        default=NotificationRecordStatus.PENDING,
        nullable=False,
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    cancelled_reason: Mapped[Optional[str]] = mapped_column(String(255))

    # Relationships
    deliveries: Mapped[List["NotificationDelivery"]] = relationship(
        back_populates="record",
        cascade="all, delete-orphan",
        order_by="NotificationDelivery.id",
    )

    # Constraints
    __table_args__ = (
        UniqueConstraint("dedup_key", name="uq_notif_record_dedup_key"),
        CheckConstraint("retry_count >= 0", name="ck_notif_record_retry_count"),
        Index("idx_notif_record_status_retry", "status", "next_retry_at"),
        Index("idx_notif_record_entity_status", "related_entity_id", "status"),
        Index("idx_notif_record_recipient_kind", "recipient_id", "kind"),
        Index("idx_notif_record_updated_at", "updated_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RECORD_STATUSES

    def __repr__(self) -> str:
        return (
            f"<NotificationRecord {self.kind}:{self.occurrence_key} "
            f"recipient={self.recipient_id} status={self.status.value}>"
        )


class NotificationDelivery(Base):
    """Append-only per-channel attempt log for a NotificationRecord."""

    __tablename__ = "notification_deliveries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    record_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("notification_records.id", ondelete="CASCADE"),
        nullable=False,
    )
    channel: Mapped[ChannelType] = mapped_column(Enum(ChannelType), nullable=False)
    attempted: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    delivered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    permanent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text)
    attempted_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )

    # Relationships
    record: Mapped["NotificationRecord"] = relationship(back_populates="deliveries")

    __table_args__ = (Index("idx_notif_delivery_record", "record_id"),)


class OutboundMessage(Base, AuditMixin):
    __tablename__ = "outbound_messages"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    channel: Mapped[ChannelType] = mapped_column(
        Enum(ChannelType), default=ChannelType.EMAIL, nullable=False
    )
    recipient_address: Mapped[str] = mapped_column(String(320), nullable=False)
    recipient_id: Mapped[Optional[str]] = mapped_column(String(64))

    subject: Mapped[Optional[str]] = mapped_column(String(255))
    body: Mapped[Optional[str]] = mapped_column(Text)
    template_id: Mapped[Optional[str]] = mapped_column(String(64))
    # JSON stored as Text - serialize/deserialize in application
    template_data: Mapped[Optional[str]] = mapped_column(Text)

    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    scheduled_for: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )
    status: Mapped[OutboundMessageStatus] = mapped_column(
        Enum(OutboundMessageStatus),
        default=OutboundMessageStatus.PENDING,
        nullable=False,
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(255))
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        CheckConstraint(
            "template_id IS NOT NULL OR body IS NOT NULL",
            name="ck_outbound_has_content",
        ),
        CheckConstraint("retry_count >= 0", name="ck_outbound_retry_count"),
        Index("idx_outbound_status_scheduled", "status", "scheduled_for"),
        Index("idx_outbound_priority_created", "priority", "created_at"),
    )
