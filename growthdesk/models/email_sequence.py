"""Email sequence models.

A sequence owns an ordered list of steps (position 0..N). Each enrolled
contact gets a subscriber row tracking which step is next and when it is due.
Every email the engine sends is recorded in ``email_logs``, which also
carries the open/click engagement used to gate later steps.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    String, Boolean, ForeignKey, Integer, Text, UniqueConstraint, Index
)
from sqlalchemy.orm import Mapped, mapped_column

from growthdesk.core.enum_utils import enum_comment
from growthdesk.database import Base
from growthdesk.db_types import JSONType, UTCDateTime, UUIDType, utc_now


# ==================== ENUMS (stored as VARCHAR) ====================

class SequenceStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ARCHIVED = "ARCHIVED"


class SequenceTrigger(str, Enum):
    MANUAL = "MANUAL"
    FORM_SUBMISSION = "FORM_SUBMISSION"
    TAG_ADDED = "TAG_ADDED"
    DEAL_STAGE = "DEAL_STAGE"


class DelayType(str, Enum):
    IMMEDIATE = "IMMEDIATE"
    HOURS = "HOURS"
    DAYS = "DAYS"
    WEEKS = "WEEKS"


class SubscriberStatus(str, Enum):
    """Only ACTIVE subscribers progress. COMPLETED, UNSUBSCRIBED and BOUNCED are terminal."""
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    UNSUBSCRIBED = "UNSUBSCRIBED"
    BOUNCED = "BOUNCED"


class EmailType(str, Enum):
    SEQUENCE = "SEQUENCE"
    CAMPAIGN = "CAMPAIGN"
    TRANSACTIONAL = "TRANSACTIONAL"
    AUTOMATION = "AUTOMATION"


class EmailLogStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    OPENED = "OPENED"
    CLICKED = "CLICKED"
    BOUNCED = "BOUNCED"
    FAILED = "FAILED"


# ==================== MODELS ====================

class EmailSequence(Base):
    __tablename__ = "email_sequences"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(50),
        default=SequenceStatus.DRAFT.value,
        nullable=False,
        comment=enum_comment(SequenceStatus)
    )
    trigger: Mapped[str] = mapped_column(
        String(50),
        default=SequenceTrigger.MANUAL.value,
        nullable=False,
        comment=enum_comment(SequenceTrigger)
    )

    allow_reenrollment: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    stop_on_unsubscribe: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Preferred time of day (HH:MM, UTC) for delayed steps
    send_time: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)

    total_enrolled: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    active_subscribers: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completed_subscribers: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<EmailSequence {self.name} {self.status}>"


class EmailSequenceStep(Base):
    __tablename__ = "email_sequence_steps"
    __table_args__ = (
        UniqueConstraint("sequence_id", "position", name="uq_sequence_steps_position"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    sequence_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("email_sequences.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    html_content: Mapped[str] = mapped_column(Text, nullable=False)
    text_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    from_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    from_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    delay_type: Mapped[str] = mapped_column(
        String(50),
        default=DelayType.IMMEDIATE.value,
        nullable=False,
        comment=enum_comment(DelayType)
    )
    delay_value: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # List of tagged condition variants, see schemas.email_sequence.StepCondition
    conditions: Mapped[List[dict]] = mapped_column(JSONType, default=list, nullable=False)

    sent_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    opened_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    clicked_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False
    )


class EmailSequenceSubscriber(Base):
    """
    A contact's enrollment in a sequence.

    ``version`` is bumped by every advance claim; an advance only proceeds if
    the version it read is still current.
    """
    __tablename__ = "email_sequence_subscribers"
    __table_args__ = (
        Index("ix_sequence_subscribers_due", "tenant_id", "status", "next_step_at"),
        Index("ix_sequence_subscribers_contact", "sequence_id", "contact_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    sequence_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("email_sequences.id", ondelete="CASCADE"),
        nullable=False
    )
    contact_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("contacts.id", ondelete="CASCADE"),
        nullable=False
    )

    status: Mapped[str] = mapped_column(
        String(50),
        default=SubscriberStatus.ACTIVE.value,
        nullable=False,
        comment=enum_comment(SubscriberStatus)
    )
    current_step: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_step_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    enrolled_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_email_sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    emails_sent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    emails_opened: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    emails_clicked: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False
    )


class EmailLog(Base):
    __tablename__ = "email_logs"
    __table_args__ = (
        Index("ix_email_logs_subscriber_step", "subscriber_id", "sequence_step_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    contact_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("contacts.id", ondelete="SET NULL"),
        nullable=True
    )

    email_type: Mapped[str] = mapped_column(
        String(50),
        default=EmailType.SEQUENCE.value,
        nullable=False,
        comment=enum_comment(EmailType)
    )
    sequence_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    sequence_step_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    subscriber_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)

    status: Mapped[str] = mapped_column(
        String(50),
        default=EmailLogStatus.PENDING.value,
        nullable=False,
        comment=enum_comment(EmailLogStatus)
    )

    recipient_email: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    html_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    text_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    tracking_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    message_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    opened_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    clicked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
