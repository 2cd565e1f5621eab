"""Schemas for the email sequence engine.

Step conditions are a closed set of tagged variants. They are stored on the
step row as a JSON list and parsed back through ``parse_conditions``.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from growthdesk.core.enum_utils import to_enum
from growthdesk.core.scheduling import parse_time_of_day
from growthdesk.models.email_sequence import DelayType, SequenceTrigger
from growthdesk.schemas.base import BaseCreateSchema, BaseResponseSchema


# ==================== Step conditions ====================

class _Condition(BaseModel):
    model_config = ConfigDict(frozen=True)


class MustHaveOpened(_Condition):
    """Previous step's email was opened."""
    type: Literal["must_open"] = "must_open"


class MustHaveClicked(_Condition):
    """A link in the previous step's email was clicked."""
    type: Literal["must_click"] = "must_click"


class MustNotHaveOpened(_Condition):
    """Previous step's email was not opened (re-engagement branches)."""
    type: Literal["must_not_open"] = "must_not_open"


class HasTags(_Condition):
    """Contact carries every listed tag."""
    type: Literal["has_tags"] = "has_tags"
    tags: List[str] = Field(..., min_length=1)


class LacksTags(_Condition):
    """Contact carries none of the listed tags."""
    type: Literal["lacks_tags"] = "lacks_tags"
    tags: List[str] = Field(..., min_length=1)


StepCondition = Annotated[
    Union[MustHaveOpened, MustHaveClicked, MustNotHaveOpened, HasTags, LacksTags],
    Field(discriminator="type"),
]

_conditions_adapter = TypeAdapter(List[StepCondition])


def parse_conditions(raw: Optional[list]) -> List[StepCondition]:
    """Parse the JSON stored on a step. Raises pydantic.ValidationError on unknown shapes."""
    return _conditions_adapter.validate_python(raw or [])


def dump_conditions(conditions: List[StepCondition]) -> List[dict]:
    return _conditions_adapter.dump_python(conditions, mode="json")


# ==================== Sequence management ====================

class SequenceStepCreate(BaseCreateSchema):
    name: Optional[str] = None
    subject: str = Field(..., min_length=1, max_length=500)
    html_content: str
    text_content: Optional[str] = None
    from_name: Optional[str] = None
    from_email: Optional[str] = None
    delay_type: DelayType = DelayType.IMMEDIATE
    delay_value: int = Field(0, ge=0)
    conditions: List[StepCondition] = Field(default_factory=list)
    position: Optional[int] = Field(None, ge=0)

    @field_validator('delay_type', mode='before')
    @classmethod
    def normalize_delay_type(cls, v):
        return to_enum(v, DelayType) or v


class EmailSequenceCreate(BaseCreateSchema):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    trigger: SequenceTrigger = SequenceTrigger.MANUAL
    allow_reenrollment: bool = False
    stop_on_unsubscribe: bool = True
    send_time: Optional[str] = None
    steps: List[SequenceStepCreate] = Field(default_factory=list)

    @field_validator('trigger', mode='before')
    @classmethod
    def normalize_trigger(cls, v):
        return to_enum(v, SequenceTrigger) or v

    @field_validator('send_time')
    @classmethod
    def validate_send_time(cls, v):
        if v is None or v == "":
            return None
        at = parse_time_of_day(v)
        return f"{at.hour:02d}:{at.minute:02d}"


class SequenceStatistics(BaseResponseSchema):
    sequence_id: uuid.UUID
    name: str
    status: str
    total_enrolled: int
    active_subscribers: int
    completed_subscribers: int
    completion_rate: Decimal


# ==================== Enrollment ====================

class EnrollmentOutcome(str, Enum):
    ENROLLED = "ENROLLED"
    ALREADY_ENROLLED = "ALREADY_ENROLLED"
    CONTACT_NOT_FOUND = "CONTACT_NOT_FOUND"
    CONTACT_UNSUBSCRIBED = "CONTACT_UNSUBSCRIBED"


class EnrollmentItem(BaseResponseSchema):
    contact_id: uuid.UUID
    outcome: EnrollmentOutcome
    subscriber_id: Optional[uuid.UUID] = None


class EnrollmentResult(BaseResponseSchema):
    enrolled: int = 0
    skipped: int = 0
    items: List[EnrollmentItem] = Field(default_factory=list)


# ==================== Progression ====================

class StepAction(str, Enum):
    SENT = "SENT"                         # Email delivered, subscriber advanced
    DELIVERY_FAILED = "DELIVERY_FAILED"   # Delivery raised, failure logged, subscriber advanced
    SKIPPED = "SKIPPED"                   # Conditions failed, step skipped, subscriber advanced
    COMPLETED = "COMPLETED"               # No step left, subscriber completed
    HALTED = "HALTED"                     # Contact no longer reachable, subscriber unsubscribed/bounced
    NOT_DUE = "NOT_DUE"                   # Not ACTIVE, not due, sequence paused, or claim lost


class AdvanceResult(BaseResponseSchema):
    subscriber_id: uuid.UUID
    action: StepAction
    step_position: Optional[int] = None
    completed: bool = False
    next_step_at: Optional[datetime] = None
    email_log_id: Optional[uuid.UUID] = None


class TickSummary(BaseResponseSchema):
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    completed: int = 0
    failed: int = 0
    not_due: int = 0
