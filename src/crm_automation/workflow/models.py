"""Workflow definition models: triggers, steps and branches as tagged variants."""

import re
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator

_HHMM_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def _check_hhmm(value: str, name: str) -> str:
    if not _HHMM_PATTERN.match(value):
        raise ValueError(f"{name} must be HH:MM (24h), got '{value}'")
    return value


class WorkflowStatus(str, Enum):
    """Workflow lifecycle status."""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class FilterOperator(str, Enum):
    """Operators understood by the condition evaluator."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    IN = "in"
    NOT_IN = "not_in"


class FilterCondition(BaseModel):
    """Single predicate over a record field (dotted path)."""
    field: str = Field(min_length=1)
    operator: FilterOperator
    value: Any = None


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class WorkingHours(BaseModel):
    """Time-of-day/day-of-week window that wait steps are clamped into."""
    start: str = "09:00"
    end: str = "17:00"
    days: List[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])  # ISO weekdays, 1 = Monday

    @field_validator("start", "end")
    @classmethod
    def validate_hhmm(cls, v: str, info) -> str:
        return _check_hhmm(v, info.field_name)

    @field_validator("days")
    @classmethod
    def validate_days(cls, v: List[int]) -> List[int]:
        for day in v:
            if not 1 <= day <= 7:
                raise ValueError(f"working hours days must be ISO weekdays 1-7, got {day}")
        return sorted(set(v))

    @model_validator(mode="after")
    def validate_window(self) -> "WorkingHours":
        if self.start >= self.end:
            raise ValueError(f"working hours start {self.start} must be before end {self.end}")
        return self


class WorkflowSettings(BaseModel):
    """Per-workflow enrollment and timing policy."""
    allow_re_enrollment: bool = False
    enrollment_limit: Optional[int] = None
    timezone: str = "UTC"
    working_hours_only: bool = False
    working_hours: WorkingHours = Field(default_factory=WorkingHours)

    @field_validator("enrollment_limit")
    @classmethod
    def validate_limit(cls, v: Optional[int]) -> Optional[int]:
        """None means no cap; zero/negative caps are rejected."""
        if v is not None and v < 1:
            raise ValueError(f"enrollment_limit must be positive, got {v}")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone '{v}'")
        return v

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


class TriggerType(str, Enum):
    CONTACT_CREATED = "contact_created"
    CONTACT_UPDATED = "contact_updated"
    TAG_ADDED = "tag_added"
    TAG_REMOVED = "tag_removed"
    DEAL_STAGE_CHANGED = "deal_stage_changed"
    DEAL_CREATED = "deal_created"
    FORM_SUBMITTED = "form_submitted"
    DATE_BASED = "date_based"
    MANUAL = "manual"


class FilterTriggerConfig(BaseModel):
    filters: List[FilterCondition] = Field(default_factory=list)


class ContactUpdatedTriggerConfig(FilterTriggerConfig):
    fields: List[str] = Field(default_factory=list)  # Empty = any field change


class TagTriggerConfig(FilterTriggerConfig):
    tag_ids: List[str] = Field(default_factory=list)


class DealStageTriggerConfig(FilterTriggerConfig):
    pipeline_id: Optional[str] = None
    from_stage_id: Optional[str] = None
    to_stage_id: Optional[str] = None


class DealCreatedTriggerConfig(FilterTriggerConfig):
    pipeline_id: Optional[str] = None


class FormSubmittedTriggerConfig(BaseModel):
    form_id: Optional[str] = None


class DateBasedTriggerConfig(FilterTriggerConfig):
    date_field: Optional[str] = None
    offset_days: int = 0  # Negative = before the date, positive = after
    time: Optional[str] = None
    annual: bool = False  # Match month/day only (birthdays, anniversaries)

    @field_validator("time")
    @classmethod
    def validate_time(cls, v: Optional[str]) -> Optional[str]:
        return _check_hhmm(v, "time") if v is not None else v


class ManualTriggerConfig(BaseModel):
    pass


class ContactCreatedTrigger(BaseModel):
    type: Literal["contact_created"] = "contact_created"
    config: FilterTriggerConfig = Field(default_factory=FilterTriggerConfig)


class ContactUpdatedTrigger(BaseModel):
    type: Literal["contact_updated"] = "contact_updated"
    config: ContactUpdatedTriggerConfig = Field(default_factory=ContactUpdatedTriggerConfig)


class TagAddedTrigger(BaseModel):
    type: Literal["tag_added"] = "tag_added"
    config: TagTriggerConfig = Field(default_factory=TagTriggerConfig)


class TagRemovedTrigger(BaseModel):
    type: Literal["tag_removed"] = "tag_removed"
    config: TagTriggerConfig = Field(default_factory=TagTriggerConfig)


class DealStageChangedTrigger(BaseModel):
    type: Literal["deal_stage_changed"] = "deal_stage_changed"
    config: DealStageTriggerConfig = Field(default_factory=DealStageTriggerConfig)


class DealCreatedTrigger(BaseModel):
    type: Literal["deal_created"] = "deal_created"
    config: DealCreatedTriggerConfig = Field(default_factory=DealCreatedTriggerConfig)


class FormSubmittedTrigger(BaseModel):
    type: Literal["form_submitted"] = "form_submitted"
    config: FormSubmittedTriggerConfig = Field(default_factory=FormSubmittedTriggerConfig)


class DateBasedTrigger(BaseModel):
    type: Literal["date_based"] = "date_based"
    config: DateBasedTriggerConfig = Field(default_factory=DateBasedTriggerConfig)


class ManualTrigger(BaseModel):
    type: Literal["manual"] = "manual"
    config: ManualTriggerConfig = Field(default_factory=ManualTriggerConfig)


Trigger = Annotated[
    Union[
        ContactCreatedTrigger,
        ContactUpdatedTrigger,
        TagAddedTrigger,
        TagRemovedTrigger,
        DealStageChangedTrigger,
        DealCreatedTrigger,
        FormSubmittedTrigger,
        DateBasedTrigger,
        ManualTrigger,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


class StepType(str, Enum):
    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    UPDATE_FIELD = "update_field"
    CREATE_TASK = "create_task"
    CREATE_DEAL = "create_deal"
    SEND_NOTIFICATION = "send_notification"
    WAIT = "wait"
    CONDITION = "condition"
    SPLIT = "split"
    GO_TO = "go_to"
    END = "end"


ACTION_STEP_TYPES = frozenset({
    StepType.SEND_EMAIL,
    StepType.SEND_SMS,
    StepType.ADD_TAG,
    StepType.REMOVE_TAG,
    StepType.UPDATE_FIELD,
    StepType.CREATE_TASK,
    StepType.CREATE_DEAL,
    StepType.SEND_NOTIFICATION,
})

# Steps that only move the pointer; bounded per pass by the loop guard
LOGIC_STEP_TYPES = frozenset({StepType.CONDITION, StepType.SPLIT, StepType.GO_TO})


class Position(BaseModel):
    """Canvas position; presentation only."""
    x: float = 0.0
    y: float = 0.0


class Branch(BaseModel):
    """Conditional edge out of a condition or split step.

    An empty condition list makes the branch an unconditional ``else``.
    """
    id: str
    name: str = ""
    conditions: List[FilterCondition] = Field(default_factory=list)
    logic: Literal["and", "or"] = "and"
    percentage: Optional[float] = None  # Split steps in percentage mode
    next_step_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def coerce_single_condition(cls, data: Any) -> Any:
        """Accept the editor's single ``condition`` object as a one-item list."""
        if isinstance(data, dict) and "condition" in data:
            data = dict(data)
            single = data.pop("condition")
            if single and not data.get("conditions"):
                data["conditions"] = [single]
        return data

    @property
    def is_else(self) -> bool:
        return not self.conditions


class SendEmailConfig(BaseModel):
    template_id: Optional[str] = None
    subject: Optional[str] = None
    content_html: Optional[str] = None
    from_name: Optional[str] = None
    from_email: Optional[str] = None


class SendSmsConfig(BaseModel):
    message: Optional[str] = Field(default=None, max_length=1600)


class TagStepConfig(BaseModel):
    tag_ids: List[str] = Field(default_factory=list)


class UpdateFieldConfig(BaseModel):
    field: Optional[str] = None
    value: Union[str, int, float, bool, None] = None


class CreateTaskConfig(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    due_in_days: Optional[int] = None
    assigned_to: Optional[str] = None  # User id, or "owner" for the record owner
    priority: Literal["low", "medium", "high"] = "medium"


class CreateDealConfig(BaseModel):
    pipeline_id: Optional[str] = None
    stage_id: Optional[str] = None
    title: Optional[str] = None
    value: float = 0
    assigned_to: Optional[str] = None


class SendNotificationConfig(BaseModel):
    channel: Literal["email", "in_app", "slack"] = "in_app"
    recipients: List[str] = Field(default_factory=list)  # User ids or "owner"
    subject: str = ""
    message: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def accept_type_alias(cls, data: Any) -> Any:
        """The editor stores the channel under ``type``."""
        if isinstance(data, dict) and "type" in data and "channel" not in data:
            data = dict(data)
            data["channel"] = data.pop("type")
        return data


class WaitUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"


class WaitConfig(BaseModel):
    duration: float = 1
    unit: WaitUnit = WaitUnit.DAYS


class SplitConfig(BaseModel):
    split_type: Literal["percentage", "random"] = "random"


class GoToConfig(BaseModel):
    target_step_id: Optional[str] = None


class StepBase(BaseModel):
    """Fields shared by every step variant."""
    id: str = Field(min_length=1)
    name: str = ""
    position: Position = Field(default_factory=Position)
    next_step_id: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or f"{self.type} ({self.id})"

    @property
    def is_action(self) -> bool:
        return self.type in ACTION_STEP_TYPES


class SendEmailStep(StepBase):
    type: Literal["send_email"] = "send_email"
    config: SendEmailConfig = Field(default_factory=SendEmailConfig)


class SendSmsStep(StepBase):
    type: Literal["send_sms"] = "send_sms"
    config: SendSmsConfig = Field(default_factory=SendSmsConfig)


class AddTagStep(StepBase):
    type: Literal["add_tag"] = "add_tag"
    config: TagStepConfig = Field(default_factory=TagStepConfig)


class RemoveTagStep(StepBase):
    type: Literal["remove_tag"] = "remove_tag"
    config: TagStepConfig = Field(default_factory=TagStepConfig)


class UpdateFieldStep(StepBase):
    type: Literal["update_field"] = "update_field"
    config: UpdateFieldConfig = Field(default_factory=UpdateFieldConfig)


class CreateTaskStep(StepBase):
    type: Literal["create_task"] = "create_task"
    config: CreateTaskConfig = Field(default_factory=CreateTaskConfig)


class CreateDealStep(StepBase):
    type: Literal["create_deal"] = "create_deal"
    config: CreateDealConfig = Field(default_factory=CreateDealConfig)


class SendNotificationStep(StepBase):
    type: Literal["send_notification"] = "send_notification"
    config: SendNotificationConfig = Field(default_factory=SendNotificationConfig)


class WaitStep(StepBase):
    type: Literal["wait"] = "wait"
    config: WaitConfig = Field(default_factory=WaitConfig)


class ConditionStep(StepBase):
    type: Literal["condition"] = "condition"
    branches: List[Branch] = Field(default_factory=list)


class SplitStep(StepBase):
    type: Literal["split"] = "split"
    config: SplitConfig = Field(default_factory=SplitConfig)
    branches: List[Branch] = Field(default_factory=list)


class GoToStep(StepBase):
    type: Literal["go_to"] = "go_to"
    config: GoToConfig = Field(default_factory=GoToConfig)


class EndStep(StepBase):
    type: Literal["end"] = "end"


Step = Annotated[
    Union[
        SendEmailStep,
        SendSmsStep,
        AddTagStep,
        RemoveTagStep,
        UpdateFieldStep,
        CreateTaskStep,
        CreateDealStep,
        SendNotificationStep,
        WaitStep,
        ConditionStep,
        SplitStep,
        GoToStep,
        EndStep,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


class Workflow(BaseModel):
    """A tenant-owned automation: one trigger plus a step graph."""

    id: str = Field(min_length=1)
    workspace_id: str = "default"
    name: str = ""
    description: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.DRAFT
    trigger: Trigger = Field(default_factory=ManualTrigger)
    steps: List[Step] = Field(default_factory=list)
    start_step_id: Optional[str] = None  # Defaults to the first listed step
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    created_by: Optional[str] = None

    version: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    activated_at: Optional[datetime] = None

    @field_validator("steps")
    @classmethod
    def validate_unique_step_ids(cls, v: List[Any]) -> List[Any]:
        seen = set()
        for step in v:
            if step.id in seen:
                raise ValueError(f"Duplicate step id '{step.id}'")
            seen.add(step.id)
        return v

    @field_serializer("created_at", "updated_at", "activated_at")
    def serialize_datetime(self, v: Optional[datetime]) -> Optional[str]:
        return v.isoformat() if v else None

    @property
    def entry_step_id(self) -> Optional[str]:
        if self.start_step_id:
            return self.start_step_id
        return self.steps[0].id if self.steps else None

    @property
    def is_active(self) -> bool:
        return self.status == WorkflowStatus.ACTIVE

    def get_step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def structure(self) -> Dict[str, Any]:
        """Graph-defining fields; edits to these are blocked while active."""
        return {
            "trigger": self.trigger.model_dump(mode="json"),
            "steps": [step.model_dump(mode="json", exclude={"position"}) for step in self.steps],
            "start_step_id": self.entry_step_id,
        }
