"""Enrollment model: one subject's traversal of one workflow's step graph."""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class EnrollmentStatus(str, Enum):
    """Enrollment status values."""
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    EXITED = "exited"
    FAILED = "failed"


OPEN_STATUSES = frozenset({EnrollmentStatus.ACTIVE, EnrollmentStatus.PAUSED})
TERMINAL_STATUSES = frozenset({
    EnrollmentStatus.COMPLETED,
    EnrollmentStatus.EXITED,
    EnrollmentStatus.FAILED,
})


class FailureReason(str, Enum):
    """Reason codes recorded on failed enrollments."""
    DISPATCH_FAILED = "dispatch_failed"          # Permanent action failure
    RETRIES_EXHAUSTED = "retries_exhausted"      # Transient failures past the retry budget
    GRAPH_CYCLE_SUSPECTED = "graph_cycle_suspected"
    CONFIGURATION_ERROR = "configuration_error"  # Dangling step reference met at runtime
    SUBJECT_NOT_FOUND = "subject_not_found"
    EXECUTION_ERROR = "execution_error"          # Unexpected error during a wake-up


class StepExecutionStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    SKIPPED = "skipped"


class StepExecution(BaseModel):
    """Record of a single step evaluation."""

    step_id: str
    step_type: str
    step_index: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    status: StepExecutionStatus
    result: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    branch_taken: Optional[str] = None


def new_enrollment_id() -> str:
    return f"enr-{uuid.uuid4().hex}"


class Enrollment(BaseModel):
    """Enrollment record. Never deleted, only terminated."""

    model_config = ConfigDict(use_enum_values=True)

    # Identity
    id: str = Field(default_factory=new_enrollment_id)
    workflow_id: str
    workspace_id: str = "default"
    subject_id: str

    # Progress (written only by the lease holder)
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    current_step_id: Optional[str] = None
    current_step_index: int = 0
    next_step_at: Optional[datetime] = None

    # Timestamps
    enrolled_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: Optional[datetime] = None
    exited_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None

    # Why this enrollment exists; dedupe_key blocks replays of the same trigger
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    dedupe_key: Optional[str] = None

    # Split decisions are made once and replayed on every re-evaluation
    split_assignments: Dict[str, str] = Field(default_factory=dict)

    # Retry tracking for the current action step
    retry_count: int = 0
    last_error: Optional[str] = None

    failure_reason: Optional[FailureReason] = None
    exit_reason: Optional[str] = None

    step_history: List[StepExecution] = Field(default_factory=list)

    @field_serializer(
        "next_step_at", "enrolled_at", "updated_at", "completed_at", "exited_at", "paused_at"
    )
    def serialize_datetime(self, v: Optional[datetime]) -> Optional[str]:
        return v.isoformat() if v else None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def idempotency_key(self) -> str:
        """Key handed to collaborators for the step about to run."""
        return f"{self.id}:{self.current_step_index}"

    def is_due(self, now: datetime) -> bool:
        return self.next_step_at is None or self.next_step_at <= now

    def advance_to(self, step_id: Optional[str], now: datetime) -> None:
        """Move the pointer to the next step (None = graph exhausted)."""
        self.current_step_id = step_id
        self.current_step_index += 1
        self.retry_count = 0
        self.last_error = None
        self.updated_at = now

    def record_step(self, execution: StepExecution) -> None:
        self.step_history.append(execution)

    def mark_completed(self, now: datetime) -> None:
        self.status = EnrollmentStatus.COMPLETED
        self.completed_at = now
        self.current_step_id = None
        self.next_step_at = None
        self.updated_at = now

    def mark_failed(self, reason: FailureReason, error: Optional[str], now: datetime) -> None:
        self.status = EnrollmentStatus.FAILED
        self.failure_reason = reason
        self.last_error = error
        self.exited_at = now
        self.next_step_at = None
        self.updated_at = now

    def mark_exited(self, reason: Optional[str], now: datetime) -> None:
        self.status = EnrollmentStatus.EXITED
        self.exit_reason = reason or "Manual exit"
        self.exited_at = now
        self.next_step_at = None
        self.updated_at = now

    def mark_paused(self, now: datetime) -> None:
        self.status = EnrollmentStatus.PAUSED
        self.paused_at = now
        self.updated_at = now

    def mark_resumed(self, now: datetime) -> None:
        self.status = EnrollmentStatus.ACTIVE
        self.paused_at = None
        self.updated_at = now
