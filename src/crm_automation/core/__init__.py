"""Core models, events and errors."""

from .enrollment import Enrollment, EnrollmentStatus, FailureReason, StepExecution
from .errors import (
    EnrollmentNotFoundError,
    InvalidTransitionError,
    WorkflowEngineError,
    WorkflowLockedError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from .events import DomainEvent, EventKind

__all__ = [
    "Enrollment",
    "EnrollmentStatus",
    "FailureReason",
    "StepExecution",
    "EnrollmentNotFoundError",
    "InvalidTransitionError",
    "WorkflowEngineError",
    "WorkflowLockedError",
    "WorkflowNotFoundError",
    "WorkflowValidationError",
    "DomainEvent",
    "EventKind",
]
