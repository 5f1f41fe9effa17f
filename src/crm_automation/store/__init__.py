"""File-backed persistence for workflows, enrollments and leases."""

from .control import ControlRequest, ControlRequestStore
from .enrollment_store import EnrollmentStore
from .leases import Lease, LeaseManager
from .scheduler_state import SchedulerState
from .workflow_store import WorkflowStore

__all__ = [
    "ControlRequest",
    "ControlRequestStore",
    "EnrollmentStore",
    "Lease",
    "LeaseManager",
    "SchedulerState",
    "WorkflowStore",
]
