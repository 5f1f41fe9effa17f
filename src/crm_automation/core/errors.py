"""Exception hierarchy for the automation engine."""

from typing import List, Optional


class WorkflowEngineError(Exception):
    """Base class for all engine errors."""


class WorkflowValidationError(WorkflowEngineError):
    """Workflow definition is not fit for activation.

    Carries every problem found so callers can report them inline.
    """

    def __init__(self, workflow_id: str, errors: List[str]):
        self.workflow_id = workflow_id
        self.errors = list(errors)
        summary = "; ".join(self.errors) if self.errors else "invalid workflow"
        super().__init__(f"Workflow {workflow_id} failed validation: {summary}")


class WorkflowNotFoundError(WorkflowEngineError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class EnrollmentNotFoundError(WorkflowEngineError):
    def __init__(self, enrollment_id: str):
        self.enrollment_id = enrollment_id
        super().__init__(f"Enrollment not found: {enrollment_id}")


class WorkflowLockedError(WorkflowEngineError):
    """Structural edit attempted on an active workflow."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(
            f"Workflow {workflow_id} is active; pause it before editing its trigger or steps"
        )


class InvalidTransitionError(WorkflowEngineError):
    def __init__(self, entity: str, current: str, target: str, detail: Optional[str] = None):
        self.entity = entity
        self.current = current
        self.target = target
        message = f"Cannot move {entity} from '{current}' to '{target}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class DispatchError(WorkflowEngineError):
    """Raised by action collaborators to report a classified failure."""

    transient = False


class TransientDispatchError(DispatchError):
    """Failure worth retrying (timeout, rate limit, provider outage)."""

    transient = True


class PermanentDispatchError(DispatchError):
    """Failure that retrying cannot fix (invalid recipient, rejected payload)."""

    transient = False


class LeaseUnavailableError(WorkflowEngineError):
    """Another worker holds the lease for this key."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Lease is held by another worker: {key}")


class WorkflowExistsError(WorkflowEngineError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow already exists: {workflow_id}")
