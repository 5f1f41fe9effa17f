"""Enrollment creation guards, state transitions and the query surface."""

import logging
import math
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..store.control import ControlRequestStore
from ..store.enrollment_store import EnrollmentStore
from ..store.leases import LeaseManager, enrollment_lease_key, workflow_lease_key
from ..workflow.models import Workflow
from .enrollment import Enrollment, EnrollmentStatus
from .errors import EnrollmentNotFoundError, InvalidTransitionError, LeaseUnavailableError

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class EnrollmentRejection(str, Enum):
    """Why an enrollment was not created. These are outcomes, not errors."""
    WORKFLOW_NOT_ACTIVE = "workflow_not_active"
    NO_STEPS = "no_steps"
    ALREADY_ENROLLED = "already_enrolled"
    ENROLLMENT_LIMIT_REACHED = "enrollment_limit_reached"
    DUPLICATE_TRIGGER = "duplicate_trigger"


@dataclass
class EnrollmentResult:
    enrolled: bool
    enrollment: Optional[Enrollment] = None
    rejection: Optional[EnrollmentRejection] = None
    message: str = ""

    @classmethod
    def rejected(cls, rejection: EnrollmentRejection, message: str) -> "EnrollmentResult":
        return cls(enrolled=False, rejection=rejection, message=message)


class EnrollmentPage(BaseModel):
    enrollments: List[Enrollment] = Field(default_factory=list)
    page: int
    page_size: int
    total: int
    total_pages: int
    status_breakdown: Dict[str, int] = Field(default_factory=dict)


class EnrollmentManager:
    """
    Owns enrollment creation and externally requested transitions.

    Creation runs under the workflow lease so the uniqueness, dedupe and
    limit checks see a consistent set of enrollments. Pause and exit take
    the enrollment lease; if a worker holds it, the request is queued and
    the worker applies it at its next step boundary.
    """

    def __init__(
        self,
        store: EnrollmentStore,
        leases: LeaseManager,
        control: ControlRequestStore,
        lease_wait_seconds: float = 5.0,
    ):
        self.store = store
        self.leases = leases
        self.control = control
        self.lease_wait_seconds = lease_wait_seconds

    def _check_guards(
        self,
        workflow: Workflow,
        subject_id: str,
        dedupe_key: Optional[str],
    ) -> Optional[EnrollmentResult]:
        existing = self.store.list_for_workflow(workflow.id)
        mine = [e for e in existing if e.subject_id == subject_id]

        if dedupe_key and any(e.dedupe_key == dedupe_key for e in mine):
            return EnrollmentResult.rejected(
                EnrollmentRejection.DUPLICATE_TRIGGER,
                f"Trigger {dedupe_key} already enrolled {subject_id}",
            )
        if any(e.is_open for e in mine):
            return EnrollmentResult.rejected(
                EnrollmentRejection.ALREADY_ENROLLED,
                f"{subject_id} is already enrolled in this workflow",
            )
        if mine and not workflow.settings.allow_re_enrollment:
            return EnrollmentResult.rejected(
                EnrollmentRejection.ALREADY_ENROLLED,
                f"{subject_id} was enrolled before and re-enrollment is disabled",
            )

        limit = workflow.settings.enrollment_limit
        if limit is not None:
            active = sum(1 for e in existing if e.status == EnrollmentStatus.ACTIVE)
            if active >= limit:
                return EnrollmentResult.rejected(
                    EnrollmentRejection.ENROLLMENT_LIMIT_REACHED,
                    f"Workflow has reached its limit of {limit} active enrollments",
                )
        return None

    def enroll(
        self,
        workflow: Workflow,
        subject_id: str,
        trigger_data: Optional[Dict[str, Any]] = None,
        dedupe_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EnrollmentResult:
        """Create an enrollment at the workflow's start step if the guards allow it.

        Raises:
            LeaseUnavailableError: the workflow lease stayed busy past the wait budget
        """
        if not workflow.is_active:
            return EnrollmentResult.rejected(
                EnrollmentRejection.WORKFLOW_NOT_ACTIVE, f"Workflow {workflow.id} is not active"
            )
        if not workflow.steps:
            return EnrollmentResult.rejected(
                EnrollmentRejection.NO_STEPS, f"Workflow {workflow.id} has no steps"
            )

        now = now or datetime.now(UTC)
        with self.leases.hold(workflow_lease_key(workflow.id), wait_seconds=self.lease_wait_seconds):
            rejection = self._check_guards(workflow, subject_id, dedupe_key)
            if rejection is not None:
                logger.debug(f"Enrollment of {subject_id} in {workflow.id} rejected: {rejection.message}")
                return rejection

            enrollment = Enrollment(
                workflow_id=workflow.id,
                workspace_id=workflow.workspace_id,
                subject_id=subject_id,
                current_step_id=workflow.entry_step_id,
                enrolled_at=now,
                updated_at=now,
                trigger_data=trigger_data or {},
                dedupe_key=dedupe_key,
            )
            self.store.save(enrollment)

        logger.info(f"Enrolled {subject_id} in workflow {workflow.id} ({enrollment.id})")
        return EnrollmentResult(enrolled=True, enrollment=enrollment)

    def get_enrollment(self, enrollment_id: str) -> Enrollment:
        enrollment = self.store.get(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(enrollment_id)
        return enrollment

    def list_enrollments(
        self,
        workflow_id: str,
        status: str = "all",
        page: int = 1,
        page_size: int = 25,
    ) -> EnrollmentPage:
        """Newest-first page of a workflow's enrollments, with per-status counts."""
        page = max(page, 1)
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)

        everything = self.store.list_for_workflow(workflow_id)
        breakdown = self.store.count_by_status(workflow_id)

        if status != "all":
            status = EnrollmentStatus(status).value
            everything = [e for e in everything if e.status == status]
        everything.sort(key=lambda e: e.enrolled_at, reverse=True)

        total = len(everything)
        start = (page - 1) * page_size
        return EnrollmentPage(
            enrollments=everything[start:start + page_size],
            page=page,
            page_size=page_size,
            total=total,
            total_pages=math.ceil(total / page_size),
            status_breakdown=breakdown,
        )

    def exit_enrollment(
        self,
        enrollment_id: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Enrollment:
        """Remove a subject from its workflow. Exiting a terminal enrollment is a no-op."""
        now = now or datetime.now(UTC)
        lease = self.leases.try_acquire(enrollment_lease_key(enrollment_id))
        if lease is None:
            enrollment = self.get_enrollment(enrollment_id)
            if enrollment.is_terminal:
                return enrollment
            self.control.put(enrollment_id, "exit", reason)
            logger.info(f"Enrollment {enrollment_id} is being processed; exit deferred")
            return enrollment

        try:
            enrollment = self.get_enrollment(enrollment_id)
            if enrollment.is_terminal:
                return enrollment
            enrollment.mark_exited(reason, now)
            self.store.save(enrollment)
            self.control.take(enrollment_id)
            logger.info(f"Exited enrollment {enrollment_id}: {enrollment.exit_reason}")
            return enrollment
        finally:
            self.leases.release(lease)

    def pause_enrollment(self, enrollment_id: str, now: Optional[datetime] = None) -> Enrollment:
        now = now or datetime.now(UTC)
        lease = self.leases.try_acquire(enrollment_lease_key(enrollment_id))
        if lease is None:
            enrollment = self.get_enrollment(enrollment_id)
            self._require_pausable(enrollment)
            if enrollment.status == EnrollmentStatus.ACTIVE:
                self.control.put(enrollment_id, "pause")
                logger.info(f"Enrollment {enrollment_id} is being processed; pause deferred")
            return enrollment

        try:
            enrollment = self.get_enrollment(enrollment_id)
            self._require_pausable(enrollment)
            if enrollment.status == EnrollmentStatus.ACTIVE:
                enrollment.mark_paused(now)
                self.store.save(enrollment)
                logger.info(f"Paused enrollment {enrollment_id}")
            return enrollment
        finally:
            self.leases.release(lease)

    @staticmethod
    def _require_pausable(enrollment: Enrollment) -> None:
        if enrollment.is_terminal:
            raise InvalidTransitionError("enrollment", enrollment.status, EnrollmentStatus.PAUSED.value)

    def resume_enrollment(self, enrollment_id: str, now: Optional[datetime] = None) -> Enrollment:
        """Reactivate a paused enrollment; it runs at the next scheduler pass."""
        now = now or datetime.now(UTC)
        lease = self.leases.acquire(enrollment_lease_key(enrollment_id), wait_seconds=self.lease_wait_seconds)
        if lease is None:
            raise LeaseUnavailableError(enrollment_lease_key(enrollment_id))

        try:
            enrollment = self.get_enrollment(enrollment_id)
            if enrollment.status == EnrollmentStatus.ACTIVE:
                return enrollment
            if enrollment.status != EnrollmentStatus.PAUSED:
                raise InvalidTransitionError("enrollment", enrollment.status, EnrollmentStatus.ACTIVE.value)

            enrollment.mark_resumed(now)
            if enrollment.next_step_at is None:
                enrollment.next_step_at = now
            self.store.save(enrollment)
            logger.info(f"Resumed enrollment {enrollment_id}")
            return enrollment
        finally:
            self.leases.release(lease)

    def apply_pending_request(self, enrollment: Enrollment, now: datetime) -> bool:
        """Apply a queued pause/exit; caller must hold the enrollment lease."""
        request = self.control.take(enrollment.id)
        if request is None or enrollment.is_terminal:
            return False
        if request.action == "exit":
            enrollment.mark_exited(request.reason, now)
        elif enrollment.status == EnrollmentStatus.ACTIVE:
            enrollment.mark_paused(now)
        else:
            return False
        self.store.save(enrollment)
        logger.info(f"Applied deferred {request.action} to enrollment {enrollment.id}")
        return True

    def exit_open_enrollments(self, workflow_id: str, reason: str, now: Optional[datetime] = None) -> int:
        """Exit every active or paused enrollment of a workflow."""
        exited = 0
        for enrollment in self.store.list_for_workflow(workflow_id):
            if enrollment.is_open:
                self.exit_enrollment(enrollment.id, reason, now)
                exited += 1
        return exited
