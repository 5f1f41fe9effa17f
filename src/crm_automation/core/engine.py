"""Workflow engine: the execution context root.

One ``WorkflowEngine`` wires the stores, leases, trigger matcher, enrollment
manager, executor, scheduler and dispatcher for a storage root. There is no
module-level engine; callers build one from an ``EngineConfig``.
"""

import logging
import os
import random
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from ..actions.base import Collaborators
from ..actions.dispatcher import ActionDispatcher
from ..store.control import ControlRequestStore
from ..store.enrollment_store import EnrollmentStore
from ..store.leases import LeaseManager, enrollment_lease_key
from ..store.scheduler_state import SchedulerState
from ..store.workflow_store import WorkflowStore
from ..workflow.executor import ExecutionContext, PassOutcome, PassResult, StepGraphExecutor
from ..workflow.lifecycle import WorkflowLifecycle
from ..workflow.models import Workflow
from ..workflow.retry import RetryPolicy
from ..workflow.scheduler import Scheduler, SchedulerPassReport, SchedulerStatus
from ..utils.rich_logging import ContextLogger
from .config import EngineConfig
from .enrollment import Enrollment, EnrollmentStatus, FailureReason
from .enrollment_manager import EnrollmentManager, EnrollmentPage, EnrollmentResult
from .errors import EnrollmentNotFoundError
from .events import DomainEvent
from .trigger_matcher import TriggerMatcher

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Facade over every engine component for one storage root."""

    def __init__(
        self,
        config: EngineConfig,
        collaborators: Collaborators,
        worker_id: str = "engine",
        agent_logger=None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.collaborators = collaborators
        self.worker_id = worker_id
        self.logger = agent_logger or ContextLogger(logger, worker_id)

        root = config.storage_root
        self.workflows = WorkflowStore(root)
        self.enrollments = EnrollmentStore(root)
        self.control = ControlRequestStore(root)
        self.scheduler_state = SchedulerState(root)
        self.leases = LeaseManager(
            root / "leases",
            holder=f"{worker_id}-{os.getpid()}",
            ttl_seconds=config.workers.lease_ttl_seconds,
        )

        self.retry_policy = RetryPolicy(
            initial_backoff=config.retry.backoff_initial,
            max_backoff=config.retry.backoff_max,
            multiplier=config.retry.backoff_multiplier,
            max_attempts=config.retry.max_attempts,
        )
        self.dispatcher = ActionDispatcher(
            collaborators,
            timeout_seconds=config.dispatch.timeout_seconds,
            max_workers=max(config.workers.count, 1) * 2,
        )
        self.executor = StepGraphExecutor(
            self.enrollments,
            self.retry_policy,
            control=self.control,
            loop_guard_multiplier=config.executor.loop_guard_multiplier,
            loop_guard_min_hops=config.executor.loop_guard_min_hops,
            rng=rng,
            agent_logger=self.logger,
        )
        self.lifecycle = WorkflowLifecycle(self.workflows)
        self.manager = EnrollmentManager(self.enrollments, self.leases, self.control)
        self.matcher = TriggerMatcher(self.workflows, collaborators.records, self.enroll)
        self.scheduler = Scheduler(
            self.enrollments,
            self.workflows,
            collaborators.records,
            self.scheduler_state,
            process=self.process_enrollment,
            enroll=self.enroll,
            batch_size=config.scheduler.batch_size,
            max_pass_seconds=config.scheduler.max_pass_seconds,
            orphan_after=timedelta(seconds=config.workers.lease_ttl_seconds),
        )

    # Workflow definitions

    def save_workflow(self, workflow: Workflow, now: Optional[datetime] = None) -> Workflow:
        return self.workflows.save(workflow, now=now)

    def activate_workflow(self, workflow_id: str, now: Optional[datetime] = None) -> Workflow:
        return self.lifecycle.activate(workflow_id, now=now)

    def pause_workflow(self, workflow_id: str, now: Optional[datetime] = None) -> Workflow:
        """Stop new enrollments; open enrollments stay parked until reactivation."""
        return self.lifecycle.pause(workflow_id, now=now)

    def archive_workflow(self, workflow_id: str, now: Optional[datetime] = None) -> Workflow:
        """Archive and exit every open enrollment."""
        workflow = self.lifecycle.archive(workflow_id, now=now)
        exited = self.manager.exit_open_enrollments(workflow_id, "Workflow archived", now)
        if exited:
            self.logger.info(f"Archived workflow {workflow_id}; exited {exited} open enrollments")
        return workflow

    def restore_workflow(self, workflow_id: str, now: Optional[datetime] = None) -> Workflow:
        return self.lifecycle.restore(workflow_id, now=now)

    def duplicate_workflow(
        self,
        workflow_id: str,
        new_id: Optional[str] = None,
        created_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Workflow:
        """Copy a workflow into a new draft; enrollments are not copied."""
        return self.workflows.duplicate(workflow_id, new_id=new_id, created_by=created_by, now=now)

    # Enrollment entry points

    def enroll(
        self,
        workflow: Union[Workflow, str],
        subject_id: str,
        trigger_data: Optional[Dict[str, Any]] = None,
        dedupe_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EnrollmentResult:
        """Create an enrollment and drive it until its first suspension point."""
        if isinstance(workflow, str):
            workflow = self.workflows.get(workflow)
        now = now or datetime.now(UTC)

        result = self.manager.enroll(workflow, subject_id, trigger_data, dedupe_key, now=now)
        if result.enrolled:
            pass_result = self.process_enrollment(result.enrollment.id, now)
            result.enrollment = pass_result.enrollment
        return result

    def handle_event(self, event: DomainEvent) -> List[EnrollmentResult]:
        return self.matcher.handle_event(event)

    def handle_form_submission(
        self,
        workspace_id: str,
        form_id: str,
        subject_id: str,
        submission: Optional[Dict[str, Any]] = None,
        submission_id: Optional[str] = None,
    ) -> List[EnrollmentResult]:
        return self.matcher.handle_form_submission(
            workspace_id, form_id, subject_id, submission, submission_id
        )

    def enroll_manually(self, workflow_id: str, subject_ids: Iterable[str]) -> List[EnrollmentResult]:
        return self.matcher.enroll_manually(workflow_id, subject_ids)

    # Enrollment queries and transitions

    def get_enrollment(self, enrollment_id: str) -> Enrollment:
        return self.manager.get_enrollment(enrollment_id)

    def list_enrollments(
        self,
        workflow_id: str,
        status: str = "all",
        page: int = 1,
        page_size: int = 25,
    ) -> EnrollmentPage:
        return self.manager.list_enrollments(workflow_id, status=status, page=page, page_size=page_size)

    def exit_enrollment(
        self,
        enrollment_id: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Enrollment:
        return self.manager.exit_enrollment(enrollment_id, reason, now)

    def pause_enrollment(self, enrollment_id: str, now: Optional[datetime] = None) -> Enrollment:
        return self.manager.pause_enrollment(enrollment_id, now)

    def resume_enrollment(self, enrollment_id: str, now: Optional[datetime] = None) -> Enrollment:
        return self.manager.resume_enrollment(enrollment_id, now)

    # Execution

    def process_enrollment(self, enrollment_id: str, now: Optional[datetime] = None) -> PassResult:
        """Run one executor pass under the enrollment lease.

        The lease is renewed before every step; if another worker has taken
        it over the pass stops without persisting anything further. Returns a
        skipped result when another worker holds the lease. Any unexpected
        error fails this enrollment only.
        """
        now = now or datetime.now(UTC)
        lease = self.leases.try_acquire(enrollment_lease_key(enrollment_id))
        if lease is None:
            enrollment = self.enrollments.get(enrollment_id)
            if enrollment is None:
                raise EnrollmentNotFoundError(enrollment_id)
            return PassResult(PassOutcome.SKIPPED, enrollment)

        try:
            # Re-read under the lease; the copy we were handed may be stale
            enrollment = self.enrollments.get(enrollment_id)
            if enrollment is None:
                raise EnrollmentNotFoundError(enrollment_id)
            if self.manager.apply_pending_request(enrollment, now):
                return PassResult(PassOutcome.SKIPPED, enrollment)
            if enrollment.status != EnrollmentStatus.ACTIVE:
                return PassResult(PassOutcome.SKIPPED, enrollment)

            try:
                result = self._run_pass(enrollment, now, lambda: self.leases.renew(lease))
            except Exception as e:
                self.logger.exception(f"Unexpected error processing enrollment {enrollment_id}")
                enrollment.mark_failed(FailureReason.EXECUTION_ERROR, str(e), now)
                self.enrollments.save(enrollment)
                result = PassResult(PassOutcome.FAILED, enrollment)

            # Pause/exit requested after the last step boundary of this pass
            if result.outcome != PassOutcome.LEASE_LOST and self.manager.apply_pending_request(enrollment, now):
                result.outcome = PassOutcome.ADVANCED
            return result
        finally:
            self.leases.release(lease)

    def _run_pass(self, enrollment, now: datetime, keep_alive: Callable[[], bool]) -> PassResult:
        workflow = self.workflows.find(enrollment.workflow_id)
        if workflow is None:
            enrollment.mark_failed(
                FailureReason.CONFIGURATION_ERROR,
                f"Workflow {enrollment.workflow_id} no longer exists",
                now,
            )
            self.enrollments.save(enrollment)
            return PassResult(PassOutcome.FAILED, enrollment)
        if not workflow.is_active:
            # Parked until the workflow is reactivated
            return PassResult(PassOutcome.SKIPPED, enrollment)

        records = self.collaborators.records

        def refresh():
            return records.get_record(enrollment.workspace_id, enrollment.subject_id)

        self.logger.enrollment_started(workflow.id, enrollment.id, enrollment.subject_id)

        ctx = ExecutionContext(
            workflow=workflow,
            enrollment=enrollment,
            record=refresh(),
            dispatcher=self.dispatcher,
            now=now,
            refresh_record=refresh,
            keep_alive=keep_alive,
        )
        result = self.executor.run(ctx)

        if result.outcome != PassOutcome.LEASE_LOST and enrollment.is_terminal:
            self.logger.enrollment_finished(EnrollmentStatus(enrollment.status).value, enrollment.last_error)
        else:
            self.logger.clear_context()
        return result

    def tick(self, now: Optional[datetime] = None) -> SchedulerPassReport:
        """One scheduler cycle: date triggers first, then due enrollments."""
        now = now or datetime.now(UTC)
        if self.config.scheduler.date_triggers_enabled:
            self.scheduler.run_date_triggers(now)
        return self.scheduler.run_pass(now)

    def status(self, now: Optional[datetime] = None) -> SchedulerStatus:
        return self.scheduler.status(now)

    def close(self) -> None:
        self.dispatcher.close()
