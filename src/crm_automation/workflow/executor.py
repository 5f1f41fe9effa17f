"""Step graph executor: drives one leased enrollment forward."""

import hashlib
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..actions.base import ActionContext
from ..actions.dispatcher import ActionDispatcher
from ..core.enrollment import (
    Enrollment,
    EnrollmentStatus,
    FailureReason,
    StepExecution,
    StepExecutionStatus,
)
from ..store.control import ControlRequestStore
from ..store.enrollment_store import EnrollmentStore
from ..utils.rich_logging import ContextLogger
from .conditions import ConditionRegistry
from .graph import StepGraph
from .models import LOGIC_STEP_TYPES, Branch, StepType, Workflow
from .retry import RetryPolicy
from .timing import compute_wait_due

logger = logging.getLogger(__name__)


class PassOutcome(str, Enum):
    """Result of one executor pass over an enrollment."""
    ADVANCED = "advanced"    # Progress made, then stopped by a pause/exit request
    SUSPENDED = "suspended"  # Waiting on a wait step or retry backoff
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"      # Not active, or not yet due
    LEASE_LOST = "lease_lost"  # Lease taken over mid-pass; nothing further persisted


@dataclass
class ExecutionContext:
    """Everything one pass needs; built by the engine for a leased enrollment."""
    workflow: Workflow
    enrollment: Enrollment
    record: Optional[Dict[str, Any]]
    dispatcher: ActionDispatcher
    now: datetime
    # Re-reads the subject after an action so later conditions see its effects
    refresh_record: Optional[Callable[[], Optional[Dict[str, Any]]]] = None
    # Renews the enrollment lease; False once another worker has taken it over
    keep_alive: Optional[Callable[[], bool]] = None


@dataclass
class PassResult:
    outcome: PassOutcome
    enrollment: Enrollment
    steps_executed: List[str] = field(default_factory=list)


def split_bucket(enrollment_id: str) -> float:
    """Stable bucket in [0, 100) derived from the enrollment id."""
    digest = hashlib.sha256(enrollment_id.encode("utf-8")).hexdigest()
    return (int(digest[:8], 16) % 10000) / 100.0


def choose_percentage_branch(branches: List[Branch], bucket: float) -> Branch:
    """Map a bucket onto the branches' cumulative percentage ranges."""
    cumulative = 0.0
    for branch in branches:
        cumulative += branch.percentage or 0
        if bucket < cumulative:
            return branch
    # Rounding slack (percentages summing to 99.99...) lands on the last branch
    return branches[-1]


class StepGraphExecutor:
    """
    Evaluates steps until the enrollment suspends, terminates or is skipped.

    Every transition increments current_step_index, appends to step_history
    and is persisted before the next step's side effect runs, so a replayed
    wake-up resumes exactly where the last one stopped.
    """

    def __init__(
        self,
        store: EnrollmentStore,
        retry_policy: RetryPolicy,
        control: Optional[ControlRequestStore] = None,
        loop_guard_multiplier: int = 2,
        loop_guard_min_hops: int = 10,
        rng: Optional[random.Random] = None,
        agent_logger=None,
    ):
        self.store = store
        self.retry_policy = retry_policy
        self.control = control
        self.loop_guard_multiplier = loop_guard_multiplier
        self.loop_guard_min_hops = loop_guard_min_hops
        self.rng = rng or random.Random()
        self.logger = agent_logger or ContextLogger(logger, "executor")

    def run(self, ctx: ExecutionContext) -> PassResult:
        enrollment = ctx.enrollment
        now = ctx.now

        if enrollment.status != EnrollmentStatus.ACTIVE:
            return PassResult(PassOutcome.SKIPPED, enrollment)
        if not enrollment.is_due(now):
            # Replayed or early wake-up; nothing to do until next_step_at
            return PassResult(PassOutcome.SKIPPED, enrollment)

        enrollment.next_step_at = None
        if ctx.record is None:
            return self._fail(
                ctx, FailureReason.SUBJECT_NOT_FOUND, f"Subject {enrollment.subject_id} not found"
            )

        graph = StepGraph(ctx.workflow)
        ceiling = graph.hop_ceiling(self.loop_guard_multiplier, self.loop_guard_min_hops)
        result = PassResult(PassOutcome.SKIPPED, enrollment)
        hops = 0

        while True:
            if not self._still_leased(ctx):
                return self._lease_lost(ctx, result)
            if result.steps_executed and self._apply_control_request(enrollment, now):
                result.outcome = PassOutcome.ADVANCED
                return result

            step_id = enrollment.current_step_id
            if step_id is None:
                return self._complete(ctx, result)

            step = graph.get(step_id)
            if step is None:
                return self._fail(
                    ctx,
                    FailureReason.CONFIGURATION_ERROR,
                    f"Step '{step_id}' does not exist in workflow {ctx.workflow.id}",
                    result,
                )

            step_type = StepType(step.type)
            if step_type in LOGIC_STEP_TYPES:
                hops += 1
                if hops > ceiling:
                    return self._fail(
                        ctx,
                        FailureReason.GRAPH_CYCLE_SUSPECTED,
                        f"More than {ceiling} logic hops in one pass (last: {step_id})",
                        result,
                    )

            result.steps_executed.append(step_id)

            if step_type == StepType.END:
                self._record(enrollment, step, now, StepExecutionStatus.COMPLETED)
                return self._complete(ctx, result)

            if step_type == StepType.WAIT:
                due_at = compute_wait_due(now, step.config, ctx.workflow.settings)
                self._record(
                    enrollment, step, now, StepExecutionStatus.COMPLETED,
                    result={"resume_at": due_at.isoformat()},
                )
                enrollment.advance_to(step.next_step_id, now)
                enrollment.next_step_at = due_at
                self.store.save(enrollment)
                self.logger.info(f"{enrollment.id} waiting until {due_at.isoformat()}")
                result.outcome = PassOutcome.SUSPENDED
                return result

            if step_type in LOGIC_STEP_TYPES:
                target, branch_id, error = self._route(step, step_type, ctx)
                if error:
                    return self._fail(ctx, FailureReason.CONFIGURATION_ERROR, error, result)
                self._record(
                    enrollment, step, now, StepExecutionStatus.COMPLETED, branch_taken=branch_id,
                )
                enrollment.advance_to(target, now)
                self.store.save(enrollment)
                continue

            outcome = self._run_action(step, ctx, result)
            if outcome is not None:
                return outcome

    def _route(self, step, step_type: StepType, ctx: ExecutionContext):
        """Resolve a logic step to (target step id, branch id, configuration error)."""
        if step_type == StepType.GO_TO:
            target = step.config.target_step_id
            if not target:
                return None, None, f"{step.label}: go_to has no target step"
            return target, None, None

        if step_type == StepType.CONDITION:
            for branch in step.branches:
                if branch.is_else or ConditionRegistry.evaluate_all(ctx.record, branch.conditions, branch.logic):
                    return branch.next_step_id, branch.id, None
            return step.next_step_id, None, None

        branch = self._split_branch(step, ctx.enrollment)
        if branch is None:
            return step.next_step_id, None, None
        return branch.next_step_id, branch.id, None

    def _split_branch(self, step, enrollment: Enrollment) -> Optional[Branch]:
        if not step.branches:
            return None

        assigned = enrollment.split_assignments.get(step.id)
        if assigned is not None:
            for branch in step.branches:
                if branch.id == assigned:
                    return branch
            self.logger.warning(
                f"{enrollment.id}: split {step.id} lost branch {assigned}, reassigning"
            )

        if step.config.split_type == "percentage":
            branch = choose_percentage_branch(step.branches, split_bucket(enrollment.id))
        else:
            branch = self.rng.choice(step.branches)
        enrollment.split_assignments[step.id] = branch.id
        return branch

    def _run_action(self, step, ctx: ExecutionContext, result: PassResult) -> Optional[PassResult]:
        """Dispatch an action step. Returns a final PassResult unless the pass continues."""
        enrollment = ctx.enrollment
        now = ctx.now
        action_context = ActionContext(
            workspace_id=ctx.workflow.workspace_id,
            workflow_id=ctx.workflow.id,
            enrollment_id=enrollment.id,
            subject_id=enrollment.subject_id,
            step_id=step.id,
            idempotency_key=enrollment.idempotency_key,
            record=ctx.record or {},
        )
        dispatch = ctx.dispatcher.dispatch(step, action_context, ctx.workflow, now)
        if not self._still_leased(ctx):
            # The new holder replays this step under the same idempotency key
            return self._lease_lost(ctx, result)

        if dispatch.success:
            self._record(enrollment, step, now, StepExecutionStatus.COMPLETED, result=dispatch.data)
            enrollment.advance_to(step.next_step_id, now)
            self.store.save(enrollment)
            self.logger.info(f"{enrollment.id}: {step.type} step {step.id} succeeded")
            if ctx.refresh_record is not None:
                ctx.record = ctx.refresh_record() or ctx.record
            return None

        failure = dispatch.failure
        if failure.transient and self.retry_policy.should_retry(enrollment):
            retry_at = self.retry_policy.schedule_retry(enrollment, failure.reason, now)
            self._record(enrollment, step, now, StepExecutionStatus.RETRYING, error=failure.reason)
            self.store.save(enrollment)
            self.logger.warning(
                f"{enrollment.id}: {step.type} attempt {enrollment.retry_count} failed, "
                f"retrying at {retry_at.isoformat()}: {failure.reason}"
            )
            result.outcome = PassOutcome.SUSPENDED
            return result

        reason = FailureReason.RETRIES_EXHAUSTED if failure.transient else FailureReason.DISPATCH_FAILED
        self._record(enrollment, step, now, StepExecutionStatus.FAILED, error=failure.reason)
        return self._fail(ctx, reason, failure.reason, result)

    @staticmethod
    def _still_leased(ctx: ExecutionContext) -> bool:
        return ctx.keep_alive is None or ctx.keep_alive()

    def _lease_lost(self, ctx: ExecutionContext, result: PassResult) -> PassResult:
        self.logger.warning(
            f"{ctx.enrollment.id}: lease lost after {len(result.steps_executed)} steps, abandoning pass"
        )
        result.outcome = PassOutcome.LEASE_LOST
        return result

    def _apply_control_request(self, enrollment: Enrollment, now: datetime) -> bool:
        """Honor a pause/exit requested while we held the lease."""
        if self.control is None:
            return False
        request = self.control.take(enrollment.id)
        if request is None:
            return False

        if request.action == "exit":
            enrollment.mark_exited(request.reason, now)
        else:
            enrollment.mark_paused(now)
        self.store.save(enrollment)
        self.logger.info(f"{enrollment.id}: applied {request.action} request at step boundary")
        return True

    def _record(
        self,
        enrollment: Enrollment,
        step,
        now: datetime,
        status: StepExecutionStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        branch_taken: Optional[str] = None,
    ) -> None:
        enrollment.record_step(StepExecution(
            step_id=step.id,
            step_type=step.type,
            step_index=enrollment.current_step_index,
            started_at=now,
            completed_at=now,
            status=status,
            result=result or {},
            error=error,
            branch_taken=branch_taken,
        ))
        outcome = status.value if branch_taken is None else f"{status.value} via branch {branch_taken}"
        self.logger.step_executed(step.id, step.type, outcome)

    def _complete(self, ctx: ExecutionContext, result: PassResult) -> PassResult:
        ctx.enrollment.mark_completed(ctx.now)
        self.store.save(ctx.enrollment)
        self.logger.info(f"{ctx.enrollment.id} completed workflow {ctx.workflow.id}")
        result.outcome = PassOutcome.COMPLETED
        return result

    def _fail(
        self,
        ctx: ExecutionContext,
        reason: FailureReason,
        error: str,
        result: Optional[PassResult] = None,
    ) -> PassResult:
        ctx.enrollment.mark_failed(reason, error, ctx.now)
        self.store.save(ctx.enrollment)
        self.logger.error(f"{ctx.enrollment.id} failed ({reason.value}): {error}")
        result = result or PassResult(PassOutcome.FAILED, ctx.enrollment)
        result.outcome = PassOutcome.FAILED
        return result
