"""Scheduler: wakes due enrollments and runs date-based triggers."""

import logging
import sys
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..actions.base import RecordSource
from ..core.enrollment import Enrollment, EnrollmentStatus
from ..store.enrollment_store import EnrollmentStore
from ..store.scheduler_state import SchedulerState
from ..store.workflow_store import WorkflowStore
from .conditions import ConditionRegistry, resolve_field
from .executor import PassOutcome
from .models import TriggerType, Workflow, WorkflowStatus
from .timing import date_matches, date_trigger_run_date, next_date_trigger_run, to_local_date

logger = logging.getLogger(__name__)


@dataclass
class SchedulerPassReport:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    remaining: int = 0  # Due but left for the next pass (time budget exhausted)
    errors: List[Dict[str, str]] = field(default_factory=list)
    duration_ms: int = 0


@dataclass
class SchedulerStatus:
    """Backlog snapshot for health checks."""
    timestamp: datetime
    pending_enrollments: int = 0  # Active and due now, recovered orphans included
    active_enrollments: int = 0
    active_workflows: int = 0
    next_date_runs: Dict[str, datetime] = field(default_factory=dict)


class Scheduler:
    """
    Time-deferred work for the engine.

    The due set is every active enrollment with next_step_at <= now, read
    from the enrollment store. Waking an enrollment is delegated to the
    engine's ``process`` callback, which takes the lease and runs the executor.
    """

    def __init__(
        self,
        store: EnrollmentStore,
        workflows: WorkflowStore,
        records: RecordSource,
        state: SchedulerState,
        process: Callable[[str, datetime], Any],
        enroll: Callable,
        batch_size: int = 100,
        max_pass_seconds: float = 55.0,
        orphan_after: Optional[timedelta] = None,
    ):
        self.store = store
        self.workflows = workflows
        self.records = records
        self.state = state
        self.process = process
        self.enroll = enroll
        self.batch_size = batch_size
        self.max_pass_seconds = max_pass_seconds
        self.orphan_after = orphan_after

    def due_enrollments(self, now: datetime, limit: Optional[int] = None) -> List[Enrollment]:
        return self.store.due(now, limit or self.batch_size, orphan_after=self.orphan_after)

    def run_pass(self, now: Optional[datetime] = None) -> SchedulerPassReport:
        """Resume every due enrollment, oldest first, within the time budget.

        Each enrollment is isolated: an error is recorded against it and the
        pass moves on.
        """
        now = now or datetime.now(UTC)
        started = time.monotonic()
        report = SchedulerPassReport()
        due = self.due_enrollments(now)

        for index, enrollment in enumerate(due):
            if time.monotonic() - started > self.max_pass_seconds:
                report.remaining = len(due) - index
                logger.info(f"Pass time budget exhausted, leaving {report.remaining} for the next pass")
                break

            try:
                result = self.process(enrollment.id, now)
            except Exception as e:
                logger.exception(f"Error processing enrollment {enrollment.id}")
                report.failed += 1
                report.processed += 1
                report.errors.append({"enrollment_id": enrollment.id, "error": str(e)})
                continue

            report.processed += 1
            if result.outcome in (PassOutcome.SKIPPED, PassOutcome.LEASE_LOST):
                report.skipped += 1
            elif result.outcome == PassOutcome.FAILED:
                report.failed += 1
                error = result.enrollment.last_error
                if error:
                    report.errors.append({"enrollment_id": enrollment.id, "error": error})
            else:
                report.succeeded += 1

        report.duration_ms = int((time.monotonic() - started) * 1000)
        if report.processed:
            logger.info(
                f"Scheduler pass: {report.succeeded} succeeded, {report.failed} failed, "
                f"{report.skipped} skipped, {report.duration_ms}ms"
            )
        return report

    def status(self, now: Optional[datetime] = None) -> SchedulerStatus:
        """Count due and active enrollments and report when each date trigger runs next."""
        now = now or datetime.now(UTC)
        snapshot = SchedulerStatus(timestamp=now)
        snapshot.pending_enrollments = len(self.store.due(now, sys.maxsize, orphan_after=self.orphan_after))
        snapshot.active_enrollments = sum(
            1 for e in self.store.iter_all() if e.status == EnrollmentStatus.ACTIVE
        )

        for workflow in self.workflows.list(status=WorkflowStatus.ACTIVE):
            snapshot.active_workflows += 1
            if workflow.trigger.type != TriggerType.DATE_BASED.value:
                continue
            snapshot.next_date_runs[workflow.id] = next_date_trigger_run(
                now, workflow.trigger.config, workflow.settings, self.state.last_date_run(workflow.id)
            )
        return snapshot

    def run_date_triggers(self, now: Optional[datetime] = None) -> List[Any]:
        """Enroll subjects whose date field lands on today for each due date trigger."""
        now = now or datetime.now(UTC)
        results = []
        for workflow in self.workflows.list(status=WorkflowStatus.ACTIVE):
            if workflow.trigger.type != TriggerType.DATE_BASED.value:
                continue
            try:
                results.extend(self._run_date_trigger(workflow, now))
            except Exception:
                logger.exception(f"Date trigger for workflow {workflow.id} failed")
        return results

    def _run_date_trigger(self, workflow: Workflow, now: datetime) -> List[Any]:
        config = workflow.trigger.config
        settings = workflow.settings
        run_date = date_trigger_run_date(now, config, settings, self.state.last_date_run(workflow.id))
        if run_date is None or not config.date_field:
            return []

        dedupe_key = f"date:{config.date_field}:{run_date.isoformat()}"
        results = []
        for record in self.records.iter_records(workflow.workspace_id):
            subject_id = record.get("id")
            if not subject_id:
                continue
            try:
                field_date = to_local_date(resolve_field(record, config.date_field), settings.tz)
                if field_date is None or not date_matches(field_date, run_date, config.offset_days, config.annual):
                    continue
                if not ConditionRegistry.evaluate_all(record, config.filters):
                    continue
                trigger_data = {
                    "trigger": TriggerType.DATE_BASED.value,
                    "date_field": config.date_field,
                    "field_date": field_date.isoformat(),
                    "run_date": run_date.isoformat(),
                }
                results.append(self.enroll(workflow, subject_id, trigger_data, dedupe_key, now))
            except Exception as e:
                logger.error(f"Date trigger skipped subject {subject_id} in workflow {workflow.id}: {e}")

        self.state.record_date_run(workflow.id, run_date)
        logger.info(f"Date trigger for workflow {workflow.id} ran for {run_date} ({len(results)} matches)")
        return results
