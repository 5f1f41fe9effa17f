"""Maps domain events, form submissions and manual requests to enrollments."""

import logging
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..actions.base import RecordSource
from ..store.workflow_store import WorkflowStore
from ..workflow.conditions import ConditionRegistry
from ..workflow.models import TriggerType, Workflow, WorkflowStatus
from .enrollment_manager import EnrollmentResult
from .errors import LeaseUnavailableError
from .events import DomainEvent, EventKind

logger = logging.getLogger(__name__)

EVENT_TRIGGER_TYPES: Dict[EventKind, TriggerType] = {
    EventKind.RECORD_CREATED: TriggerType.CONTACT_CREATED,
    EventKind.RECORD_UPDATED: TriggerType.CONTACT_UPDATED,
    EventKind.TAG_ADDED: TriggerType.TAG_ADDED,
    EventKind.TAG_REMOVED: TriggerType.TAG_REMOVED,
    EventKind.DEAL_STAGE_CHANGED: TriggerType.DEAL_STAGE_CHANGED,
    EventKind.DEAL_CREATED: TriggerType.DEAL_CREATED,
}

# (workflow, subject_id, trigger_data, dedupe_key) -> result
EnrollFn = Callable[[Workflow, str, Dict[str, Any], Optional[str]], EnrollmentResult]


class TriggerMatcher:
    """Read-only matching; all writes go through the enroll callback."""

    def __init__(self, workflows: WorkflowStore, records: RecordSource, enroll: EnrollFn):
        self.workflows = workflows
        self.records = records
        self.enroll = enroll

    def _active_workflows(self, workspace_id: str, trigger_type: TriggerType) -> Iterable[Workflow]:
        for workflow in self.workflows.list(workspace_id=workspace_id, status=WorkflowStatus.ACTIVE):
            if workflow.trigger.type == trigger_type.value:
                yield workflow

    def match_event(
        self,
        workflow: Workflow,
        event: DomainEvent,
        record: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """Trigger data for an enrollment when the event fires this workflow, else None."""
        config = workflow.trigger.config
        trigger_type = TriggerType(workflow.trigger.type)
        trigger_data: Dict[str, Any] = {
            "trigger": trigger_type.value,
            "event_id": event.event_id,
            "occurred_at": event.occurred_at.isoformat(),
        }

        if trigger_type == TriggerType.CONTACT_UPDATED:
            if config.fields and not set(config.fields) & set(event.changed_fields):
                return None
            trigger_data["changed_fields"] = list(event.changed_fields)

        elif trigger_type in (TriggerType.TAG_ADDED, TriggerType.TAG_REMOVED):
            event_tags = list(event.payload.get("tag_ids") or [])
            matching = [t for t in config.tag_ids if t in event_tags]
            if not matching:
                return None
            trigger_data["matching_tags"] = matching
            trigger_data["event_tags"] = event_tags

        elif trigger_type == TriggerType.DEAL_STAGE_CHANGED:
            deal = event.payload.get("deal") or {}
            pipeline_id = event.payload.get("pipeline_id") or deal.get("pipeline_id")
            from_stage = event.payload.get("from_stage_id")
            to_stage = event.payload.get("to_stage_id") or deal.get("stage_id")
            if config.pipeline_id and config.pipeline_id != pipeline_id:
                return None
            if config.to_stage_id != to_stage:
                return None
            if config.from_stage_id and config.from_stage_id != from_stage:
                return None
            if not ConditionRegistry.evaluate_all(deal, config.filters):
                return None
            trigger_data.update({
                "deal_id": deal.get("id"),
                "pipeline_id": pipeline_id,
                "from_stage_id": from_stage,
                "to_stage_id": to_stage,
            })
            return trigger_data

        elif trigger_type == TriggerType.DEAL_CREATED:
            deal = event.payload.get("deal") or {}
            if config.pipeline_id and config.pipeline_id != deal.get("pipeline_id"):
                return None
            if not ConditionRegistry.evaluate_all(deal, config.filters):
                return None
            trigger_data.update({"deal_id": deal.get("id"), "pipeline_id": deal.get("pipeline_id")})
            return trigger_data

        if not ConditionRegistry.evaluate_all(record, config.filters):
            return None
        return trigger_data

    def _try_enroll(
        self,
        workflow: Workflow,
        subject_id: str,
        trigger_data: Dict[str, Any],
        dedupe_key: Optional[str],
    ) -> Optional[EnrollmentResult]:
        """Enroll, or log and return None while the workflow lease stays busy."""
        try:
            return self.enroll(workflow, subject_id, trigger_data, dedupe_key)
        except LeaseUnavailableError as e:
            logger.error(f"Could not enroll {subject_id} in workflow {workflow.id}: {e}")
            return None

    def handle_event(self, event: DomainEvent) -> List[EnrollmentResult]:
        """Enroll the event's subject in every active workflow the event fires."""
        trigger_type = EVENT_TRIGGER_TYPES.get(EventKind(event.kind))
        if trigger_type is None:
            return []

        candidates = list(self._active_workflows(event.workspace_id, trigger_type))
        if not candidates:
            return []

        try:
            record = self.records.get_record(event.workspace_id, event.subject_id)
        except Exception as e:
            logger.error(f"Could not load subject {event.subject_id} for event {event.event_id}: {e}")
            return []
        if record is None:
            logger.warning(f"Event {event.event_id} names unknown subject {event.subject_id}")
            return []

        results = []
        for workflow in candidates:
            try:
                trigger_data = self.match_event(workflow, event, record)
            except Exception as e:
                logger.error(f"Trigger evaluation failed for workflow {workflow.id}: {e}")
                continue
            if trigger_data is None:
                continue
            result = self._try_enroll(workflow, event.subject_id, trigger_data, event.dedupe_key)
            if result is None:
                continue
            logger.info(
                f"Event {event.kind.value} -> workflow {workflow.id}: "
                f"{'enrolled' if result.enrolled else result.rejection.value}"
            )
            results.append(result)
        return results

    def handle_form_submission(
        self,
        workspace_id: str,
        form_id: str,
        subject_id: str,
        submission: Optional[Dict[str, Any]] = None,
        submission_id: Optional[str] = None,
    ) -> List[EnrollmentResult]:
        """Enroll the submitting contact in every active workflow watching this form."""
        submission_id = submission_id or uuid.uuid4().hex
        results = []
        for workflow in self._active_workflows(workspace_id, TriggerType.FORM_SUBMITTED):
            if workflow.trigger.config.form_id != form_id:
                continue
            trigger_data = {
                "trigger": TriggerType.FORM_SUBMITTED.value,
                "form_id": form_id,
                "submission_id": submission_id,
                "submission": submission or {},
            }
            result = self._try_enroll(workflow, subject_id, trigger_data, f"form:{submission_id}")
            if result is not None:
                results.append(result)
        return results

    def enroll_manually(self, workflow_id: str, subject_ids: Iterable[str]) -> List[EnrollmentResult]:
        """Manual enrollment; any active workflow accepts it regardless of trigger type."""
        workflow = self.workflows.get(workflow_id)
        results = []
        for subject_id in subject_ids:
            result = self._try_enroll(workflow, subject_id, {"trigger": TriggerType.MANUAL.value}, None)
            if result is not None:
                results.append(result)
        return results
