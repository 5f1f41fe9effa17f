"""Workflow activation checks and status transitions."""

import logging
from datetime import UTC, datetime
from typing import Dict, List, Optional, Set

from ..core.errors import InvalidTransitionError, WorkflowValidationError
from ..store.workflow_store import WorkflowStore
from .graph import StepGraph
from .models import StepType, TriggerType, Workflow, WorkflowStatus

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: Dict[WorkflowStatus, Set[WorkflowStatus]] = {
    WorkflowStatus.DRAFT: {WorkflowStatus.ACTIVE, WorkflowStatus.ARCHIVED},
    WorkflowStatus.ACTIVE: {WorkflowStatus.PAUSED, WorkflowStatus.ARCHIVED},
    WorkflowStatus.PAUSED: {WorkflowStatus.ACTIVE, WorkflowStatus.ARCHIVED},
    WorkflowStatus.ARCHIVED: {WorkflowStatus.DRAFT},
}


def _trigger_errors(workflow: Workflow) -> List[str]:
    trigger = workflow.trigger
    config = trigger.config
    trigger_type = TriggerType(trigger.type)
    errors = []

    if trigger_type in (TriggerType.TAG_ADDED, TriggerType.TAG_REMOVED) and not config.tag_ids:
        errors.append("Tag trigger requires at least one tag selected")
    elif trigger_type == TriggerType.DEAL_STAGE_CHANGED and not config.to_stage_id:
        errors.append("Deal stage trigger requires a target stage")
    elif trigger_type == TriggerType.FORM_SUBMITTED and not config.form_id:
        errors.append("Form trigger requires a form selected")
    elif trigger_type == TriggerType.DATE_BASED:
        if not config.date_field:
            errors.append("Date-based trigger requires a date field")
        if not config.time:
            errors.append("Date-based trigger requires a time")
    return errors


def _step_errors(step) -> List[str]:
    name = step.name or step.id
    step_type = StepType(step.type)
    errors = []

    if step_type == StepType.SEND_EMAIL:
        if not step.config.template_id and not step.config.content_html:
            errors.append(f"{name}: Email requires a template or content")
        if not step.config.subject and not step.config.template_id:
            errors.append(f"{name}: Email requires a subject line")
    elif step_type == StepType.SEND_SMS:
        if not step.config.message:
            errors.append(f"{name}: SMS requires a message")
    elif step_type in (StepType.ADD_TAG, StepType.REMOVE_TAG):
        if not step.config.tag_ids:
            errors.append(f"{name}: Requires at least one tag selected")
    elif step_type == StepType.UPDATE_FIELD:
        if not step.config.field:
            errors.append(f"{name}: Field update requires a field")
    elif step_type == StepType.CREATE_TASK:
        if not step.config.title:
            errors.append(f"{name}: Task requires a title")
    elif step_type == StepType.CREATE_DEAL:
        if not step.config.pipeline_id or not step.config.stage_id:
            errors.append(f"{name}: Deal requires pipeline and stage")
        if not step.config.title:
            errors.append(f"{name}: Deal requires a title")
    elif step_type == StepType.SEND_NOTIFICATION:
        if not step.config.recipients:
            errors.append(f"{name}: Notification requires recipients")
        if not step.config.message:
            errors.append(f"{name}: Notification requires a message")
    elif step_type == StepType.WAIT:
        if step.config.duration <= 0:
            errors.append(f"{name}: Wait requires a valid duration")
    elif step_type == StepType.CONDITION:
        if not step.branches:
            errors.append(f"{name}: Condition requires at least one rule")
    elif step_type == StepType.SPLIT:
        if not step.branches:
            errors.append(f"{name}: Split requires at least one branch")
        elif step.config.split_type == "percentage":
            total = sum(branch.percentage or 0 for branch in step.branches)
            if abs(total - 100) > 0.01:
                errors.append(f"{name}: Split percentages must add up to 100 (got {total:g})")
    elif step_type == StepType.GO_TO:
        if not step.config.target_step_id:
            errors.append(f"{name}: Go-to requires a target step")
    return errors


def validate_for_activation(workflow: Workflow) -> List[str]:
    """Every problem that blocks activation; an empty list means activatable."""
    errors = _trigger_errors(workflow)

    if not workflow.steps:
        errors.append("Workflow must have at least one step")
        return errors
    if not any(step.is_action for step in workflow.steps):
        errors.append("Workflow must have at least one action step")

    graph = StepGraph(workflow)
    if workflow.entry_step_id not in graph:
        errors.append(f"Start step '{workflow.entry_step_id}' does not exist")
        return errors

    for step in workflow.steps:
        errors.extend(_step_errors(step))
    errors.extend(graph.dangling_references())

    unreachable = graph.unreachable_step_ids()
    if unreachable:
        errors.append(f"Steps not reachable from the start step: {', '.join(unreachable)}")
    return errors


class WorkflowLifecycle:
    """Status transitions for stored workflows."""

    def __init__(self, store: WorkflowStore):
        self.store = store

    def _transition(
        self,
        workflow: Workflow,
        target: WorkflowStatus,
        now: Optional[datetime] = None,
    ) -> Workflow:
        current = WorkflowStatus(workflow.status)
        if current == target:
            return workflow
        if target not in VALID_TRANSITIONS[current]:
            detail = "Restore it first" if current == WorkflowStatus.ARCHIVED else None
            raise InvalidTransitionError("workflow", current.value, target.value, detail)

        workflow.status = target
        if target == WorkflowStatus.ACTIVE:
            workflow.activated_at = now or datetime.now(UTC)
        saved = self.store.save(workflow, now=now)
        logger.info(f"Workflow {workflow.id}: {current.value} -> {target.value}")
        return saved

    def activate(self, workflow_id: str, now: Optional[datetime] = None) -> Workflow:
        """Validate and activate.

        Raises:
            WorkflowValidationError: with every problem found
            InvalidTransitionError: archived workflows must be restored first
        """
        workflow = self.store.get(workflow_id)
        if workflow.status == WorkflowStatus.ARCHIVED:
            raise InvalidTransitionError("workflow", "archived", "active", "Restore it first")
        if workflow.status == WorkflowStatus.ACTIVE:
            return workflow

        errors = validate_for_activation(workflow)
        if errors:
            raise WorkflowValidationError(workflow_id, errors)
        return self._transition(workflow, WorkflowStatus.ACTIVE, now)

    def pause(self, workflow_id: str, now: Optional[datetime] = None) -> Workflow:
        return self._transition(self.store.get(workflow_id), WorkflowStatus.PAUSED, now)

    def archive(self, workflow_id: str, now: Optional[datetime] = None) -> Workflow:
        return self._transition(self.store.get(workflow_id), WorkflowStatus.ARCHIVED, now)

    def restore(self, workflow_id: str, now: Optional[datetime] = None) -> Workflow:
        """Bring an archived workflow back as a draft."""
        return self._transition(self.store.get(workflow_id), WorkflowStatus.DRAFT, now)
