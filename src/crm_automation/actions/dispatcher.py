"""Action dispatcher: runs one action step through its collaborator."""

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..core.errors import DispatchError, PermanentDispatchError
from ..workflow.models import StepType, Workflow
from .base import ActionContext, Collaborators, DispatchResult, FailureKind
from .personalization import render

logger = logging.getLogger(__name__)

# Failure messages worth retrying; everything else is permanent
_TRANSIENT_PATTERNS = [
    r"time[d ]?\s*out",
    r"rate.?limit",
    r"too many requests",
    r"connection.*(refused|reset|aborted|error)",
    r"temporar(y|ily)",
    r"service.*unavailable",
    r"network.*unreachable",
    r"\b(429|502|503|504)\b",
]
_TRANSIENT_REGEX = re.compile("|".join(_TRANSIENT_PATTERNS), re.IGNORECASE)


def classify_failure(error: BaseException) -> FailureKind:
    """Decide whether a collaborator exception is worth retrying."""
    if isinstance(error, DispatchError):
        return "transient" if error.transient else "permanent"
    if isinstance(error, (TimeoutError, ConnectionError, FutureTimeoutError)):
        return "transient"
    if _TRANSIENT_REGEX.search(str(error)):
        return "transient"
    return "permanent"


def resolve_owner(record: Dict[str, Any], workflow: Workflow) -> Optional[str]:
    """The record's owner, falling back to the workflow's creator."""
    return record.get("assigned_to") or workflow.created_by


class ActionDispatcher:
    """
    Executes action steps and reports a typed outcome.

    - Renders {{token}} personalization from the subject record
    - Resolves "owner" assignees and recipients
    - Bounds each collaborator call with a timeout (a timeout is transient)
    - Never retries; the executor owns the retry policy
    """

    def __init__(
        self,
        collaborators: Collaborators,
        timeout_seconds: float = 30.0,
        max_workers: int = 8,
    ):
        self.collaborators = collaborators
        self.timeout_seconds = timeout_seconds
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dispatch")

        self._handlers: Dict[StepType, Callable] = {
            StepType.SEND_EMAIL: self._send_email,
            StepType.SEND_SMS: self._send_sms,
            StepType.ADD_TAG: self._add_tags,
            StepType.REMOVE_TAG: self._remove_tags,
            StepType.UPDATE_FIELD: self._update_field,
            StepType.CREATE_TASK: self._create_task,
            StepType.CREATE_DEAL: self._create_deal,
            StepType.SEND_NOTIFICATION: self._notify,
        }

    def dispatch(
        self,
        step,
        context: ActionContext,
        workflow: Workflow,
        now: Optional[datetime] = None,
    ) -> DispatchResult:
        """Run one action step. Never raises for collaborator failures."""
        handler = self._handlers.get(StepType(step.type))
        if handler is None:
            return DispatchResult.failed("permanent", f"Step type '{step.type}' is not an action")

        now = now or datetime.now(UTC)
        try:
            data = handler(step, context, workflow, now)
        except FutureTimeoutError:
            reason = f"{step.type} timed out after {self.timeout_seconds}s"
            logger.warning(f"{context.enrollment_id}: {reason}")
            return DispatchResult.failed("transient", reason)
        except Exception as e:
            kind = classify_failure(e)
            reason = str(e) or type(e).__name__
            logger.warning(f"{context.enrollment_id}: {step.type} failed ({kind}): {reason}")
            return DispatchResult.failed(kind, reason)

        logger.debug(f"{context.enrollment_id}: {step.type} succeeded")
        return DispatchResult.ok(data)

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def _invoke(self, fn: Callable, *args, **kwargs) -> Dict[str, Any]:
        future = self._pool.submit(fn, *args, **kwargs)
        try:
            result = future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            raise
        return dict(result or {})

    def _send_email(self, step, context: ActionContext, workflow: Workflow, now: datetime) -> Dict[str, Any]:
        config = step.config
        to = context.record.get("email")
        if not to:
            raise PermanentDispatchError("Contact does not have an email address")
        if not config.template_id and not config.content_html:
            raise PermanentDispatchError("Email step has neither a template nor content")

        subject = render(config.subject, context.record)
        html = render(config.content_html, context.record) if config.content_html else None
        data = self._invoke(
            self.collaborators.messages.send_email,
            context,
            to=to,
            subject=subject,
            html=html,
            template_id=config.template_id,
            from_name=config.from_name,
            from_email=config.from_email,
        )
        return {"to": to, "subject": subject, **data}

    def _send_sms(self, step, context: ActionContext, workflow: Workflow, now: datetime) -> Dict[str, Any]:
        to = context.record.get("phone")
        if not to:
            raise PermanentDispatchError("Contact does not have a phone number")
        if not step.config.message:
            raise PermanentDispatchError("SMS step has no message")

        message = render(step.config.message, context.record)
        data = self._invoke(self.collaborators.messages.send_sms, context, to=to, message=message)
        return {"to": to, **data}

    def _add_tags(self, step, context: ActionContext, workflow: Workflow, now: datetime) -> Dict[str, Any]:
        tag_ids = self._require_tags(step.config.tag_ids, "add")
        data = self._invoke(self.collaborators.tags.add_tags, context, tag_ids)
        return {"tag_ids": tag_ids, **data}

    def _remove_tags(self, step, context: ActionContext, workflow: Workflow, now: datetime) -> Dict[str, Any]:
        tag_ids = self._require_tags(step.config.tag_ids, "remove")
        data = self._invoke(self.collaborators.tags.remove_tags, context, tag_ids)
        return {"tag_ids": tag_ids, **data}

    @staticmethod
    def _require_tags(tag_ids: List[str], verb: str) -> List[str]:
        if not tag_ids:
            raise PermanentDispatchError(f"No tags specified to {verb}")
        return list(tag_ids)

    def _update_field(self, step, context: ActionContext, workflow: Workflow, now: datetime) -> Dict[str, Any]:
        config = step.config
        if not config.field:
            raise PermanentDispatchError("No field specified to update")
        value = render(config.value, context.record) if isinstance(config.value, str) else config.value
        data = self._invoke(self.collaborators.fields.update_field, context, config.field, value)
        return {"field": config.field, "value": value, **data}

    def _create_task(self, step, context: ActionContext, workflow: Workflow, now: datetime) -> Dict[str, Any]:
        config = step.config
        if not config.title:
            raise PermanentDispatchError("Task title is required")

        if config.assigned_to == "owner" or not config.assigned_to:
            assigned_to = resolve_owner(context.record, workflow)
        else:
            assigned_to = config.assigned_to

        task = {
            "contact_id": context.subject_id,
            "title": render(config.title, context.record),
            "description": render(config.description, context.record) if config.description else None,
            "priority": config.priority,
            "due_at": (now + timedelta(days=config.due_in_days)).isoformat()
            if config.due_in_days is not None else None,
            "assigned_to": assigned_to,
            "created_by": workflow.created_by,
            "metadata": {"source": "workflow", "workflow_id": workflow.id, "workflow_name": workflow.name},
        }
        data = self._invoke(self.collaborators.creator.create_task, context, task)
        return {"title": task["title"], "assigned_to": assigned_to, "due_at": task["due_at"], **data}

    def _create_deal(self, step, context: ActionContext, workflow: Workflow, now: datetime) -> Dict[str, Any]:
        config = step.config
        if not config.pipeline_id or not config.stage_id:
            raise PermanentDispatchError("Pipeline and stage are required")
        if not config.title:
            raise PermanentDispatchError("Deal title is required")

        if config.assigned_to == "owner" or not config.assigned_to:
            assigned_to = resolve_owner(context.record, workflow)
        else:
            assigned_to = config.assigned_to

        deal = {
            "contact_id": context.subject_id,
            "pipeline_id": config.pipeline_id,
            "stage_id": config.stage_id,
            "title": render(config.title, context.record),
            "value": config.value,
            "assigned_to": assigned_to,
            "created_by": workflow.created_by,
            "metadata": {"source": "workflow", "workflow_id": workflow.id, "workflow_name": workflow.name},
        }
        data = self._invoke(self.collaborators.creator.create_deal, context, deal)
        return {"title": deal["title"], "pipeline_id": config.pipeline_id, **data}

    def _notify(self, step, context: ActionContext, workflow: Workflow, now: datetime) -> Dict[str, Any]:
        config = step.config
        if not config.recipients:
            raise PermanentDispatchError("No recipients specified")
        if not config.message:
            raise PermanentDispatchError("Notification has no message")

        recipients = []
        for recipient in config.recipients:
            resolved = resolve_owner(context.record, workflow) if recipient == "owner" else recipient
            if resolved and resolved not in recipients:
                recipients.append(resolved)
        if not recipients:
            raise PermanentDispatchError("No valid recipients found")

        extra = {"workflow_name": workflow.name, "contact_id": context.subject_id}
        subject = render(config.subject, context.record, extra)
        message = render(config.message, context.record, extra)
        data = self._invoke(
            self.collaborators.notifier.notify, context, config.channel, recipients, subject, message
        )
        return {"channel": config.channel, "recipients": recipients, "subject": subject, **data}
