"""File-backed collaborators for running the engine without a CRM behind it.

Records live in one JSON document, either a list of records (single
``default`` workspace) or a mapping of workspace id to a list of records.
Outbound messages and notifications are appended to ``outbox.jsonl`` and
keyed by the action's idempotency key, so a replayed step is not delivered
twice.
"""

import json
import logging
import threading
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..actions.base import (
    ActionContext,
    Collaborators,
    FieldUpdater,
    MessageSender,
    Notifier,
    RecordCreator,
    RecordSource,
    TagMutator,
)
from ..core.errors import PermanentDispatchError
from ..utils.atomic_io import atomic_write_json

logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE = "default"


class RecordFile:
    """JSON document of CRM records, shared by the local collaborators."""

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, List[Dict[str, Any]]]:
        if not self.path.exists():
            return {}
        data = json.loads(self.path.read_text() or "{}")
        if isinstance(data, list):
            return {DEFAULT_WORKSPACE: data}
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} must hold a list or a mapping of records")
        return data

    def records(self, workspace_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._load().get(workspace_id, []))

    def get(self, workspace_id: str, subject_id: str) -> Optional[Dict[str, Any]]:
        for record in self.records(workspace_id):
            if record.get("id") == subject_id:
                return record
        return None

    def mutate(
        self,
        workspace_id: str,
        subject_id: str,
        change: Callable[[Dict[str, Any]], Any],
    ) -> Any:
        """Apply ``change`` to one record in place and persist the document."""
        with self._lock:
            data = self._load()
            for record in data.get(workspace_id, []):
                if record.get("id") == subject_id:
                    result = change(record)
                    record["updated_at"] = datetime.now(UTC).isoformat()
                    atomic_write_json(self.path, data)
                    return result
        raise PermanentDispatchError(f"Record {subject_id} not found in workspace {workspace_id}")

    def append(self, workspace_id: str, collection: str, item: Dict[str, Any]) -> None:
        """Store a created task or deal under ``<collection>`` beside the records."""
        with self._lock:
            data = self._load()
            data.setdefault(f"{workspace_id}:{collection}", []).append(item)
            atomic_write_json(self.path, data)


class Outbox:
    """Append-only JSONL log of deliveries, deduplicated by idempotency key."""

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()

    def _keys(self) -> set:
        if not self.path.exists():
            return set()
        keys = set()
        for line in self.path.read_text().splitlines():
            if not line.strip():
                continue
            try:
                keys.add(json.loads(line).get("idempotency_key"))
            except json.JSONDecodeError:
                logger.warning(f"Skipping malformed outbox line in {self.path}")
        return keys

    def deliver(self, context: ActionContext, kind: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        key = f"{context.idempotency_key}:{kind}"
        with self._lock:
            if key in self._keys():
                logger.info(f"Skipping duplicate {kind} for {context.enrollment_id}")
                return {"duplicate": True, "idempotency_key": key}

            entry = {
                "id": f"msg-{uuid.uuid4().hex[:12]}",
                "idempotency_key": key,
                "kind": kind,
                "workflow_id": context.workflow_id,
                "enrollment_id": context.enrollment_id,
                "subject_id": context.subject_id,
                "step_id": context.step_id,
                "sent_at": datetime.now(UTC).isoformat(),
                **payload,
            }
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                f.write(json.dumps(entry, default=str) + "\n")

        logger.info(f"Delivered {kind} to {payload.get('to') or payload.get('recipients')}")
        return {"message_id": entry["id"]}


class JsonRecordSource(RecordSource):
    def __init__(self, records: RecordFile):
        self.records = records

    def get_record(self, workspace_id: str, subject_id: str) -> Optional[Dict[str, Any]]:
        return self.records.get(workspace_id, subject_id)

    def iter_records(self, workspace_id: str) -> Iterable[Dict[str, Any]]:
        return self.records.records(workspace_id)


class OutboxMessageSender(MessageSender):
    def __init__(self, outbox: Outbox):
        self.outbox = outbox

    def send_email(
        self,
        context: ActionContext,
        to: str,
        subject: str,
        html: Optional[str],
        template_id: Optional[str] = None,
        from_name: Optional[str] = None,
        from_email: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self.outbox.deliver(context, "email", {
            "to": to,
            "subject": subject,
            "html": html,
            "template_id": template_id,
            "from_name": from_name,
            "from_email": from_email,
        })

    def send_sms(self, context: ActionContext, to: str, message: str) -> Dict[str, Any]:
        return self.outbox.deliver(context, "sms", {"to": to, "message": message})


class LocalTagMutator(TagMutator):
    def __init__(self, records: RecordFile):
        self.records = records

    def add_tags(self, context: ActionContext, tag_ids: List[str]) -> Dict[str, Any]:
        def change(record):
            tags = record.setdefault("tags", [])
            added = [t for t in tag_ids if t not in tags]
            tags.extend(added)
            return added

        added = self.records.mutate(context.workspace_id, context.subject_id, change)
        return {"added": added}

    def remove_tags(self, context: ActionContext, tag_ids: List[str]) -> Dict[str, Any]:
        def change(record):
            tags = record.get("tags") or []
            removed = [t for t in tags if t in tag_ids]
            record["tags"] = [t for t in tags if t not in tag_ids]
            return removed

        removed = self.records.mutate(context.workspace_id, context.subject_id, change)
        return {"removed": removed}


class LocalFieldUpdater(FieldUpdater):
    def __init__(self, records: RecordFile):
        self.records = records

    def update_field(self, context: ActionContext, field_name: str, value: Any) -> Dict[str, Any]:
        def change(record):
            if field_name.startswith("custom:"):
                record.setdefault("custom_fields", {})[field_name[len("custom:"):]] = value
            else:
                record[field_name] = value

        self.records.mutate(context.workspace_id, context.subject_id, change)
        return {"field": field_name, "value": value}


class LocalRecordCreator(RecordCreator):
    def __init__(self, records: RecordFile):
        self.records = records

    def _create(self, context: ActionContext, collection: str, prefix: str, item: Dict[str, Any]) -> Dict[str, Any]:
        created = {
            "id": f"{prefix}-{uuid.uuid4().hex[:12]}",
            "contact_id": context.subject_id,
            "idempotency_key": context.idempotency_key,
            "created_at": datetime.now(UTC).isoformat(),
            **item,
        }
        self.records.append(context.workspace_id, collection, created)
        return {f"{prefix}_id": created["id"]}

    def create_task(self, context: ActionContext, task: Dict[str, Any]) -> Dict[str, Any]:
        return self._create(context, "tasks", "task", task)

    def create_deal(self, context: ActionContext, deal: Dict[str, Any]) -> Dict[str, Any]:
        return self._create(context, "deals", "deal", deal)


class OutboxNotifier(Notifier):
    def __init__(self, outbox: Outbox):
        self.outbox = outbox

    def notify(
        self,
        context: ActionContext,
        channel: str,
        recipients: List[str],
        subject: str,
        message: str,
    ) -> Dict[str, Any]:
        return self.outbox.deliver(context, f"notification:{channel}", {
            "recipients": recipients,
            "subject": subject,
            "message": message,
        })


def build_local_collaborators(records_path: Path, outbox_path: Optional[Path] = None) -> Collaborators:
    """Wire every collaborator to one records file and one outbox."""
    records = RecordFile(records_path)
    outbox = Outbox(outbox_path or records_path.parent / "outbox.jsonl")
    return Collaborators(
        records=JsonRecordSource(records),
        messages=OutboxMessageSender(outbox),
        tags=LocalTagMutator(records),
        fields=LocalFieldUpdater(records),
        creator=LocalRecordCreator(records),
        notifier=OutboxNotifier(outbox),
    )
