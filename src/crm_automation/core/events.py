"""Domain events consumed by the trigger matcher."""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, Field, field_serializer


class EventKind(str, Enum):
    RECORD_CREATED = "record_created"
    RECORD_UPDATED = "record_updated"
    TAG_ADDED = "tag_added"
    TAG_REMOVED = "tag_removed"
    DEAL_STAGE_CHANGED = "deal_stage_changed"
    DEAL_CREATED = "deal_created"


class DomainEvent(BaseModel):
    """Something that happened to a CRM record.

    ``subject_id`` is always the contact that would be enrolled; deal events
    carry the deal itself in ``payload["deal"]``.
    """

    event_id: str = Field(default_factory=lambda: f"evt-{uuid.uuid4().hex}")
    kind: EventKind
    workspace_id: str = "default"
    subject_id: str
    changed_fields: List[str] = Field(default_factory=list)
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_serializer("occurred_at")
    def serialize_datetime(self, v: datetime) -> str:
        return v.isoformat()

    @property
    def dedupe_key(self) -> str:
        return f"event:{self.event_id}"
