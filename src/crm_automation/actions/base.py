"""Collaborator interfaces for action steps and record reads."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Literal, Optional

FailureKind = Literal["transient", "permanent"]


@dataclass
class ActionContext:
    """Who an action runs for. Passed to every collaborator call."""
    workspace_id: str
    workflow_id: str
    enrollment_id: str
    subject_id: str
    step_id: str
    idempotency_key: str  # "<enrollment_id>:<step_index>"; stable across replays
    record: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DispatchFailure:
    kind: FailureKind
    reason: str

    @property
    def transient(self) -> bool:
        return self.kind == "transient"


@dataclass
class DispatchResult:
    """Outcome of one action dispatch."""
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    failure: Optional[DispatchFailure] = None

    @classmethod
    def ok(cls, data: Optional[Dict[str, Any]] = None) -> "DispatchResult":
        return cls(success=True, data=data or {})

    @classmethod
    def failed(cls, kind: FailureKind, reason: str) -> "DispatchResult":
        return cls(success=False, failure=DispatchFailure(kind=kind, reason=reason))


class RecordSource(ABC):
    """Read access to CRM records (contacts and deals)."""

    @abstractmethod
    def get_record(self, workspace_id: str, subject_id: str) -> Optional[Dict[str, Any]]:
        """Current record for a subject, or None if it does not exist."""
        pass

    @abstractmethod
    def iter_records(self, workspace_id: str) -> Iterable[Dict[str, Any]]:
        """Every subject record in a workspace; used by date-based triggers."""
        pass


class MessageSender(ABC):
    """Email and SMS delivery."""

    @abstractmethod
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
        pass

    @abstractmethod
    def send_sms(self, context: ActionContext, to: str, message: str) -> Dict[str, Any]:
        pass


class TagMutator(ABC):
    @abstractmethod
    def add_tags(self, context: ActionContext, tag_ids: List[str]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def remove_tags(self, context: ActionContext, tag_ids: List[str]) -> Dict[str, Any]:
        pass


class FieldUpdater(ABC):
    @abstractmethod
    def update_field(self, context: ActionContext, field_name: str, value: Any) -> Dict[str, Any]:
        pass


class RecordCreator(ABC):
    """Creates tasks and deals linked to the subject."""

    @abstractmethod
    def create_task(self, context: ActionContext, task: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def create_deal(self, context: ActionContext, deal: Dict[str, Any]) -> Dict[str, Any]:
        pass


class Notifier(ABC):
    """Internal notifications to workspace users."""

    @abstractmethod
    def notify(
        self,
        context: ActionContext,
        channel: str,
        recipients: List[str],
        subject: str,
        message: str,
    ) -> Dict[str, Any]:
        pass


@dataclass
class Collaborators:
    """Bundle of collaborator implementations wired into the engine."""
    records: RecordSource
    messages: MessageSender
    tags: TagMutator
    fields: FieldUpdater
    creator: RecordCreator
    notifier: Notifier
