"""Action collaborators and the dispatcher."""

from .base import (
    ActionContext,
    Collaborators,
    DispatchFailure,
    DispatchResult,
    FieldUpdater,
    MessageSender,
    Notifier,
    RecordCreator,
    RecordSource,
    TagMutator,
)
from .dispatcher import ActionDispatcher

__all__ = [
    "ActionContext",
    "Collaborators",
    "DispatchFailure",
    "DispatchResult",
    "FieldUpdater",
    "MessageSender",
    "Notifier",
    "RecordCreator",
    "RecordSource",
    "TagMutator",
    "ActionDispatcher",
]
