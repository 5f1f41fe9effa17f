"""Pending pause/exit requests for enrollments leased by another worker."""

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from ..utils.atomic_io import atomic_write_model, read_model

logger = logging.getLogger(__name__)


class ControlRequest(BaseModel):
    enrollment_id: str
    action: Literal["pause", "exit"]
    reason: Optional[str] = None
    requested_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ControlRequestStore:
    """One request file per enrollment; an exit request supersedes a pause."""

    def __init__(self, root: Path):
        self.requests_dir = Path(root) / "requests"
        self.requests_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, enrollment_id: str) -> Path:
        return self.requests_dir / f"{enrollment_id}.json"

    def peek(self, enrollment_id: str) -> Optional[ControlRequest]:
        path = self._path(enrollment_id)
        try:
            return read_model(path, ControlRequest)
        except FileNotFoundError:
            return None
        except (ValidationError, ValueError) as e:
            logger.error(f"Discarding malformed control request {path}: {e}")
            path.unlink(missing_ok=True)
            return None

    def put(self, enrollment_id: str, action: str, reason: Optional[str] = None) -> ControlRequest:
        existing = self.peek(enrollment_id)
        if existing is not None and existing.action == "exit":
            return existing
        request = ControlRequest(enrollment_id=enrollment_id, action=action, reason=reason)
        atomic_write_model(self._path(enrollment_id), request)
        logger.info(f"Recorded {action} request for enrollment {enrollment_id}")
        return request

    def take(self, enrollment_id: str) -> Optional[ControlRequest]:
        """Pop the pending request; only the lease holder calls this."""
        request = self.peek(enrollment_id)
        if request is not None:
            self._path(enrollment_id).unlink(missing_ok=True)
        return request
