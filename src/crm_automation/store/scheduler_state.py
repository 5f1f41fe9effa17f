"""Persisted scheduler bookkeeping: last date-trigger run per workflow."""

import json
import logging
import threading
from datetime import date
from pathlib import Path
from typing import Dict, Optional

from ..utils.atomic_io import atomic_write_json

logger = logging.getLogger(__name__)


class SchedulerState:
    def __init__(self, root: Path):
        self.state_file = Path(root) / "scheduler" / "date_triggers.json"
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        try:
            return json.loads(self.state_file.read_text())
        except FileNotFoundError:
            return {}
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Resetting unreadable scheduler state {self.state_file}: {e}")
            return {}

    def last_date_run(self, workflow_id: str) -> Optional[date]:
        value = self._read().get(workflow_id)
        return date.fromisoformat(value) if value else None

    def record_date_run(self, workflow_id: str, run_date: date) -> None:
        with self._lock:
            state = self._read()
            state[workflow_id] = run_date.isoformat()
            atomic_write_json(self.state_file, state)
