"""File-backed enrollment documents.

Layout: ``<root>/enrollments/<workflow_id>/<enrollment_id>.json``. Documents
are never deleted; terminal enrollments stay on disk as history.
"""

import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from pydantic import ValidationError

from ..core.enrollment import Enrollment, EnrollmentStatus
from ..utils.atomic_io import atomic_write_model, read_model

logger = logging.getLogger(__name__)


class EnrollmentStore:
    """Reads and writes enrollment documents.

    Writes of progress fields happen only under the enrollment lease; the
    store itself does no locking beyond atomic replacement.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.enrollments_dir = self.root / "enrollments"
        self.enrollments_dir.mkdir(parents=True, exist_ok=True)

        # enrollment id -> document path; ids are unique across workflows
        self._paths: Dict[str, Path] = {}
        self._paths_lock = threading.Lock()

    def _path_for(self, enrollment: Enrollment) -> Path:
        return self.enrollments_dir / enrollment.workflow_id / f"{enrollment.id}.json"

    def _locate(self, enrollment_id: str) -> Optional[Path]:
        with self._paths_lock:
            cached = self._paths.get(enrollment_id)
        if cached is not None and cached.exists():
            return cached

        for path in self.enrollments_dir.glob(f"*/{enrollment_id}.json"):
            with self._paths_lock:
                self._paths[enrollment_id] = path
            return path
        return None

    def _load(self, path: Path) -> Optional[Enrollment]:
        try:
            return read_model(path, Enrollment)
        except FileNotFoundError:
            return None
        except (ValidationError, ValueError) as e:
            logger.error(f"Skipping malformed enrollment document {path}: {e}")
            return None

    def save(self, enrollment: Enrollment) -> None:
        path = self._path_for(enrollment)
        atomic_write_model(path, enrollment)
        with self._paths_lock:
            self._paths[enrollment.id] = path

    def get(self, enrollment_id: str) -> Optional[Enrollment]:
        path = self._locate(enrollment_id)
        if path is None:
            return None
        return self._load(path)

    def _iter_dir(self, directory: Path) -> Iterator[Enrollment]:
        if not directory.exists():
            return
        for path in sorted(directory.glob("*.json")):
            enrollment = self._load(path)
            if enrollment is not None:
                yield enrollment

    def iter_all(self) -> Iterator[Enrollment]:
        for workflow_dir in sorted(p for p in self.enrollments_dir.iterdir() if p.is_dir()):
            yield from self._iter_dir(workflow_dir)

    def list_for_workflow(self, workflow_id: str) -> List[Enrollment]:
        return list(self._iter_dir(self.enrollments_dir / workflow_id))

    def count_by_status(self, workflow_id: str) -> Dict[str, int]:
        counts = {status.value: 0 for status in EnrollmentStatus}
        for enrollment in self.list_for_workflow(workflow_id):
            counts[enrollment.status] = counts.get(enrollment.status, 0) + 1
        return counts

    def due(
        self,
        now: datetime,
        limit: int,
        orphan_after: Optional[timedelta] = None,
    ) -> List[Enrollment]:
        """Active enrollments ready to run, oldest due time first.

        With ``orphan_after`` set, active enrollments that are neither waiting
        nor touched for that long are included too: their worker died between
        persisting a transition and running the next step.
        """
        ready = []
        for enrollment in self.iter_all():
            if enrollment.status != EnrollmentStatus.ACTIVE:
                continue
            if enrollment.next_step_at is not None:
                if enrollment.next_step_at <= now:
                    ready.append((enrollment.next_step_at, enrollment))
            elif orphan_after is not None and enrollment.updated_at <= now - orphan_after:
                logger.info(f"Recovering orphaned enrollment {enrollment.id}")
                ready.append((enrollment.updated_at, enrollment))

        ready.sort(key=lambda item: item[0])
        return [enrollment for _, enrollment in ready[:limit]]
