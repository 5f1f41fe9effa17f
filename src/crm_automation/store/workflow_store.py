"""Versioned workflow documents.

Layout: ``<root>/workflows/<id>.json`` holds the current definition and
``<root>/versions/<id>/<n>.json`` keeps every saved version.
"""

import logging
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from ..core.errors import WorkflowExistsError, WorkflowLockedError, WorkflowNotFoundError
from ..utils.atomic_io import atomic_write_model, read_model
from ..workflow.models import Workflow, WorkflowStatus

logger = logging.getLogger(__name__)


class WorkflowStore:
    """Workflow persistence with structural-edit protection for active workflows."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.workflows_dir = self.root / "workflows"
        self.versions_dir = self.root / "versions"
        self.workflows_dir.mkdir(parents=True, exist_ok=True)
        self.versions_dir.mkdir(parents=True, exist_ok=True)

        # path -> (workflow, (inode, mtime_ns, size)); workers re-read definitions on every wake-up
        self._cache: Dict[str, tuple] = {}
        self._write_lock = threading.Lock()

    def _path(self, workflow_id: str) -> Path:
        return self.workflows_dir / f"{workflow_id}.json"

    def find(self, workflow_id: str) -> Optional[Workflow]:
        path = self._path(workflow_id)
        key = str(path)
        try:
            stat = path.stat()
        except FileNotFoundError:
            self._cache.pop(key, None)
            return None

        cached = self._cache.get(key)
        if cached is not None and cached[1] == (stat.st_ino, stat.st_mtime_ns, stat.st_size):
            return cached[0].model_copy(deep=True)

        try:
            workflow = read_model(path, Workflow)
        except (ValidationError, ValueError) as e:
            logger.error(f"Malformed workflow document {path}: {e}")
            return None
        self._cache[key] = (workflow, (stat.st_ino, stat.st_mtime_ns, stat.st_size))
        return workflow.model_copy(deep=True)

    def get(self, workflow_id: str) -> Workflow:
        workflow = self.find(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    def list(
        self,
        workspace_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
    ) -> List[Workflow]:
        workflows = []
        for path in sorted(self.workflows_dir.glob("*.json")):
            workflow = self.find(path.stem)
            if workflow is None:
                continue
            if workspace_id is not None and workflow.workspace_id != workspace_id:
                continue
            if status is not None and workflow.status != status:
                continue
            workflows.append(workflow)
        return workflows

    def save(self, workflow: Workflow, now: Optional[datetime] = None) -> Workflow:
        """Persist a new version of the workflow.

        Raises:
            WorkflowLockedError: the stored copy is active and the trigger,
                steps or start step differ from it.
        """
        now = now or datetime.now(UTC)
        with self._write_lock:
            existing = self.find(workflow.id)
            if existing is not None and existing.is_active and workflow.structure() != existing.structure():
                raise WorkflowLockedError(workflow.id)

            saved = workflow.model_copy(deep=True)
            saved.version = (existing.version if existing else 0) + 1
            saved.updated_at = now
            if existing is not None:
                saved.created_at = existing.created_at

            atomic_write_model(self.versions_dir / workflow.id / f"{saved.version}.json", saved)
            path = self._path(workflow.id)
            atomic_write_model(path, saved)
            # Our own write must never be served stale from the cache
            stat = path.stat()
            self._cache[str(path)] = (saved.model_copy(deep=True), (stat.st_ino, stat.st_mtime_ns, stat.st_size))

        logger.info(f"Saved workflow {workflow.id} version {saved.version} ({saved.status.value})")
        return saved

    def _copy_id(self, workflow_id: str) -> str:
        candidate = f"{workflow_id}-copy"
        counter = 1
        while self._path(candidate).exists():
            counter += 1
            candidate = f"{workflow_id}-copy-{counter}"
        return candidate

    def duplicate(
        self,
        workflow_id: str,
        new_id: Optional[str] = None,
        created_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Workflow:
        """Copy a workflow's trigger, steps and settings into a new draft.

        The copy is named "<name> (Copy)" and gets ``<id>-copy`` (then
        ``-copy-2``, ...) unless ``new_id`` is given.

        Raises:
            WorkflowNotFoundError: no workflow with ``workflow_id``
            WorkflowExistsError: ``new_id`` is already taken
        """
        now = now or datetime.now(UTC)
        source = self.get(workflow_id)
        if new_id is not None and self._path(new_id).exists():
            raise WorkflowExistsError(new_id)

        copy = Workflow(
            id=new_id or self._copy_id(workflow_id),
            workspace_id=source.workspace_id,
            name=f"{source.name or source.id} (Copy)",
            description=source.description,
            status=WorkflowStatus.DRAFT,
            trigger=source.trigger.model_copy(deep=True),
            steps=[step.model_copy(deep=True) for step in source.steps],
            start_step_id=source.start_step_id,
            settings=source.settings.model_copy(deep=True),
            created_by=created_by or source.created_by,
            created_at=now,
        )
        saved = self.save(copy, now=now)
        logger.info(f"Duplicated workflow {workflow_id} as {saved.id}")
        return saved

    def versions(self, workflow_id: str) -> List[int]:
        version_dir = self.versions_dir / workflow_id
        if not version_dir.exists():
            return []
        return sorted(int(path.stem) for path in version_dir.glob("*.json") if path.stem.isdigit())

    def get_version(self, workflow_id: str, version: int) -> Workflow:
        path = self.versions_dir / workflow_id / f"{version}.json"
        if not path.exists():
            raise WorkflowNotFoundError(f"{workflow_id}@{version}")
        return read_model(path, Workflow)
