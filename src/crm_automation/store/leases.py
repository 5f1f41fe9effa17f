"""Expiring leases built on atomic mkdir.

A lease is a directory ``<key>.lease`` holding a ``holder.json`` record with
the holder id, pid, a random token and an expiry. Creating the directory is
the atomic claim; the holder record lets other workers detect leases left
behind by dead or stuck holders.
"""

import json
import logging
import os
import re
import shutil
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Iterator, Optional

from ..core.errors import LeaseUnavailableError
from ..utils.atomic_io import atomic_write_json

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")

# A lease dir with no holder record yet is only stale once it is this old
_MISSING_HOLDER_GRACE_SECONDS = 5.0


def workflow_lease_key(workflow_id: str) -> str:
    return f"workflow-{workflow_id}"


def enrollment_lease_key(enrollment_id: str) -> str:
    return f"enrollment-{enrollment_id}"


@dataclass
class Lease:
    key: str
    holder: str
    token: str
    expires_at: datetime


class LeaseManager:
    """Grants per-key leases to one holder (a worker id)."""

    def __init__(self, lease_dir: Path, holder: str, ttl_seconds: int = 300):
        self.lease_dir = lease_dir
        self.holder = holder
        self.ttl_seconds = ttl_seconds
        self.lease_dir.mkdir(parents=True, exist_ok=True)

    def _lease_path(self, key: str) -> Path:
        return self.lease_dir / f"{_UNSAFE_CHARS.sub('_', key)}.lease"

    def _read_holder(self, lease_path: Path) -> Optional[dict]:
        try:
            return json.loads((lease_path / "holder.json").read_text())
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Unreadable lease holder record at {lease_path}: {e}")
            return {}

    def _is_stale(self, lease_path: Path, record: Optional[dict]) -> bool:
        if record is None:
            try:
                age = time.time() - lease_path.stat().st_mtime
            except FileNotFoundError:
                return False
            return age > _MISSING_HOLDER_GRACE_SECONDS
        if not record:
            return True

        try:
            expires_at = datetime.fromisoformat(record["expires_at"])
        except (KeyError, ValueError):
            return True
        if expires_at <= datetime.now(UTC):
            logger.info(f"Lease {lease_path.name} held by {record.get('holder')} expired")
            return True

        pid = record.get("pid")
        if isinstance(pid, int):
            try:
                os.kill(pid, 0)
            except ProcessLookupError:
                logger.warning(f"Lease {lease_path.name} held by dead PID {pid} (stale)")
                return True
            except PermissionError:
                # Can't signal it, but it may still be alive
                return False
        return False

    def _reclaim(self, lease_path: Path, record: Optional[dict]) -> None:
        """Remove a stale lease unless someone re-claimed it in the meantime."""
        current = self._read_holder(lease_path)
        if record and current and current.get("token") != record.get("token"):
            return
        try:
            shutil.rmtree(lease_path)
            logger.info(f"Reclaimed stale lease {lease_path.name}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove stale lease {lease_path}: {e}")

    def try_acquire(self, key: str) -> Optional[Lease]:
        """Attempt to take the lease once. Returns None when it is held."""
        lease_path = self._lease_path(key)

        if lease_path.exists():
            record = self._read_holder(lease_path)
            if not self._is_stale(lease_path, record):
                logger.debug(f"Lease {key} is held by {(record or {}).get('holder')}")
                return None
            self._reclaim(lease_path, record)

        try:
            lease_path.mkdir(parents=True, exist_ok=False)
        except FileExistsError:
            logger.debug(f"Lease {key} claimed concurrently")
            return None

        lease = Lease(
            key=key,
            holder=self.holder,
            token=uuid.uuid4().hex,
            expires_at=datetime.now(UTC) + timedelta(seconds=self.ttl_seconds),
        )
        self._write_holder(lease_path, lease)
        logger.debug(f"Acquired lease {key} for {self.holder}")
        return lease

    def acquire(self, key: str, wait_seconds: float = 0.0, poll_interval: float = 0.05) -> Optional[Lease]:
        """Take the lease, polling for up to ``wait_seconds`` while it is held."""
        deadline = time.monotonic() + wait_seconds
        while True:
            lease = self.try_acquire(key)
            if lease is not None or time.monotonic() >= deadline:
                return lease
            time.sleep(poll_interval)

    def renew(self, lease: Lease) -> bool:
        """Extend a lease we still hold. False if it was lost."""
        lease_path = self._lease_path(lease.key)
        record = self._read_holder(lease_path)
        if not record or record.get("token") != lease.token:
            logger.warning(f"Lease {lease.key} was lost by {self.holder}")
            return False
        lease.expires_at = datetime.now(UTC) + timedelta(seconds=self.ttl_seconds)
        self._write_holder(lease_path, lease)
        return True

    def release(self, lease: Lease) -> None:
        lease_path = self._lease_path(lease.key)
        record = self._read_holder(lease_path)
        if record and record.get("token") != lease.token:
            # Expired and re-claimed by someone else; not ours to remove
            logger.warning(f"Lease {lease.key} is now held by {record.get('holder')}, not releasing")
            return
        try:
            shutil.rmtree(lease_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to release lease {lease.key}: {e}")

    def is_held(self, key: str) -> bool:
        lease_path = self._lease_path(key)
        if not lease_path.exists():
            return False
        return not self._is_stale(lease_path, self._read_holder(lease_path))

    @contextmanager
    def hold(self, key: str, wait_seconds: float = 0.0) -> Iterator[Lease]:
        """Context manager form; raises LeaseUnavailableError if not granted."""
        lease = self.acquire(key, wait_seconds=wait_seconds)
        if lease is None:
            raise LeaseUnavailableError(key)
        try:
            yield lease
        finally:
            self.release(lease)

    def _write_holder(self, lease_path: Path, lease: Lease) -> None:
        atomic_write_json(lease_path / "holder.json", {
            "holder": lease.holder,
            "pid": os.getpid(),
            "token": lease.token,
            "expires_at": lease.expires_at.isoformat(),
        })
