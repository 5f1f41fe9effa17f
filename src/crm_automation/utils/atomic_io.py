"""Atomic file I/O for workflow and enrollment documents."""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Type, TypeVar

from pydantic import BaseModel

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _tmp_path(file_path: Path) -> Path:
    # pid + thread id: worker threads in one process must never share a temp file
    return file_path.with_suffix(
        f"{file_path.suffix}.tmp.{os.getpid()}.{threading.get_ident()}"
    )


def atomic_write_text(file_path: Path, content: str, max_retries: int = 3) -> None:
    """
    Atomically write content to a file using temp file + os.replace.

    Readers see either the previous document or the new one, never a
    partial write.

    Raises:
        OSError: If write fails after all retries
    """
    file_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_file = _tmp_path(file_path)

    last_error = None
    for attempt in range(max_retries):
        try:
            tmp_file.write_text(content)
            os.replace(tmp_file, file_path)
            return
        except OSError as e:
            last_error = e
            if attempt < max_retries - 1:
                logger.warning(
                    f"Failed to write {file_path} (attempt {attempt + 1}/{max_retries}): {e}"
                )
        finally:
            if tmp_file.exists():
                try:
                    tmp_file.unlink()
                except OSError:
                    pass

    logger.error(f"Failed to write {file_path} after {max_retries} attempts: {last_error}")
    raise last_error


def atomic_write_json(file_path: Path, data: Any) -> None:
    """Serialize plain data to JSON and write it atomically."""
    atomic_write_text(file_path, json.dumps(data, indent=2, sort_keys=True, default=str))


def atomic_write_model(file_path: Path, model: BaseModel, indent: int = 2) -> None:
    """Atomically write a Pydantic model to a JSON file."""
    atomic_write_text(file_path, model.model_dump_json(indent=indent))


def read_model(file_path: Path, model_cls: Type[M]) -> M:
    """Load a Pydantic model from a JSON file written by atomic_write_model."""
    return model_cls.model_validate_json(file_path.read_text())
