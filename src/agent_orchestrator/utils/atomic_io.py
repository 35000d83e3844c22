"""Atomic file writes for the file-backed task store."""

import os
import logging
from pathlib import Path

from pydantic import BaseModel

logger = logging.getLogger(__name__)


def atomic_write_text(file_path: Path, content: str, max_retries: int = 3) -> None:
    """
    Write content via temp file + rename so readers never see a partial task file.

    Args:
        file_path: Target file path
        content: Text to write
        max_retries: Attempts before giving up

    Raises:
        OSError: If write fails after all retries
    """
    # PID suffix keeps concurrent writers from sharing a temp file
    tmp_file = file_path.with_suffix(f"{file_path.suffix}.tmp.{os.getpid()}")

    last_error = None
    for attempt in range(max_retries):
        try:
            tmp_file.write_text(content, encoding="utf-8")
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


def atomic_write_model(file_path: Path, model: BaseModel, indent: int = 2) -> None:
    """Atomically write a Pydantic model as JSON."""
    atomic_write_text(file_path, model.model_dump_json(indent=indent))
