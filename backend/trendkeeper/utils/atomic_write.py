"""
Atomic JSON file writes.

The document is written to a temp file in the target's directory, flushed
and fsynced, then moved over the target with ``os.replace``. Readers either
see the previous document or the new one, never a partial write.
"""
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from ..domain.common.errors import PersistenceError

logger = logging.getLogger(__name__)


def write_json_atomic(path: Path, payload: Any, indent: int | None = 2) -> None:
    """
    Serialize *payload* as JSON and atomically replace *path* with it.

    Raises:
        PersistenceError: On serialization or I/O failure. The existing file
                          at *path* is left untouched and the temp file removed.
    """
    path = Path(path)
    try:
        encoded = json.dumps(payload, indent=indent, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise PersistenceError(f"Payload for {path} is not JSON-serializable: {exc}") from exc

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.stem}.", suffix=".tmp")
    except OSError as exc:
        raise PersistenceError(f"Could not create temp file next to {path}: {exc}") from exc

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as stream:
            stream.write(encoded)
            stream.write("\n")
            stream.flush()
            os.fsync(stream.fileno())
        os.replace(tmp_name, path)
    except OSError as exc:
        try:
            os.remove(tmp_name)
        except OSError:
            logger.debug(f"Temp file {tmp_name} already gone")
        raise PersistenceError(f"Could not write {path}: {exc}") from exc
