"""Small filesystem helpers shared by the persistent stores."""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)


def write_json_atomic(path: Path, payload: Any, indent: int = 2) -> None:
    """Write JSON so a concurrent reader sees either the old or the new file."""
    write_text_atomic(path, json.dumps(payload, indent=indent, ensure_ascii=False) + "\n")


def write_text_atomic(path: Path, text: str) -> None:
    """Replace a file through a temp file in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    finally:
        if os.path.exists(temp_path):
            os.unlink(temp_path)


def read_json(path: Path, default: Any = None) -> Any:
    """Read a JSON file; a missing file yields ``default``, a corrupt one raises ValueError."""
    if not path.exists():
        return default
    return json.loads(path.read_text(encoding="utf-8"))


def read_json_dict(path: Path) -> Dict:
    """Read a JSON object, logging and discarding anything unreadable."""
    try:
        data = read_json(path, {})
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable state file %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}
