"""
hkscribe.io - JSON and text read/write helpers with atomic writes.

Used for the license state file, the license store, transcript output
and split part files.
"""

from __future__ import annotations

import json
import tempfile
from pathlib import Path
from typing import Any


def read_json(path: Path, default: dict[str, Any] | None = None) -> dict[str, Any]:
    """Read a JSON object from disk.

    Args:
        path: Path to JSON file
        default: Returned instead of raising when the file does not exist

    Returns:
        Parsed JSON object

    Raises:
        FileNotFoundError: If file doesn't exist and no default was given
        json.JSONDecodeError: If file contains invalid JSON
    """
    if default is not None and not path.exists():
        return dict(default)
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def write_json(path: Path, data: dict[str, Any], indent: int = 2) -> None:
    """Write a JSON object atomically."""
    _write_atomic(path, json.dumps(data, indent=indent, ensure_ascii=False).encode("utf-8"))


def write_text(path: Path, content: str) -> None:
    """Write UTF-8 text atomically.

    A leading byte-order mark in ``content`` is written as-is.
    """
    _write_atomic(path, content.encode("utf-8"))


def write_bytes(path: Path, data: bytes) -> None:
    """Write raw bytes atomically."""
    _write_atomic(path, data)


def _write_atomic(path: Path, payload: bytes) -> None:
    """Write to a temp file in the destination directory, then rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="wb",
        dir=path.parent,
        delete=False,
        suffix=".tmp",
    ) as tmp:
        tmp_path = Path(tmp.name)
        try:
            tmp.write(payload)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise
    tmp_path.replace(path)
