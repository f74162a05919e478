"""File helpers shared by the state, heartbeat and assignment stores.

Readers never raise on missing or corrupt files; they hand back a
default.  ``write_json_atomic`` stages into a sibling temp file so a
crash mid-write leaves either the old document or the new one.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def read_json(path: Path, default: Any) -> Any:
    try:
        raw = path.read_bytes()
    except OSError:
        return default
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return default


def write_json_atomic(path: Path, data: Any) -> None:
    ensure_parent(path)
    text = json.dumps(data, indent=2) + "\n"
    fd, staged = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".part", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(staged, path)
    except BaseException:
        Path(staged).unlink(missing_ok=True)
        raise


def unlink_quiet(path: Path) -> bool:
    """Remove *path*; False when it was already gone or could not be removed."""
    try:
        path.unlink()
    except OSError:
        return False
    return True


def file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0


def read_bytes_from(path: Path, offset: int, limit: int | None = None) -> bytes:
    """Up to *limit* bytes of *path* from *offset* on; ``b""`` when unreadable."""
    try:
        with path.open("rb") as fh:
            fh.seek(max(offset, 0))
            return fh.read(-1 if limit is None else limit)
    except OSError:
        return b""
