"""Protocol IO helpers with atomic writes."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def tmp_path_for(path: Path) -> Path:
    return path.with_suffix(path.suffix + ".tmp")


def write_json_atomic(path: Path, data: Any) -> None:
    """Serialise *data* next to *path* and rename it into place.

    A crash at any point leaves either the previous file or the new one,
    never a truncated mix. A half-written ``.tmp`` may remain; see
    :func:`discard_stale_tmp`.
    """
    ensure_parent(path)
    tmp = tmp_path_for(path)
    payload = json.dumps(data, indent=2, sort_keys=False, ensure_ascii=False) + "\n"
    try:
        with tmp.open("w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def discard_stale_tmp(path: Path) -> bool:
    """Delete a leftover ``.tmp`` from an interrupted write. Returns True if one existed."""
    tmp = tmp_path_for(path)
    if tmp.exists():
        tmp.unlink(missing_ok=True)
        return True
    return False


def append_jsonl(path: Path, item: Any) -> None:
    ensure_parent(path)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(item) + "\n")
