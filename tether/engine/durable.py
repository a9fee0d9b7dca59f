"""Crash-safe writes for tether's state files (sessions, approvals).

A reader sees either the previous file or the new one, never a
truncated mix: content goes to a sibling temp file, is fsynced, then
renamed over the target. The rename is flushed by fsyncing the parent
directory where the platform supports it.
"""
from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def fsync_directory(directory: Path) -> None:
    flags = os.O_RDONLY | getattr(os, "O_DIRECTORY", 0)
    try:
        fd = os.open(directory, flags)
    except OSError:
        # Windows cannot open directories
        return
    try:
        os.fsync(fd)
    except OSError:
        logger.debug("Directory fsync not supported for %s", directory)
    finally:
        os.close(fd)


def write_atomic(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Replace *path* with *content*. Raises OSError if the write fails."""
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = tempfile.NamedTemporaryFile(
        "w",
        encoding=encoding,
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    )
    tmp = Path(handle.name)
    try:
        with handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(OSError):
            tmp.unlink()
        raise
    fsync_directory(path.parent)


def write_json_atomic(path: Path, data: Any) -> None:
    write_atomic(path, json.dumps(data, indent=2) + "\n")


def unlink_durably(path: Path) -> bool:
    """Delete *path* and flush the removal. False if it could not be removed."""
    try:
        path.unlink()
    except OSError as exc:
        logger.warning("Could not delete %s: %s", path, exc)
        return False
    fsync_directory(path.parent)
    return True
