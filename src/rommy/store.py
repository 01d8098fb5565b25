"""Atomic writes of serialised records."""

from __future__ import annotations

import fcntl
import logging
import os
import shutil
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from rommy.errors import PathError

__all__ = ["write_record", "lock_path", "temp_path"]

logger = logging.getLogger(__name__)


def lock_path(path: Path) -> Path:
    return path.with_name(f".{path.name}.lock")


def temp_path(path: Path) -> Path:
    return path.with_name(f".{path.name}.{os.getpid()}.{time.time_ns()}.tmp")


@contextmanager
def _locked(path: Path) -> Iterator[None]:
    """Hold an exclusive lock on the sibling lock file of *path*."""
    lock = lock_path(path)
    try:
        fd = os.open(str(lock), os.O_CREAT | os.O_WRONLY, 0o644)
    except OSError as exc:
        raise PathError(f"cannot open lock file {lock}: {exc}") from exc
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        yield
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)


def write_record(path: Path, data: bytes, *, append: bool = False) -> Path:
    """Write *data* to *path* in one step.

    The bytes go to a temp file beside *path* (preceded by the current
    contents when *append* is set), are fsynced, and then renamed over
    *path*.  Readers see either the old file or the new one, never a
    partial write.
    """
    path = Path(path)
    with _locked(path):
        tmp = temp_path(path)
        try:
            fd = os.open(str(tmp), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            with os.fdopen(fd, "wb") as out:
                if append:
                    try:
                        with path.open("rb") as current:
                            shutil.copyfileobj(current, out)
                    except FileNotFoundError:
                        pass
                out.write(data)
                out.flush()
                os.fsync(out.fileno())
            os.replace(tmp, path)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise PathError(f"cannot write {path}: {exc}") from exc
    logger.debug("wrote %d bytes to %s (append=%s)", len(data), path, append)
    return path
