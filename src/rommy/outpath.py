"""Output file naming: ``<root>/YYYY/MM/DD/HHMMSS.<token>.rommy``."""

from __future__ import annotations

import logging
import os
import re
import sys
from datetime import datetime
from pathlib import Path
from typing import Mapping

from rommy.errors import PathError

__all__ = [
    "EXTENSION",
    "default_root_dir",
    "command_token",
    "resolve_path",
    "prepare_output_dir",
]

logger = logging.getLogger(__name__)

EXTENSION = ".rommy"

_FALLBACK_TOKEN = "cmd"
_SCRIPT_TOKEN = "bash_script"
_MAX_TOKEN = 32

_NON_ALNUM_RE = re.compile(r"[^A-Za-z0-9]+")

# ---------------------------------------------------------------------------
# Root directory
# ---------------------------------------------------------------------------

def default_root_dir(environ: Mapping[str, str] | None = None) -> Path:
    """Pick the directory automatic output paths are rooted at.

    Priority: ``$ROMMY_ROOT``, ``$XDG_STATE_HOME/rommy``, then the
    platform's per-user state location.
    """
    env = os.environ if environ is None else environ

    root = env.get("ROMMY_ROOT", "").strip()
    if root:
        return Path(root).expanduser()

    xdg = env.get("XDG_STATE_HOME", "").strip()
    if xdg:
        return Path(xdg) / "rommy"

    home = Path(env.get("HOME") or env.get("USERPROFILE") or "~").expanduser()

    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / "Rommy"

    if sys.platform == "win32":
        appdata = env.get("LOCALAPPDATA", "").strip()
        if appdata:
            return Path(appdata) / "Rommy"
        return home / "AppData" / "Local" / "Rommy"

    return home / ".local" / "state" / "rommy"

# ---------------------------------------------------------------------------
# File name token
# ---------------------------------------------------------------------------

def command_token(command_text: str) -> str:
    """Derive a short, filename-safe token from a command line.

    ``"$ cargo clippy -q"`` becomes ``"cargo_clippy"``; a script beginning
    with a shebang becomes ``"bash_script"``.  Never returns an empty string.
    """
    base = command_text.strip()
    if base.startswith("#!"):
        return _SCRIPT_TOKEN
    base = base.removeprefix("$ ")

    first_words = "_".join(base.split()[:2])
    clean = _NON_ALNUM_RE.sub("_", first_words).strip("_").lower()
    return clean[:_MAX_TOKEN] or _FALLBACK_TOKEN

# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------

def resolve_path(root: Path | str, now: datetime, label: str) -> Path:
    """Compute the output path for a run started at *now*.

    *now* is rendered in local time; a naive value is assumed to be local
    already.  Pure: nothing is created and collisions are not checked.
    """
    if now.tzinfo is not None:
        now = now.astimezone()
    name = f"{now:%H%M%S}.{command_token(label)}{EXTENSION}"
    return Path(root) / f"{now:%Y}" / f"{now:%m}" / f"{now:%d}" / name


def prepare_output_dir(path: Path) -> Path:
    """Create the parent directories of *path* and check they are writable.

    Raises :class:`PathError` so a command is never run when its record
    could not be saved.
    """
    parent = path.parent
    try:
        parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise PathError(f"cannot create directory {parent}: {exc}") from exc
    if not parent.is_dir():
        raise PathError(f"not a directory: {parent}")
    if not os.access(parent, os.W_OK | os.X_OK):
        raise PathError(f"directory is not writable: {parent}")
    if path.is_dir():
        raise PathError(f"output path is a directory: {path}")
    logger.debug("output directory ready: %s", parent)
    return path
