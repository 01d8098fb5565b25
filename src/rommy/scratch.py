"""Scratch scripts: open an editor on a template and hand back the file."""

from __future__ import annotations

import os
import shlex
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Callable, Mapping

from rommy.errors import ScratchError

__all__ = ["launch_editor_and_get_script", "pick_editor", "editor_wait_args"]

TEMPLATE = """\
#!/usr/bin/env bash
set -Eeuo pipefail
# Rommy scratch script: write your commands below, then save & close the editor.
echo "Hello from Rommy scratch!"
"""


def pick_editor(environ: Mapping[str, str] | None = None) -> list[str]:
    """$EDITOR, then $VISUAL, then nano — split like a shell would."""
    env = os.environ if environ is None else environ
    for var in ("EDITOR", "VISUAL"):
        editor = env.get(var, "").strip()
        if editor:
            return shlex.split(editor)
    return ["nano"]


def editor_wait_args(editor: str) -> list[str]:
    """Flags that keep GUI editors in the foreground until the file closes."""
    e = Path(editor).name.lower()
    if "code" in e or "codium" in e:
        return ["--wait"]
    if "subl" in e or "sublime_text" in e:
        return ["-w"]
    if "gedit" in e:
        return ["--wait"]
    return []


def _has_commands(text: str) -> bool:
    for line in text.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("#"):
            return True
    return False


def launch_editor_and_get_script(
    environ: Mapping[str, str] | None = None,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    scratch_dir: Path | None = None,
) -> Path:
    """Write a template to ``$TMPDIR/rommy/``, let the user edit it, and
    return its path once it holds at least one real command."""
    directory = scratch_dir or Path(tempfile.gettempdir()) / "rommy"
    try:
        directory.mkdir(parents=True, exist_ok=True)
        script = directory / f"scratch-{int(time.time())}-{os.getpid()}.sh"
        script.write_text(TEMPLATE)
        script.chmod(0o755)
    except OSError as exc:
        raise ScratchError(f"failed to write scratch script in {directory}: {exc}") from exc

    editor = pick_editor(environ)
    argv = editor + editor_wait_args(editor[0]) + [str(script)]
    try:
        result = runner(argv)
    except OSError as exc:
        raise ScratchError(f"failed to launch editor {editor[0]!r}: {exc}") from exc
    if result.returncode != 0:
        raise ScratchError(f"editor exited with status {result.returncode}")

    try:
        content = script.read_text()
    except OSError as exc:
        raise ScratchError(f"failed to read scratch script {script}: {exc}") from exc
    if not _has_commands(content):
        raise ScratchError("scratch script is empty, aborting")
    return script
