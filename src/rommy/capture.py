"""Run a child process and tee its output.

Both output pipes are drained by their own reader thread into a private
buffer, optionally mirroring each chunk to the terminal as it arrives.  A
child that fills one pipe while nobody reads the other can therefore never
stall the run.
"""

from __future__ import annotations

import enum
import logging
import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Callable, Mapping, Protocol

from rommy.errors import CaptureError, LaunchError
from rommy.record import SIGNAL_EXIT_CODE, RunRecord

__all__ = [
    "STDOUT",
    "STDERR",
    "ColorChoice",
    "color_enabled",
    "TerminalSink",
    "Invocation",
    "ProcessHandle",
    "shell_invocation",
    "script_invocation",
    "popen_spawner",
    "run",
]

logger = logging.getLogger(__name__)

STDOUT = "stdout"
STDERR = "stderr"

_CHUNK = 64 * 1024

CYAN   = b"\033[36m"
YELLOW = b"\033[33m"
RESET  = b"\033[0m"

# ---------------------------------------------------------------------------
# Color policy
# ---------------------------------------------------------------------------

class ColorChoice(str, enum.Enum):
    AUTO = "auto"
    ALWAYS = "always"
    NEVER = "never"


def color_enabled(
    choice: ColorChoice,
    is_terminal: Callable[[], bool] | None = None,
    environ: Mapping[str, str] | None = None,
) -> bool:
    """Decide whether mirrored output gets ANSI colors.

    ``NO_COLOR`` always wins.  In ``auto`` mode ``CLICOLOR_FORCE`` and
    ``CLICOLOR=0`` are honoured before asking *is_terminal* (by default:
    is either stderr or stdout a terminal).
    """
    env = os.environ if environ is None else environ
    if "NO_COLOR" in env:
        return False
    if choice is ColorChoice.ALWAYS:
        return True
    if choice is ColorChoice.NEVER:
        return False
    if "CLICOLOR_FORCE" in env:
        return True
    if env.get("CLICOLOR") == "0":
        return False
    if is_terminal is None:
        is_terminal = _either_stream_is_tty
    try:
        return bool(is_terminal())
    except (OSError, ValueError):
        return False


def _either_stream_is_tty() -> bool:
    return sys.stderr.isatty() or sys.stdout.isatty()


# ---------------------------------------------------------------------------
# Terminal sink
# ---------------------------------------------------------------------------

class TerminalSink:
    """Serialised writer for mirrored chunks.

    One lock guards both destinations, so a chunk read from one pipe is
    always written whole; chunks from the two streams interleave only at
    chunk boundaries.
    """

    def __init__(
        self,
        stdout: IO[bytes] | None = None,
        stderr: IO[bytes] | None = None,
        colors: bool = False,
    ) -> None:
        self._out = stdout if stdout is not None else sys.stdout.buffer
        self._err = stderr if stderr is not None else sys.stderr.buffer
        self.colors = colors
        self._lock = threading.Lock()
        self._broken = False

    def write(self, chunk: bytes, stream: str) -> None:
        with self._lock:
            if self._broken:
                return
            try:
                if stream == STDERR:
                    if self.colors:
                        chunk = YELLOW + chunk + RESET
                    self._err.write(chunk)
                    self._err.flush()
                else:
                    self._out.write(chunk)
                    self._out.flush()
            except (OSError, ValueError) as exc:
                # The capture keeps going; only the live view is lost.
                self._broken = True
                logger.warning("terminal mirroring stopped: %s", exc)

    def note(self, message: str) -> None:
        """Write a rommy status line to stderr (cyan when colors are on)."""
        line = message.encode("utf-8", "replace") + b"\n"
        if self.colors:
            line = CYAN + line[:-1] + RESET + b"\n"
        with self._lock:
            try:
                self._err.write(line)
                self._err.flush()
            except (OSError, ValueError) as exc:
                logger.warning("could not write status line: %s", exc)

# ---------------------------------------------------------------------------
# Invocation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Invocation:
    """What to start and how to describe it in the record."""

    argv: tuple[str, ...]
    command_text: str
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    # Connect the child to our stdin instead of /dev/null.
    stdin: bool = False
    extra: tuple[tuple[str, str], ...] = ()


def shell_invocation(line: str, shell: str = "bash", **kwargs) -> Invocation:
    """Run *line* through ``<shell> -c``."""
    return Invocation(argv=(shell, "-c", line), command_text=line, **kwargs)


def script_invocation(path: Path | str, shell: str = "bash", **kwargs) -> Invocation:
    """Run a script file with ``<shell> -Eeuo pipefail``.

    The record's command text is the script body itself.
    """
    try:
        script = Path(path).resolve(strict=True)
        text = script.read_text(encoding="utf-8", errors="surrogateescape")
    except OSError as exc:
        raise LaunchError(f"cannot read script {path}: {exc}") from exc
    extra = tuple(kwargs.pop("extra", ())) + (("script_path", str(script)),)
    return Invocation(
        argv=(shell, "-Eeuo", "pipefail", str(script)),
        command_text=text,
        extra=extra,
        **kwargs,
    )

# ---------------------------------------------------------------------------
# Spawning
# ---------------------------------------------------------------------------

class ProcessHandle(Protocol):
    stdout: IO[bytes]
    stderr: IO[bytes]

    def wait(self) -> int | None: ...


def popen_spawner(invocation: Invocation) -> ProcessHandle:
    """Start *invocation* with both output streams piped to us."""
    logger.debug("spawning %r (cwd=%s)", invocation.argv, invocation.cwd)
    try:
        return subprocess.Popen(
            list(invocation.argv),
            cwd=invocation.cwd,
            env=dict(invocation.env) if invocation.env is not None else None,
            stdin=None if invocation.stdin else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as exc:
        raise LaunchError(
            f"cannot start {invocation.argv[0]!r}: {exc.strerror or exc}"
        ) from exc

# ---------------------------------------------------------------------------
# Pipe readers
# ---------------------------------------------------------------------------

class _Reader(threading.Thread):
    """Drain one pipe into a private buffer until EOF."""

    def __init__(self, name: str, pipe: IO[bytes], sink: TerminalSink | None) -> None:
        super().__init__(name=f"rommy-{name}", daemon=True)
        self.stream = name
        self.pipe = pipe
        self.sink = sink
        self.data = bytearray()
        self.error: BaseException | None = None

    def run(self) -> None:
        read = getattr(self.pipe, "read1", self.pipe.read)
        try:
            while True:
                chunk = read(_CHUNK)
                if not chunk:
                    break
                self.data += chunk
                if self.sink is not None:
                    self.sink.write(chunk, self.stream)
        except (OSError, ValueError) as exc:
            self.error = exc
        finally:
            try:
                self.pipe.close()
            except OSError as exc:
                if self.error is None:
                    self.error = exc
        logger.debug("%s drained: %d bytes", self.stream, len(self.data))


def _exit_status(returncode: int | None) -> tuple[int, str | None]:
    if returncode is None:
        return SIGNAL_EXIT_CODE, None
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return SIGNAL_EXIT_CODE, name
    return returncode, None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def run(
    invocation: Invocation,
    *,
    stream: bool = False,
    sink: TerminalSink | None = None,
    spawn: Callable[[Invocation], ProcessHandle] = popen_spawner,
    clock: Callable[[], datetime] = _utcnow,
    monotonic: Callable[[], float] = time.monotonic,
) -> RunRecord:
    """Run *invocation* to completion and return its record.

    With *stream* on, every chunk is mirrored through *sink* (a plain
    :class:`TerminalSink` when none is given) before the next read.

    Raises :class:`LaunchError` when the child cannot be started and
    :class:`CaptureError` when either pipe fails mid-run.
    """
    if stream and sink is None:
        sink = TerminalSink()
    mirror = sink if stream else None

    proc = spawn(invocation)
    started_at = clock()
    t0 = monotonic()

    readers = [
        _Reader(STDOUT, proc.stdout, mirror),
        _Reader(STDERR, proc.stderr, mirror),
    ]
    for reader in readers:
        reader.start()
    for reader in readers:
        reader.join()

    # Only after both pipes hit EOF is the exit status final.
    returncode = proc.wait()
    elapsed = monotonic() - t0

    for reader in readers:
        if reader.error is not None:
            raise CaptureError(reader.stream, reader.error)

    exit_code, signame = _exit_status(returncode)
    extra = invocation.extra
    if signame is not None:
        extra = extra + (("signal", signame),)

    logger.debug("child exited with %s after %.3fs", returncode, elapsed)
    return RunRecord(
        timestamp=started_at,
        duration_ms=max(0, round(elapsed * 1000)),
        exit_code=exit_code,
        command_text=invocation.command_text,
        stdout=bytes(readers[0].data),
        stderr=bytes(readers[1].data),
        extra=extra,
    )
