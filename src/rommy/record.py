"""Run records and the ``.rommy`` file format.

A record is written as five delimited blocks::

    <<<META>>>
    timestamp: 2025-10-22T15:30:45Z
    exit_code: 0
    duration_ms: 12
    <<<COMMAND>>>
    $ cargo test
    <<<STDOUT>>>
    <raw bytes>
    <<<STDERR>>>
    <raw bytes>
    <<<END>>>

Every block body is followed by exactly one framing newline before the next
delimiter line.  The parser strips that newline again, so captured output
round-trips byte for byte whether or not it ends in a newline.  Output that
itself contains a bare delimiter line is not escaped and may be split at the
wrong place.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from rommy.errors import (
    InvalidFieldError,
    MissingDelimiterError,
    MissingFieldError,
    ParseError,
    TruncatedInputError,
)

__all__ = [
    "SIGNAL_EXIT_CODE",
    "RunRecord",
    "serialize",
    "parse",
    "parse_all",
    "parse_file",
    "format_timestamp",
    "parse_timestamp",
]

logger = logging.getLogger(__name__)

# Exit code recorded when the child was killed by a signal or its status
# could not be determined.  Real exit statuses are always 0..255.
SIGNAL_EXIT_CODE = -1

# ---------------------------------------------------------------------------
# Delimiters
# ---------------------------------------------------------------------------

_BLOCKS: list[tuple[str, bytes]] = [
    ("META",    b"<<<META>>>"),
    ("COMMAND", b"<<<COMMAND>>>"),
    ("STDOUT",  b"<<<STDOUT>>>"),
    ("STDERR",  b"<<<STDERR>>>"),
    ("END",     b"<<<END>>>"),
]

_REQUIRED_KEYS = ("timestamp", "exit_code")
_RESERVED_KEYS = frozenset({"timestamp", "exit_code", "duration_ms"})
_COMMAND_PREFIX = b"$ "
_INT_RE = re.compile(r"^-?\d+$")

# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RunRecord:
    """Everything known about one finished command execution."""

    timestamp: datetime
    duration_ms: int
    exit_code: int
    command_text: str
    stdout: bytes = b""
    stderr: bytes = b""
    # Supplementary META lines (label, cwd, host, ...) in file order.
    extra: tuple[tuple[str, str], ...] = ()

    def __post_init__(self) -> None:
        if self.timestamp.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")
        if self.duration_ms < 0:
            raise ValueError(f"duration_ms must be non-negative, got {self.duration_ms}")
        object.__setattr__(self, "timestamp", self.timestamp.astimezone(timezone.utc))
        object.__setattr__(self, "stdout", bytes(self.stdout))
        object.__setattr__(self, "stderr", bytes(self.stderr))
        object.__setattr__(self, "extra", tuple((str(k), str(v).strip()) for k, v in self.extra))

    @property
    def status(self) -> str:
        return "ok" if self.exit_code == 0 else "error"

    def meta(self) -> dict[str, str]:
        """All META entries as they are written to disk (last one wins)."""
        out = {
            "timestamp": format_timestamp(self.timestamp),
            "exit_code": str(self.exit_code),
            "duration_ms": str(self.duration_ms),
        }
        out.update(self.extra)
        return out

    def get(self, key: str, default: str | None = None) -> str | None:
        return self.meta().get(key, default)

    def with_extra(self, *pairs: tuple[str, str]) -> RunRecord:
        """Return a copy with *pairs* appended to the supplementary META."""
        return dataclasses.replace(self, extra=self.extra + tuple(pairs))

# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def format_timestamp(ts: datetime) -> str:
    """ISO-8601 in UTC with a ``Z`` suffix; fractions only when present."""
    ts = ts.astimezone(timezone.utc)
    if ts.microsecond:
        return ts.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return ts.strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: str) -> datetime:
    """Inverse of :func:`format_timestamp`.  Naive values are taken as UTC."""
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    ts = datetime.fromisoformat(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)

# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------

def _meta_line(key: str, value: str) -> str:
    if not key or ":" in key or key != key.strip() or "\n" in key or "\r" in key:
        raise ValueError(f"invalid META key: {key!r}")
    if "\n" in value or "\r" in value:
        raise ValueError(f"META value for {key!r} must be a single line")
    return f"{key}: {value}"


def serialize(record: RunRecord) -> bytes:
    """Encode *record* in the ``.rommy`` text format."""
    for key, _ in record.extra:
        if key in _RESERVED_KEYS:
            raise ValueError(f"extra META key {key!r} shadows a core field")

    meta = "\n".join(_meta_line(k, v) for k, v in [
        ("timestamp", format_timestamp(record.timestamp)),
        ("exit_code", str(record.exit_code)),
        ("duration_ms", str(record.duration_ms)),
        *record.extra,
    ])
    command = record.command_text.encode("utf-8", "surrogateescape")

    delim = dict(_BLOCKS)
    return b"".join([
        delim["META"], b"\n", meta.encode("utf-8", "surrogateescape"), b"\n",
        delim["COMMAND"], b"\n", _COMMAND_PREFIX, command, b"\n",
        delim["STDOUT"], b"\n", record.stdout, b"\n",
        delim["STDERR"], b"\n", record.stderr, b"\n",
        delim["END"], b"\n",
    ])

# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _split_blocks(data: bytes, pos: int) -> tuple[dict[str, bytes], int]:
    """Cut one record starting at *pos* into its block bodies.

    Returns the bodies keyed by block name and the offset just past the
    record's END line.
    """
    name, token = _BLOCKS[0]
    opening = token + b"\n"
    if not data.startswith(opening, pos):
        rest = data[pos:]
        if opening.startswith(rest):
            raise TruncatedInputError(name, "input ends before the record starts")
        raise MissingDelimiterError(name, f"record does not start with {token.decode()}")

    bodies: dict[str, bytes] = {}
    cursor = pos + len(opening)
    current = name

    for i, (name, token) in enumerate(_BLOCKS[1:], start=1):
        marker = b"\n" + token + b"\n"
        idx = data.find(marker, cursor)
        after = idx + len(marker)

        if idx == -1 and name == "END" and data.endswith(marker[:-1]):
            # END as the last line of the file without its newline
            idx = len(data) - len(marker) + 1
            after = len(data)
            if idx < cursor:
                idx = -1

        if idx == -1:
            later = [t for _, t in _BLOCKS[i + 1:] if b"\n" + t + b"\n" in data[cursor:]]
            if later:
                raise MissingDelimiterError(
                    name, f"expected {token.decode()} after the {current} block")
            raise TruncatedInputError(current, f"input ends inside the {current} block")

        bodies[current] = data[cursor:idx]
        cursor = after
        current = name

    return bodies, cursor


def _parse_int(block: str, key: str, value: str) -> int:
    value = value.strip()
    if not _INT_RE.match(value):
        raise InvalidFieldError(block, f"{key} is not an integer: {value!r}")
    return int(value)


def _build(bodies: dict[str, bytes]) -> RunRecord:
    meta_text = bodies["META"].decode("utf-8", "surrogateescape")

    known: dict[str, str] = {}
    extra: list[tuple[str, str]] = []
    for line in meta_text.split("\n"):
        if not line.strip():
            continue
        key, sep, value = line.partition(":")
        if not sep:
            continue
        key, value = key.strip(), value.strip()
        if not key:
            continue
        if key in _RESERVED_KEYS:
            known[key] = value
        else:
            extra.append((key, value))

    for key in _REQUIRED_KEYS:
        if key not in known:
            raise MissingFieldError("META", f"missing required key {key!r}")

    try:
        timestamp = parse_timestamp(known["timestamp"])
    except ValueError as exc:
        raise InvalidFieldError("META", f"bad timestamp {known['timestamp']!r}") from exc

    exit_code = _parse_int("META", "exit_code", known["exit_code"])
    duration_ms = 0
    if "duration_ms" in known:
        duration_ms = _parse_int("META", "duration_ms", known["duration_ms"])
        if duration_ms < 0:
            raise InvalidFieldError("META", f"duration_ms is negative: {duration_ms}")

    command = bodies["COMMAND"]
    if not command.startswith(_COMMAND_PREFIX):
        raise InvalidFieldError("COMMAND", "command line does not start with '$ '")

    return RunRecord(
        timestamp=timestamp,
        duration_ms=duration_ms,
        exit_code=exit_code,
        command_text=command[len(_COMMAND_PREFIX):].decode("utf-8", "surrogateescape"),
        stdout=bodies["STDOUT"],
        stderr=bodies["STDERR"],
        extra=tuple(extra),
    )


def parse(data: bytes) -> RunRecord:
    """Decode a single record.  Anything after its END line is an error."""
    bodies, end = _split_blocks(data, 0)
    if end != len(data):
        raise ParseError("END", "unexpected data after the end marker")
    return _build(bodies)


def parse_all(data: bytes) -> list[RunRecord]:
    """Decode every record in *data* (files written with ``--append``)."""
    records: list[RunRecord] = []
    pos = 0
    while True:
        bodies, pos = _split_blocks(data, pos)
        records.append(_build(bodies))
        if pos >= len(data):
            return records


def parse_file(path: Path | str) -> list[RunRecord]:
    path = Path(path)
    records = parse_all(path.read_bytes())
    logger.debug("parsed %d record(s) from %s", len(records), path)
    return records
