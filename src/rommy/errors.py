"""Exception types raised by rommy.

Library code raises these; only the CLI entry point turns them into
messages and exit codes.
"""

from __future__ import annotations

__all__ = [
    "RommyError",
    "LaunchError",
    "CaptureError",
    "PathError",
    "ScratchError",
    "ParseError",
    "MissingDelimiterError",
    "MissingFieldError",
    "InvalidFieldError",
    "TruncatedInputError",
]


class RommyError(Exception):
    """Base class for every error rommy reports to its caller."""


class LaunchError(RommyError):
    """The child process could not be started."""


class CaptureError(RommyError):
    """Reading one of the child's output pipes failed mid-run."""

    def __init__(self, stream: str, cause: BaseException) -> None:
        super().__init__(f"failed reading {stream}: {cause}")
        self.stream = stream
        self.cause = cause


class PathError(RommyError):
    """The output location cannot be created or written."""


class ScratchError(RommyError):
    """The scratch-script editor workflow did not produce a script."""


class ParseError(RommyError):
    """A persisted record is malformed.

    ``block`` names the block that failed: META, COMMAND, STDOUT, STDERR
    or END.
    """

    def __init__(self, block: str, message: str) -> None:
        super().__init__(f"{block} block: {message}")
        self.block = block


class MissingDelimiterError(ParseError):
    """An expected block delimiter line is absent."""


class MissingFieldError(ParseError):
    """A required META key is absent."""


class InvalidFieldError(ParseError):
    """A field is present but its value cannot be interpreted."""


class TruncatedInputError(ParseError):
    """The input ends before the record is complete."""
