#!/usr/bin/env python3
"""rommy — run a command, watch it live, keep the record.

Runs a command or bash script, mirrors its stdout/stderr to the terminal
while capturing both, and saves a structured ``.rommy`` record under a
date-based directory tree.
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import shlex
import socket
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

from rommy import capture
from rommy.capture import ColorChoice, TerminalSink, color_enabled
from rommy.config import Settings
from rommy.errors import ParseError, RommyError
from rommy.outpath import EXTENSION, prepare_output_dir, resolve_path
from rommy.record import SIGNAL_EXIT_CODE, RunRecord, format_timestamp, parse_file, serialize
from rommy.scratch import launch_editor_and_get_script
from rommy.store import write_record

__all__ = ["main"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Version
# ---------------------------------------------------------------------------

def _get_version() -> str:
    try:
        from importlib.metadata import PackageNotFoundError, version
        return version("rommy")
    except PackageNotFoundError:
        from rommy import __version__
        return __version__

# ---------------------------------------------------------------------------
# Run helpers
# ---------------------------------------------------------------------------

def _build_env(pairs: list[str]) -> dict[str, str] | None:
    """Overlay KEY=VALUE pairs on the current environment."""
    if not pairs:
        return None
    env = dict(os.environ)
    for kv in pairs:
        key, sep, value = kv.partition("=")
        if not sep or not key:
            print(f"rommy: warning: ignoring malformed --env '{kv}', expected KEY=VALUE",
                  file=sys.stderr)
            continue
        env[key] = value
    return env


def _who() -> tuple[str | None, str | None]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = None
    try:
        host = socket.gethostname() or None
    except OSError:
        host = None
    return user, host


def _run_meta(record: RunRecord, *, label: str, cwd: Path, out: Path) -> list[tuple[str, str]]:
    """Supplementary META lines written after the core fields."""
    user, host = _who()
    end = record.timestamp + timedelta(milliseconds=record.duration_ms)
    meta = [("rommy_version", _get_version())]
    if label:
        meta.append(("label", " ".join(label.split())))
    meta.append(("cwd", str(cwd)))
    if user:
        meta.append(("user", user))
    if host:
        meta.append(("host", host))
    meta += [
        ("end_ts", format_timestamp(end)),
        ("status", record.status),
        ("output_path", str(out)),
    ]
    return meta

# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------

def _cmd_run(args: list[str]) -> None:
    """Run a command or script and save its record."""
    ns = _parse(_RUN_PARSER, args)

    settings = Settings.from_env()
    choice = ColorChoice(ns.color) if ns.color else settings.color
    sink = TerminalSink(colors=color_enabled(choice))

    cmd: list[str] = ns.command
    if cmd and cmd[0] == "--":
        cmd = cmd[1:]
    if ns.script and cmd:
        raise RommyError("--script cannot be combined with a command")

    cwd = Path(ns.cwd or Path.cwd()).resolve()
    if not cwd.is_dir():
        raise RommyError(f"working directory not found: {cwd}")
    options = {"cwd": cwd, "env": _build_env(ns.env), "stdin": ns.stdin}

    if ns.script:
        inv = capture.script_invocation(ns.script, settings.shell, **options)
    elif cmd:
        inv = capture.shell_invocation(shlex.join(cmd), settings.shell, **options)
    else:
        script = launch_editor_and_get_script()
        inv = capture.script_invocation(script, settings.shell, **options)

    if ns.out:
        outfile = Path(ns.out).expanduser().absolute()
    else:
        label = inv.command_text
        if "script_path" in dict(inv.extra):
            label = f"#!/usr/bin/env bash\n{label}"
        outfile = resolve_path(settings.root, datetime.now(), label)

    # Fail before spawning if the record could not be saved.
    prepare_output_dir(outfile)

    stream = settings.stream and not ns.no_stream
    record = capture.run(inv, stream=stream, sink=sink)
    record = record.with_extra(*_run_meta(record, label=ns.label, cwd=cwd, out=outfile))

    write_record(outfile, serialize(record), append=ns.append)
    sink.note(f"Wrote {outfile}")

    if record.exit_code == SIGNAL_EXIT_CODE:
        sys.exit(1)
    sys.exit(record.exit_code)


def _collect_rommy_files(path: Path, out: list[Path]) -> None:
    if path.is_file():
        out.append(path)
    elif path.is_dir():
        out.extend(
            p for p in path.rglob("*")
            if p.is_file() and p.suffix.lower() == EXTENSION
        )
    elif path.exists():
        raise RommyError(f"unsupported path type: {path}")
    else:
        raise RommyError(f"no such file or directory: {path}")


def _cmd_validate(args: list[str]) -> None:
    """Parse every record file under the given paths."""
    ns = _parse(_VALIDATE_PARSER, args)

    files: list[Path] = []
    for p in ns.paths:
        _collect_rommy_files(Path(p), files)
    files = sorted(set(files))
    if not files:
        raise RommyError("no files found to validate")

    ok_count = err_count = 0
    for f in files:
        try:
            records = parse_file(f)
        except (ParseError, OSError) as exc:
            print(f"ERR {f}: {exc}", file=sys.stderr)
            err_count += 1
            continue
        print(f"OK {f} ({len(records)} record(s))")
        ok_count += 1

    if err_count:
        raise RommyError(
            f"validation failed: {err_count} file(s) invalid, {ok_count} file(s) valid"
        )
    print(f"Validated {ok_count} file(s).")


def _record_json(index: int, record: RunRecord) -> dict:
    return {
        "record": index,
        "meta": record.meta(),
        "command": record.command_text,
        "stdout": record.stdout.decode("utf-8", "replace"),
        "stderr": record.stderr.decode("utf-8", "replace"),
    }


def _cmd_show(args: list[str]) -> None:
    """Print the records of one file, as text or JSON."""
    ns = _parse(_SHOW_PARSER, args)

    try:
        records = parse_file(ns.path)
    except OSError as exc:
        raise RommyError(f"cannot read {ns.path}: {exc.strerror or exc}") from exc

    selected = list(enumerate(records, start=1))
    if ns.record is not None:
        if not 1 <= ns.record <= len(records):
            raise RommyError(
                f"record {ns.record} out of range (file has {len(records)} record(s))"
            )
        selected = [selected[ns.record - 1]]

    if ns.format == "json":
        doc = {"path": ns.path, "records": [_record_json(i, r) for i, r in selected]}
        print(json.dumps(doc, indent=2))
        return

    out = sys.stdout.buffer
    for i, rec in selected:
        out.write(f"=== Record {i} ===\n".encode())
        out.write(serialize(rec))
    out.flush()

# ---------------------------------------------------------------------------
# Subcommand dispatch table
# ---------------------------------------------------------------------------

_DISPATCH: dict[str, Callable[[list[str]], None]] = {
    "run":      _cmd_run,
    "validate": _cmd_validate,
    "show":     _cmd_show,
}

# ---------------------------------------------------------------------------
# Argument parsers
# ---------------------------------------------------------------------------

def _build_run_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="rommy run", add_help=False, allow_abbrev=False)
    p.add_argument("--out", default=None, metavar="FILE",
                   help="Output file (default: time-based path under the rommy root)")
    p.add_argument("--cwd", default=None, metavar="DIR", help="Working directory")
    p.add_argument("--env", action="append", default=[], metavar="KEY=VALUE",
                   help="Extra environment variable (repeatable)")
    p.add_argument("--append", action="store_true", default=False,
                   help="Append the record instead of overwriting")
    p.add_argument("--label", default="", help="Label stored in META")
    p.add_argument("--script", default=None, metavar="SCRIPT.sh",
                   help="Run a bash script file instead of a command")
    p.add_argument("--no-stream", dest="no_stream", action="store_true", default=False,
                   help="Do not mirror output to the terminal")
    p.add_argument("--stdin", action="store_true", default=False,
                   help="Connect the command to this terminal's stdin")
    p.add_argument("--color", choices=[c.value for c in ColorChoice], default=None,
                   help="Color mirrored stderr: auto|always|never")
    p.add_argument("command", nargs=argparse.REMAINDER)
    return p


def _build_validate_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="rommy validate", add_help=False)
    p.add_argument("paths", nargs="+", metavar="PATH")
    return p


def _build_show_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="rommy show", add_help=False)
    p.add_argument("--format", choices=["text", "json"], default="text")
    p.add_argument("--record", type=int, default=None, metavar="N")
    p.add_argument("path", metavar="FILE")
    return p


# Module-level parser instances (importable for tests)
_RUN_PARSER = _build_run_parser()
_VALIDATE_PARSER = _build_validate_parser()
_SHOW_PARSER = _build_show_parser()


def _parse(parser: argparse.ArgumentParser, args: list[str]) -> argparse.Namespace:
    if args[:1] in (["-h"], ["--help"]):
        print(USAGE)
        sys.exit(0)
    try:
        return parser.parse_args(args)
    except SystemExit:
        print(USAGE, file=sys.stderr)
        sys.exit(2)

# ---------------------------------------------------------------------------
# Usage string
# ---------------------------------------------------------------------------

USAGE = """\
rommy — run a command, watch it live, keep the record.

Usage:
  rommy [-v] run [options] [-- <command> [args...]]
  rommy validate <path>...
  rommy show [--format text|json] [--record N] <file>
  rommy --help | --version

Run options:
  --out <file>          Output file (default: <root>/YYYY/MM/DD/HHMMSS.<cmd>.rommy)
  --cwd <dir>           Working directory for the command
  --env KEY=VALUE       Extra environment variable (repeatable)
  --append              Append the record to --out instead of overwriting
  --label <text>        Label stored in the META block
  --script <file>       Run a bash script (bash -Eeuo pipefail) instead
  --no-stream           Capture only; do not mirror output live
  --stdin               Connect the command to this terminal's stdin
  --color <when>        auto | always | never  (stderr is shown in yellow)

  With neither a command nor --script, $EDITOR opens a scratch script.

Environment:
  ROMMY_ROOT=path       Root of automatic output paths
                        (default: $XDG_STATE_HOME/rommy or ~/.local/state/rommy)
  ROMMY_SHELL=bash      Shell used to run commands and scripts
  ROMMY_COLOR=auto      Default for --color
  ROMMY_DEBUG=1         Verbose diagnostics (same as -v)
  NO_COLOR, CLICOLOR, CLICOLOR_FORCE are honoured.

Examples:
  rommy run -- cargo test
  rommy run --no-stream --out build.rommy -- make -j8
  rommy run --append --out runs.rommy -- pytest -q
  rommy run --script ./deploy.sh
  rommy validate ~/.local/state/rommy
  rommy show --format json --record 2 runs.rommy
"""

# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def _setup_logging(verbose: bool) -> None:
    debug = os.environ.get("ROMMY_DEBUG", "").strip().lower()
    if debug and debug not in ("0", "false", "no"):
        verbose = True
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="rommy: %(levelname)s: %(name)s: %(message)s",
    )


def main(argv: list[str] | None = None) -> None:
    try:
        _main(argv)
    except KeyboardInterrupt:
        sys.exit(130)


def _main(argv: list[str] | None = None) -> None:
    raw = list(argv) if argv is not None else sys.argv[1:]

    verbose = False
    while raw and raw[0] in ("-v", "--verbose"):
        verbose = True
        raw = raw[1:]
    _setup_logging(verbose)

    if not raw or raw[0] in ("-h", "--help"):
        print(USAGE)
        sys.exit(0)

    if raw[0] in ("-V", "--version"):
        print(f"rommy {_get_version()}")
        sys.exit(0)

    handler = _DISPATCH.get(raw[0])
    if handler is None:
        print(f"rommy: error: unknown subcommand '{raw[0]}'\n", file=sys.stderr)
        print(USAGE, file=sys.stderr)
        sys.exit(2)

    try:
        handler(raw[1:])
    except RommyError as exc:
        print(f"rommy: error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
