"""End-to-end tests for the rommy CLI, driven through main()."""

import json
import shutil
import sys

import pytest
from rommy.cli import main
from rommy.record import parse_file, serialize

PY = sys.executable

pytestmark = pytest.mark.skipif(shutil.which("bash") is None, reason="needs bash")


@pytest.fixture(autouse=True)
def _env(tmp_path, monkeypatch):
    monkeypatch.setenv("ROMMY_ROOT", str(tmp_path / "root"))
    monkeypatch.setenv("NO_COLOR", "1")
    monkeypatch.delenv("ROMMY_SHELL", raising=False)
    monkeypatch.delenv("ROMMY_COLOR", raising=False)
    monkeypatch.delenv("ROMMY_DEBUG", raising=False)


def _main(*args) -> int:
    with pytest.raises(SystemExit) as exc:
        main(list(args))
    return exc.value.code


def _py(code):
    return ["--", PY, "-c", code]


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------

def test_run_writes_record(tmp_path, capsys):
    out = tmp_path / "run.rommy"
    code = "import sys; sys.stdout.write('out1'); sys.stderr.write('err1')"
    assert _main("run", "--no-stream", "--out", str(out), *_py(code)) == 0

    [rec] = parse_file(out)
    assert rec.stdout == b"out1"
    assert rec.stderr == b"err1"
    assert rec.exit_code == 0
    assert rec.command_text.startswith(PY) or PY in rec.command_text
    meta = rec.meta()
    assert meta["status"] == "ok"
    assert meta["output_path"] == str(out)
    assert "rommy_version" in meta and "cwd" in meta and "end_ts" in meta

    captured = capsys.readouterr()
    assert "out1" not in captured.out
    assert f"Wrote {out}" in captured.err


def test_run_propagates_exit_code(tmp_path):
    out = tmp_path / "fail.rommy"
    assert _main("run", "--no-stream", "--out", str(out), *_py("import sys; sys.exit(3)")) == 3
    [rec] = parse_file(out)
    assert rec.exit_code == 3
    assert rec.get("status") == "error"


def test_run_auto_path(tmp_path):
    assert _main("run", "--no-stream", *_py("print('auto')")) == 0
    files = list((tmp_path / "root").rglob("*.rommy"))
    assert len(files) == 1
    rel = files[0].relative_to(tmp_path / "root")
    assert len(rel.parts) == 4
    assert parse_file(files[0])[0].stdout == b"auto\n"


def test_run_append(tmp_path):
    out = tmp_path / "runs.rommy"
    assert _main("run", "--no-stream", "--out", str(out), *_py("print('first')")) == 0
    assert _main("run", "--no-stream", "--append", "--out", str(out), *_py("print('second')")) == 0
    first, second = parse_file(out)
    assert first.stdout == b"first\n"
    assert second.stdout == b"second\n"


def test_run_overwrites_without_append(tmp_path):
    out = tmp_path / "runs.rommy"
    _main("run", "--no-stream", "--out", str(out), *_py("print('first')"))
    _main("run", "--no-stream", "--out", str(out), *_py("print('second')"))
    assert [r.stdout for r in parse_file(out)] == [b"second\n"]


def test_run_label_env_cwd(tmp_path):
    out = tmp_path / "env.rommy"
    workdir = tmp_path / "work"
    workdir.mkdir()
    code = "import os; print(os.environ['ROMMY_X']); print(os.path.basename(os.getcwd()))"
    assert _main(
        "run", "--no-stream", "--out", str(out), "--label", "nightly\nbuild",
        "--env", "ROMMY_X=42", "--env", "malformed", "--cwd", str(workdir), *_py(code),
    ) == 0
    [rec] = parse_file(out)
    assert rec.stdout == b"42\nwork\n"
    assert rec.get("label") == "nightly build"
    assert rec.get("cwd") == str(workdir.resolve())


def test_run_script(tmp_path):
    script = tmp_path / "job.sh"
    script.write_text("#!/usr/bin/env bash\necho from-script\necho warn >&2\n")
    out = tmp_path / "script.rommy"
    assert _main("run", "--no-stream", "--out", str(out), "--script", str(script)) == 0
    [rec] = parse_file(out)
    assert rec.stdout == b"from-script\n"
    assert rec.stderr == b"warn\n"
    assert rec.command_text == script.read_text()
    assert rec.get("script_path") == str(script.resolve())


def test_run_script_auto_name(tmp_path):
    script = tmp_path / "job.sh"
    script.write_text("#!/usr/bin/env bash\necho hi\n")
    assert _main("run", "--no-stream", "--script", str(script)) == 0
    [path] = (tmp_path / "root").rglob("*.rommy")
    assert path.name.endswith(".bash_script.rommy")


def test_run_streams_with_color(tmp_path, capsys, monkeypatch):
    monkeypatch.delenv("NO_COLOR")
    out = tmp_path / "live.rommy"
    code = "import sys; sys.stdout.write('out1'); sys.stdout.flush(); sys.stderr.write('err1')"
    assert _main("run", "--color", "always", "--out", str(out), *_py(code)) == 0
    captured = capsys.readouterr()
    assert "out1" in captured.out
    assert "\033[33merr1\033[0m" in captured.err
    # the record never contains escape codes
    [rec] = parse_file(out)
    assert rec.stderr == b"err1"


def test_run_script_and_command_conflict(tmp_path, capsys):
    assert _main("run", "--script", "x.sh", "--", "ls") == 1
    assert "cannot be combined" in capsys.readouterr().err


def test_run_launch_error_writes_nothing(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("ROMMY_SHELL", str(tmp_path / "no-such-shell"))
    out = tmp_path / "never.rommy"
    assert _main("run", "--no-stream", "--out", str(out), "--", "true") == 1
    assert not out.exists()
    assert "rommy: error: cannot start" in capsys.readouterr().err


def test_run_path_error_before_spawn(tmp_path, capsys):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    marker = tmp_path / "ran"
    code = f"open({str(marker)!r}, 'w').close()"
    assert _main("run", "--no-stream", "--out", str(blocker / "sub" / "o.rommy"), *_py(code)) == 1
    assert not marker.exists()
    assert "rommy: error" in capsys.readouterr().err


def test_run_missing_cwd(tmp_path):
    assert _main("run", "--no-stream", "--cwd", str(tmp_path / "gone"), "--", "true") == 1

# ---------------------------------------------------------------------------
# validate
# ---------------------------------------------------------------------------

def _make_record(path, text="hello"):
    assert _main("run", "--no-stream", "--out", str(path), *_py(f"print({text!r})")) == 0


def test_validate_ok(tmp_path, capsys):
    good = tmp_path / "good.rommy"
    _make_record(good)
    capsys.readouterr()
    main(["validate", str(good)])
    out = capsys.readouterr().out
    assert f"OK {good} (1 record(s))" in out
    assert "Validated 1 file(s)." in out


def test_validate_directory_with_bad_file(tmp_path, capsys):
    tree = tmp_path / "tree"
    (tree / "nested").mkdir(parents=True)
    _make_record(tree / "nested" / "good.rommy")
    (tree / "bad.ROMMY").write_bytes(b"<<<META>>>\nexit_code: 0\n")
    (tree / "ignored.txt").write_text("not a record")
    capsys.readouterr()

    assert _main("validate", str(tree)) == 1
    captured = capsys.readouterr()
    assert "OK " in captured.out and "good.rommy" in captured.out
    assert "ERR " in captured.err and "bad.ROMMY" in captured.err
    assert "1 file(s) invalid, 1 file(s) valid" in captured.err
    assert "ignored.txt" not in captured.out + captured.err


def test_validate_nothing_found(tmp_path, capsys):
    empty = tmp_path / "empty"
    empty.mkdir()
    assert _main("validate", str(empty)) == 1
    assert "no files found" in capsys.readouterr().err


def test_validate_missing_path(tmp_path):
    assert _main("validate", str(tmp_path / "nope")) == 1

# ---------------------------------------------------------------------------
# show
# ---------------------------------------------------------------------------

def test_show_text(tmp_path, capsys):
    path = tmp_path / "show.rommy"
    _make_record(path, "show-text")
    capsys.readouterr()
    main(["show", str(path)])
    out = capsys.readouterr().out
    assert "=== Record 1 ===" in out
    assert "<<<META>>>" in out
    assert "show-text" in out


def test_show_json(tmp_path, capsys):
    path = tmp_path / "show.rommy"
    _make_record(path, "show-json")
    capsys.readouterr()
    main(["show", "--format", "json", str(path)])
    doc = json.loads(capsys.readouterr().out)
    assert doc["path"] == str(path)
    assert len(doc["records"]) == 1
    assert doc["records"][0]["record"] == 1
    assert doc["records"][0]["stdout"] == "show-json\n"
    assert doc["records"][0]["meta"]["exit_code"] == "0"


def test_show_selects_record(tmp_path, capsys):
    path = tmp_path / "two.rommy"
    _make_record(path, "first-show")
    assert _main("run", "--no-stream", "--append", "--out", str(path),
                 *_py("print('second-show')")) == 0
    capsys.readouterr()
    main(["show", "--record", "2", str(path)])
    out = capsys.readouterr().out
    assert "=== Record 2 ===" in out
    assert "second-show" in out
    assert "first-show" not in out


def test_show_record_out_of_range(tmp_path, capsys):
    path = tmp_path / "one.rommy"
    _make_record(path)
    capsys.readouterr()
    assert _main("show", "--record", "2", str(path)) == 1
    assert "out of range" in capsys.readouterr().err


def test_show_output_reparses(tmp_path, capsysbinary):
    path = tmp_path / "one.rommy"
    _make_record(path, "again")
    capsysbinary.readouterr()
    main(["show", str(path)])
    raw = capsysbinary.readouterr().out
    body = raw.split(b"\n", 1)[1]
    assert serialize(parse_file(path)[0]) == body

# ---------------------------------------------------------------------------
# Top level
# ---------------------------------------------------------------------------

def test_version(capsys):
    assert _main("--version") == 0
    assert capsys.readouterr().out.startswith("rommy ")


def test_help(capsys):
    assert _main("--help") == 0
    assert "Usage:" in capsys.readouterr().out


def test_no_args_prints_usage(capsys):
    assert _main() == 0
    assert "rommy run" in capsys.readouterr().out


def test_unknown_subcommand(capsys):
    assert _main("frobnicate") == 2
    assert "unknown subcommand" in capsys.readouterr().err


def test_bad_run_option(capsys):
    assert _main("run", "--color", "sometimes", "ls") == 2


# ---------------------------------------------------------------------------
# Awkward input
# ---------------------------------------------------------------------------

def test_run_non_utf8_label(tmp_path, capfd):
    out = tmp_path / "label.rommy"
    assert _main("run", "--no-stream", "--label", "caf\udce9", "--out", str(out),
                 *_py("pass")) == 0
    assert b"label: caf\xe9\n" in out.read_bytes()
    [rec] = parse_file(out)
    assert rec.get("label") == "caf\udce9"
    capfd.readouterr()
    main(["show", str(out)])
    assert "=== Record 1 ===" in capfd.readouterr().out


def test_show_file_with_keyless_meta_line(tmp_path, capsys):
    good = tmp_path / "good.rommy"
    _make_record(good, "orphaned")
    edited = tmp_path / "edited.rommy"
    edited.write_bytes(good.read_bytes().replace(b"exit_code: 0\n", b"exit_code: 0\n: orphan\n", 1))
    capsys.readouterr()
    main(["validate", str(edited)])
    main(["show", str(edited)])
    out = capsys.readouterr().out
    assert "orphaned" in out
    assert ": orphan" not in out


def test_run_script_without_shebang_auto_name(tmp_path):
    script = tmp_path / "job.sh"
    script.write_text("set -e\necho hi\n")
    assert _main("run", "--no-stream", "--script", str(script)) == 0
    [path] = (tmp_path / "root").rglob("*.rommy")
    assert path.name.endswith(".bash_script.rommy")
    [rec] = parse_file(path)
    assert rec.command_text == "set -e\necho hi\n"
