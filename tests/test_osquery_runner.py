import os
import subprocess
import sys

import pytest

import osquery_runner
from osquery_runner import (
    LINUX,
    MACOS,
    WINDOWS,
    BinaryNotFound,
    ExecutionFailed,
    MalformedOutput,
    OsqueryRunner,
    QueryError,
    candidate_paths,
    current_platform,
    locate_osquery_binary,
)


def _completed(stdout=b"", stderr=b"", returncode=0):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def test_locate_returns_first_existing_candidate() -> None:
    present = {"/usr/local/bin/osqueryi", "/opt/osquery/bin/osqueryi"}
    assert locate_osquery_binary(LINUX, exists=present.__contains__) == "/usr/local/bin/osqueryi"


def test_locate_respects_platform_order() -> None:
    present = {"/usr/bin/osqueryi", "/usr/local/bin/osqueryi"}
    assert locate_osquery_binary(LINUX, exists=present.__contains__) == "/usr/bin/osqueryi"
    assert locate_osquery_binary(MACOS, exists=present.__contains__) == "/usr/local/bin/osqueryi"


def test_locate_falls_back_to_bare_name() -> None:
    never = lambda _path: False
    assert locate_osquery_binary(LINUX, exists=never) == "osqueryi"
    assert locate_osquery_binary(MACOS, exists=never) == "osqueryi"
    assert locate_osquery_binary(WINDOWS, exists=never) == "osqueryi.exe"
    assert locate_osquery_binary("plan9", exists=never) == "osqueryi"


def test_locate_windows_candidates() -> None:
    paths = candidate_paths(WINDOWS)
    assert paths[0] == r"C:\Program Files\osquery\osqueryi.exe"
    assert locate_osquery_binary(WINDOWS, exists=lambda p: p == paths[1]) == paths[1]


def test_locate_env_override_wins(monkeypatch) -> None:
    monkeypatch.setenv("HOST_SNAPSHOT_OSQUERYI", "/custom/osqueryi")
    assert locate_osquery_binary(LINUX, exists=lambda _p: True) == "/custom/osqueryi"


def test_current_platform_maps_system_names(monkeypatch) -> None:
    for system, tag in (("Windows", WINDOWS), ("Linux", LINUX), ("Darwin", MACOS), ("FreeBSD", "freebsd")):
        monkeypatch.setattr(osquery_runner.platform, "system", lambda s=system: s)
        assert current_platform() == tag


def test_run_passes_json_flag_and_query(monkeypatch) -> None:
    seen = {}

    def fake_run(cmd, **kwargs):
        seen["cmd"] = cmd
        seen["kwargs"] = kwargs
        return _completed(stdout=b'[{"name": "Ubuntu", "version": "22.04"}]')

    monkeypatch.setattr(osquery_runner.subprocess, "run", fake_run)
    values = OsqueryRunner("/usr/bin/osqueryi").run("SELECT * FROM os_version;")

    assert seen["cmd"] == ["/usr/bin/osqueryi", "--json", "SELECT * FROM os_version;"]
    assert seen["kwargs"]["capture_output"] is True
    assert values == [{"name": "Ubuntu", "version": "22.04"}]


def test_run_nonzero_exit_raises_execution_failed(monkeypatch) -> None:
    monkeypatch.setattr(
        osquery_runner.subprocess,
        "run",
        lambda cmd, **kw: _completed(stderr=b"Error: no such table: launchd\n", returncode=1),
    )
    with pytest.raises(ExecutionFailed) as exc:
        OsqueryRunner("osqueryi").run("SELECT * FROM launchd;")
    assert "no such table" in exc.value.stderr
    assert exc.value.returncode == 1


def test_run_spawn_failure_raises_binary_not_found(monkeypatch) -> None:
    def missing(cmd, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", cmd[0])

    monkeypatch.setattr(osquery_runner.subprocess, "run", missing)
    with pytest.raises(BinaryNotFound) as exc:
        OsqueryRunner("/nope/osqueryi").run("SELECT * FROM users;")
    assert exc.value.attempted_path == "/nope/osqueryi"
    assert isinstance(exc.value, QueryError)


def test_run_invalid_json_raises_malformed_output(monkeypatch) -> None:
    monkeypatch.setattr(osquery_runner.subprocess, "run", lambda cmd, **kw: _completed(stdout=b"not-json"))
    with pytest.raises(MalformedOutput) as exc:
        OsqueryRunner("osqueryi").run("SELECT * FROM processes;")
    assert exc.value.raw_excerpt == "not-json"


def test_run_non_array_json_raises_malformed_output(monkeypatch) -> None:
    monkeypatch.setattr(osquery_runner.subprocess, "run", lambda cmd, **kw: _completed(stdout=b'{"pid": 1}'))
    with pytest.raises(MalformedOutput):
        OsqueryRunner("osqueryi").run("SELECT * FROM processes;")


def test_run_excerpt_is_truncated(monkeypatch) -> None:
    monkeypatch.setattr(osquery_runner.subprocess, "run", lambda cmd, **kw: _completed(stdout=b"x" * 5000))
    with pytest.raises(MalformedOutput) as exc:
        OsqueryRunner("osqueryi").run("SELECT * FROM processes;")
    assert len(exc.value.raw_excerpt) <= 201


@pytest.mark.parametrize("stdout", [b"", b"\n", b"  \t\n"])
def test_run_empty_output_raises_malformed_output(monkeypatch, stdout) -> None:
    monkeypatch.setattr(osquery_runner.subprocess, "run", lambda cmd, **kw: _completed(stdout=stdout))
    with pytest.raises(MalformedOutput) as exc:
        OsqueryRunner("osqueryi").run("SELECT * FROM crontab;")
    assert exc.value.raw_excerpt == ""
    assert exc.value.reason == "empty output"


def test_run_deeply_nested_output_raises_malformed_output(monkeypatch) -> None:
    monkeypatch.setattr(osquery_runner.subprocess, "run", lambda cmd, **kw: _completed(stdout=b"[" * 100000))
    with pytest.raises(MalformedOutput) as exc:
        OsqueryRunner("osqueryi").run("SELECT * FROM processes;")
    assert exc.value.raw_excerpt.startswith("[[[")


def test_collect_survives_deeply_nested_output(monkeypatch) -> None:
    from snapshot_collector import collect

    monkeypatch.setattr(osquery_runner.subprocess, "run", lambda cmd, **kw: _completed(stdout=b"[" * 100000))
    snapshot = collect(LINUX, OsqueryRunner("osqueryi"))
    assert snapshot.is_empty()


def test_run_does_not_parse_rows(monkeypatch) -> None:
    monkeypatch.setattr(osquery_runner.subprocess, "run", lambda cmd, **kw: _completed(stdout=b'[1, "two", {"pid": "3"}]'))
    assert OsqueryRunner("osqueryi").run("SELECT * FROM processes;") == [1, "two", {"pid": "3"}]


@pytest.mark.skipif(sys.platform == "win32", reason="needs an executable script")
def test_run_against_real_executable(tmp_path) -> None:
    script = tmp_path / "osqueryi"
    script.write_text(
        f"#!{sys.executable}\n"
        "import json, sys\n"
        "assert sys.argv[1] == '--json'\n"
        "if 'missing' in sys.argv[2]:\n"
        "    sys.stderr.write('no such table: missing\\n')\n"
        "    sys.exit(1)\n"
        "print(json.dumps([{'query': sys.argv[2]}]))\n"
    )
    script.chmod(0o755)

    runner = OsqueryRunner(str(script))
    assert runner.run("SELECT * FROM users;") == [{"query": "SELECT * FROM users;"}]
    with pytest.raises(ExecutionFailed):
        runner.run("SELECT * FROM missing;")


def test_run_against_absent_executable(tmp_path) -> None:
    with pytest.raises(BinaryNotFound):
        OsqueryRunner(str(tmp_path / "does-not-exist")).run("SELECT * FROM users;")


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
def test_run_against_non_executable_file(tmp_path) -> None:
    script = tmp_path / "osqueryi"
    script.write_text("not a program\n")
    os.chmod(script, 0o644)
    with pytest.raises(BinaryNotFound):
        OsqueryRunner(str(script)).run("SELECT * FROM users;")
