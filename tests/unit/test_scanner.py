from __future__ import annotations

import asyncio
import json
import os
import signal
import sys
import time
from pathlib import Path

import pytest

from semgate.constants import Severity
from semgate.errors import ScanExecutionError, ScannerNotFoundError, ScanTimeoutError
from semgate.logging import ScanLogger
from semgate.models import ScanOptions
from semgate.scanner import (
    RawScanOutput,
    ScannerClient,
    normalize_severity,
    parse_finding,
    recover_scan_results,
    scanner_error_types,
)


def _result(rule: str = "python.eval", severity: str = "ERROR", path: str = "app.py", line: int = 3) -> dict:
    return {
        "check_id": rule,
        "path": path,
        "start": {"line": line, "col": 1},
        "end": {"line": line, "col": 20},
        "extra": {
            "severity": severity,
            "message": "Detected eval",
            "lines": "eval(x)",
            "metadata": {"cwe": ["CWE-95"], "owasp": "A03:2021", "shortlink": "https://sg.run/x"},
        },
    }


def _document(*results: dict) -> str:
    return json.dumps({"results": list(results), "errors": []})


def _raw(tmp_path: Path, stdout: str = "", stdout_truncated: bool = False, artifact: str | None = None) -> RawScanOutput:
    artifact_path = tmp_path / "results.json"
    if artifact is not None:
        artifact_path.write_text(artifact, encoding="utf-8")
    return RawScanOutput(
        returncode=1,
        stdout=stdout,
        stderr="",
        stdout_truncated=stdout_truncated,
        report="",
        report_truncated=False,
        artifact_path=artifact_path,
    )


class FakeStream:
    def __init__(self, data: bytes) -> None:
        self._data = data

    async def read(self, n: int = -1) -> bytes:
        chunk, self._data = self._data[:n], self._data[n:]
        return chunk


class FakeProc:
    def __init__(self, stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0) -> None:
        self.stdout = FakeStream(stdout)
        self.stderr = FakeStream(stderr)
        self._exit = returncode
        self.returncode = None

    async def wait(self) -> int:
        self.returncode = self._exit
        return self.returncode

    def kill(self) -> None:
        self.returncode = -9


class HangingStream:
    async def read(self, n: int = -1) -> bytes:
        await asyncio.sleep(10)
        return b""


class HangingProc:
    pid = 424242

    def __init__(self) -> None:
        self.stdout = HangingStream()
        self.stderr = HangingStream()
        self.returncode = None
        self.killed = False

    async def wait(self) -> int:
        while self.returncode is None:
            await asyncio.sleep(0.001)
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9


def _fake_exec(proc, report: str = "", calls: list | None = None):
    async def fake_create(*args, **kwargs):  # noqa: ANN001
        if calls is not None:
            calls.append(list(args))
        for arg in args:
            if arg.startswith("--text-output="):
                Path(arg.split("=", 1)[1]).write_text(report, encoding="utf-8")
        return proc

    return fake_create


def test_build_command_separates_structured_and_text_output(tmp_path: Path) -> None:
    options = ScanOptions(severity=(Severity.ERROR,), exclude_paths=("node_modules",), timeout=300)
    cmd = ScannerClient.build_command(
        "semgrep", tmp_path / "repo", options, tmp_path / "out.json", tmp_path / "out.txt"
    )
    assert cmd[:4] == ["semgrep", "scan", "--config", "auto"]
    assert "--json" in cmd
    assert f"--json-output={tmp_path / 'out.json'}" in cmd
    assert f"--text-output={tmp_path / 'out.txt'}" in cmd
    assert "--no-git-ignore" in cmd
    assert cmd[cmd.index("--timeout") + 1] == "300"
    assert cmd[cmd.index("--severity") + 1] == "ERROR"
    assert cmd[cmd.index("--exclude") + 1] == "node_modules"
    assert cmd[-1] == str(tmp_path / "repo")


def test_recover_prefers_stdout(tmp_path: Path) -> None:
    raw = _raw(tmp_path, stdout=_document(_result()), artifact=_document(_result(), _result()))
    recovered, failures = recover_scan_results(raw, 1024 * 1024)
    assert recovered is not None
    assert recovered.source == "stdout"
    assert recovered.partial is False
    assert len(recovered.document["results"]) == 1
    assert failures == []


def test_recover_salvages_partial_stdout(tmp_path: Path) -> None:
    complete = _document(_result("a"), _result("b"))
    cut = complete[: complete.index('"check_id": "b"') + 5]
    recovered, failures = recover_scan_results(_raw(tmp_path, stdout=cut, stdout_truncated=True), 1024)
    assert recovered is not None
    assert recovered.source == "partial"
    assert recovered.partial is True
    assert [r["check_id"] for r in recovered.document["results"]] == ["a"]
    assert failures


def test_recover_falls_back_to_artifact(tmp_path: Path) -> None:
    raw = _raw(tmp_path, stdout="Fatal: could not start", artifact=_document(_result()))
    recovered, failures = recover_scan_results(raw, 1024 * 1024)
    assert recovered is not None
    assert recovered.source == "artifact"
    assert len(failures) == 2


def test_recover_reports_every_failed_step(tmp_path: Path) -> None:
    recovered, failures = recover_scan_results(_raw(tmp_path, stdout="garbage"), 1024)
    assert recovered is None
    assert [f.split(":")[0] for f in failures] == ["stdout", "partial", "artifact"]


@pytest.mark.parametrize(
    "value,expected",
    [
        ("ERROR", Severity.ERROR),
        ("high", Severity.ERROR),
        ("WARNING", Severity.WARNING),
        ("medium", Severity.WARNING),
        ("INFO", Severity.INFO),
        ("", Severity.INFO),
        (None, Severity.INFO),
        ("EXPERIMENT", Severity.INFO),
    ],
)
def test_normalize_severity(value, expected: Severity) -> None:
    assert normalize_severity(value) == expected


def test_parse_finding_strips_workspace_prefix(tmp_path: Path) -> None:
    finding = parse_finding(_result(path=f"{tmp_path}/src/app.py"), root=tmp_path)
    assert finding is not None
    assert finding.path == "src/app.py"
    assert finding.severity == Severity.ERROR
    assert finding.metadata is not None
    assert finding.metadata.cwe == ("CWE-95",)
    assert finding.metadata.owasp == ("A03:2021",)
    assert finding.metadata.link == "https://sg.run/x"


def test_parse_finding_rejects_incomplete_results() -> None:
    assert parse_finding({"path": "a.py"}) is None
    assert parse_finding({"check_id": "x", "path": "a.py", "start": {}}) is None
    assert parse_finding("not a dict") is None  # type: ignore[arg-type]


def test_parse_finding_drops_login_placeholder() -> None:
    obj = _result()
    obj["extra"]["lines"] = "requires login"
    finding = parse_finding(obj)
    assert finding is not None
    assert finding.code is None


@pytest.mark.anyio
async def test_scan_parses_stdout_despite_nonzero_exit(tmp_path: Path, monkeypatch) -> None:
    doc = _document(_result("a", "ERROR"), _result("b", "INFO"))
    proc = FakeProc(stdout=doc.encode(), stderr=b"findings present", returncode=1)
    calls: list = []
    monkeypatch.setattr("shutil.which", lambda _: "semgrep")
    monkeypatch.setattr(asyncio, "create_subprocess_exec", _fake_exec(proc, report="human report", calls=calls))

    scanner = ScannerClient(ScanLogger("test"))
    outcome = await scanner.scan(tmp_path, ScanOptions())

    assert [f.rule_id for f in outcome.findings] == ["a", "b"]
    assert outcome.report == "human report"
    assert outcome.source == "stdout"
    assert outcome.truncated is False
    assert calls and calls[0][0] == "semgrep"


@pytest.mark.anyio
async def test_scan_filters_by_requested_severity(tmp_path: Path, monkeypatch) -> None:
    doc = _document(_result("a", "ERROR"), _result("b", "INFO"))
    monkeypatch.setattr("shutil.which", lambda _: "semgrep")
    monkeypatch.setattr(asyncio, "create_subprocess_exec", _fake_exec(FakeProc(stdout=doc.encode())))

    outcome = await ScannerClient(ScanLogger("test")).scan(tmp_path, ScanOptions(severity=(Severity.ERROR,)))
    assert [f.rule_id for f in outcome.findings] == ["a"]


@pytest.mark.anyio
async def test_scan_marks_oversized_output_truncated(tmp_path: Path, monkeypatch) -> None:
    doc = _document(*[_result(f"rule-{i}") for i in range(200)])
    monkeypatch.setattr("shutil.which", lambda _: "semgrep")
    monkeypatch.setattr(asyncio, "create_subprocess_exec", _fake_exec(FakeProc(stdout=doc.encode())))

    scanner = ScannerClient(ScanLogger("test"), max_output_bytes=len(doc) // 2)
    outcome = await scanner.scan(tmp_path, ScanOptions())

    assert outcome.truncated is True
    assert outcome.source == "partial"
    assert 0 < len(outcome.findings) < 200


@pytest.mark.anyio
async def test_scan_caps_finding_count(tmp_path: Path, monkeypatch) -> None:
    doc = _document(*[_result(f"rule-{i}") for i in range(5)])
    monkeypatch.setattr("shutil.which", lambda _: "semgrep")
    monkeypatch.setattr(asyncio, "create_subprocess_exec", _fake_exec(FakeProc(stdout=doc.encode())))

    outcome = await ScannerClient(ScanLogger("test"), max_findings=3).scan(tmp_path, ScanOptions())
    assert len(outcome.findings) == 3
    assert outcome.truncated is True


@pytest.mark.anyio
async def test_scan_timeout_kills_process(tmp_path: Path, monkeypatch) -> None:
    proc = HangingProc()
    killed_groups: list = []
    monkeypatch.setattr("shutil.which", lambda _: "semgrep")
    monkeypatch.setattr(asyncio, "create_subprocess_exec", _fake_exec(proc))
    monkeypatch.setattr("semgate.scanner.os.killpg", lambda pid, sig: killed_groups.append((pid, sig)))

    with pytest.raises(ScanTimeoutError) as excinfo:
        await ScannerClient(ScanLogger("test")).scan(tmp_path, ScanOptions(timeout=0.05))

    assert proc.killed is True
    assert killed_groups == [(HangingProc.pid, signal.SIGKILL)]
    assert "timed out after 0.05 seconds" in excinfo.value.user_message


@pytest.mark.anyio
async def test_scan_missing_binary(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr("shutil.which", lambda _: None)
    with pytest.raises(ScannerNotFoundError) as excinfo:
        await ScannerClient(ScanLogger("test")).scan(tmp_path, ScanOptions())
    assert "not found" in excinfo.value.user_message.lower()


@pytest.mark.anyio
async def test_scan_unparseable_output(tmp_path: Path, monkeypatch) -> None:
    proc = FakeProc(stdout=b"panic: something broke", stderr=b"boom", returncode=2)
    monkeypatch.setattr("shutil.which", lambda _: "semgrep")
    monkeypatch.setattr(asyncio, "create_subprocess_exec", _fake_exec(proc))

    with pytest.raises(ScanExecutionError) as excinfo:
        await ScannerClient(ScanLogger("test")).scan(tmp_path, ScanOptions())
    assert "exit code 2" in str(excinfo.value)


def _process_gone(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    try:
        with open(f"/proc/{pid}/stat", encoding="utf-8") as handle:
            state = handle.read().rsplit(")", 1)[1].split()[0]
    except OSError:
        return False
    return state == "Z"


@pytest.mark.anyio
@pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX only")
async def test_scan_timeout_kills_descendant_processes(tmp_path: Path) -> None:
    pid_file = tmp_path / "child.pid"
    script = tmp_path / "fake-semgrep"
    script.write_text(f"#!/bin/sh\nsleep 30 &\necho $! > {pid_file}\nwait\n", encoding="utf-8")
    script.chmod(0o755)

    scanner = ScannerClient(ScanLogger("test"), scanner_bin=str(script))
    started = time.monotonic()
    with pytest.raises(ScanTimeoutError):
        await scanner.scan(tmp_path, ScanOptions(timeout=1))
    assert time.monotonic() - started < 10

    child = int(pid_file.read_text(encoding="utf-8").strip())
    deadline = time.monotonic() + 3
    while not _process_gone(child) and time.monotonic() < deadline:
        await asyncio.sleep(0.05)
    assert _process_gone(child)


def test_scanner_error_types() -> None:
    errors = [
        {"type": ["Rule parse error", "rule-id"], "level": "error"},
        {"type": "Timeout", "level": "warn"},
        {"level": "error"},
        {},
        "not-a-dict",
    ]
    assert scanner_error_types(errors) == ("Rule parse error", "Timeout", "error", "unknown")
    assert scanner_error_types(None) == ()


@pytest.mark.anyio
async def test_scan_surfaces_semgrep_errors(tmp_path: Path, monkeypatch, capsys) -> None:
    doc = json.dumps(
        {
            "results": [_result("a", "ERROR")],
            "errors": [{"type": ["Rule parse error"], "level": "error", "message": "bad rule"}],
        }
    )
    monkeypatch.setattr("shutil.which", lambda _: "semgrep")
    monkeypatch.setattr(asyncio, "create_subprocess_exec", _fake_exec(FakeProc(stdout=doc.encode(), returncode=2)))

    outcome = await ScannerClient(ScanLogger("test")).scan(tmp_path, ScanOptions())

    assert [f.rule_id for f in outcome.findings] == ["a"]
    assert outcome.scanner_errors == ("Rule parse error",)
    lines = [json.loads(line) for line in capsys.readouterr().err.strip().splitlines()]
    warning = next(line for line in lines if line["message"] == "Semgrep reported errors; results may be incomplete")
    assert warning["count"] == 1
    assert warning["types"] == ["Rule parse error"]
