from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import os
from pathlib import Path
import re
import shutil
import signal
import tempfile
import time
from typing import Any, Callable, List, Optional, Sequence, Tuple

from .constants import Limits, Severity
from .errors import ScanExecutionError, ScannerNotFoundError, ScanTimeoutError
from .logging import ScanLogger, mask_credentials
from .models import Finding, FindingMetadata, ScanOptions, ScanOutcome

_READ_CHUNK = 64 * 1024
_MAX_STDERR_BYTES = 256 * 1024
_KILL_WAIT_SECONDS = 5.0
_RESULTS_KEY = re.compile(r'"results"\s*:\s*\[')

_SEVERITY_ALIASES = {
    "ERROR": Severity.ERROR,
    "CRITICAL": Severity.ERROR,
    "HIGH": Severity.ERROR,
    "WARNING": Severity.WARNING,
    "MEDIUM": Severity.WARNING,
    "INFO": Severity.INFO,
    "LOW": Severity.INFO,
}

# Placeholder semgrep emits instead of source lines when not logged in.
_REDACTED_LINES = "requires login"


@dataclass(frozen=True)
class RawScanOutput:
    returncode: int
    stdout: str
    stderr: str
    stdout_truncated: bool
    report: str
    report_truncated: bool
    artifact_path: Path


@dataclass(frozen=True)
class RecoveredPayload:
    document: dict
    source: str
    partial: bool = False


def _parse_document(text: str) -> Optional[Tuple[dict, bool]]:
    raw = (text or "").strip()
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict) or not isinstance(parsed.get("results"), list):
        return None
    return parsed, False


def _salvage_results(text: str) -> Optional[Tuple[dict, bool]]:
    """
    Pull complete result objects out of a truncated or corrupted JSON document.

    Decodes the `results` array element by element and stops at the first
    element that does not decode. Returns None when no results array starts.
    """
    match = _RESULTS_KEY.search(text or "")
    if not match:
        return None

    decoder = json.JSONDecoder()
    idx = match.end()
    results: List[dict] = []
    complete = False
    while True:
        while idx < len(text) and text[idx] in " \t\r\n,":
            idx += 1
        if idx >= len(text):
            break
        if text[idx] == "]":
            complete = True
            break
        try:
            obj, idx = decoder.raw_decode(text, idx)
        except json.JSONDecodeError:
            break
        if isinstance(obj, dict):
            results.append(obj)
    return {"results": results, "errors": []}, not complete


def _read_bounded_file(path: Path, max_bytes: int) -> Tuple[str, bool]:
    try:
        with path.open("rb") as fh:
            data = fh.read(max_bytes + 1)
    except OSError:
        return "", False
    truncated = len(data) > max_bytes
    return data[:max_bytes].decode("utf-8", errors="replace"), truncated


def recover_scan_results(raw: RawScanOutput, max_bytes: int) -> Tuple[Optional[RecoveredPayload], List[str]]:
    """
    Ordered fallback chain for structured scanner output.

    1. stdout: the primary stream, parsed as one JSON document.
    2. partial: complete result objects salvaged from whatever stdout holds
       after an abnormal exit or a size cut-off.
    3. artifact: the JSON file the scanner also writes to disk.

    Returns the first payload recovered and the reasons earlier steps failed.
    """
    attempts: Sequence[Tuple[str, Callable[[], Optional[Tuple[dict, bool]]]]] = (
        ("stdout", lambda: None if raw.stdout_truncated else _parse_document(raw.stdout)),
        ("partial", lambda: _salvage_results(raw.stdout)),
        ("artifact", lambda: _parse_document(_read_bounded_file(raw.artifact_path, max_bytes)[0])),
    )
    failures: List[str] = []
    for source, attempt in attempts:
        recovered = attempt()
        if recovered is None:
            failures.append(f"{source}: no parseable results")
            continue
        document, partial = recovered
        if source == "partial" and not document["results"] and not raw.stdout_truncated:
            failures.append(f"{source}: no complete results")
            continue
        return RecoveredPayload(document=document, source=source, partial=partial), failures
    return None, failures


def _as_tuple(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value if v)
    return (str(value),)


def scanner_error_types(errors: Any) -> Tuple[str, ...]:
    """One label per entry of semgrep's `errors` array."""
    if not isinstance(errors, list):
        return ()
    labels: List[str] = []
    for err in errors:
        if not isinstance(err, dict):
            continue
        kind = err.get("type")
        if isinstance(kind, list):
            kind = kind[0] if kind else None
        labels.append(str(kind or err.get("level") or "unknown"))
    return tuple(labels)


def normalize_severity(value: Any) -> Severity:
    return _SEVERITY_ALIASES.get(str(value or "").strip().upper(), Severity.INFO)


def _parse_metadata(meta: Any) -> Optional[FindingMetadata]:
    if not isinstance(meta, dict) or not meta:
        return None
    return FindingMetadata(
        cwe=_as_tuple(meta.get("cwe")),
        owasp=_as_tuple(meta.get("owasp")),
        confidence=meta.get("confidence"),
        impact=meta.get("impact"),
        likelihood=meta.get("likelihood"),
        link=meta.get("shortlink") or meta.get("source"),
    )


def parse_finding(obj: dict, root: Optional[Path] = None) -> Optional[Finding]:
    """Convert one semgrep result object; None when required fields are absent."""
    if not isinstance(obj, dict):
        return None
    extra = obj.get("extra") or {}
    start = obj.get("start") or {}
    end = obj.get("end") or {}
    rule_id = obj.get("check_id")
    path = obj.get("path")
    if not rule_id or not path or not isinstance(start.get("line"), int):
        return None

    path = str(path).replace("\\", "/")
    if root is not None:
        prefix = str(root).replace("\\", "/").rstrip("/") + "/"
        if path.startswith(prefix):
            path = path[len(prefix):]

    start_line = int(start["line"])
    end_line = end.get("line") if isinstance(end.get("line"), int) else start_line
    code = extra.get("lines")
    if not isinstance(code, str) or code.strip().lower() == _REDACTED_LINES:
        code = None

    return Finding(
        rule_id=str(rule_id),
        path=path,
        start_line=start_line,
        end_line=int(end_line),
        start_col=int(start.get("col") or 0),
        end_col=int(end.get("col") or 0),
        severity=normalize_severity(extra.get("severity")),
        message=str(extra.get("message") or "").strip(),
        metadata=_parse_metadata(extra.get("metadata")),
        code=code,
    )


async def _read_bounded(stream: Optional[asyncio.StreamReader], max_bytes: int) -> Tuple[bytes, bool]:
    """Read a stream to EOF, keeping at most `max_bytes` and draining the rest."""
    if stream is None:
        return b"", False
    kept: List[bytes] = []
    size = 0
    truncated = False
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        if size < max_bytes:
            take = chunk[: max_bytes - size]
            kept.append(take)
            size += len(take)
            if len(take) < len(chunk):
                truncated = True
        else:
            truncated = True
    return b"".join(kept), truncated


class ScannerClient:
    """Runs semgrep against a directory and turns its output into a ScanOutcome."""

    def __init__(
        self,
        logger: ScanLogger,
        scanner_bin: str = "semgrep",
        max_output_bytes: int = Limits.MAX_OUTPUT_BYTES,
        max_findings: int = Limits.MAX_FINDINGS,
    ) -> None:
        self.logger = logger
        self.scanner_bin = scanner_bin
        self.max_output_bytes = max_output_bytes
        self.max_findings = max_findings

    def _resolve_bin(self) -> Optional[str]:
        if os.sep in self.scanner_bin or "/" in self.scanner_bin:
            candidate = Path(self.scanner_bin)
            return str(candidate) if candidate.exists() else None
        return shutil.which(self.scanner_bin)

    @staticmethod
    def build_command(
        scanner_bin: str,
        target: Path,
        options: ScanOptions,
        json_artifact: Path,
        text_output: Path,
    ) -> List[str]:
        """Structured JSON goes to stdout (plus a disk copy); the human report goes to its own file."""
        cmd = [
            scanner_bin,
            "scan",
            "--config",
            options.config,
            "--json",
            f"--json-output={json_artifact}",
            f"--text-output={text_output}",
            "--no-git-ignore",
            "--timeout",
            str(options.timeout),
        ]
        for severity in options.severity:
            cmd.extend(["--severity", Severity(severity).value])
        for pattern in options.exclude_paths:
            cmd.extend(["--exclude", pattern])
        cmd.append(str(target))
        return cmd

    async def scan(self, path: Path, options: ScanOptions) -> ScanOutcome:
        start = time.monotonic()
        scanner_bin = self._resolve_bin()
        if not scanner_bin:
            raise ScannerNotFoundError(f"Scanner executable not found: {self.scanner_bin}")

        out_dir = Path(tempfile.mkdtemp(prefix="semgate-out-"))
        try:
            raw = await self._execute(scanner_bin, Path(path), options, out_dir)
            duration_ms = int((time.monotonic() - start) * 1000)
            return self._build_outcome(raw, Path(path), options, duration_ms)
        finally:
            shutil.rmtree(out_dir, ignore_errors=True)

    async def _execute(
        self,
        scanner_bin: str,
        target: Path,
        options: ScanOptions,
        out_dir: Path,
    ) -> RawScanOutput:
        json_artifact = out_dir / "results.json"
        text_output = out_dir / "results.txt"
        cmd = self.build_command(scanner_bin, target, options, json_artifact, text_output)
        self.logger.info("Running semgrep", command=" ".join(cmd), timeout=options.timeout)

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                # Own process group, so a timeout can take semgrep-core down too.
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise ScannerNotFoundError(f"Scanner executable not found: {scanner_bin}") from exc

        try:
            (stdout_b, stdout_truncated), (stderr_b, _), _ = await asyncio.wait_for(
                asyncio.gather(
                    _read_bounded(proc.stdout, self.max_output_bytes),
                    _read_bounded(proc.stderr, min(self.max_output_bytes, _MAX_STDERR_BYTES)),
                    proc.wait(),
                ),
                timeout=float(options.timeout),
            )
        except TimeoutError as exc:
            # Descendants can outlive the leader and hold the pipes open.
            await self._kill(proc)
            self.logger.error("Semgrep timed out; process killed", timeout=options.timeout)
            raise ScanTimeoutError(options.timeout) from exc
        finally:
            if proc.returncode is None:
                await self._kill(proc)

        report, report_truncated = _read_bounded_file(text_output, self.max_output_bytes)
        stderr = (stderr_b or b"").decode("utf-8", errors="replace")
        returncode = int(proc.returncode or 0)
        if returncode != 0:
            self.logger.warning(
                "Semgrep exited non-zero; attempting to recover output",
                exit_code=returncode,
                stderr_tail=mask_credentials(stderr[-500:]),
            )
        return RawScanOutput(
            returncode=returncode,
            stdout=(stdout_b or b"").decode("utf-8", errors="replace"),
            stderr=stderr,
            stdout_truncated=stdout_truncated,
            report=report,
            report_truncated=report_truncated,
            artifact_path=json_artifact,
        )

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        """Kill the scanner's whole process group, then reap it with a bounded wait."""
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(proc.wait(), timeout=_KILL_WAIT_SECONDS)
        except TimeoutError:
            self.logger.warning("Scanner process did not exit after kill", pid=proc.pid)

    def _build_outcome(
        self,
        raw: RawScanOutput,
        target: Path,
        options: ScanOptions,
        duration_ms: int,
    ) -> ScanOutcome:
        recovered, failures = recover_scan_results(raw, self.max_output_bytes)
        if recovered is None:
            raise ScanExecutionError(
                f"Semgrep output could not be parsed (exit code {raw.returncode}; "
                f"{'; '.join(failures)}): {mask_credentials(raw.stderr[-500:]).strip()}"
            )
        if failures:
            self.logger.warning("Semgrep output recovered via fallback", source=recovered.source, attempts=failures)

        allowed = {Severity(s) for s in options.severity}
        findings: List[Finding] = []
        skipped = 0
        for obj in recovered.document["results"]:
            finding = parse_finding(obj, root=target)
            if finding is None:
                skipped += 1
                continue
            if allowed and finding.severity not in allowed:
                continue
            findings.append(finding)
        if skipped:
            self.logger.warning("Skipped malformed semgrep results", count=skipped)

        truncated = raw.stdout_truncated or raw.report_truncated or recovered.partial
        if len(findings) > self.max_findings:
            findings = findings[: self.max_findings]
            truncated = True
        if truncated:
            self.logger.warning("Semgrep output truncated", max_bytes=self.max_output_bytes)

        scanner_errors = scanner_error_types(recovered.document.get("errors"))
        if scanner_errors:
            self.logger.warning(
                "Semgrep reported errors; results may be incomplete",
                count=len(scanner_errors),
                types=sorted(set(scanner_errors)),
                exit_code=raw.returncode,
            )

        self.logger.info(
            "Semgrep scan completed",
            findings=len(findings),
            source=recovered.source,
            duration_ms=duration_ms,
        )
        return ScanOutcome(
            findings=tuple(findings),
            report=raw.report,
            duration_ms=duration_ms,
            truncated=truncated,
            source=recovered.source,
            scanner_errors=scanner_errors,
        )
