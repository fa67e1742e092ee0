from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from .constants import DEFAULT_EXCLUDE_PATHS, Conclusion, Severity


@dataclass(frozen=True)
class ScanOptions:
    config: str = "auto"
    severity: Tuple[Severity, ...] = tuple(Severity)
    exclude_paths: Tuple[str, ...] = DEFAULT_EXCLUDE_PATHS
    timeout: int = 300


@dataclass(frozen=True)
class ScanRequest:
    """One scan of one revision; owned by a single pipeline run."""

    repository: str  # "owner/name"
    revision: str
    branch: str
    workspace: Path
    options: ScanOptions


@dataclass(frozen=True)
class FindingMetadata:
    cwe: Tuple[str, ...] = ()
    owasp: Tuple[str, ...] = ()
    confidence: Optional[str] = None
    impact: Optional[str] = None
    likelihood: Optional[str] = None
    link: Optional[str] = None


@dataclass(frozen=True)
class Finding:
    rule_id: str
    path: str
    start_line: int
    end_line: int
    severity: Severity
    message: str
    start_col: int = 0
    end_col: int = 0
    metadata: Optional[FindingMetadata] = None
    code: Optional[str] = None


@dataclass(frozen=True)
class ScanOutcome:
    findings: Tuple[Finding, ...]
    report: str
    duration_ms: int
    truncated: bool = False
    source: str = "stdout"
    scanner_errors: Tuple[str, ...] = ()

    def count(self, severity: Severity) -> int:
        return sum(1 for f in self.findings if f.severity == severity)


@dataclass(frozen=True)
class Verdict:
    conclusion: Conclusion
    title: str
    summary: str


@dataclass(frozen=True)
class PermissionSet:
    """Effective installation grant, queried fresh for every event."""

    can_write_checks: bool = False
    can_read_contents: bool = False
    can_write_comments: bool = False
    can_read_pull_requests: bool = False

    @classmethod
    def denied(cls) -> "PermissionSet":
        return cls()

    @classmethod
    def from_grants(cls, grants: dict) -> "PermissionSet":
        """Build from GitHub's `{"checks": "write", ...}` permission map."""

        def level(name: str) -> str:
            return str(grants.get(name) or "").lower()

        return cls(
            can_write_checks=level("checks") == "write",
            can_read_contents=level("contents") in {"read", "write"},
            can_write_comments=level("issues") == "write" or level("pull_requests") == "write",
            can_read_pull_requests=level("pull_requests") in {"read", "write"},
        )


@dataclass
class DeliveryResult:
    channel: str
    success: bool
    skipped: bool = False
    error: Optional[str] = None
    detail: Optional[str] = None


@dataclass
class RunResult:
    """What a pipeline run did; returned for logging and tests."""

    run_id: str
    state: str
    verdict: Optional[Verdict] = None
    outcome: Optional[ScanOutcome] = None
    error: Optional[str] = None
    deliveries: list[DeliveryResult] = field(default_factory=list)
    history: list[str] = field(default_factory=list)

    def delivery(self, channel: str) -> Optional[DeliveryResult]:
        """Most recent result for `channel`."""
        for result in reversed(self.deliveries):
            if result.channel == channel:
                return result
        return None
