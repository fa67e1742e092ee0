from __future__ import annotations

from enum import Enum

VERSION = "1.0.0"
CHECK_NAME = "Semgrep Security Scan"
EXPORT_SOURCE = "semgate"


class Severity(str, Enum):
    """Severity levels reported by the scanner."""

    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"


SEVERITY_ORDER = (Severity.ERROR, Severity.WARNING, Severity.INFO)


class EventKind(str, Enum):
    """Pull request actions that trigger a scan."""

    OPENED = "opened"
    REOPENED = "reopened"


class Conclusion(str, Enum):
    SUCCESS = "success"
    NEUTRAL = "neutral"
    FAILURE = "failure"


class Limits:
    """Shared hard limits."""

    MAX_OUTPUT_BYTES = 10 * 1024 * 1024  # 10MB per scanner stream
    MAX_FINDINGS = 2_000
    MAX_MESSAGE_LENGTH = 200
    MAX_COMMENT_FINDINGS = 50
    MAX_COMMENT_LENGTH = 65_536
    MAX_CHECK_TEXT_LENGTH = 65_535
    MAX_CHECK_SUMMARY_LENGTH = 65_535


DEFAULT_EXCLUDE_PATHS = (
    "node_modules/*",
    "dist/*",
    "build/*",
    "*.min.js",
    "coverage/*",
    ".git/*",
)
