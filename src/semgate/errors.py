from __future__ import annotations

from typing import Optional


class SemgateError(Exception):
    """Base exception for all semgate errors."""

    fatal: bool = True
    user_message: str = "The security scan could not be completed."

    def __init__(self, message: str = "", *, user_message: Optional[str] = None) -> None:
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class ConfigError(SemgateError):
    """Configuration is missing or invalid."""

    user_message = "The scanner service is misconfigured."


class WorkspaceError(SemgateError):
    """Temporary workspace could not be created."""

    user_message = "A temporary workspace for the scan could not be created."


class AcquisitionError(SemgateError):
    """Target revision could not be fetched into the workspace."""

    user_message = "The pull request code could not be checked out."


class ScannerError(SemgateError):
    """Base class for scanner failures."""

    user_message = "The security scanner failed to run."


class ScanTimeoutError(ScannerError):
    """Scanner exceeded its time budget and was terminated."""

    def __init__(self, timeout: int) -> None:
        self.timeout = timeout
        message = f"Semgrep scan timed out after {timeout} seconds."
        super().__init__(message, user_message=message)


class ScannerNotFoundError(ScannerError):
    """Scanner executable is not installed (not retryable)."""

    user_message = "Semgrep CLI not found. Please install Semgrep first."


class ScanExecutionError(ScannerError):
    """Scanner ran but produced no parseable output."""

    user_message = "Semgrep scan failed and produced no readable results."


class DeliveryError(SemgateError):
    """A delivery channel failed; never fatal to the run."""

    fatal = False

    def __init__(self, channel: str, message: str) -> None:
        self.channel = channel
        super().__init__(f"{channel}: {message}")


class PermissionQueryError(SemgateError):
    """Installation permissions could not be queried."""

    fatal = False


class WebhookSignatureError(SemgateError):
    """Inbound webhook signature is missing or does not match."""

    fatal = False
