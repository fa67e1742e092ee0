from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from .constants import CHECK_NAME, EXPORT_SOURCE, VERSION, Limits
from .context import PullRequestEvent
from .errors import DeliveryError
from .formatting import clamp_body
from .github import GitHubClient
from .logging import ScanLogger
from .models import DeliveryResult, PermissionSet, ScanOutcome, Verdict

CHECK_CHANNEL = "check"
COMMENT_CHANNEL = "comment"
WEBHOOK_CHANNEL = "webhook_export"
FILE_CHANNEL = "file_export"

EXPORT_TIMEOUT_SECONDS = 10
MAX_RETRIES = 2
BACKOFF_SECONDS = 1


def build_export_envelope(outcome: ScanOutcome, event: PullRequestEvent, timestamp: Optional[str] = None) -> Dict[str, Any]:
    return {
        "timestamp": timestamp or datetime.now(timezone.utc).isoformat(),
        "source": EXPORT_SOURCE,
        "scanResults": {
            "textOutput": outcome.report,
            "findingsCount": len(outcome.findings),
        },
        "repository": event.repo_full_name,
        "pullRequest": event.pr_number,
        "branch": event.head_ref,
    }


def export_filename(event: PullRequestEvent, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%S%fZ")
    return f"{event.repo_owner}-{event.repo_name}-pr-{event.pr_number}-{stamp}.txt"


class DeliveryDispatcher:
    """
    Pushes one run's results through every channel it is allowed to use.

    Each channel checks its own permission flag and absorbs its own errors;
    nothing here raises to the orchestrator.
    """

    def __init__(
        self,
        event: PullRequestEvent,
        permissions: PermissionSet,
        client: Optional[GitHubClient],
        logger: ScanLogger,
        webhook_url: Optional[str] = None,
        export_dir: Optional[Path] = None,
        http_timeout: float = EXPORT_TIMEOUT_SECONDS,
    ) -> None:
        self.event = event
        self.permissions = permissions
        self.client = client
        self.logger = logger
        self.webhook_url = webhook_url
        self.export_dir = export_dir
        self.http_timeout = http_timeout
        self.check_run_id: Optional[int] = None

    # --- check channel -------------------------------------------------

    async def start_check(self) -> DeliveryResult:
        if not self.permissions.can_write_checks:
            return self._skipped(CHECK_CHANNEL, "checks: write not granted")
        try:
            run = await asyncio.to_thread(
                self._require_client(CHECK_CHANNEL).create_check_run,
                name=CHECK_NAME,
                head_sha=self.event.head_sha,
                status="in_progress",
                title="Semgrep scan in progress...",
                summary="🔍 Scanning code for security vulnerabilities...",
            )
        except Exception as exc:
            return self._failed(CHECK_CHANNEL, "In-progress check run failed", exc)
        self.check_run_id = run.get("id")
        self.logger.info(
            "Check run started",
            pr_number=self.event.pr_number,
            kind=self.event.kind.value,
            check_run_id=self.check_run_id,
        )
        return DeliveryResult(channel=CHECK_CHANNEL, success=True, detail="in_progress")

    async def publish_verdict(self, verdict: Verdict, text: str) -> DeliveryResult:
        """Complete the check run opened by start_check, or create a completed one."""
        if not self.permissions.can_write_checks:
            self.logger.info(
                "Scan result not published as check (checks disabled)",
                pr_number=self.event.pr_number,
                title=verdict.title,
            )
            return self._skipped(CHECK_CHANNEL, "checks: write not granted")

        conclusion = verdict.conclusion.value
        summary = clamp_body(verdict.summary, Limits.MAX_CHECK_SUMMARY_LENGTH)
        body = clamp_body(text, Limits.MAX_CHECK_TEXT_LENGTH)
        try:
            client = self._require_client(CHECK_CHANNEL)
            if self.check_run_id is not None:
                await asyncio.to_thread(
                    client.update_check_run,
                    self.check_run_id,
                    conclusion=conclusion,
                    title=verdict.title,
                    summary=summary,
                    text=body,
                )
            else:
                await asyncio.to_thread(
                    client.create_check_run,
                    name=CHECK_NAME,
                    head_sha=self.event.head_sha,
                    status="completed",
                    conclusion=conclusion,
                    title=verdict.title,
                    summary=summary,
                    text=body,
                )
        except Exception as exc:
            return self._failed(CHECK_CHANNEL, "Check run publish failed", exc)
        self.logger.info(
            "Check run completed",
            pr_number=self.event.pr_number,
            conclusion=conclusion,
        )
        return DeliveryResult(channel=CHECK_CHANNEL, success=True, detail=conclusion)

    # --- comment channel -----------------------------------------------

    async def post_comment(self, body: str, fallback_text: Optional[str] = None) -> DeliveryResult:
        """Post `body` on the pull request; on any failure log `fallback_text` instead."""
        fallback = fallback_text if fallback_text is not None else body
        if not self.permissions.can_write_comments:
            self.logger.warning(
                "Cannot post scan results: 'issues: write' not granted",
                pr_number=self.event.pr_number,
            )
            self._log_fallback(fallback)
            return self._skipped(COMMENT_CHANNEL, "issues: write not granted")
        try:
            url = await asyncio.to_thread(
                self._require_client(COMMENT_CHANNEL).create_issue_comment,
                self.event.pr_number,
                clamp_body(body, Limits.MAX_COMMENT_LENGTH),
            )
        except Exception as exc:
            result = self._failed(COMMENT_CHANNEL, "PR comment failed", exc)
            self._log_fallback(fallback)
            return result
        self.logger.info("Posted scan results comment", pr_number=self.event.pr_number, url=url)
        return DeliveryResult(channel=COMMENT_CHANNEL, success=True, detail=url)

    def _log_fallback(self, text: str) -> None:
        self.logger.info(
            "Scan report (comment unavailable)",
            pr_number=self.event.pr_number,
            report=text,
        )

    # --- export channels -----------------------------------------------

    async def export(self, outcome: ScanOutcome) -> List[DeliveryResult]:
        results: List[DeliveryResult] = []
        if self.webhook_url:
            results.append(await self.send_to_webhook(outcome))
        if self.export_dir is not None:
            results.append(self.export_to_file(outcome))
        return results

    async def send_to_webhook(self, outcome: ScanOutcome) -> DeliveryResult:
        """POST the export envelope. Best-effort: failures are logged only."""
        envelope = build_export_envelope(outcome, self.event)
        headers = {"Content-Type": "application/json", "User-Agent": f"semgate/{VERSION}"}
        last_error = "unknown"
        for attempt in range(MAX_RETRIES):
            try:
                async with httpx.AsyncClient(timeout=self.http_timeout) as client:
                    response = await client.post(self.webhook_url, json=envelope, headers=headers)
                if 200 <= response.status_code < 300:
                    self.logger.info("Sent results to external service", status=response.status_code)
                    return DeliveryResult(channel=WEBHOOK_CHANNEL, success=True)
                last_error = f"HTTP {response.status_code}"
                self.logger.warning(
                    "External export rejected",
                    status=response.status_code,
                    attempt=attempt + 1,
                )
                if response.status_code < 500 and response.status_code != 429:
                    break
            except httpx.TimeoutException:
                last_error = "timeout"
                self.logger.warning("External export timeout", attempt=attempt + 1)
            except Exception as exc:
                last_error = str(exc)
                self.logger.warning("External export error", error=str(exc), attempt=attempt + 1)

            if attempt < MAX_RETRIES - 1:
                await asyncio.sleep(BACKOFF_SECONDS * (attempt + 1))

        return DeliveryResult(channel=WEBHOOK_CHANNEL, success=False, error=last_error)

    def export_to_file(self, outcome: ScanOutcome) -> DeliveryResult:
        try:
            self.export_dir.mkdir(parents=True, exist_ok=True)
            path = self.export_dir / export_filename(self.event)
            path.write_text(outcome.report, encoding="utf-8")
        except OSError as exc:
            return self._failed(FILE_CHANNEL, "Failed to export results to file", exc)
        self.logger.info("Exported results to file", path=str(path))
        return DeliveryResult(channel=FILE_CHANNEL, success=True, detail=str(path))

    # --- helpers -------------------------------------------------------

    def _require_client(self, channel: str) -> GitHubClient:
        if self.client is None:
            raise DeliveryError(channel, "no installation token available for GitHub API calls")
        return self.client

    def _skipped(self, channel: str, reason: str) -> DeliveryResult:
        return DeliveryResult(channel=channel, success=False, skipped=True, error=reason)

    def _failed(self, channel: str, message: str, exc: Exception) -> DeliveryResult:
        error = exc if isinstance(exc, DeliveryError) else DeliveryError(channel, str(exc))
        self.logger.warning(message, channel=channel, error=str(error), error_type=type(exc).__name__)
        return DeliveryResult(channel=channel, success=False, error=str(exc))
