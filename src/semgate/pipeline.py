from __future__ import annotations

import asyncio
import uuid
from enum import Enum
from pathlib import Path
from typing import Optional

from .config import SemgateConfig
from .context import PullRequestEvent
from .delivery import DeliveryDispatcher
from .errors import AcquisitionError, SemgateError
from .formatting import fence
from .github import GitHubAppAuth, GitHubClient
from .logging import ScanLogger
from .models import PermissionSet, RunResult, ScanOptions, ScanRequest
from .permissions import PermissionGate
from .report import (
    classify,
    failure_verdict,
    render_check_text,
    render_comment,
    render_failure_comment,
)
from .scanner import ScannerClient
from .workspace import WorkspaceManager

UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred while scanning."


class RunState(str, Enum):
    RECEIVED = "received"
    PERMISSION_CHECKED = "permission-checked"
    WORKSPACE_ACQUIRED = "workspace-acquired"
    SCANNING = "scanning"
    FORMATTING = "formatting"
    DELIVERING = "delivering"
    ERROR = "error"
    CLEANED_UP = "cleaned-up"


def scan_options(config: SemgateConfig) -> ScanOptions:
    return ScanOptions(
        config=config.scanner_config,
        severity=tuple(config.severity),
        exclude_paths=tuple(config.exclude_paths),
        timeout=int(config.scan_timeout),
    )


class ScanPipeline:
    """
    Runs one pull request event end to end.

    The instance holds only read-only configuration, so concurrent `run` calls
    share nothing but the workspace root, where directory names are unique.
    """

    def __init__(self, config: SemgateConfig, auth: GitHubAppAuth, logger: ScanLogger):
        self.config = config
        self.auth = auth
        self.logger = logger

    async def run(self, event: PullRequestEvent) -> RunResult:
        run_id = event.delivery_id or str(uuid.uuid4())
        logger = self.logger.child(run_id)
        result = RunResult(run_id=run_id, state=RunState.RECEIVED.value)
        result.history.append(RunState.RECEIVED.value)
        logger.info(
            "Pull request event received",
            repo=event.repo_full_name,
            pr_number=event.pr_number,
            head_sha=event.head_sha,
            kind=event.kind.value,
        )

        workspace = WorkspaceManager(
            root=self.config.workspace_root,
            logger=logger,
            clone_base_url=self.config.clone_base_url,
            clone_timeout=int(self.config.clone_timeout),
        )
        path: Optional[Path] = None
        dispatcher: Optional[DeliveryDispatcher] = None
        try:
            permissions = await PermissionGate(self.auth.repository_installation, logger).check(
                event.repo_full_name
            )
            dispatcher = DeliveryDispatcher(
                event=event,
                permissions=permissions,
                client=await self._api_client(event, permissions, logger),
                logger=logger,
                webhook_url=self.config.webhook_url,
                export_dir=self.config.export_dir if self.config.export_results else None,
                http_timeout=float(self.config.http_timeout),
            )
            self._transition(result, RunState.PERMISSION_CHECKED, logger)

            with logger.stage("acquire"):
                result.deliveries.append(await dispatcher.start_check())
                path = workspace.acquire()
                request = ScanRequest(
                    repository=event.repo_full_name,
                    revision=event.head_sha,
                    branch=event.head_ref,
                    workspace=path,
                    options=scan_options(self.config),
                )
                token = await self._clone_token(event)
                await workspace.populate(
                    path,
                    request.repository,
                    request.revision,
                    token,
                    fallback_ref=f"refs/pull/{event.pr_number}/head",
                )
            self._transition(result, RunState.WORKSPACE_ACQUIRED, logger)

            self._transition(result, RunState.SCANNING, logger)
            with logger.stage("scan"):
                scanner = ScannerClient(
                    logger=logger,
                    scanner_bin=self.config.scanner_bin,
                    max_output_bytes=int(self.config.max_output_bytes),
                )
                outcome = await scanner.scan(request.workspace, request.options)
            result.outcome = outcome

            self._transition(result, RunState.FORMATTING, logger)
            verdict = classify(outcome.findings)
            comment = render_comment(outcome, event.kind)
            result.verdict = verdict

            self._transition(result, RunState.DELIVERING, logger)
            with logger.stage("deliver"):
                result.deliveries.append(await dispatcher.publish_verdict(verdict, render_check_text(outcome)))
                result.deliveries.append(
                    await dispatcher.post_comment(comment, fallback_text=outcome.report or comment)
                )
                result.deliveries.extend(await dispatcher.export(outcome))
            logger.info(
                "Scan results delivered",
                pr_number=event.pr_number,
                kind=event.kind.value,
                findings=len(outcome.findings),
                conclusion=verdict.conclusion.value,
            )
        except Exception as exc:
            self._transition(result, RunState.ERROR, logger)
            user_message = exc.user_message if isinstance(exc, SemgateError) else UNEXPECTED_ERROR_MESSAGE
            result.error = user_message
            logger.error(
                f"Error processing {event.kind.value} PR #{event.pr_number}",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            if dispatcher is not None:
                await self._deliver_failure(dispatcher, user_message, event, result)
        finally:
            workspace.release(path)
            self._transition(result, RunState.CLEANED_UP, logger)
        return result

    async def _deliver_failure(
        self,
        dispatcher: DeliveryDispatcher,
        user_message: str,
        event: PullRequestEvent,
        result: RunResult,
    ) -> None:
        verdict = failure_verdict(user_message)
        result.verdict = verdict
        text = (
            "The security scan could not be completed due to an error:\n\n" + fence(user_message)
        )
        result.deliveries.append(await dispatcher.publish_verdict(verdict, text))
        result.deliveries.append(
            await dispatcher.post_comment(render_failure_comment(user_message, event.kind))
        )

    async def _api_client(
        self,
        event: PullRequestEvent,
        permissions: PermissionSet,
        logger: ScanLogger,
    ) -> Optional[GitHubClient]:
        if not (permissions.can_write_checks or permissions.can_write_comments):
            return None
        if event.installation_id is None:
            logger.warning("Event carries no installation id; GitHub API delivery unavailable")
            return None
        try:
            token = await asyncio.to_thread(
                self.auth.installation_token,
                event.installation_id,
                [event.repo_name],
            )
        except Exception as exc:
            logger.warning("Installation token request failed", error=str(exc))
            return None
        return GitHubClient(
            token=token,
            repo=event.repo_full_name,
            api_url=self.config.api_base_url,
            timeout=float(self.config.http_timeout),
        )

    async def _clone_token(self, event: PullRequestEvent) -> str:
        """Short-lived token limited to reading this one repository."""
        if event.installation_id is None:
            raise AcquisitionError("Event carries no installation id; cannot mint a clone token")
        try:
            return await asyncio.to_thread(
                self.auth.installation_token,
                event.installation_id,
                [event.repo_name],
                {"contents": "read"},
            )
        except Exception as exc:
            raise AcquisitionError(f"Failed to mint clone token: {exc}") from exc

    @staticmethod
    def _transition(result: RunResult, state: RunState, logger: ScanLogger) -> None:
        result.state = state.value
        result.history.append(state.value)
        logger.info("state", state=state.value)
