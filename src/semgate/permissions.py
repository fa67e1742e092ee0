from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict

from .errors import PermissionQueryError
from .logging import ScanLogger
from .models import PermissionSet

InstallationLookup = Callable[[str], Dict[str, Any]]


class PermissionGate:
    """
    Resolve what the app may do in a repository right now.

    Grants can change between deliveries, so nothing is cached. Any query
    failure yields an all-false set (fail closed) and never raises.
    """

    def __init__(self, lookup: InstallationLookup, logger: ScanLogger):
        self._lookup = lookup
        self.logger = logger

    async def check(self, repo_full_name: str) -> PermissionSet:
        try:
            installation = await asyncio.to_thread(self._lookup, repo_full_name)
            grants = installation.get("permissions")
            if not isinstance(grants, dict):
                raise PermissionQueryError("installation response has no permissions map")
        except Exception as exc:
            self.logger.warning(
                "Permission query failed; all delivery channels gated off",
                repo=repo_full_name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return PermissionSet.denied()

        permissions = PermissionSet.from_grants(grants)
        if not permissions.can_read_contents:
            self.logger.warning(
                "Missing 'contents: read' permission; repository cloning may fail",
                repo=repo_full_name,
            )
        if not permissions.can_write_checks:
            self.logger.warning(
                "Missing 'checks: write' permission; status checks disabled",
                repo=repo_full_name,
            )
        if not permissions.can_write_comments:
            self.logger.warning(
                "Missing 'issues: write' permission; results will not be commented",
                repo=repo_full_name,
            )
        self.logger.info(
            "Permissions resolved",
            repo=repo_full_name,
            checks_write=permissions.can_write_checks,
            contents_read=permissions.can_read_contents,
            comments_write=permissions.can_write_comments,
            pull_requests_read=permissions.can_read_pull_requests,
        )
        return permissions
