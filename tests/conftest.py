from __future__ import annotations

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import pytest

from semgate.constants import EventKind, Severity
from semgate.context import PullRequestEvent
from semgate.models import Finding, FindingMetadata


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


def _make_finding(
    severity: Severity = Severity.ERROR,
    rule_id: str = "python.lang.security.audit.eval-detected",
    path: str = "app.py",
    line: int = 12,
    end_line: int | None = None,
    message: str = "Detected use of eval()",
    code: str | None = None,
    metadata: FindingMetadata | None = None,
) -> Finding:
    return Finding(
        rule_id=rule_id,
        path=path,
        start_line=line,
        end_line=end_line if end_line is not None else line,
        severity=severity,
        message=message,
        code=code,
        metadata=metadata,
    )


@pytest.fixture
def make_finding():
    """Factory for Finding objects with sensible defaults."""
    return _make_finding


@pytest.fixture
def pr_payload() -> dict:
    return {
        "action": "opened",
        "number": 7,
        "pull_request": {
            "number": 7,
            "head": {"sha": "a" * 40, "ref": "feature/login"},
            "base": {"sha": "b" * 40, "ref": "main"},
        },
        "repository": {
            "name": "demo",
            "full_name": "acme/demo",
            "owner": {"login": "acme"},
        },
        "installation": {"id": 4242},
    }


@pytest.fixture
def pr_event() -> PullRequestEvent:
    return PullRequestEvent(
        repo_owner="acme",
        repo_name="demo",
        pr_number=7,
        head_sha="a" * 40,
        head_ref="feature/login",
        kind=EventKind.OPENED,
        installation_id=4242,
        delivery_id="delivery-1",
    )
