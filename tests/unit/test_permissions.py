from __future__ import annotations

import pytest
import requests

from semgate.logging import ScanLogger
from semgate.models import PermissionSet
from semgate.permissions import PermissionGate


def test_from_grants_maps_github_permissions() -> None:
    perms = PermissionSet.from_grants(
        {"checks": "write", "contents": "read", "issues": "write", "pull_requests": "read"}
    )
    assert perms == PermissionSet(
        can_write_checks=True,
        can_read_contents=True,
        can_write_comments=True,
        can_read_pull_requests=True,
    )


def test_from_grants_read_only_checks_cannot_write() -> None:
    perms = PermissionSet.from_grants({"checks": "read", "contents": "read"})
    assert perms.can_write_checks is False
    assert perms.can_write_comments is False


def test_pull_request_write_allows_comments() -> None:
    assert PermissionSet.from_grants({"pull_requests": "write"}).can_write_comments is True


def test_denied_is_all_false() -> None:
    perms = PermissionSet.denied()
    assert not any(
        [perms.can_write_checks, perms.can_read_contents, perms.can_write_comments, perms.can_read_pull_requests]
    )


@pytest.mark.anyio
async def test_gate_resolves_from_lookup() -> None:
    seen = []

    def lookup(repo: str) -> dict:
        seen.append(repo)
        return {"id": 1, "permissions": {"checks": "write", "issues": "write", "contents": "read"}}

    perms = await PermissionGate(lookup, ScanLogger("test")).check("acme/demo")
    assert seen == ["acme/demo"]
    assert perms.can_write_checks is True
    assert perms.can_write_comments is True


@pytest.mark.anyio
async def test_gate_queries_every_time() -> None:
    grants = [{"checks": "write"}, {"checks": "read"}]

    def lookup(repo: str) -> dict:
        return {"permissions": grants.pop(0)}

    gate = PermissionGate(lookup, ScanLogger("test"))
    assert (await gate.check("acme/demo")).can_write_checks is True
    assert (await gate.check("acme/demo")).can_write_checks is False


@pytest.mark.anyio
async def test_gate_fails_closed_on_error() -> None:
    def lookup(repo: str) -> dict:
        raise requests.ConnectionError("network down")

    perms = await PermissionGate(lookup, ScanLogger("test")).check("acme/demo")
    assert perms == PermissionSet.denied()


@pytest.mark.anyio
async def test_gate_fails_closed_without_permission_map() -> None:
    perms = await PermissionGate(lambda repo: {"id": 1}, ScanLogger("test")).check("acme/demo")
    assert perms == PermissionSet.denied()
