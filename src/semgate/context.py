from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .constants import EventKind


def _section(container: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = container.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"Expected an object for {key!r}, got {type(value).__name__}")
    return value


def _coerce_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class PullRequestEvent:
    """Immutable view of a pull_request webhook delivery."""

    repo_owner: str
    repo_name: str
    pr_number: int
    head_sha: str
    head_ref: str
    kind: EventKind
    installation_id: Optional[int] = None
    delivery_id: Optional[str] = None

    @property
    def repo_full_name(self) -> str:
        return f"{self.repo_owner}/{self.repo_name}"

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], delivery_id: Optional[str] = None) -> "PullRequestEvent":
        """Parse a pull_request payload; raises ValueError when required fields are missing."""
        if not isinstance(payload, dict):
            raise ValueError("pull_request payload must be a JSON object")
        try:
            kind = EventKind(str(payload.get("action") or "").lower())
        except ValueError as exc:
            raise ValueError(f"Unsupported pull_request action: {payload.get('action')!r}") from exc

        pr = _section(payload, "pull_request")
        repo = _section(payload, "repository")
        head = _section(pr, "head")

        owner = str(_section(repo, "owner").get("login") or "")
        name = str(repo.get("name") or "")
        if (not owner or not name) and "/" in str(repo.get("full_name") or ""):
            owner, name = str(repo["full_name"]).split("/", 1)

        pr_number = _coerce_int(payload.get("number") or pr.get("number"))
        head_sha = str(head.get("sha") or "")
        head_ref = str(head.get("ref") or "")

        missing = [
            label
            for label, value in (
                ("repository.owner.login", owner),
                ("repository.name", name),
                ("pull_request.number", pr_number),
                ("pull_request.head.sha", head_sha),
                ("pull_request.head.ref", head_ref),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"Missing fields in pull_request payload: {missing}")

        return cls(
            repo_owner=owner,
            repo_name=name,
            pr_number=int(pr_number),
            head_sha=head_sha,
            head_ref=head_ref,
            kind=kind,
            installation_id=_coerce_int(_section(payload, "installation").get("id")),
            delivery_id=delivery_id,
        )
