from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

import requests
from jose import jwt

from .constants import VERSION

API_VERSION = "2022-11-28"
USER_AGENT = f"semgate/{VERSION}"
DEFAULT_HTTP_TIMEOUT_SECONDS = 15.0


def _headers(token: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": API_VERSION,
        "User-Agent": USER_AGENT,
    }


class GitHubAppAuth:
    """Mint app JWTs and short-lived installation tokens."""

    def __init__(
        self,
        app_id: str,
        private_key: str,
        api_url: str = "https://api.github.com",
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ):
        self.app_id = app_id
        self.private_key = private_key
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def app_jwt(self) -> str:
        now = int(time.time())
        payload = {
            "iat": now - 60,  # tolerate clock drift
            "exp": now + 540,
            "iss": str(self.app_id),
        }
        return jwt.encode(payload, self.private_key, algorithm="RS256")

    def installation_token(
        self,
        installation_id: int,
        repositories: Optional[List[str]] = None,
        permissions: Optional[Dict[str, str]] = None,
    ) -> str:
        """Exchange the app JWT for an installation token, optionally narrowed."""
        url = f"{self.api_url}/app/installations/{installation_id}/access_tokens"
        body: Dict[str, Any] = {}
        if repositories:
            body["repositories"] = repositories
        if permissions:
            body["permissions"] = permissions
        r = requests.post(url, headers=_headers(self.app_jwt()), json=body, timeout=self.timeout)
        r.raise_for_status()
        return r.json()["token"]

    def repository_installation(self, repo_full_name: str) -> Dict[str, Any]:
        """GET /repos/{repo}/installation; carries the installation's granted permissions."""
        url = f"{self.api_url}/repos/{repo_full_name}/installation"
        r = requests.get(url, headers=_headers(self.app_jwt()), timeout=self.timeout)
        r.raise_for_status()
        return r.json()


class GitHubClient:
    def __init__(
        self,
        token: str,
        repo: str,
        api_url: str = "https://api.github.com",
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ):
        self.token = token
        self.repo = repo
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update(_headers(token))

    def create_check_run(
        self,
        name: str,
        head_sha: str,
        status: str = "completed",
        conclusion: Optional[str] = None,
        title: Optional[str] = None,
        summary: str = "",
        text: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = f"{self.api_url}/repos/{self.repo}/check-runs"
        payload: Dict[str, Any] = {
            "name": name,
            "head_sha": head_sha,
            "status": status,
            "output": self._output(name, title, summary, text),
        }
        if status == "completed":
            payload["conclusion"] = conclusion or "neutral"
        if external_id:
            payload["external_id"] = external_id
        r = self.session.post(url, json=payload, timeout=self.timeout)
        r.raise_for_status()
        return r.json() or {}

    def update_check_run(
        self,
        check_run_id: int,
        conclusion: str,
        title: Optional[str] = None,
        summary: str = "",
        text: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = f"{self.api_url}/repos/{self.repo}/check-runs/{check_run_id}"
        payload: Dict[str, Any] = {
            "status": "completed",
            "conclusion": conclusion,
            "output": self._output("", title, summary, text),
        }
        r = self.session.patch(url, json=payload, timeout=self.timeout)
        r.raise_for_status()
        return r.json() or {}

    def create_issue_comment(self, issue_number: int, body: str) -> Optional[str]:
        url = f"{self.api_url}/repos/{self.repo}/issues/{issue_number}/comments"
        r = self.session.post(url, json={"body": body}, timeout=self.timeout)
        r.raise_for_status()
        try:
            return (r.json() or {}).get("html_url")
        except ValueError:
            return None

    @staticmethod
    def _output(name: str, title: Optional[str], summary: str, text: Optional[str]) -> Dict[str, Any]:
        output: Dict[str, Any] = {"title": title or name, "summary": summary}
        if text:
            output["text"] = text
        return output
