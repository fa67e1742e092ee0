from __future__ import annotations

import json
import tempfile
from pathlib import Path
from typing import Annotated, List, Optional

from pydantic import Field, SecretStr, confloat, conint, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .constants import DEFAULT_EXCLUDE_PATHS, EventKind, Limits, Severity
from .errors import ConfigError


def _split_list(value: object) -> object:
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith("["):
            return json.loads(stripped)
        return [part.strip() for part in stripped.split(",") if part.strip()]
    return value


class SemgateConfig(BaseSettings):
    """Process-wide configuration, read once at startup."""

    model_config = SettingsConfigDict(
        env_prefix="SEMGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        frozen=True,
        extra="ignore",
    )

    # GitHub App
    app_id: str = Field(default="", description="GitHub App id")
    private_key: SecretStr = Field(default=SecretStr(""), description="GitHub App private key (PEM)")
    private_key_path: Optional[Path] = Field(default=None, description="Path to the PEM file")
    webhook_secret: SecretStr = Field(default=SecretStr(""), description="Webhook HMAC secret")
    allow_unsigned_webhooks: bool = Field(default=False)
    github_api_url: str = Field(default="https://api.github.com")
    enterprise_hostname: Optional[str] = Field(default=None)

    # Webhook server
    host: str = Field(default="0.0.0.0")
    port: conint(ge=1, le=65535) = Field(default=3000)
    events: Annotated[List[EventKind], NoDecode] = Field(
        default_factory=lambda: [EventKind.OPENED, EventKind.REOPENED],
        description="Pull request actions that trigger a scan",
    )

    # Scanner
    scanner_bin: str = Field(default="semgrep")
    scanner_config: str = Field(default="auto", description="Semgrep rule-set selector")
    scan_timeout: conint(ge=1) = Field(default=300, description="Scan timeout in seconds")
    severity: Annotated[List[Severity], NoDecode] = Field(
        default_factory=lambda: list(Severity),
        description="Severity levels to include",
    )
    exclude_paths: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDE_PATHS)
    )
    max_output_bytes: conint(ge=1024) = Field(default=Limits.MAX_OUTPUT_BYTES)

    # Workspace
    workspace_root: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()))
    clone_timeout: conint(ge=1) = Field(default=120)

    # Export
    export_results: bool = Field(default=False, description="Archive raw reports to files")
    export_dir: Path = Field(default=Path("exports"))
    webhook_url: Optional[str] = Field(default=None, description="External export endpoint")

    http_timeout: confloat(gt=0) = Field(default=15.0)

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value: object) -> object:
        value = _split_list(value)
        if isinstance(value, list):
            return [str(item).strip().upper() for item in value]
        return value

    @field_validator("events", mode="before")
    @classmethod
    def _normalize_events(cls, value: object) -> object:
        value = _split_list(value)
        if isinstance(value, list):
            return [str(item).strip().lower() for item in value]
        return value

    @field_validator("exclude_paths", mode="before")
    @classmethod
    def _normalize_exclude_paths(cls, value: object) -> object:
        return _split_list(value)

    @field_validator("webhook_url", "enterprise_hostname", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def api_base_url(self) -> str:
        if self.enterprise_hostname:
            return f"https://{self.enterprise_hostname}/api/v3"
        return self.github_api_url.rstrip("/")

    @property
    def clone_base_url(self) -> str:
        if self.enterprise_hostname:
            return f"https://{self.enterprise_hostname}"
        return "https://github.com"

    def load_private_key(self) -> str:
        """Return the PEM private key, preferring the inline value."""
        key = self.private_key.get_secret_value().replace("\\n", "\n").strip()
        if not key and self.private_key_path:
            try:
                key = self.private_key_path.read_text(encoding="utf-8").strip()
            except OSError as exc:
                raise ConfigError(
                    f"Failed to read private key from {self.private_key_path}: {exc}"
                ) from exc
        if not key.startswith("-----BEGIN") or "PRIVATE KEY" not in key:
            raise ConfigError("GitHub App private key is missing or not a PEM key")
        return key
