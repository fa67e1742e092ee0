from __future__ import annotations

import json
import os
import re
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator

_CREDENTIAL_URL = re.compile(r"(https?://)[^/@\s]+@")


def mask_credentials(text: str) -> str:
    """Hide `user:token@` credentials embedded in URLs."""
    if not text:
        return ""
    return _CREDENTIAL_URL.sub(r"\1***@", str(text))


class ScanLogger:
    """Structured JSON logger scoped to one run."""

    def __init__(self, run_id: str, debug: bool | None = None):
        self.run_id = run_id
        if debug is None:
            debug = os.environ.get("SEMGATE_DEBUG", "").strip().lower() in {"1", "true", "yes"}
        self.debug_enabled = debug

    def debug(self, message: str, **kwargs: Any) -> None:
        if self.debug_enabled:
            self._emit("debug", message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._emit("info", message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._emit("warning", message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._emit("error", message, **kwargs)

    def child(self, run_id: str) -> "ScanLogger":
        return ScanLogger(run_id, debug=self.debug_enabled)

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        """Context manager that tracks stage timing."""
        start = datetime.now(timezone.utc)
        self.info("stage_start", stage=name)
        status = "ok"
        try:
            yield
        except Exception as exc:
            status = "error"
            self.error("stage_error", stage=name, error=str(exc))
            raise
        finally:
            end = datetime.now(timezone.utc)
            duration_ms = int((end - start).total_seconds() * 1000)
            self.info("stage_end", stage=name, duration_ms=duration_ms, status=status)

    def _emit(self, level: str, message: str, **kwargs: Any) -> None:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "run_id": self.run_id,
            "message": mask_credentials(message),
        }
        payload.update(self._sanitize(kwargs))

        sys.stderr.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
        sys.stderr.flush()

    @staticmethod
    def _sanitize(fields: Dict[str, Any]) -> Dict[str, Any]:
        redacted: Dict[str, Any] = {}
        for key, value in fields.items():
            if ScanLogger._is_sensitive_key(key):
                redacted[key] = "***"
            elif isinstance(value, str):
                redacted[key] = mask_credentials(value)
            else:
                redacted[key] = value
        return redacted

    @staticmethod
    def _is_sensitive_key(key: str) -> bool:
        lowered = key.lower()
        return any(
            token in lowered
            for token in ("token", "secret", "password", "api_key", "apikey", "private_key")
        )
