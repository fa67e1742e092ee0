from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Dict, Optional

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse

from .config import SemgateConfig
from .constants import VERSION
from .context import PullRequestEvent
from .errors import WebhookSignatureError
from .github import GitHubAppAuth
from .logging import ScanLogger
from .pipeline import ScanPipeline


def _error_payload(code: str, message: str, request_id: str, details: Any = None) -> Dict[str, Any]:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details,
            "request_id": request_id,
        }
    }


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> None:
    """Check GitHub's `X-Hub-Signature-256` header; raises WebhookSignatureError."""
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not signature or not signature.startswith("sha256="):
        raise WebhookSignatureError("Missing X-Hub-Signature-256 header")
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise WebhookSignatureError("Webhook signature mismatch")


def create_app(
    config: Optional[SemgateConfig] = None,
    pipeline: Optional[ScanPipeline] = None,
    logger: Optional[ScanLogger] = None,
) -> FastAPI:
    config = config or SemgateConfig()
    logger = logger or ScanLogger("server")
    if pipeline is None:
        auth = GitHubAppAuth(
            app_id=config.app_id,
            private_key=config.load_private_key(),
            api_url=config.api_base_url,
            timeout=float(config.http_timeout),
        )
        pipeline = ScanPipeline(config, auth, logger)

    enabled_events = {kind.value for kind in config.events}
    app = FastAPI(title="Semgate", version=VERSION)
    app.state.config = config
    app.state.pipeline = pipeline

    @app.get("/health")
    async def health():
        """Basic liveness check."""
        return {"status": "ok"}

    async def receive(request: Request, background_tasks: BackgroundTasks):
        body = await request.body()
        event_name = request.headers.get("X-GitHub-Event", "")
        delivery_id = request.headers.get("X-GitHub-Delivery", "unknown")
        logger.info("Incoming webhook", event=event_name, delivery=delivery_id)

        if not config.allow_unsigned_webhooks:
            try:
                verify_signature(
                    config.webhook_secret.get_secret_value(),
                    body,
                    request.headers.get("X-Hub-Signature-256"),
                )
            except WebhookSignatureError as exc:
                logger.warning("Webhook rejected", delivery=delivery_id, error=str(exc))
                return JSONResponse(
                    status_code=401,
                    content=_error_payload("INVALID_SIGNATURE", str(exc), delivery_id),
                )

        try:
            payload = json.loads(body or b"{}")
        except json.JSONDecodeError as exc:
            return JSONResponse(
                status_code=400,
                content=_error_payload("INVALID_PAYLOAD", "Body is not valid JSON", delivery_id, str(exc)),
            )

        if event_name == "ping":
            return {"status": "pong"}

        action = str(payload.get("action") or "").lower() if isinstance(payload, dict) else ""
        if event_name != "pull_request" or action not in enabled_events:
            logger.debug("Unhandled webhook", event=event_name, action=action)
            return JSONResponse(status_code=202, content={"status": "ignored"})

        try:
            event = PullRequestEvent.from_payload(payload, delivery_id=delivery_id)
        except ValueError as exc:
            logger.warning("Malformed pull_request payload", delivery=delivery_id, error=str(exc))
            return JSONResponse(
                status_code=400,
                content=_error_payload("INVALID_PAYLOAD", "Malformed pull_request payload", delivery_id, str(exc)),
            )

        background_tasks.add_task(pipeline.run, event)
        return JSONResponse(status_code=202, content={"status": "accepted", "delivery": delivery_id})

    # Root path kept for smee.io-style forwarders.
    app.add_api_route("/", receive, methods=["POST"])
    app.add_api_route("/webhook", receive, methods=["POST"])
    return app
