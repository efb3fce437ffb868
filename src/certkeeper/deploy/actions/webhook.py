"""``webhook`` action: notify an HTTP endpoint about a deployment.

The request body is the JSON payload::

    {"event", "fingerprint", "name", "type", "notAfter", "paths", "sans",
     "timestamp"}

With a ``secret`` configured, ``X-CertKeeper-Signature: sha256=<hex>``
carries an HMAC-SHA256 of the exact body bytes.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import UTC, datetime
from urllib.parse import urlsplit

from certkeeper.core.errors import ValidationError
from certkeeper.core.types import DeployActionType
from certkeeper.deploy import http
from certkeeper.deploy.base import ActionContext, DeployAction

log = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-CertKeeper-Signature"
EVENT_HEADER = "X-CertKeeper-Event"
_METHODS = frozenset({"POST", "PUT", "PATCH"})


def sign_body(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookAction(DeployAction):
    """Config::

        {"url": "https://hooks.example.com/certs", "method": "POST",
         "headers": {"X-Team": "infra"}, "secret": "...",
         "includeCertificate": false, "verifyTls": true}
    """

    action_type = DeployActionType.WEBHOOK
    required_fields = ("url",)

    @classmethod
    def validate_config(cls, config: dict) -> None:
        super().validate_config(config)
        parts = urlsplit(str(config["url"]))
        if parts.scheme not in ("http", "https") or not parts.netloc:
            msg = f"webhook 'url' must be an http(s) URL, got {config['url']!r}"
            raise ValidationError(msg)
        method = str(config.get("method", "POST")).upper()
        if method not in _METHODS:
            msg = f"webhook 'method' must be one of {sorted(_METHODS)}"
            raise ValidationError(msg)
        headers = config.get("headers", {})
        if not isinstance(headers, dict) or not all(isinstance(v, str) for v in headers.values()):
            msg = "webhook 'headers' must map header names to strings"
            raise ValidationError(msg)

    def build_body(self, ctx: ActionContext) -> bytes:
        payload = ctx.payload()
        payload["timestamp"] = datetime.now(UTC).isoformat()
        if ctx.config.get("includeCertificate"):
            payload["certificate"] = ctx.read("cert").decode("ascii")
        return json.dumps(payload, sort_keys=True).encode("utf-8")

    def run(self, ctx: ActionContext) -> str:
        config = ctx.config
        body = self.build_body(ctx)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "certkeeper-webhook",
            EVENT_HEADER: ctx.event,
        }
        headers.update(config.get("headers") or {})
        if config.get("secret"):
            headers[SIGNATURE_HEADER] = sign_body(str(config["secret"]), body)

        resp = http.send(
            str(config.get("method", "POST")).upper(),
            config["url"],
            body=body,
            headers=headers,
            timeout=ctx.network_timeout,
            verify_tls=config.get("verifyTls", True),
        )
        return f"HTTP {resp.status}"
