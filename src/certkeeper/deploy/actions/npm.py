"""``npm-update`` action: push the certificate to Nginx Proxy Manager.

Authenticates against ``POST /api/tokens`` with the stored identity and
secret, caches the returned token until its reported expiry and then
replaces the custom certificate with ``PUT
/api/nginx/certificates/{targetCertId}``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from certkeeper.ca.parsing import parse_certificate
from certkeeper.core.errors import AuthError, DeployError, IssuerError, ValidationError
from certkeeper.core.types import DeployActionType
from certkeeper.deploy import http
from certkeeper.deploy.base import ActionContext, DeployAction
from certkeeper.deploy.tokens import CachedToken, NpmTokenCache

log = logging.getLogger(__name__)

_AUTH_STATUSES = frozenset({401, 403})
# Tokens without a reported expiry are trusted for slightly less than a day
_DEFAULT_TOKEN_LIFETIME = timedelta(hours=23)


class NpmUpdateAction(DeployAction):
    """Config::

        {"host": "npm.internal", "port": 81, "https": false,
         "identity": "admin@example.com", "password": "...",
         "targetCertId": 12, "verifyTls": true}
    """

    action_type = DeployActionType.NPM_UPDATE
    required_fields = ("host", "identity", "password", "targetCertId")

    def __init__(self, tokens: NpmTokenCache | None = None) -> None:
        self._own_tokens = tokens or NpmTokenCache()

    @classmethod
    def validate_config(cls, config: dict) -> None:
        super().validate_config(config)
        port = config.get("port", 81)
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:  # noqa: PLR2004
            msg = "npm-update 'port' must be an integer between 1 and 65535"
            raise ValidationError(msg)
        try:
            int(config["targetCertId"])
        except (TypeError, ValueError):
            msg = "npm-update 'targetCertId' must be an integer id"
            raise ValidationError(msg) from None

    @staticmethod
    def base_url(config: dict) -> str:
        scheme = "https" if config.get("https") else "http"
        return f"{scheme}://{config['host']}:{config.get('port', 81)}/api"

    def run(self, ctx: ActionContext) -> str:
        config = ctx.config
        tokens = ctx.tokens or self._own_tokens
        base = self.base_url(config)
        key = (base, str(config["identity"]))
        target = int(config["targetCertId"])

        body = {
            "certificate": ctx.read("cert").decode("ascii"),
            "key": ctx.plain_key_pem().decode("ascii"),
        }
        if ctx.path_for("chain"):
            body["chain"] = ctx.read("chain").decode("ascii")

        token = tokens.get(key, lambda: self._fetch_token(ctx, base))
        try:
            resp = self._put(ctx, base, target, token, body)
        except http.HttpStatusError as exc:
            if exc.status not in _AUTH_STATUSES:
                raise
            # Token revoked or expired early: refresh once with the stored credentials
            log.info("NPM rejected the cached token (HTTP %d), refreshing", exc.status)
            tokens.invalidate(key)
            token = tokens.get(key, lambda: self._fetch_token(ctx, base))
            try:
                resp = self._put(ctx, base, target, token, body)
            except http.HttpStatusError as retry_exc:
                if retry_exc.status in _AUTH_STATUSES:
                    msg = f"NPM refused a freshly issued token (HTTP {retry_exc.status})"
                    raise AuthError(msg) from retry_exc
                raise

        self._check_response(ctx, target, resp.json())
        return f"updated NPM certificate {target}"

    def _fetch_token(self, ctx: ActionContext, base: str) -> CachedToken:
        config = ctx.config
        try:
            resp = http.send_json(
                "POST",
                f"{base}/tokens",
                {"identity": config["identity"], "secret": config["password"]},
                timeout=ctx.network_timeout,
                verify_tls=config.get("verifyTls", True),
            )
        except http.HttpStatusError as exc:
            if exc.status in _AUTH_STATUSES or exc.status == 400:  # noqa: PLR2004
                msg = f"NPM rejected the stored credentials (HTTP {exc.status})"
                raise AuthError(msg) from exc
            raise
        data = resp.json() or {}
        token = data.get("token")
        if not token:
            msg = "NPM token response did not contain a token"
            raise DeployError(msg, transient=True)
        expires_at = _parse_expiry(data.get("expires"))
        log.debug("Obtained NPM token valid until %s", expires_at.isoformat())
        return CachedToken(token=token, expires_at=expires_at)

    @staticmethod
    def _put(ctx: ActionContext, base: str, target: int, token: str, body: dict) -> http.HttpResponse:
        return http.send_json(
            "PUT",
            f"{base}/nginx/certificates/{target}",
            body,
            headers={"Authorization": f"Bearer {token}"},
            timeout=ctx.network_timeout,
            verify_tls=ctx.config.get("verifyTls", True),
        )

    @staticmethod
    def _check_response(ctx: ActionContext, target: int, data: object) -> None:
        if not isinstance(data, dict) or data.get("id") != target:
            msg = f"NPM did not confirm the update of certificate {target}"
            raise DeployError(msg)
        meta = data.get("meta") if isinstance(data.get("meta"), dict) else {}
        echoed = data.get("certificate") or meta.get("certificate")
        if not isinstance(echoed, str) or "BEGIN CERTIFICATE" not in echoed:
            msg = f"NPM did not return the uploaded certificate for {target}"
            raise DeployError(msg)
        try:
            fingerprint = parse_certificate(echoed.encode("ascii")).fingerprint
        except (IssuerError, UnicodeEncodeError) as exc:
            msg = f"NPM echoed an unparsable certificate: {exc}"
            raise DeployError(msg) from exc
        if fingerprint != ctx.certificate.fingerprint:
            msg = f"NPM reports certificate {fingerprint[:16]} instead of {ctx.certificate.fingerprint[:16]}"
            raise DeployError(msg)


def _parse_expiry(value: object) -> datetime:
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            log.warning("Unparsable NPM token expiry %r", value)
        else:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return datetime.now(UTC) + _DEFAULT_TOKEN_LIFETIME
