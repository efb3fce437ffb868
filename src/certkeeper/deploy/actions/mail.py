"""``email`` action: send a rendered notification through SMTP.

Per-action SMTP keys override the global ``smtp`` config section.
"""

from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from certkeeper.core.errors import AuthError, DeployError, ValidationError
from certkeeper.core.types import DeployActionType
from certkeeper.deploy.base import ActionContext, DeployAction, os_failure
from certkeeper.deploy.renderer import TemplateRenderer

log = logging.getLogger(__name__)

_SMTP_PERMANENT_CODE = 500


class EmailAction(DeployAction):
    """Config::

        {"recipients": ["ops@example.com"], "template": "deployment",
         "subject": "optional override", "message": "free text",
         "host": "smtp.example.com", "port": 587, "username": "...",
         "password": "...", "useTls": true, "useSsl": false,
         "fromAddress": "certkeeper@example.com"}
    """

    action_type = DeployActionType.EMAIL
    required_fields = ("recipients",)

    @classmethod
    def validate_config(cls, config: dict) -> None:
        super().validate_config(config)
        recipients = config["recipients"]
        if not isinstance(recipients, list) or not all(
            isinstance(r, str) and "@" in r for r in recipients
        ):
            msg = "email 'recipients' must be a list of email addresses"
            raise ValidationError(msg)
        if config.get("useTls") and config.get("useSsl"):
            msg = "email 'useTls' and 'useSsl' are mutually exclusive"
            raise ValidationError(msg)

    @staticmethod
    def _server(ctx: ActionContext) -> dict:
        config = ctx.config
        smtp = ctx.smtp
        server = {
            "host": config.get("host") or (smtp.host if smtp and smtp.enabled else ""),
            "port": config.get("port") or (smtp.port if smtp else 587),
            "username": config.get("username") or (smtp.username if smtp else ""),
            "password": config.get("password") or (smtp.password if smtp else ""),
            "use_tls": config.get("useTls", smtp.use_tls if smtp else True),
            "use_ssl": config.get("useSsl", smtp.use_ssl if smtp else False),
            "from_address": config.get("fromAddress") or (smtp.from_address if smtp else ""),
        }
        if not server["host"] or not server["from_address"]:
            msg = "SMTP is not configured: set the smtp section or host/fromAddress on the action"
            raise DeployError(msg)
        return server

    def build_message(self, ctx: ActionContext, from_address: str) -> MIMEMultipart:
        renderer = ctx.renderer or TemplateRenderer()
        context = ctx.payload()
        context["message"] = ctx.config.get("message", "")
        subject, body = renderer.render(ctx.config.get("template", "deployment"), context)
        msg = MIMEMultipart("alternative")
        msg["From"] = from_address
        msg["To"] = ", ".join(ctx.config["recipients"])
        msg["Subject"] = ctx.config.get("subject") or subject
        msg.attach(MIMEText(body, "html", "utf-8"))
        return msg

    def run(self, ctx: ActionContext) -> str:
        server = self._server(ctx)
        recipients = list(ctx.config["recipients"])
        message = self.build_message(ctx, server["from_address"])
        smtp_cls = smtplib.SMTP_SSL if server["use_ssl"] else smtplib.SMTP

        try:
            with smtp_cls(server["host"], server["port"], timeout=ctx.smtp_timeout) as conn:
                conn.ehlo()
                if server["use_tls"] and not server["use_ssl"]:
                    conn.starttls()
                    conn.ehlo()
                if server["username"]:
                    conn.login(server["username"], server["password"])
                refused = conn.sendmail(server["from_address"], recipients, message.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            msg = f"SMTP login to {server['host']} rejected: {exc.smtp_code}"
            raise AuthError(msg) from exc
        except smtplib.SMTPRecipientsRefused as exc:
            msg = f"All recipients refused: {sorted(exc.recipients)}"
            raise DeployError(msg) from exc
        except smtplib.SMTPResponseException as exc:
            msg = f"SMTP server {server['host']} replied {exc.smtp_code}: {exc.smtp_error!r}"
            raise DeployError(msg, transient=exc.smtp_code < _SMTP_PERMANENT_CODE) from exc
        except smtplib.SMTPException as exc:
            msg = f"SMTP delivery through {server['host']} failed: {exc}"
            raise DeployError(msg, transient=True) from exc
        except OSError as exc:
            raise os_failure(exc, f"SMTP server {server['host']}") from exc

        if refused:
            msg = f"Recipients refused: {sorted(refused)}"
            raise DeployError(msg)
        log.info("Sent %s notification for '%s' to %d recipient(s)", ctx.event, ctx.certificate.name, len(recipients))
        return f"sent to {len(recipients)} recipient(s)"
