"""``ftp-upload`` action: upload certificate files over FTP or FTPS."""

from __future__ import annotations

import ftplib
import io
import logging

from certkeeper.core.errors import AuthError, DeployError, ValidationError
from certkeeper.core.types import DeployActionType
from certkeeper.deploy.base import DEFAULT_FILE_NAMES, ActionContext, DeployAction, os_failure

log = logging.getLogger(__name__)

_OK_REPLIES = ("226", "250")


class FtpUploadAction(DeployAction):
    """Config::

        {"host": "ftp.example.com", "port": 21, "username": "deploy",
         "password": "...", "remoteDir": "/ssl", "tls": true,
         "passive": true, "files": ["cert", "key", "chain"],
         "names": {"cert": "server.crt"}}

    Each ``STOR`` must be answered with 226 or 250.
    """

    action_type = DeployActionType.FTP_UPLOAD
    required_fields = ("host", "username", "remoteDir")

    @classmethod
    def validate_config(cls, config: dict) -> None:
        super().validate_config(config)
        cls._roles(config)
        port = config.get("port", 21)
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:  # noqa: PLR2004
            msg = "ftp-upload 'port' must be an integer between 1 and 65535"
            raise ValidationError(msg)

    def _connect(self, ctx: ActionContext) -> ftplib.FTP:
        config = ctx.config
        ftp_cls = ftplib.FTP_TLS if config.get("tls") else ftplib.FTP
        ftp = ftp_cls(timeout=ctx.network_timeout)
        ftp.connect(config["host"], int(config.get("port", 21)))
        ftp.login(config["username"], config.get("password", ""))
        if config.get("tls"):
            ftp.prot_p()
        ftp.set_pasv(config.get("passive", True))
        return ftp

    @staticmethod
    def _ensure_dir(ftp: ftplib.FTP, remote_dir: str) -> None:
        try:
            ftp.cwd(remote_dir)
            return
        except ftplib.error_perm:
            pass
        path = ""
        for part in remote_dir.strip("/").split("/"):
            path = f"{path}/{part}" if path or remote_dir.startswith("/") else part
            try:
                ftp.cwd(path)
            except ftplib.error_perm:
                ftp.mkd(path)
        ftp.cwd(remote_dir)

    def run(self, ctx: ActionContext) -> str:
        config = ctx.config
        roles = self._roles(config)
        names = {**DEFAULT_FILE_NAMES, **(config.get("names") or {})}
        host = config["host"]

        try:
            ftp = self._connect(ctx)
        except ftplib.error_perm as exc:
            if str(exc).startswith("530"):
                msg = f"FTP login to {host} rejected: {exc}"
                raise AuthError(msg) from exc
            msg = f"FTP connection to {host} refused: {exc}"
            raise DeployError(msg) from exc
        except ftplib.error_temp as exc:
            msg = f"FTP server {host} busy: {exc}"
            raise DeployError(msg, transient=True) from exc
        except OSError as exc:
            raise os_failure(exc, f"FTP connection to {host}") from exc
        except EOFError as exc:
            msg = f"FTP connection to {host} closed unexpectedly"
            raise DeployError(msg, transient=True) from exc

        uploaded = 0
        try:
            self._ensure_dir(ftp, config["remoteDir"])
            for role in roles:
                ctx.cancel.raise_if_cancelled()
                if ctx.path_for(role) is None and role == "chain":
                    continue
                data = ctx.read(role)
                reply = ftp.storbinary(f"STOR {names[role]}", io.BytesIO(data))
                if not reply.startswith(_OK_REPLIES):
                    msg = f"FTP upload of {names[role]} answered '{reply}'"
                    raise DeployError(msg, transient=True)
                uploaded += 1
        except ftplib.error_perm as exc:
            msg = f"FTP upload to {host} refused: {exc}"
            raise DeployError(msg) from exc
        except ftplib.error_temp as exc:
            msg = f"FTP upload to {host} failed temporarily: {exc}"
            raise DeployError(msg, transient=True) from exc
        except ftplib.Error as exc:
            msg = f"FTP protocol error with {host}: {exc}"
            raise DeployError(msg, transient=True) from exc
        except (OSError, EOFError) as exc:
            msg = f"FTP connection to {host} lost: {exc}"
            raise DeployError(msg, transient=True) from exc
        finally:
            try:
                ftp.quit()
            except (ftplib.Error, OSError, EOFError):
                ftp.close()

        log.info("Uploaded %d file(s) of '%s' to ftp://%s", uploaded, ctx.certificate.name, host)
        return f"uploaded {uploaded} file(s)"
