"""``docker-restart`` action: restart a container so it reloads its certificates."""

from __future__ import annotations

import logging
import time

import docker
from docker.errors import APIError, DockerException, NotFound

from certkeeper.core.errors import DeployError, ValidationError
from certkeeper.core.types import DeployActionType
from certkeeper.deploy.base import ActionContext, DeployAction

log = logging.getLogger(__name__)

_POLL_SECONDS = 0.5


class DockerRestartAction(DeployAction):
    """Config::

        {"container": "nginx", "dockerHost": "unix:///var/run/docker.sock",
         "stopTimeout": 10, "waitSeconds": 30}

    Succeeds once the container reports ``running`` again.
    """

    action_type = DeployActionType.DOCKER_RESTART
    required_fields = ("container",)

    @classmethod
    def validate_config(cls, config: dict) -> None:
        super().validate_config(config)
        for key in ("stopTimeout", "waitSeconds"):
            value = config.get(key)
            if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
                msg = f"docker-restart '{key}' must be a non-negative integer"
                raise ValidationError(msg)

    def _client(self, ctx: ActionContext) -> docker.DockerClient:
        host = ctx.config.get("dockerHost")
        if host:
            return docker.DockerClient(base_url=host, timeout=int(ctx.network_timeout))
        return docker.from_env(timeout=int(ctx.network_timeout))

    def run(self, ctx: ActionContext) -> str:
        name = str(ctx.config["container"])
        stop_timeout = int(ctx.config.get("stopTimeout", 10))
        wait_seconds = float(ctx.config.get("waitSeconds", 30))

        try:
            client = self._client(ctx)
        except DockerException as exc:
            msg = f"Cannot reach the Docker daemon: {exc}"
            raise DeployError(msg, transient=True) from exc

        try:
            container = client.containers.get(name)
            container.restart(timeout=stop_timeout)
            log.info("Restarted container '%s' for '%s'", name, ctx.certificate.name)

            deadline = time.monotonic() + wait_seconds
            while True:
                container.reload()
                if container.status == "running":
                    return f"container {name} running"
                if time.monotonic() >= deadline:
                    msg = f"Container '{name}' is '{container.status}' {wait_seconds:.0f}s after restart"
                    raise DeployError(msg, transient=True)
                if ctx.cancel.wait(_POLL_SECONDS):
                    ctx.cancel.raise_if_cancelled()
        except NotFound as exc:
            msg = f"Container '{name}' does not exist"
            raise DeployError(msg) from exc
        except APIError as exc:
            msg = f"Docker API error restarting '{name}': {exc.explanation or exc}"
            raise DeployError(msg, transient=exc.is_server_error()) from exc
        except DockerException as exc:
            msg = f"Docker error restarting '{name}': {exc}"
            raise DeployError(msg, transient=True) from exc
        except OSError as exc:
            msg = f"Docker daemon connection failed: {exc}"
            raise DeployError(msg, transient=True) from exc
        finally:
            client.close()
