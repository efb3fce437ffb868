"""Fixtures for deployment tests: a recording HTTP endpoint and action contexts."""

from __future__ import annotations

import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from certkeeper.core.locks import CancelToken
from certkeeper.core.types import DeployActionType
from certkeeper.deploy.base import ActionContext
from certkeeper.models.deployment import DeploymentAction


class HttpRecorder:
    """Requests received by the test server and the replies it will send.

    ``replies`` is consumed front to back; once empty every request is
    answered with ``default``.  A reply may be a callable taking the
    recorded request and returning ``(status, body)``.
    """

    def __init__(self) -> None:
        self.requests: list[dict] = []
        self.replies: list = []
        self.default: tuple[int, object] = (200, {})
        self.base_url = ""
        self._lock = threading.Lock()

    def reply(self, request: dict) -> tuple[int, bytes]:
        with self._lock:
            self.requests.append(request)
            reply = self.replies.pop(0) if self.replies else self.default
        if callable(reply):
            reply = reply(request)
        status, body = reply
        if not isinstance(body, bytes):
            body = json.dumps(body).encode("utf-8")
        return status, body

    def paths(self) -> list[str]:
        return [r["path"] for r in self.requests]


@pytest.fixture()
def http_recorder():
    recorder = HttpRecorder()

    class Handler(BaseHTTPRequestHandler):
        def _handle(self) -> None:
            length = int(self.headers.get("Content-Length") or 0)
            body = self.rfile.read(length) if length else b""
            status, payload = recorder.reply(
                {
                    "method": self.command,
                    "path": self.path,
                    "headers": {k.lower(): v for k, v in self.headers.items()},
                    "body": body,
                },
            )
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        do_GET = do_POST = do_PUT = do_PATCH = _handle

        def log_message(self, format, *args):  # noqa: A002
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    recorder.base_url = f"http://127.0.0.1:{server.server_address[1]}"
    yield recorder
    server.shutdown()
    server.server_close()
    thread.join(timeout=5)


@pytest.fixture()
def make_context(store):
    """Return ``make(cert, action_type, config, **kwargs) -> ActionContext``."""

    def make(cert, action_type, config, **kwargs):
        action = DeploymentAction(id="a1", type=DeployActionType(action_type), name="test", config=config)
        kwargs.setdefault("cancel", CancelToken())
        kwargs.setdefault("network_timeout", 5.0)
        kwargs.setdefault("key_passphrase", store.key_passphrase(cert.fingerprint))
        return ActionContext(certificate=cert, action=action, config=config, **kwargs)

    return make
