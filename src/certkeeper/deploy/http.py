"""Small JSON-over-HTTP helper shared by the network actions.

Built on :mod:`urllib.request`.  Every failure is translated into a
:class:`~certkeeper.core.errors.DeployError` whose ``transient`` flag
follows the retry policy: network errors, timeouts, 5xx, 408 and 429
are transient; any other 4xx is permanent.
"""

from __future__ import annotations

import contextlib
import json
import logging
import ssl
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any

from certkeeper.core.errors import DeployError

log = logging.getLogger(__name__)

_RETRYABLE_4XX = frozenset({408, 429})


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: bytes

    def json(self) -> Any:  # noqa: ANN401
        if not self.body:
            return None
        try:
            return json.loads(self.body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return None


class HttpStatusError(DeployError):
    """Non-2xx response; carries the status code."""

    def __init__(self, detail: str, *, status: int) -> None:
        super().__init__(detail, transient=is_transient_status(status))
        self.status = status


def is_transient_status(status: int) -> bool:
    return status >= 500 or status in _RETRYABLE_4XX  # noqa: PLR2004


def _context(verify_tls: bool) -> ssl.SSLContext | None:  # noqa: FBT001
    if verify_tls:
        return None
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


def send(
    method: str,
    url: str,
    *,
    body: bytes | None = None,
    headers: dict[str, str] | None = None,
    timeout: float = 30.0,
    verify_tls: bool = True,
) -> HttpResponse:
    """Perform one request and return the 2xx response.

    Raises
    ------
    HttpStatusError
        For any non-2xx status.
    DeployError
        For network failures (always transient).

    """
    req = urllib.request.Request(url, data=body, method=method, headers=headers or {})
    try:
        with urllib.request.urlopen(req, timeout=timeout, context=_context(verify_tls)) as resp:
            return HttpResponse(status=resp.status, body=resp.read())
    except urllib.error.HTTPError as exc:
        detail = ""
        with contextlib.suppress(Exception):
            detail = exc.read().decode("utf-8", errors="replace")[:200]
        msg = f"{method} {url} returned HTTP {exc.code}"
        if detail:
            msg = f"{msg}: {detail}"
        raise HttpStatusError(msg, status=exc.code) from exc
    except TimeoutError as exc:
        msg = f"{method} {url} timed out after {timeout}s"
        raise DeployError(msg, transient=True) from exc
    except (urllib.error.URLError, OSError) as exc:
        msg = f"{method} {url} failed: {exc}"
        raise DeployError(msg, transient=True) from exc


def send_json(
    method: str,
    url: str,
    payload: Any = None,  # noqa: ANN401
    *,
    headers: dict[str, str] | None = None,
    timeout: float = 30.0,
    verify_tls: bool = True,
) -> HttpResponse:
    all_headers = {"Content-Type": "application/json", "Accept": "application/json"}
    all_headers.update(headers or {})
    body = json.dumps(payload).encode("utf-8") if payload is not None else None
    return send(method, url, body=body, headers=all_headers, timeout=timeout, verify_tls=verify_tls)
