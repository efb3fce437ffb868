"""Tests for the Nginx Proxy Manager action and its token cache."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import pytest

from certkeeper.core.errors import ValidationError
from certkeeper.deploy.actions.npm import NpmUpdateAction
from certkeeper.deploy.tokens import CachedToken, NpmTokenCache


def _config(recorder, **overrides) -> dict:
    host, port = recorder.base_url.removeprefix("http://").split(":")
    config = {
        "host": host,
        "port": int(port),
        "identity": "admin@example.com",
        "password": "changeme",
        "targetCertId": 12,
    }
    config.update(overrides)
    return config


def _token_reply(token="tok-1", hours=24):
    expires = (datetime.now(UTC) + timedelta(hours=hours)).isoformat()
    return (200, {"token": token, "expires": expires})


def _echo(leaf, target=12):
    def reply(request):
        return (200, {"id": target, "certificate": json.loads(request["body"])["certificate"]})

    return reply


# ---------------------------------------------------------------------------
# TestNpmUpdate
# ---------------------------------------------------------------------------


class TestNpmUpdate:
    def test_login_then_replace(self, leaf, make_context, http_recorder):
        http_recorder.replies = [_token_reply(), _echo(leaf)]
        tokens = NpmTokenCache()
        ctx = make_context(leaf, "npm-update", _config(http_recorder), tokens=tokens)

        attempt = NpmUpdateAction().execute(ctx)

        assert attempt.ok, attempt.detail
        assert attempt.detail == "updated NPM certificate 12"
        login, put = http_recorder.requests
        assert (login["method"], login["path"]) == ("POST", "/api/tokens")
        assert json.loads(login["body"]) == {"identity": "admin@example.com", "secret": "changeme"}
        assert (put["method"], put["path"]) == ("PUT", "/api/nginx/certificates/12")
        assert put["headers"]["authorization"] == "Bearer tok-1"
        body = json.loads(put["body"])
        assert body["certificate"].startswith("-----BEGIN CERTIFICATE-----")
        assert "PRIVATE KEY" in body["key"]
        assert "chain" in body
        assert len(tokens) == 1

    def test_cached_token_is_reused(self, leaf, make_context, http_recorder):
        http_recorder.replies = [_token_reply(), _echo(leaf), _echo(leaf)]
        tokens = NpmTokenCache()
        for _ in range(2):
            ctx = make_context(leaf, "npm-update", _config(http_recorder), tokens=tokens)
            assert NpmUpdateAction().execute(ctx).ok
        assert http_recorder.paths() == ["/api/tokens", "/api/nginx/certificates/12", "/api/nginx/certificates/12"]

    def test_rejected_token_is_refreshed_once(self, leaf, make_context, http_recorder):
        tokens = NpmTokenCache()
        ctx = make_context(leaf, "npm-update", _config(http_recorder), tokens=tokens)
        http_recorder.replies = [_token_reply("old"), (401, {}), _token_reply("new"), _echo(leaf)]

        attempt = NpmUpdateAction().execute(ctx)

        assert attempt.ok, attempt.detail
        assert http_recorder.requests[-1]["headers"]["authorization"] == "Bearer new"

    def test_fresh_token_refused_is_auth_error(self, leaf, make_context, http_recorder):
        ctx = make_context(leaf, "npm-update", _config(http_recorder), tokens=NpmTokenCache())
        http_recorder.replies = [_token_reply("a"), (403, {}), _token_reply("b"), (403, {})]

        attempt = NpmUpdateAction().execute(ctx)

        assert attempt.error.code == "auth"
        assert "freshly issued token" in attempt.detail

    def test_wrong_echo_fails(self, leaf, root_ca, make_context, http_recorder):
        with open(root_ca.paths.crt, encoding="ascii") as fh:
            other = fh.read()
        http_recorder.replies = [_token_reply(), (200, {"id": 12, "certificate": other})]
        ctx = make_context(leaf, "npm-update", _config(http_recorder), tokens=NpmTokenCache())

        attempt = NpmUpdateAction().execute(ctx)

        assert not attempt.ok
        assert "instead of" in attempt.detail

    def test_unconfirmed_update_fails(self, leaf, make_context, http_recorder):
        http_recorder.replies = [_token_reply(), (200, {"id": 99})]
        ctx = make_context(leaf, "npm-update", _config(http_recorder), tokens=NpmTokenCache())
        attempt = NpmUpdateAction().execute(ctx)
        assert "did not confirm" in attempt.detail

    @pytest.mark.parametrize(
        "reply,message",
        [
            ((200, b""), "did not confirm"),
            ((200, {"id": 12}), "did not return the uploaded certificate"),
            ((200, {"id": 12, "meta": {}}), "did not return the uploaded certificate"),
        ],
    )
    def test_missing_echo_fails(self, leaf, make_context, http_recorder, reply, message):
        http_recorder.replies = [_token_reply(), reply]
        ctx = make_context(leaf, "npm-update", _config(http_recorder), tokens=NpmTokenCache())

        attempt = NpmUpdateAction().execute(ctx)

        assert not attempt.ok
        assert message in attempt.detail

    def test_https_base_url(self):
        assert NpmUpdateAction.base_url({"host": "npm", "https": True}) == "https://npm:81/api"

    @pytest.mark.parametrize(
        ("config", "message"),
        [
            ({"host": "h", "identity": "i", "password": "p"}, "targetCertId"),
            ({"host": "h", "identity": "i", "password": "p", "targetCertId": "x"}, "integer id"),
            ({"host": "h", "identity": "i", "password": "p", "targetCertId": 1, "port": 0}, "port"),
        ],
    )
    def test_validation(self, config, message):
        with pytest.raises(ValidationError, match=message):
            NpmUpdateAction.validate_config(config)


# ---------------------------------------------------------------------------
# TestTokenCache
# ---------------------------------------------------------------------------


class TestTokenCache:
    def test_refreshes_inside_margin(self):
        now = datetime(2030, 1, 1, tzinfo=UTC)
        cache = NpmTokenCache(margin=timedelta(minutes=5), clock=lambda: now)
        fetched = []

        def fetch(expiry):
            def inner():
                fetched.append(expiry)
                return CachedToken(token=f"t{len(fetched)}", expires_at=expiry)

            return inner

        key = ("http://npm/api", "admin")
        assert cache.get(key, fetch(now + timedelta(hours=1))) == "t1"
        assert cache.get(key, fetch(now + timedelta(hours=1))) == "t1"
        cache.invalidate(key)
        assert cache.get(key, fetch(now + timedelta(minutes=4))) == "t2"
        assert cache.get(key, fetch(now + timedelta(hours=1))) == "t3"
        assert len(fetched) == 3

    def test_fetch_errors_propagate(self):
        cache = NpmTokenCache()

        def fail():
            raise RuntimeError("down")

        with pytest.raises(RuntimeError, match="down"):
            cache.get(("u", "i"), fail)
        assert len(cache) == 0
