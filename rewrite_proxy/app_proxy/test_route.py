"""
Tests for the proxy dispatcher.

Tests cover:
- Upstream URL construction and header forwarding (X-Forwarded-*, X-Original-URL)
- Session binding and cookie jar replay
- /api/* pass-through and error envelopes
- /proxy payload rewriting, Location rewriting and Set-Cookie capture
- Error scenarios (timeout, connection errors)
"""

import gzip
import json
from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient
from httpx import AsyncClient, ConnectError, TimeoutException
from httpx import Response as HttpxResponse

from rewrite_proxy.app_proxy import route
from rewrite_proxy.app_proxy.route import (
    get_target_url,
    prepare_headers,
    rewrite_location_header,
)
from rewrite_proxy.rewriter import RewriteContext
from rewrite_proxy.session import AuthStateTracker, CookieRelay, SessionRegistry
from rewrite_proxy.store import InMemoryStore

TEST_TARGET_URL = "https://api.example.com"
TEST_PROXY_BASE_URL = "http://proxy.local"


@pytest.fixture
def mock_request():
    """Create a mock FastAPI Request object."""
    request = Mock(spec=Request)
    request.method = "GET"
    request.url.path = "/api/test"
    request.url.query = ""
    request.url.scheme = "https"
    request.headers = {"host": "proxy.example.com", "user-agent": "test-agent"}
    request.client.host = "192.168.1.100"
    return request


@pytest.fixture
def proxy_state(monkeypatch):
    """Fresh session, jar and auth stores for every test."""
    sessions = SessionRegistry(store=InMemoryStore(), secret="test-secret")
    jar = CookieRelay(store=InMemoryStore(), whitelist=[], blacklist=[])
    auth = AuthStateTracker(store=InMemoryStore())
    sessions.on_expire(jar.clear)
    sessions.on_expire(auth.clear_state)
    monkeypatch.setattr(route, "sessions", sessions)
    monkeypatch.setattr(route, "cookie_relay", jar)
    monkeypatch.setattr(route, "auth_tracker", auth)
    monkeypatch.setattr(route, "TARGET_URL", TEST_TARGET_URL)
    monkeypatch.setattr(route, "PROXY_BASE_URL", TEST_PROXY_BASE_URL)
    return sessions, jar, auth


@pytest.fixture
def client(proxy_state):
    app = FastAPI()
    app.include_router(route.router)
    return TestClient(app)


def upstream(status_code=200, headers=None, content=b""):
    return HttpxResponse(status_code, headers=headers or [], content=content)


class TestGetTargetUrl:
    def test_basic_path(self, monkeypatch):
        monkeypatch.setattr(route, "TARGET_URL", TEST_TARGET_URL)
        assert get_target_url("users") == "https://api.example.com/users"

    def test_with_query_parameters(self, monkeypatch):
        monkeypatch.setattr(route, "TARGET_URL", TEST_TARGET_URL)
        assert (
            get_target_url("users/7", "page=2&sort=name")
            == "https://api.example.com/users/7?page=2&sort=name"
        )


class TestPrepareHeaders:
    def test_hop_by_hop_and_origin_headers_removed(self, mock_request, proxy_state):
        mock_request.headers = {
            "host": "proxy.example.com",
            "connection": "keep-alive",
            "transfer-encoding": "chunked",
            "content-length": "12",
            "cookie": "client=1",
            "accept": "application/json",
        }

        headers = prepare_headers(mock_request)

        assert "connection" not in headers
        assert "transfer-encoding" not in headers
        assert "content-length" not in headers
        assert "host" not in headers
        assert "cookie" not in headers
        assert headers["accept"] == "application/json"

    def test_forwarding_headers_added(self, mock_request, proxy_state):
        mock_request.url.path = "/api/users"
        mock_request.url.query = "page=2"

        headers = prepare_headers(mock_request)

        assert headers["x-forwarded-for"] == "192.168.1.100"
        assert headers["x-forwarded-host"] == "proxy.example.com"
        assert headers["x-forwarded-proto"] == "https"
        assert headers["x-real-ip"] == "192.168.1.100"
        assert headers["x-original-url"] == "/api/users?page=2"

    def test_x_forwarded_for_chain(self, mock_request, proxy_state):
        mock_request.headers = {"host": "proxy.example.com", "x-forwarded-for": "10.0.0.1"}
        headers = prepare_headers(mock_request)
        assert headers["x-forwarded-for"] == "10.0.0.1, 192.168.1.100"

    def test_client_without_host(self, mock_request, proxy_state):
        mock_request.client = None
        headers = prepare_headers(mock_request)
        assert headers["x-real-ip"] == "unknown"

    def test_session_jar_replayed(self, mock_request, proxy_state):
        _, jar, _ = proxy_state
        jar.relay("s1", "sid=abc; Path=/", "https://api.example.com/login")
        jar.relay("s1", "theme=dark", "https://api.example.com/")

        headers = prepare_headers(mock_request, "s1", "https://api.example.com/users")

        assert headers["cookie"] == "sid=abc; theme=dark"

    def test_jar_replay_scoped_to_target_host(self, mock_request, proxy_state):
        _, jar, _ = proxy_state
        jar.relay("s1", "sid=SECRET; Domain=bank.example.com", "https://bank.example.com/login")

        headers = prepare_headers(mock_request, "s1", "https://tracker.example.net/pixel.gif")

        assert "cookie" not in headers

    def test_accept_encoding_limited_to_decodable_codings(self, mock_request, proxy_state):
        mock_request.headers = {
            "host": "proxy.example.com",
            "accept-encoding": "gzip, deflate, br, zstd",
        }

        headers = prepare_headers(mock_request)

        assert headers["accept-encoding"] == "gzip, deflate"


class TestRewriteLocationHeader:
    def test_relative_location(self):
        context = RewriteContext(TEST_PROXY_BASE_URL, "https://game.example.com/home")
        assert (
            rewrite_location_header("/login", context)
            == "http://proxy.local/proxy?url=https%3A%2F%2Fgame.example.com%2Flogin"
        )

    def test_empty_location(self):
        context = RewriteContext(TEST_PROXY_BASE_URL, "https://game.example.com/")
        assert rewrite_location_header("", context) == ""


class TestApiRoute:
    def test_get_users_end_to_end(self, client):
        body = b'[{"id": 1, "name": "Ada"}]'
        with patch.object(AsyncClient, "request", new_callable=AsyncMock) as mock_client:
            mock_client.return_value = upstream(
                200, [("content-type", "application/json")], body
            )

            response = client.get("/api/users")

        assert mock_client.call_args[1]["url"] == "https://api.example.com/users"
        assert mock_client.call_args[1]["method"] == "GET"
        assert response.status_code == 200
        assert response.content == body
        assert response.headers["content-type"] == "application/json"

    def test_query_string_preserved(self, client):
        with patch.object(AsyncClient, "request", new_callable=AsyncMock) as mock_client:
            mock_client.return_value = upstream(200, [], b"{}")
            client.get("/api/search?q=rpg&page=2")

        assert (
            mock_client.call_args[1]["url"]
            == "https://api.example.com/search?q=rpg&page=2"
        )

    def test_post_body_forwarded(self, client):
        with patch.object(AsyncClient, "request", new_callable=AsyncMock) as mock_client:
            mock_client.return_value = upstream(
                201, [("content-type", "application/json")], b'{"id": 123}'
            )
            response = client.post("/api/items", json={"name": "test"})

        assert response.status_code == 201
        assert json.loads(mock_client.call_args[1]["content"]) == {"name": "test"}

    def test_upstream_error_status_is_propagated(self, client):
        with patch.object(AsyncClient, "request", new_callable=AsyncMock) as mock_client:
            mock_client.return_value = upstream(404, [], b"missing")
            response = client.get("/api/nothing")

        assert response.status_code == 404
        payload = response.json()
        assert payload["error"] == "Proxy request failed"
        assert "404" in payload["message"]
        assert payload["timestamp"].endswith("Z")

    def test_timeout_maps_to_504(self, client):
        with patch.object(AsyncClient, "request", new_callable=AsyncMock) as mock_client:
            mock_client.side_effect = TimeoutException("slow")
            response = client.get("/api/slow")

        assert response.status_code == 504
        assert response.json()["error"] == "Proxy request failed"

    def test_connect_error_maps_to_502(self, client):
        with patch.object(AsyncClient, "request", new_callable=AsyncMock) as mock_client:
            mock_client.side_effect = ConnectError("refused")
            response = client.get("/api/down")

        assert response.status_code == 502

    def test_session_cookie_issued_once(self, client):
        with patch.object(AsyncClient, "request", new_callable=AsyncMock) as mock_client:
            mock_client.return_value = upstream(200, [], b"{}")
            first = client.get("/api/a")
            second = client.get("/api/b")

        assert route.SESSION_COOKIE_NAME in first.cookies
        assert route.SESSION_COOKIE_NAME not in second.cookies


class TestProxyRoute:
    def test_missing_url_is_rejected(self, client):
        response = client.get("/proxy")
        assert response.status_code == 400
        assert response.json()["error"] == "Bad Request"

    def test_non_http_url_is_rejected(self, client):
        response = client.get("/proxy", params={"url": "ftp://files.example.com/a"})
        assert response.status_code == 400

    def test_html_links_rewritten(self, client):
        html = b'<html><body><a href="/login">Sign in</a></body></html>'
        with patch.object(AsyncClient, "request", new_callable=AsyncMock) as mock_client:
            mock_client.return_value = upstream(
                200, [("content-type", "text/html; charset=utf-8")], html
            )
            response = client.get(
                "/proxy", params={"url": "https://game.example.com/home"}
            )

        assert mock_client.call_args[1]["url"] == "https://game.example.com/home"
        assert response.status_code == 200
        assert (
            'href="http://proxy.local/proxy?url=https%3A%2F%2Fgame.example.com%2Flogin"'
            in response.text
        )

    def test_binary_passthrough(self, client):
        png = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR"
        with patch.object(AsyncClient, "request", new_callable=AsyncMock) as mock_client:
            mock_client.return_value = upstream(
                200, [("content-type", "image/png")], png
            )
            response = client.get(
                "/proxy", params={"url": "https://game.example.com/logo.png"}
            )

        assert response.content == png

    def test_upstream_status_passed_through(self, client):
        with patch.object(AsyncClient, "request", new_callable=AsyncMock) as mock_client:
            mock_client.return_value = upstream(
                404, [("content-type", "text/plain")], b"not here"
            )
            response = client.get(
                "/proxy", params={"url": "https://game.example.com/gone"}
            )

        assert response.status_code == 404
        assert response.text == "not here"

    def test_redirect_location_rewritten(self, client):
        with patch.object(AsyncClient, "request", new_callable=AsyncMock) as mock_client:
            mock_client.return_value = upstream(
                302, [("location", "https://game.example.com/next")], b""
            )
            response = client.get(
                "/proxy",
                params={"url": "https://game.example.com/start"},
                follow_redirects=False,
            )

        assert response.status_code == 302
        assert (
            response.headers["location"]
            == "http://proxy.local/proxy?url=https%3A%2F%2Fgame.example.com%2Fnext"
        )

    def test_set_cookie_captured_and_replayed(self, client, proxy_state):
        _, jar, _ = proxy_state
        with patch.object(AsyncClient, "request", new_callable=AsyncMock) as mock_client:
            mock_client.return_value = upstream(
                200,
                [
                    ("content-type", "text/plain"),
                    ("set-cookie", "sid=abc; Path=/; HttpOnly"),
                ],
                b"ok",
            )
            first = client.get("/proxy", params={"url": "https://game.example.com/"})
            assert "sid" not in first.cookies

            client.get("/proxy", params={"url": "https://game.example.com/profile"})

        assert mock_client.call_args[1]["headers"]["cookie"] == "sid=abc"

    def test_sessions_are_isolated(self, proxy_state):
        app = FastAPI()
        app.include_router(route.router)
        alice, bob = TestClient(app), TestClient(app)

        with patch.object(AsyncClient, "request", new_callable=AsyncMock) as mock_client:
            mock_client.return_value = upstream(
                200, [("set-cookie", "owner=alice")], b"ok"
            )
            alice.get("/proxy", params={"url": "https://game.example.com/"})

            mock_client.return_value = upstream(200, [], b"ok")
            bob.get("/proxy", params={"url": "https://game.example.com/"})

        assert "cookie" not in mock_client.call_args[1]["headers"]

    def test_session_header_binds_existing_session(self, client, proxy_state):
        sessions, _, auth = proxy_state
        session = sessions.create()
        token = sessions.token_for(session)

        with patch.object(AsyncClient, "request", new_callable=AsyncMock) as mock_client:
            mock_client.return_value = upstream(200, [], b"ok")
            response = client.get(
                "/proxy",
                params={"url": "https://game.example.com/"},
                headers={route.SESSION_HEADER_NAME: token},
            )

        assert route.SESSION_COOKIE_NAME not in response.cookies
        assert len(sessions) == 1
        assert auth.stats()["active_sessions"] == 1

    def test_brotli_never_requested_upstream(self, client):
        with patch.object(AsyncClient, "request", new_callable=AsyncMock) as mock_client:
            mock_client.return_value = upstream(
                200, [("content-type", "text/plain")], b"plain body"
            )
            response = client.get(
                "/proxy",
                params={"url": "https://br.example.com/a.txt"},
                headers={"accept-encoding": "gzip, deflate, br"},
            )

        sent = mock_client.call_args[1]["headers"]["accept-encoding"]
        assert "br" not in sent
        assert response.text == "plain body"
        assert "content-encoding" not in response.headers

    def test_gzip_upstream_body_is_decoded_for_client(self, proxy_state):
        body = gzip.compress(b"<html><body><a href='/next'>go</a></body></html>")
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["accept-encoding"] = request.headers.get("accept-encoding")
            return httpx.Response(
                200,
                headers={"content-type": "text/html", "content-encoding": "gzip"},
                content=body,
            )

        real_client = httpx.AsyncClient

        def client_with_transport(*args, **kwargs):
            return real_client(*args, transport=httpx.MockTransport(handler), **kwargs)

        app = FastAPI()
        app.include_router(route.router)
        with patch.object(route.httpx, "AsyncClient", side_effect=client_with_transport):
            response = TestClient(app).get(
                "/proxy",
                params={"url": "https://game.example.com/home"},
                headers={"accept-encoding": "gzip, deflate, br"},
            )

        assert seen["accept-encoding"] == "gzip, deflate"
        assert response.status_code == 200
        assert "content-encoding" not in response.headers
        assert "http://proxy.local/proxy?url=https%3A%2F%2Fgame.example.com%2Fnext" in (
            response.text
        )

    def test_cookies_not_leaked_to_other_hosts(self, client):
        with patch.object(AsyncClient, "request", new_callable=AsyncMock) as mock_client:
            mock_client.return_value = upstream(
                200,
                [("set-cookie", "sid=SECRET; Domain=bank.example.com; Path=/")],
                b"ok",
            )
            client.get("/proxy", params={"url": "https://bank.example.com/login"})

            mock_client.return_value = upstream(200, [("content-type", "image/gif")], b"GIF")
            client.get("/proxy", params={"url": "https://tracker.example.net/pixel.gif"})
            tracker_headers = mock_client.call_args[1]["headers"]

            client.get("/proxy", params={"url": "https://www.bank.example.com/account"})
            bank_headers = mock_client.call_args[1]["headers"]

        assert "cookie" not in tracker_headers
        assert bank_headers["cookie"] == "sid=SECRET"

    def test_host_only_cookie_stays_on_setting_host(self, client):
        with patch.object(AsyncClient, "request", new_callable=AsyncMock) as mock_client:
            mock_client.return_value = upstream(200, [("set-cookie", "sid=abc")], b"ok")
            client.get("/proxy", params={"url": "https://game.example.com/"})

            mock_client.return_value = upstream(200, [], b"ok")
            client.get("/proxy", params={"url": "https://cdn.game.example.com/app.js"})

        assert "cookie" not in mock_client.call_args[1]["headers"]
