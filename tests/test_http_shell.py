"""
Tests for the HTTP shell around the API: system routes, security headers,
CSRF cookies, method guard, rate limiting, CORS, SPA serving and mock chat.
"""

import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from cookwire.chat import MOCK_REPLY
from cookwire.security.rate_limit import RateLimiter
from main import create_app, serve_dist


# ============= System routes =============


class TestSystemRoutes:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"ok": True}
        assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"

    def test_debug_ping(self, client):
        response = client.get("/debug-ping")
        assert response.status_code == 200
        assert response.text == "pong"

    def test_unknown_api_route(self, client):
        response = client.get("/api/does-not-exist")
        assert response.status_code == 404
        assert response.json() == {"error": "API endpoint not found"}

    def test_bare_api_prefix(self, client):
        response = client.get("/api")
        assert response.status_code == 404
        assert response.json() == {"error": "API endpoint not found"}

    def test_docs_hidden_in_production(self, make_settings):
        app = create_app(make_settings(app_env="production"), chat_char_delay=0)
        with TestClient(app) as client:
            assert client.get("/openapi.json").status_code == 404


class TestSecurityHeaders:
    @pytest.mark.parametrize("path", ["/health", "/api/does-not-exist", "/some/page"])
    def test_headers_on_every_response(self, client, path):
        headers = client.get(path).headers
        assert headers["x-frame-options"] == "DENY"
        assert headers["x-content-type-options"] == "nosniff"
        assert headers["referrer-policy"] == "strict-origin-when-cross-origin"
        assert headers["strict-transport-security"] == "max-age=31536000; includeSubDomains; preload"
        assert headers["cross-origin-resource-policy"] == "same-origin"
        assert "frame-ancestors 'none'" in headers["content-security-policy"]
        assert "script-src 'self' 'unsafe-inline' 'unsafe-eval'" in headers["content-security-policy"]
        assert "x-powered-by" not in headers


class TestMethodGuard:
    @pytest.mark.parametrize("path", ["/api/projects", "/api"])
    @pytest.mark.parametrize("method", ["TRACE", "PROPFIND"])
    def test_unsupported_method(self, client, method, path):
        response = client.request(method, path)
        assert response.status_code == 405
        assert response.json() == {"error": "Method not allowed"}

    def test_patch_reaches_csrf_check(self, client):
        response = client.patch("/api/projects", json={})
        assert response.status_code == 403

    def test_patch_with_csrf_falls_through_to_404(self, client, csrf_headers):
        response = client.patch("/api/projects", json={}, headers=csrf_headers)
        assert response.status_code == 404
        assert response.json() == {"error": "API endpoint not found"}


# ============= CSRF =============


class TestCsrfCookies:
    def test_first_visit_gets_cookie_pair(self, client):
        response = client.get("/health")
        assert "csrf_token" in response.cookies
        assert "csrf_token_signed" in response.cookies
        token_cookie = next(
            c for c in response.headers.get_list("set-cookie") if c.startswith("csrf_token=")
        )
        assert "HttpOnly" in token_cookie
        assert "samesite=strict" in token_cookie.lower()
        assert "Secure" not in token_cookie

    def test_existing_cookie_not_replaced(self, client):
        client.get("/health")
        response = client.get("/health")
        assert "set-cookie" not in response.headers

    def test_token_endpoint_issues_single_pair(self, client):
        response = client.get("/api/csrf-token")
        cookies = response.headers.get_list("set-cookie")
        assert len([c for c in cookies if c.startswith("csrf_token=")]) == 1
        assert response.json()["csrfToken"] == response.cookies["csrf_token_signed"]
        assert response.cookies["csrf_token"] not in response.text

    def test_token_endpoint_rotates(self, client):
        first = client.get("/api/csrf-token").json()["csrfToken"]
        second = client.get("/api/csrf-token").json()["csrfToken"]
        assert first != second

    def test_missing_token(self, client, owner_key, project_payload):
        response = client.post(
            "/api/projects",
            json=project_payload,
            headers={"X-CookWire-Owner-Key": owner_key},
        )
        assert response.status_code == 403
        assert response.json() == {"error": "CSRF token missing", "code": "CSRF_MISSING"}

    def test_forged_token(self, client, owner_key, project_payload):
        client.get("/api/csrf-token")
        response = client.post(
            "/api/projects",
            json=project_payload,
            headers={"X-CookWire-Owner-Key": owner_key, "x-csrf-token": "forged"},
        )
        assert response.status_code == 403
        assert response.json() == {"error": "CSRF token invalid", "code": "CSRF_INVALID"}

    def test_token_from_other_session(self, app, owner_key, project_payload):
        """A signature is only valid together with its own cookie."""
        with TestClient(app) as victim, TestClient(app) as attacker:
            victim.get("/api/csrf-token")
            stolen = attacker.get("/api/csrf-token").json()["csrfToken"]
            response = victim.post(
                "/api/projects",
                json=project_payload,
                headers={"X-CookWire-Owner-Key": owner_key, "x-csrf-token": stolen},
            )
        assert response.status_code == 403
        assert response.json()["code"] == "CSRF_INVALID"


# ============= Rate limiting =============


class TestRateLimiting:
    def test_limit_applies_to_api(self, client, app, owner_key):
        app.state.rate_limiter = RateLimiter(max_requests=3)
        headers = {"X-CookWire-Owner-Key": owner_key}

        responses = [client.get("/api/projects", headers=headers) for _ in range(4)]

        assert [r.status_code for r in responses] == [200, 200, 200, 429]
        assert responses[0].headers["ratelimit-limit"] == "3"
        assert responses[2].headers["ratelimit-remaining"] == "0"
        assert responses[3].json() == {"error": "Too many requests, try again later"}
        assert int(responses[3].headers["retry-after"]) > 0

    def test_limit_runs_before_owner_check(self, client, app):
        app.state.rate_limiter = RateLimiter(max_requests=1)
        assert client.get("/api/projects").status_code == 400
        assert client.get("/api/projects").status_code == 429

    def test_health_not_limited(self, client, app):
        app.state.rate_limiter = RateLimiter(max_requests=1)
        assert all(client.get("/health").status_code == 200 for _ in range(5))

    def test_forwarded_for_honoured_when_trusted(self, make_settings, owner_key):
        app = create_app(make_settings(trust_proxy=True), chat_char_delay=0)
        app.state.rate_limiter = RateLimiter(max_requests=1)
        headers = {"X-CookWire-Owner-Key": owner_key}
        with TestClient(app) as client:
            assert client.get("/api/projects", headers={**headers, "X-Forwarded-For": "1.1.1.1"}).status_code == 200
            assert client.get("/api/projects", headers={**headers, "X-Forwarded-For": "2.2.2.2"}).status_code == 200
            assert client.get("/api/projects", headers={**headers, "X-Forwarded-For": "1.1.1.1"}).status_code == 429


# ============= CORS =============


class TestCors:
    def test_preflight_from_allowed_origin(self, client):
        response = client.options(
            "/api/projects",
            headers={
                "Origin": "http://localhost:5173",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "x-csrf-token, x-cookwire-owner-key",
            },
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "http://localhost:5173"
        assert response.headers["access-control-allow-credentials"] == "true"

    def test_preflight_from_unknown_origin(self, client):
        response = client.options(
            "/api/projects",
            headers={
                "Origin": "https://evil.example",
                "Access-Control-Request-Method": "POST",
            },
        )
        assert response.status_code == 400
        assert "access-control-allow-origin" not in response.headers


# ============= SPA serving =============


@pytest.fixture
def dist_dir(settings):
    dist = Path(settings.dist_dir)
    (dist / "assets").mkdir(parents=True)
    (dist / "index.html").write_text("<!doctype html><div id=root></div>", encoding="utf-8")
    (dist / "assets" / "app.js").write_text("console.log('app')", encoding="utf-8")
    (dist / ".env").write_text("SECRET=1", encoding="utf-8")
    return dist


class TestSpaServing:
    def test_index(self, client, dist_dir):
        response = client.get("/")
        assert response.status_code == 200
        assert "id=root" in response.text
        assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
        assert response.headers["pragma"] == "no-cache"
        assert response.headers["expires"] == "0"

    def test_client_side_route_falls_back_to_index(self, client, dist_dir):
        response = client.get("/projects/123/edit")
        assert response.status_code == 200
        assert "id=root" in response.text

    def test_static_asset(self, client, dist_dir):
        response = client.get("/assets/app.js")
        assert response.status_code == 200
        assert response.text == "console.log('app')"
        assert "pragma" not in response.headers

    @pytest.mark.parametrize("path", ["/.env", "/.well-known/foo", "/assets/.hidden/app.js"])
    def test_dot_segments_fall_back_to_index(self, client, dist_dir, path):
        response = client.get(path)
        assert response.status_code == 200
        assert "id=root" in response.text
        assert "SECRET" not in response.text

    def test_traversal_never_leaves_dist(self, dist_dir, tmp_path):
        (tmp_path / "outside.txt").write_text("private", encoding="utf-8")
        response = serve_dist(dist_dir, "assets/../../outside.txt")
        assert response.status_code == 200
        assert Path(response.path).name == "index.html"

    def test_symlink_out_of_dist_not_served(self, dist_dir, tmp_path):
        (tmp_path / "outside.txt").write_text("private", encoding="utf-8")
        (dist_dir / "assets" / "leak.txt").symlink_to(tmp_path / "outside.txt")
        response = serve_dist(dist_dir, "assets/leak.txt")
        assert Path(response.path).name == "index.html"

    def test_missing_dist(self, client):
        response = client.get("/anything")
        assert response.status_code == 404
        assert response.text == "CookWire Code-side 404"

    def test_non_get_outside_api(self, client, dist_dir):
        response = client.post("/somewhere")
        assert response.status_code == 404
        assert response.text == "CookWire Code-side 404"

    @pytest.mark.parametrize("method", ["PROPFIND", "TRACE"])
    def test_unknown_method_outside_api(self, client, dist_dir, method):
        response = client.request(method, "/somewhere")
        assert response.status_code == 404
        assert response.text == "CookWire Code-side 404"


# ============= Mock chat =============


class TestMockChat:
    def test_streams_reply(self, client, csrf_headers):
        response = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]}, headers=csrf_headers)

        assert response.status_code == 200
        assert response.headers["x-vercel-ai-data-stream"] == "v1"
        lines = response.text.splitlines()
        text_parts = [json.loads(line[2:]) for line in lines if line.startswith("0:")]
        assert "".join(text_parts) == MOCK_REPLY
        assert len(text_parts) == len(MOCK_REPLY)

        finish = json.loads(lines[-1][2:])
        assert lines[-1].startswith("d:")
        assert finish["finishReason"] == "stop"
        assert finish["usage"]["completionTokens"] == len(MOCK_REPLY)

    def test_carries_rate_limit_headers(self, client, csrf_headers):
        response = client.post("/api/chat", json={}, headers=csrf_headers)
        assert response.status_code == 200
        assert response.headers["ratelimit-limit"] == "100"
        assert "ratelimit-remaining" in response.headers
        assert "ratelimit-policy" in response.headers

    def test_requires_csrf(self, client):
        response = client.post("/api/chat", json={})
        assert response.status_code == 403


# ============= Error handling =============


class _ExplodingHasher:
    def hash(self, owner_key):
        raise RuntimeError("boom")


class TestUnhandledErrors:
    def test_development_shows_message(self, app, owner_key):
        app.state.owner_key_hasher = _ExplodingHasher()
        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/api/projects", headers={"X-CookWire-Owner-Key": owner_key})
        assert response.status_code == 500
        assert response.json() == {"error": "Server error", "message": "boom"}

    def test_error_response_keeps_shell_headers(self, app, owner_key):
        app.state.owner_key_hasher = _ExplodingHasher()
        with TestClient(app) as client:
            response = client.get("/api/projects", headers={"X-CookWire-Owner-Key": owner_key})
        assert response.status_code == 500
        assert response.headers["x-frame-options"] == "DENY"
        assert "frame-ancestors 'none'" in response.headers["content-security-policy"]
        assert "csrf_token" in response.cookies

    def test_production_hides_message(self, make_settings, owner_key):
        app = create_app(make_settings(app_env="production"), chat_char_delay=0)
        app.state.owner_key_hasher = _ExplodingHasher()
        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/api/projects", headers={"X-CookWire-Owner-Key": owner_key})
        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}
