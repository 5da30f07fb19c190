"""
Tests for the application middleware: CORS, error rendering, metrics and health.
"""

from unittest.mock import AsyncMock, patch

import pytest
from aiohttp import web

from social.opensocial.api.app.config import SERVICE_NAME
from social.opensocial.api.app.cors import allowed_origins, append_vary, get_cors_headers
from social.opensocial.api.app.errors import (
    AuthorizationFailed,
    Conflict,
    InvalidInput,
    Unauthenticated,
    UpstreamFailure,
)


class TestCorsHeaders:
    def test_dev_origins(self, settings):
        assert allowed_origins(settings) == {
            "http://127.0.0.1:5174",
            "http://localhost:5174",
        }

    def test_production_origin(self, settings):
        settings.environment = "production"
        settings.service_url = "https://opensocial.example/app"

        assert allowed_origins(settings) == {"https://opensocial.example"}

    def test_production_without_service_url(self, settings):
        settings.environment = "production"

        assert allowed_origins(settings) == set()

    def test_allowed_origin(self, settings):
        headers = get_cors_headers("http://localhost:5174", settings)

        assert headers["Access-Control-Allow-Origin"] == "http://localhost:5174"
        assert headers["Access-Control-Allow-Credentials"] == "true"
        assert "X-API-Key" in headers["Access-Control-Allow-Headers"]
        assert headers["Vary"] == "Origin"

    @pytest.mark.parametrize("origin", [None, "", "https://evil.example"])
    def test_other_origins(self, settings, origin):
        headers = get_cors_headers(origin, settings)

        assert "Access-Control-Allow-Origin" not in headers
        assert "Access-Control-Allow-Credentials" not in headers

    def test_append_vary(self):
        headers = {}
        append_vary(headers, "Origin")
        append_vary(headers, "Cookie")
        append_vary(headers, "origin")

        assert headers["Vary"] == "Origin, Cookie"


class TestCorsMiddleware:
    async def test_preflight(self, client):
        resp = await client.options(
            "/users/me",
            headers={
                "Origin": "http://127.0.0.1:5174",
                "Access-Control-Request-Method": "GET",
            },
        )

        assert resp.status == 204
        assert resp.headers["Access-Control-Allow-Origin"] == "http://127.0.0.1:5174"
        assert resp.headers["Access-Control-Allow-Credentials"] == "true"

    async def test_headers_on_error_responses(self, client):
        resp = await client.get("/users/me", headers={"Origin": "http://localhost:5174"})

        assert resp.status == 401
        assert resp.headers["Access-Control-Allow-Origin"] == "http://localhost:5174"
        vary = resp.headers["Vary"]
        assert "Origin" in vary and "Cookie" in vary

    async def test_headers_on_redirects(self, client):
        with patch(
            "social.opensocial.api.app.handlers.oauth.oauth_complete",
            AsyncMock(side_effect=Exception()),
        ):
            resp = await client.get(
                "/oauth/callback",
                headers={"Origin": "http://localhost:5174"},
                allow_redirects=False,
            )

        assert resp.status == 302
        assert resp.headers["Access-Control-Allow-Origin"] == "http://localhost:5174"

    async def test_disallowed_origin(self, client):
        resp = await client.get("/health", headers={"Origin": "https://evil.example"})

        assert resp.status == 200
        assert "Access-Control-Allow-Origin" not in resp.headers


class TestErrorMiddleware:
    @pytest.mark.parametrize(
        "error,status",
        [
            (InvalidInput.invalid(), 400),
            (Unauthenticated.no_session(), 401),
            (AuthorizationFailed.from_exception(Exception("nope")), 400),
            (Conflict.duplicate_domain(), 409),
            (UpstreamFailure.identity_network(), 500),
        ],
    )
    async def test_api_exceptions(self, client, error, status):
        with patch(
            "social.opensocial.api.app.handlers.internal.datetime"
        ) as mock_datetime:
            mock_datetime.now.side_effect = error
            resp = await client.get("/health")

        assert resp.status == status
        assert await resp.json() == error.to_dict()
        assert resp.headers["Cache-Control"] == "no-store"

    async def test_unexpected_exception(self, client, statsd_client):
        with patch(
            "social.opensocial.api.app.handlers.internal.datetime"
        ) as mock_datetime:
            mock_datetime.now.side_effect = KeyError("secret")
            resp = await client.get("/health")

        assert resp.status == 500
        assert await resp.json() == {"error": "Internal Server Error"}
        statsd_client.increment.assert_any_call(
            "opensocial.server.request.exception",
            1,
            tag_dict={"exception": "KeyError", "path": "/health", "method": "GET"},
        )

    async def test_unexpected_exception_in_debug(self, settings, client):
        settings.debug = True
        with patch(
            "social.opensocial.api.app.handlers.internal.datetime"
        ) as mock_datetime:
            mock_datetime.now.side_effect = KeyError("secret")
            resp = await client.get("/health")

        assert await resp.json() == {
            "error": "Internal Server Error",
            "error_type": "KeyError",
        }

    async def test_not_found_passes_through(self, client):
        resp = await client.get("/nope")

        assert resp.status == 404

    async def test_server_errors_are_reported(self, client):
        with (
            patch(
                "social.opensocial.api.app.handlers.internal.datetime"
            ) as mock_datetime,
            patch("social.opensocial.api.app.server.sentry_sdk") as mock_sentry,
        ):
            mock_datetime.now.side_effect = KeyError("secret")
            await client.get("/health")

        mock_sentry.capture_exception.assert_called_once()

    async def test_client_errors_are_not_reported(self, client):
        with patch("social.opensocial.api.app.server.sentry_sdk") as mock_sentry:
            await client.get("/users/me")

        mock_sentry.capture_exception.assert_not_called()


class TestStatsdMiddleware:
    async def test_request_metrics(self, client, statsd_client):
        await client.get("/health")

        statsd_client.timer.assert_called_once()
        assert statsd_client.timer.call_args.args[0] == "opensocial.server.request.time"
        statsd_client.increment.assert_called_once_with(
            "opensocial.server.request.count",
            1,
            tag_dict={"path": "/health", "method": "GET", "status": 200},
        )

    async def test_redirect_status_is_counted(self, client, statsd_client):
        with patch(
            "social.opensocial.api.app.handlers.oauth.oauth_complete",
            AsyncMock(side_effect=Exception()),
        ):
            await client.get("/oauth/callback", allow_redirects=False)

        assert statsd_client.increment.call_args.kwargs["tag_dict"]["status"] == 302


class TestHealth:
    async def test_health(self, client):
        resp = await client.get("/health")

        assert resp.status == 200
        body = await resp.json()
        assert body["status"] == "ok"
        assert body["service"] == SERVICE_NAME
        assert "T" in body["timestamp"]


class TestAppFactory:
    def test_routes(self, app):
        routes = {
            (route.method, route.resource.canonical)
            for route in app.router.routes()
            if route.method != "HEAD"
        }

        assert routes == {
            ("GET", "/oauth-client-metadata.json"),
            ("GET", "/.well-known/jwks.json"),
            ("GET", "/oauth/callback"),
            ("POST", "/login"),
            ("POST", "/logout"),
            ("GET", "/users/me"),
            ("GET", "/users/me/memberships"),
            ("POST", "/api/v1/apps/register"),
            ("GET", "/api/v1/apps/me"),
            ("GET", "/health"),
        }

    def test_is_an_application(self, app):
        assert isinstance(app, web.Application)
