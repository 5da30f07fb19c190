import logging
from time import time
from typing import Dict, Optional
from aio_statsd import TelegrafStatsdClient
from aiohttp import web
import aiohttp
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
)
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from social.opensocial.api.app.config import (
    CredentialStoreAppKey,
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    SessionAppKey,
    SessionCodecAppKey,
    Settings,
    SettingsAppKey,
    TelegrafStatsdClientAppKey,
)
from social.opensocial.api.app.cors import append_vary, get_cors_headers
from social.opensocial.api.app.errors import APIException
from social.opensocial.api.app.handlers.apps import handle_apps_me, handle_register_app
from social.opensocial.api.app.handlers.helpers import BROWSER_SESSION_REQUEST_KEY
from social.opensocial.api.app.handlers.internal import handle_health
from social.opensocial.api.app.handlers.oauth import (
    handle_callback,
    handle_client_metadata,
    handle_jwks,
    handle_login,
    handle_logout,
)
from social.opensocial.api.app.handlers.users import (
    handle_users_me,
    handle_users_me_memberships,
)
from social.opensocial.api.app.session import SessionCodec
from social.opensocial.api.atproto.store import CredentialStore

logger = logging.getLogger(__name__)


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    engine = create_async_engine(str(settings.pg_dsn))
    app[DatabaseAppKey] = engine
    database_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    app[DatabaseSessionMakerAppKey] = database_session
    app[CredentialStoreAppKey] = CredentialStore(database_session)

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logger.debug("Starting request: %s %s", params.method, params.url)

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logger.debug(
                "Ending request: %s %s %s",
                params.method,
                params.url,
                params.response.status,
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    app[SessionAppKey] = aiohttp.ClientSession(trace_configs=[trace_config])

    statsd_client = TelegrafStatsdClient(
        host=settings.statsd_host, port=settings.statsd_port, debug=settings.debug
    )
    await statsd_client.connect()
    app[TelegrafStatsdClientAppKey] = statsd_client

    logger.info("Startup complete")

    yield

    logger.info("Shutting down")

    await app[DatabaseAppKey].dispose()
    await app[SessionAppKey].close()
    await app[TelegrafStatsdClientAppKey].close()


def _apply_cors(response: web.StreamResponse, cors_headers: Dict[str, str]) -> None:
    for key, value in cors_headers.items():
        if key == "Vary":
            append_vary(response.headers, value)
        else:
            response.headers[key] = value


@web.middleware
async def cors_middleware(request: web.Request, handler):
    settings = request.app[SettingsAppKey]
    cors_headers = get_cors_headers(request.headers.get("Origin", None), settings)

    if (
        request.method == "OPTIONS"
        and "Access-Control-Request-Method" in request.headers
    ):
        return web.Response(status=204, headers=cors_headers)

    try:
        response = await handler(request)
    except web.HTTPException as e:
        _apply_cors(e, cors_headers)
        raise
    _apply_cors(response, cors_headers)
    return response


def _apply_session(request: web.Request, response: web.StreamResponse) -> None:
    append_vary(response.headers, "Cookie")

    browser_session = request.get(BROWSER_SESSION_REQUEST_KEY, None)
    if browser_session is None:
        return

    session_codec = request.app[SessionCodecAppKey]
    if browser_session.pending_destroy:
        session_codec.destroy(response)
    elif browser_session.pending_save and browser_session.did is not None:
        session_codec.write(response, browser_session)


@web.middleware
async def session_middleware(request: web.Request, handler):
    """Write pending browser session changes to whatever response leaves the handler."""
    try:
        response = await handler(request)
    except web.HTTPException as e:
        _apply_session(request, e)
        raise
    _apply_session(request, response)
    return response


@web.middleware
async def error_middleware(request: web.Request, handler):
    settings = request.app[SettingsAppKey]
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except APIException as e:
        return web.json_response(
            e.to_dict(), status=e.status, headers={"Cache-Control": "no-store"}
        )
    except Exception as e:
        logger.exception("Unhandled exception %s %s", request.method, request.path)
        request.app[TelegrafStatsdClientAppKey].increment(
            "opensocial.server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request.path,
                "method": request.method,
            },
        )
        body = {"error": "Internal Server Error"}
        if settings.debug:
            body["error_type"] = type(e).__name__
        return web.json_response(
            body, status=500, headers={"Cache-Control": "no-store"}
        )


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except APIException as e:
        if e.status >= 500:
            sentry_sdk.capture_exception(e)
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    statsd_client = request.app[TelegrafStatsdClientAppKey]
    request_method: str = request.method
    request_path = request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise
    finally:
        statsd_client.timer(
            "opensocial.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        statsd_client.increment(
            "opensocial.server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


def create_app(settings: Settings) -> web.Application:
    """
    Build the application with its routes and middleware.

    Process-wide resources that need I/O (database engine, credential store, HTTP client
    session, statsd client) are not created here; see `start_web_server`.
    """
    app = web.Application(
        middlewares=[
            cors_middleware,
            statsd_middleware,
            session_middleware,
            error_middleware,
            sentry_middleware,
        ]
    )

    app[SettingsAppKey] = settings
    app[SessionCodecAppKey] = SessionCodec(
        settings.cookie_secret,
        settings.cookie_name,
        settings.session_max_age,
        secure=settings.production,
    )

    app.add_routes(
        [
            web.get("/oauth-client-metadata.json", handle_client_metadata),
            web.get("/.well-known/jwks.json", handle_jwks),
            web.get("/oauth/callback", handle_callback),
            web.post("/login", handle_login),
            web.post("/logout", handle_logout),
        ]
    )

    app.add_routes(
        [
            web.get("/users/me", handle_users_me),
            web.get("/users/me/memberships", handle_users_me_memberships),
        ]
    )

    app.add_routes(
        [
            web.post("/api/v1/apps/register", handle_register_app),
            web.get("/api/v1/apps/me", handle_apps_me),
        ]
    )

    app.add_routes([web.get("/health", handle_health)])

    return app


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            environment=settings.environment,
            integrations=[AioHttpIntegration()],
        )

    app = create_app(settings)
    app.cleanup_ctx.append(background_tasks)

    return app
