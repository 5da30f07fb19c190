import logging
from typing import Any, Dict, Optional
from aiohttp import web
from sqlalchemy import select
import sentry_sdk

from social.opensocial.api.app.config import (
    CredentialStoreAppKey,
    DatabaseSessionMakerAppKey,
    SessionAppKey,
    SessionCodecAppKey,
    SettingsAppKey,
    TelegrafStatsdClientAppKey,
)
from social.opensocial.api.app.errors import InvalidInput, Unauthenticated
from social.opensocial.api.app.session import BrowserSession
from social.opensocial.api.atproto.oauth import (
    OAuthCredential,
    RestoreFailed,
    oauth_restore,
    oauth_revoke,
)
from social.opensocial.api.model.apps import APP_STATUS_ACTIVE, App

logger = logging.getLogger(__name__)

BROWSER_SESSION_REQUEST_KEY = web.RequestKey(
    "opensocial_browser_session", BrowserSession
)


def get_session(request: web.Request) -> BrowserSession:
    """
    Return the browser session for this request.

    The cookie is decoded once per request. Changes made through `save` and `destroy` are
    written to the response by the session middleware.
    """
    browser_session = request.get(BROWSER_SESSION_REQUEST_KEY, None)
    if browser_session is None:
        session_codec = request.app[SessionCodecAppKey]
        browser_session = session_codec.read(request.cookies)
        request[BROWSER_SESSION_REQUEST_KEY] = browser_session
    return browser_session


async def read_body(request: web.Request) -> Dict[str, Any]:
    """Read a JSON object or form body into a dict."""
    if request.content_type == "application/json":
        try:
            body = await request.json()
        except ValueError:
            raise InvalidInput.invalid("Invalid JSON body")
        if not isinstance(body, dict):
            raise InvalidInput.invalid("Invalid JSON body")
        return body

    form = await request.post()
    return {k: v for k, v in form.items() if isinstance(v, str)}


async def restore_session_credential(
    request: web.Request,
) -> Optional[OAuthCredential]:
    """
    Turn the browser session into a usable OAuth credential.

    Returns None when the request carries no signed-in identity. When the stored credential
    is missing or cannot be restored, the browser session is destroyed so the client stops
    presenting it, and None is returned. A successful restore re-issues the cookie with a
    fresh timestamp, so an active user is never signed out by the cookie lifetime.
    """
    browser_session = get_session(request)
    if browser_session.did is None:
        return None

    statsd_client = request.app[TelegrafStatsdClientAppKey]
    did = browser_session.did

    try:
        credential = await oauth_restore(
            request.app[SettingsAppKey],
            statsd_client,
            request.app[SessionAppKey],
            request.app[CredentialStoreAppKey],
            did,
        )
    except RestoreFailed as e:
        sentry_sdk.capture_exception(e)
        logger.warning("OAuth restore failed did=%s: %s", did, e)
        statsd_client.increment("opensocial.session.restore_failed", 1)
        browser_session.destroy()
        return None

    if credential is None:
        logger.info("No stored OAuth session did=%s", did)
        browser_session.destroy()
        return None

    browser_session.save()
    return credential


async def revoke_session_credential(request: web.Request, did: str) -> None:
    """
    Sign a DID out upstream, best effort.

    Failures are logged and reported, never raised.
    """
    settings = request.app[SettingsAppKey]
    statsd_client = request.app[TelegrafStatsdClientAppKey]
    http_session = request.app[SessionAppKey]
    credential_store = request.app[CredentialStoreAppKey]

    try:
        credential = await oauth_restore(
            settings, statsd_client, http_session, credential_store, did
        )
        if credential is not None:
            await oauth_revoke(
                settings, statsd_client, http_session, credential_store, credential
            )
    except Exception as e:
        sentry_sdk.capture_exception(e)
        logger.warning("Failed to revoke credentials did=%s: %r", did, e)


async def api_key_helper(request: web.Request) -> App:
    """
    Authenticate a registered app by its X-API-Key header.

    Raises:
        Unauthenticated: When the header is missing or no active app has the key
    """
    api_key: Optional[str] = request.headers.getone("X-API-Key", None)
    if not api_key:
        raise Unauthenticated.api_key_required()

    database_session_maker = request.app[DatabaseSessionMakerAppKey]
    async with database_session_maker() as database_session:
        stmt = select(App).where(App.api_key == api_key, App.status == APP_STATUS_ACTIVE)
        app: Optional[App] = (await database_session.scalars(stmt)).first()

    if app is None:
        raise Unauthenticated.invalid_api_key()

    return app
