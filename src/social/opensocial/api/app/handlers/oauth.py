"""
AT Protocol OAuth Handlers

This module implements the web request handlers that sign browser users in and out with
AT Protocol OAuth.

OAuth Flow with AT Protocol:
1. The frontend posts the user's handle, DID or service URL to /login
2. The service pushes an authorization request and redirects the browser to the
   authorization server
3. The user authenticates with their PDS
4. The authorization server redirects back to /oauth/callback with an authorization code
5. The service exchanges the code, stores the credential and writes the user's DID into
   the session cookie
6. The browser is redirected back to the frontend

The handlers in this module provide the following endpoints:
- POST /login - Initiate the OAuth flow
- GET /oauth/callback - OAuth callback from the authorization server
- POST /logout - Revoke the credential and clear the session cookie
- GET /.well-known/jwks.json - JWKS endpoint for client assertion verification
- GET /oauth-client-metadata.json - OAuth client metadata
"""

import logging
from typing import Any, Dict, List
from aiohttp import web
from pydantic import BaseModel
import sentry_sdk

from social.opensocial.api.app.config import (
    OAUTH_SCOPE,
    CredentialStoreAppKey,
    SessionAppKey,
    SettingsAppKey,
    TelegrafStatsdClientAppKey,
)
from social.opensocial.api.app.errors import AuthorizationFailed, InvalidInput
from social.opensocial.api.app.handlers.helpers import (
    get_session,
    read_body,
    revoke_session_credential,
)
from social.opensocial.api.atproto.oauth import oauth_complete, oauth_init

logger = logging.getLogger(__name__)

NO_STORE = {"Cache-Control": "no-store"}


class ATProtocolOAuthClientMetadata(BaseModel):
    """
    OAuth 2.0 Client Metadata for AT Protocol integration.

    The metadata is exposed at the client id URL and is used by AT Protocol authorization
    servers to validate this client's requests.
    """

    client_id: str
    """Client identifier URI"""

    client_name: str
    client_uri: str

    application_type: str
    """Type of application (web, native)"""

    redirect_uris: List[str]
    grant_types: List[str]
    response_types: List[str]

    scope: str
    """OAuth scopes requested by this client"""

    dpop_bound_access_tokens: bool

    token_endpoint_auth_method: str
    token_endpoint_auth_signing_alg: str

    jwks_uri: str
    """URI of the client's JWKS (JSON Web Key Set)"""


def _public_cache_headers(max_age: int) -> Dict[str, str]:
    return {"Cache-Control": f"max-age={max_age}, public"}


async def handle_jwks(request: web.Request) -> web.Response:
    """Publish the public portion of the active client assertion signing keys."""
    settings = request.app[SettingsAppKey]
    results: List[Dict[str, Any]] = []
    for kid in settings.active_signing_keys:
        key = settings.json_web_keys.get_key(kid)
        if key is None:
            continue
        results.append(key.export_public(as_dict=True))
    return web.json_response(
        {"keys": results}, headers=_public_cache_headers(settings.metadata_max_age)
    )


async def handle_client_metadata(request: web.Request) -> web.Response:
    settings = request.app[SettingsAppKey]
    client_metadata = ATProtocolOAuthClientMetadata(
        client_id=settings.client_id,
        client_name="OpenSocial",
        client_uri=f"https://{settings.external_hostname}",
        application_type="web",
        redirect_uris=[settings.redirect_uri],
        grant_types=["authorization_code", "refresh_token"],
        response_types=["code"],
        scope=OAUTH_SCOPE,
        dpop_bound_access_tokens=True,
        token_endpoint_auth_method="private_key_jwt",
        token_endpoint_auth_signing_alg="ES256",
        jwks_uri=settings.jwks_uri,
    )
    return web.json_response(
        client_metadata.model_dump(),
        headers=_public_cache_headers(settings.metadata_max_age),
    )


async def handle_login(request: web.Request) -> web.Response:
    """
    Initiate the OAuth flow for the posted `input`.

    Succeeds with a redirect to the authorization server. Fails with a JSON body whose
    `error` is the reason the flow could not start.
    """
    body = await read_body(request)
    subject = body.get("input", None)
    if not isinstance(subject, str) or len(subject.strip()) == 0:
        raise InvalidInput.invalid("Invalid input")

    statsd_client = request.app[TelegrafStatsdClientAppKey]

    try:
        redirect_destination = await oauth_init(
            request.app[SettingsAppKey],
            statsd_client,
            request.app[SessionAppKey],
            request.app[CredentialStoreAppKey],
            subject.strip(),
        )
    except Exception as e:
        sentry_sdk.capture_exception(e)
        logger.warning("OAuth authorize failed: %r", e)
        statsd_client.increment(
            "opensocial.login.exception",
            1,
            tag_dict={"exception": type(e).__name__},
        )
        raise AuthorizationFailed.from_exception(e)

    raise web.HTTPFound(str(redirect_destination), headers=NO_STORE)


async def handle_callback(request: web.Request) -> web.Response:
    """
    Complete the OAuth flow.

    Every outcome redirects the browser back to the frontend. When the flow succeeds the
    session cookie is set to the new identity; when it fails the cookie is left as it was
    and the failure is logged.
    """
    settings = request.app[SettingsAppKey]
    statsd_client = request.app[TelegrafStatsdClientAppKey]

    redirect = web.HTTPFound(settings.frontend_url, headers=NO_STORE)

    try:
        browser_session = get_session(request)

        # A new sign-in replaces the identity currently in the cookie.
        if browser_session.did is not None:
            await revoke_session_credential(request, browser_session.did)

        credential = await oauth_complete(
            settings,
            statsd_client,
            request.app[SessionAppKey],
            request.app[CredentialStoreAppKey],
            request.query,
        )

        browser_session.did = credential.did
        browser_session.save()
        statsd_client.increment("opensocial.callback.success", 1)
    except Exception as e:
        sentry_sdk.capture_exception(e)
        logger.exception("OAuth callback failed")
        statsd_client.increment(
            "opensocial.callback.exception",
            1,
            tag_dict={"exception": type(e).__name__},
        )

    raise redirect


async def handle_logout(request: web.Request) -> web.Response:
    browser_session = get_session(request)

    if browser_session.did is not None:
        await revoke_session_credential(request, browser_session.did)

    browser_session.destroy()

    return web.json_response({"success": True}, headers=NO_STORE)
