"""
AT Protocol OAuth Client Implementation

This module implements the confidential OAuth client this service uses to act on behalf of
signed-in users. It follows the AT Protocol OAuth profile:
- OAuth 2.0 Authorization Code Grant (RFC 6749)
- Proof Key for Code Exchange (PKCE) (RFC 7636)
- Demonstrating Proof of Possession (DPoP) (RFC 9449)
- JWT Client Authentication (RFC 7523)
- Pushed Authorization Requests (PAR) (RFC 9126)

The flow is implemented in stages:
1. Initialization (`oauth_init`): resolve the login input, discover the authorization server,
   push an authorization request and persist the in-flight state keyed by the state token
2. Completion (`oauth_complete`): consume the state, exchange the authorization code and
   persist the credential keyed by the user's DID
3. Restore (`oauth_restore`): load the credential for a DID, refreshing it when the access
   token is about to expire
4. Refresh (`oauth_refresh`) and revocation (`oauth_revoke`)

State and credentials are persisted as JSON payloads through the CredentialStore. The store
does not interpret them; OAuthStatePayload and OAuthCredential define their structure.
"""

import asyncio
from datetime import datetime, timezone, timedelta
import logging
import secrets
from typing import Any, Dict, Mapping, Optional, Tuple
from aio_statsd import TelegrafStatsdClient
from aiohttp import ClientError, ClientSession
from jwcrypto import jwk
from pydantic import BaseModel
from urllib.parse import urlparse, urlencode, parse_qsl, urlunparse

from social.opensocial.api.app.config import OAUTH_SCOPE, Settings
from social.opensocial.api.app.errors import UpstreamFailure
from social.opensocial.api.atproto.chain import (
    ChainMiddlewareClient,
    GenerateClaimAssertionMiddleware,
    GenerateDpopMiddleware,
    StatsdMiddleware,
)
from social.opensocial.api.atproto.jwt import (
    CLIENT_ASSERTION_TYPE,
    create_client_assertion_claims,
    create_client_assertion_header,
    create_dpop_claims,
    create_dpop_header,
    generate_dpop_key,
    generate_pkce_verifier,
)
from social.opensocial.api.atproto.pds import discover_authorization_server
from social.opensocial.api.atproto.store import CredentialStore, Partition
from social.opensocial.api.resolve.handle import (
    SubjectType,
    parse_input,
    resolve_did,
    resolve_subject,
)

logger = logging.getLogger(__name__)

REFRESH_MARGIN = timedelta(seconds=60)
"""Access tokens expiring within this margin are refreshed on restore."""

DEFAULT_STATE_EXPIRY = 600


class OAuthStatePayload(BaseModel):
    """In-flight authorization attempt, stored in the state partition."""

    issuer: str
    token_endpoint: str
    revocation_endpoint: Optional[str] = None
    did: Optional[str] = None
    handle: Optional[str] = None
    pds: Optional[str] = None
    pkce_verifier: str
    secret_jwk_id: str
    dpop_jwk: Dict[str, Any]
    dpop_nonce: Optional[str] = None
    created_at: datetime
    expires_at: datetime


class OAuthCredential(BaseModel):
    """Established OAuth session for one identity, stored in the session partition."""

    did: str
    handle: str
    pds: str
    issuer: str
    token_endpoint: str
    revocation_endpoint: Optional[str] = None
    access_token: str
    refresh_token: Optional[str] = None
    scope: str
    secret_jwk_id: str
    dpop_jwk: Dict[str, Any]
    dpop_nonce: Optional[str] = None
    created_at: datetime
    expires_at: datetime

    def dpop_key(self) -> jwk.JWK:
        return jwk.JWK(**self.dpop_jwk)

    def expires_soon(self, now: datetime) -> bool:
        return self.expires_at - REFRESH_MARGIN <= now


class RestoreFailed(Exception):
    """A stored credential could not be turned back into a usable credential."""


class RefreshRejected(Exception):
    """The authorization server refused to renew a credential."""


def _active_signing_key(settings: Settings) -> Tuple[str, jwk.JWK]:
    signing_key_id = next(iter(settings.active_signing_keys), None)
    if signing_key_id is None:
        raise Exception("No active signing keys configured")

    signing_key = settings.json_web_keys.get_key(signing_key_id)
    if signing_key is None:
        raise Exception("No active signing key available")

    return signing_key_id, signing_key


def _error_message(body: Dict[str, Any], default: str) -> str:
    return str(body.get("error_description", None) or body.get("error", None) or default)


async def _authenticated_post(
    settings: Settings,
    statsd_client: TelegrafStatsdClient,
    http_session: ClientSession,
    url: str,
    issuer: str,
    secret_jwk_id: str,
    dpop_key: jwk.JWK,
    data: Dict[str, str],
    dpop_nonce: Optional[str] = None,
) -> Tuple[int, Dict[str, Any], Optional[str]]:
    """
    POST a form to an authorization server endpoint as this client.

    The request carries a DPoP proof and a signed client assertion. A DPoP nonce challenge is
    answered by retrying with the nonce the server supplied.

    Returns:
        Tuple of (status, JSON body or empty dict, latest DPoP nonce)
    """
    signing_key = settings.json_web_keys.get_key(secret_jwk_id)
    if signing_key is None:
        raise Exception("No active signing key available")

    now = datetime.now(timezone.utc)

    dpop_middleware = GenerateDpopMiddleware(
        dpop_key,
        create_dpop_header(dpop_key.export_public(as_dict=True)),
        create_dpop_claims("POST", url, now, nonce=dpop_nonce),
    )
    chain_middleware = [
        StatsdMiddleware(statsd_client),
        dpop_middleware,
        GenerateClaimAssertionMiddleware(
            signing_key,
            create_client_assertion_header(secret_jwk_id),
            create_client_assertion_claims(settings.client_id, issuer, now),
        ),
    ]
    chain_client = ChainMiddlewareClient(
        client_session=http_session, raise_for_status=False, middleware=chain_middleware
    )

    async with chain_client.post(url, data=data) as (_, chain_response):
        body = chain_response.body if isinstance(chain_response.body, dict) else {}
        return chain_response.status, body, dpop_middleware.nonce


async def oauth_init(
    settings: Settings,
    statsd_client: TelegrafStatsdClient,
    http_session: ClientSession,
    credential_store: CredentialStore,
    subject: str,
) -> str:
    """
    Initialize the OAuth flow for a handle, DID or service URL.

    Args:
        settings: Application settings
        statsd_client: Metrics client for tracking requests
        http_session: HTTP session for making requests
        credential_store: Store for the in-flight state
        subject: Login input supplied by the user

    Returns:
        str: URL to redirect the browser to

    Raises:
        Exception: With a user-presentable message when any step fails
    """
    signing_key_id, _ = _active_signing_key(settings)

    parsed_subject = parse_input(subject)
    if parsed_subject is None:
        raise Exception("Invalid input")

    did: Optional[str] = None
    handle: Optional[str] = None
    if parsed_subject.subject_type == SubjectType.service:
        pds = parsed_subject.subject
    else:
        resolved_subject = await resolve_subject(
            http_session, settings.plc_hostname, parsed_subject.subject
        )
        if resolved_subject is None:
            raise Exception("Unable to resolve subject")
        did = resolved_subject.did
        handle = resolved_subject.handle
        pds = resolved_subject.pds

    authorization_server = await discover_authorization_server(http_session, pds)
    issuer: str = authorization_server["issuer"]

    authorization_endpoint = authorization_server.get("authorization_endpoint", None)
    if authorization_endpoint is None:
        raise Exception("No authorization endpoint found")

    token_endpoint = authorization_server.get("token_endpoint", None)
    if token_endpoint is None:
        raise Exception("No token endpoint found")

    par_url = authorization_server.get("pushed_authorization_request_endpoint", None)
    if par_url is None:
        raise Exception("No PAR URL found")

    state = secrets.token_urlsafe(32)
    (pkce_verifier, code_challenge) = generate_pkce_verifier()
    dpop_key, _ = generate_dpop_key()

    data = {
        "response_type": "code",
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "state": state,
        "client_id": settings.client_id,
        "redirect_uri": settings.redirect_uri,
        "scope": OAUTH_SCOPE,
        "client_assertion_type": CLIENT_ASSERTION_TYPE,
    }
    if handle is not None:
        data["login_hint"] = handle

    status, par_resp, dpop_nonce = await _authenticated_post(
        settings,
        statsd_client,
        http_session,
        par_url,
        issuer,
        signing_key_id,
        dpop_key,
        data,
    )
    if status not in (200, 201):
        raise Exception(_error_message(par_resp, "Invalid PAR response"))

    par_request_uri = par_resp.get("request_uri", None)
    if par_request_uri is None:
        raise Exception("No PAR request URI found")

    now = datetime.now(timezone.utc)
    par_expires = int(par_resp.get("expires_in", DEFAULT_STATE_EXPIRY))

    oauth_state = OAuthStatePayload(
        issuer=issuer,
        token_endpoint=token_endpoint,
        revocation_endpoint=authorization_server.get("revocation_endpoint", None),
        did=did,
        handle=handle,
        pds=None if did is None else pds,
        pkce_verifier=pkce_verifier,
        secret_jwk_id=signing_key_id,
        dpop_jwk=dpop_key.export(private_key=True, as_dict=True),
        dpop_nonce=dpop_nonce,
        created_at=now,
        expires_at=now + timedelta(seconds=max(par_expires, DEFAULT_STATE_EXPIRY)),
    )
    await credential_store.put(Partition.state, state, oauth_state.model_dump_json())

    parsed_authorization_endpoint = urlparse(authorization_endpoint)
    query = dict(parse_qsl(parsed_authorization_endpoint.query))
    query.update({"client_id": settings.client_id, "request_uri": par_request_uri})
    parsed_authorization_endpoint = parsed_authorization_endpoint._replace(
        query=urlencode(query)
    )
    return str(urlunparse(parsed_authorization_endpoint))


async def oauth_complete(
    settings: Settings,
    statsd_client: TelegrafStatsdClient,
    http_session: ClientSession,
    credential_store: CredentialStore,
    params: Mapping[str, str],
) -> OAuthCredential:
    """
    Complete the OAuth flow from the callback query parameters.

    The in-flight state is consumed as soon as it is found, whether or not the rest of the
    exchange succeeds.

    Returns:
        OAuthCredential: The persisted credential for the user who signed in

    Raises:
        Exception: When the callback is invalid or any step of the exchange fails
    """
    state = params.get("state", None)
    if state is None:
        raise Exception("Invalid request: missing state")

    serialized_state = await credential_store.get(Partition.state, state)
    if serialized_state is None:
        raise Exception("Invalid request: no matching state")
    await credential_store.delete(Partition.state, state)

    error = params.get("error", None)
    if error is not None:
        raise Exception(
            "Authorization failed: {}".format(params.get("error_description", error))
        )

    issuer = params.get("iss", None)
    code = params.get("code", None)
    if issuer is None or code is None:
        raise Exception("Invalid request")

    oauth_state = OAuthStatePayload.model_validate_json(serialized_state)

    now = datetime.now(timezone.utc)
    if oauth_state.expires_at <= now:
        raise Exception("Invalid request: authorization state expired")

    if oauth_state.issuer != issuer:
        raise Exception("Invalid request: issuer mismatch")

    dpop_key = jwk.JWK(**oauth_state.dpop_jwk)

    data = {
        "client_id": settings.client_id,
        "redirect_uri": settings.redirect_uri,
        "grant_type": "authorization_code",
        "code": code,
        "code_verifier": oauth_state.pkce_verifier,
        "client_assertion_type": CLIENT_ASSERTION_TYPE,
    }
    status, token_response, dpop_nonce = await _authenticated_post(
        settings,
        statsd_client,
        http_session,
        oauth_state.token_endpoint,
        issuer,
        oauth_state.secret_jwk_id,
        dpop_key,
        data,
        dpop_nonce=oauth_state.dpop_nonce,
    )
    if status != 200:
        raise Exception(_error_message(token_response, "Invalid token response"))

    access_token = token_response.get("access_token", None)
    if access_token is None:
        raise Exception("No access token")

    sub = token_response.get("sub", None)
    if sub is None or not str(sub).startswith("did:"):
        raise Exception("No subject in token response")

    if oauth_state.did is not None and oauth_state.did != sub:
        raise Exception("Invalid request: subject mismatch")

    resolved_subject = await resolve_did(http_session, settings.plc_hostname, sub)
    if resolved_subject is None:
        raise Exception("Unable to resolve subject")

    # When the login started from a service URL, or the PDS moved in between, the issuer must
    # still be the authorization server of the subject's PDS.
    if oauth_state.pds is None or oauth_state.pds != resolved_subject.pds:
        authorization_server = await discover_authorization_server(
            http_session, resolved_subject.pds
        )
        if authorization_server["issuer"] != issuer:
            raise Exception("Invalid request: issuer does not govern subject")

    expires_in = int(token_response.get("expires_in", 1800))

    credential = OAuthCredential(
        did=sub,
        handle=resolved_subject.handle,
        pds=resolved_subject.pds,
        issuer=issuer,
        token_endpoint=oauth_state.token_endpoint,
        revocation_endpoint=oauth_state.revocation_endpoint,
        access_token=access_token,
        refresh_token=token_response.get("refresh_token", None),
        scope=token_response.get("scope", OAUTH_SCOPE),
        secret_jwk_id=oauth_state.secret_jwk_id,
        dpop_jwk=oauth_state.dpop_jwk,
        dpop_nonce=dpop_nonce,
        created_at=now,
        expires_at=now + timedelta(seconds=expires_in),
    )

    await credential_store.put(Partition.session, sub, credential.model_dump_json())

    return credential


async def oauth_refresh(
    settings: Settings,
    statsd_client: TelegrafStatsdClient,
    http_session: ClientSession,
    credential_store: CredentialStore,
    current_credential: OAuthCredential,
) -> OAuthCredential:
    """
    Exchange the refresh token for a new access token and persist the result.

    Raises:
        RefreshRejected: When the credential has no refresh token or the authorization
            server does not grant a usable token
    """
    if current_credential.refresh_token is None:
        raise RefreshRejected("No refresh token")

    data = {
        "client_id": settings.client_id,
        "grant_type": "refresh_token",
        "refresh_token": current_credential.refresh_token,
        "client_assertion_type": CLIENT_ASSERTION_TYPE,
    }
    status, token_response, dpop_nonce = await _authenticated_post(
        settings,
        statsd_client,
        http_session,
        current_credential.token_endpoint,
        current_credential.issuer,
        current_credential.secret_jwk_id,
        current_credential.dpop_key(),
        data,
        dpop_nonce=current_credential.dpop_nonce,
    )
    if status != 200:
        raise RefreshRejected(_error_message(token_response, "Invalid token response"))

    access_token = token_response.get("access_token", None)
    if access_token is None:
        raise RefreshRejected("No access token")

    if token_response.get("sub", current_credential.did) != current_credential.did:
        raise RefreshRejected("Invalid token response: subject mismatch")

    now = datetime.now(timezone.utc)
    expires_in = int(token_response.get("expires_in", 1800))

    credential = current_credential.model_copy(
        update={
            "access_token": access_token,
            "refresh_token": token_response.get(
                "refresh_token", current_credential.refresh_token
            ),
            "scope": token_response.get("scope", current_credential.scope),
            "dpop_nonce": dpop_nonce,
            "expires_at": now + timedelta(seconds=expires_in),
        }
    )

    await credential_store.put(
        Partition.session, credential.did, credential.model_dump_json()
    )

    return credential


async def oauth_restore(
    settings: Settings,
    statsd_client: TelegrafStatsdClient,
    http_session: ClientSession,
    credential_store: CredentialStore,
    did: str,
) -> Optional[OAuthCredential]:
    """
    Load a usable credential for a DID.

    Storage errors propagate unchanged and leave the stored session in place, including
    errors saving a refreshed credential. A network failure while refreshing is raised as
    UpstreamFailure, also without touching the stored session, so the next request can
    retry the refresh.

    Returns:
        The credential, or None when no session is stored for the DID

    Raises:
        RestoreFailed: When the stored session is unreadable or the authorization server
            rejects the refresh. The stored session is deleted before this is raised.
        UpstreamFailure: When the authorization server cannot be reached
    """
    serialized_credential = await credential_store.get(Partition.session, did)
    if serialized_credential is None:
        return None

    try:
        credential = OAuthCredential.model_validate_json(serialized_credential)
        if credential.did != did:
            raise Exception("Stored session does not belong to identity")
        credential.dpop_key()
    except Exception as e:
        await credential_store.delete(Partition.session, did)
        raise RestoreFailed(str(e)) from e

    if not credential.expires_soon(datetime.now(timezone.utc)):
        return credential

    try:
        return await oauth_refresh(
            settings, statsd_client, http_session, credential_store, credential
        )
    except RefreshRejected as e:
        await credential_store.delete(Partition.session, did)
        raise RestoreFailed(str(e)) from e
    except (ClientError, asyncio.TimeoutError) as e:
        logger.warning("OAuth refresh unavailable did=%s: %r", did, e)
        raise UpstreamFailure.identity_network("Authorization server unavailable") from e


async def oauth_revoke(
    settings: Settings,
    statsd_client: TelegrafStatsdClient,
    http_session: ClientSession,
    credential_store: CredentialStore,
    credential: OAuthCredential,
) -> None:
    """
    Revoke a credential upstream and forget it locally.

    The stored session is deleted even when the revocation request fails.
    """
    try:
        if credential.revocation_endpoint is None:
            return

        token = credential.refresh_token or credential.access_token
        data = {
            "client_id": settings.client_id,
            "token": token,
            "token_type_hint": (
                "refresh_token" if credential.refresh_token else "access_token"
            ),
            "client_assertion_type": CLIENT_ASSERTION_TYPE,
        }
        status, body, _ = await _authenticated_post(
            settings,
            statsd_client,
            http_session,
            credential.revocation_endpoint,
            credential.issuer,
            credential.secret_jwk_id,
            credential.dpop_key(),
            data,
            dpop_nonce=credential.dpop_nonce,
        )
        if status != 200:
            raise Exception(_error_message(body, "Invalid revocation response"))
    finally:
        await credential_store.delete(Partition.session, credential.did)
