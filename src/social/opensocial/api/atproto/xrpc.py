"""
XRPC reads against the AT Protocol network.

Authenticated queries are sent to the signed-in user's PDS with a DPoP-bound access token.
Record reads are public and go straight to the PDS hosting the repository.
"""

from datetime import datetime, timezone
import logging
from typing import Any, Dict, List, Optional
from aio_statsd import TelegrafStatsdClient
from aiohttp import ClientError, ClientSession

from social.opensocial.api.app.errors import UpstreamFailure
from social.opensocial.api.atproto.chain import (
    ChainMiddlewareClient,
    GenerateDpopMiddleware,
    StatsdMiddleware,
)
from social.opensocial.api.atproto.jwt import create_dpop_claims, create_dpop_header
from social.opensocial.api.atproto.oauth import OAuthCredential

logger = logging.getLogger(__name__)

LIST_RECORDS_LIMIT = 100

LIST_RECORDS_MAX_PAGES = 50


async def xrpc_get(
    http_session: ClientSession,
    statsd_client: TelegrafStatsdClient,
    credential: OAuthCredential,
    nsid: str,
    params: Optional[Dict[str, Any]] = None,
    proxy: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Make an authenticated XRPC query on behalf of the credential's owner.

    Args:
        nsid: Method to call, for example "app.bsky.actor.getProfile"
        params: Query parameters; None values are left out
        proxy: Optional service reference for the atproto-proxy header

    Raises:
        UpstreamFailure: When the request fails or the response is not a JSON object
    """
    xrpc_url = f"{credential.pds}/xrpc/{nsid}"
    query = {k: str(v) for k, v in (params or {}).items() if v is not None}

    dpop_key = credential.dpop_key()
    chain_middleware = [
        StatsdMiddleware(statsd_client),
        GenerateDpopMiddleware(
            dpop_key,
            create_dpop_header(dpop_key.export_public(as_dict=True)),
            create_dpop_claims(
                "GET",
                xrpc_url,
                datetime.now(timezone.utc),
                access_token=credential.access_token,
            ),
        ),
    ]

    headers = {"Authorization": f"DPoP {credential.access_token}"}
    if proxy is not None:
        headers["atproto-proxy"] = proxy

    chain_client = ChainMiddlewareClient(
        client_session=http_session, raise_for_status=False, middleware=chain_middleware
    )

    try:
        async with chain_client.get(xrpc_url, params=query, headers=headers) as (
            _,
            chain_response,
        ):
            if chain_response.status != 200:
                raise UpstreamFailure.identity_network(
                    f"{nsid} failed with status {chain_response.status}"
                )
            return chain_response.json_body()
    except (ClientError, ValueError) as e:
        raise UpstreamFailure.identity_network(f"{nsid} failed") from e


async def _public_get(
    http_session: ClientSession, pds: str, nsid: str, params: Dict[str, str]
) -> Dict[str, Any]:
    try:
        async with http_session.get(f"{pds}/xrpc/{nsid}", params=params) as resp:
            if resp.status != 200:
                raise UpstreamFailure.identity_network(
                    f"{nsid} failed with status {resp.status}"
                )
            body = await resp.json(content_type=None)
    except (ClientError, ValueError) as e:
        raise UpstreamFailure.identity_network(f"{nsid} failed") from e

    if not isinstance(body, dict):
        raise UpstreamFailure.identity_network(f"{nsid} returned an invalid body")
    return body


async def list_records(
    http_session: ClientSession, pds: str, repo: str, collection: str
) -> List[Dict[str, Any]]:
    """
    List every record of a collection in a repository.

    Pages are followed by cursor until the PDS stops returning one. The full list is returned
    at once; record sets read here are small.

    Returns:
        Raw record entries, each with "uri", "cid" and "value"
    """
    records: List[Dict[str, Any]] = []
    cursor: Optional[str] = None

    for _ in range(LIST_RECORDS_MAX_PAGES):
        params = {"repo": repo, "collection": collection, "limit": str(LIST_RECORDS_LIMIT)}
        if cursor is not None:
            params["cursor"] = cursor
        body = await _public_get(http_session, pds, "com.atproto.repo.listRecords", params)

        page = body.get("records", [])
        if not isinstance(page, list):
            raise UpstreamFailure.identity_network("listRecords returned an invalid body")
        records.extend(page)

        cursor = body.get("cursor", None)
        if not cursor or len(page) == 0:
            break
    else:
        logger.warning(
            "listRecords page limit reached repo=%s collection=%s", repo, collection
        )

    return records


async def get_record(
    http_session: ClientSession, pds: str, repo: str, collection: str, rkey: str
) -> Dict[str, Any]:
    """Fetch a single record entry with "uri", "cid" and "value"."""
    return await _public_get(
        http_session,
        pds,
        "com.atproto.repo.getRecord",
        {"repo": repo, "collection": collection, "rkey": rkey},
    )
