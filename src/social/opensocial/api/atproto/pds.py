"""OAuth metadata discovery against a PDS and its authorization server."""
from typing import Optional, Any, Dict
from aiohttp import ClientSession


async def oauth_protected_resource(
    session: ClientSession, pds: str
) -> Optional[Dict[str, Any]]:
    async with session.get(f"{pds}/.well-known/oauth-protected-resource") as resp:
        if resp.status != 200:
            return None
        return await resp.json()


async def oauth_authorization_server(
    session: ClientSession, authorization_server: str
) -> Optional[Dict[str, Any]]:
    async with session.get(
        f"{authorization_server}/.well-known/oauth-authorization-server"
    ) as resp:
        if resp.status != 200:
            return None
        return await resp.json()


async def discover_authorization_server(
    session: ClientSession, pds: str
) -> Dict[str, Any]:
    """Find the authorization server metadata that governs a PDS.

    A service without protected resource metadata is treated as its own authorization
    server, which is how entryways are addressed.

    Raises:
        Exception: If no usable authorization server metadata is found
    """
    protected_resource = await oauth_protected_resource(session, pds)
    if protected_resource is None:
        first_authorization_server = pds
    else:
        first_authorization_server = next(
            iter(protected_resource.get("authorization_servers", [])), None
        )
    if first_authorization_server is None:
        raise Exception("No authorization server found")

    authorization_server = await oauth_authorization_server(
        session, first_authorization_server
    )
    if authorization_server is None:
        raise Exception("No authorization server found")

    if authorization_server.get("issuer", None) is None:
        raise Exception("No authorization issuer found")

    return authorization_server
