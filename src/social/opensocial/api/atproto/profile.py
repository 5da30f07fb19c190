import logging
from typing import Optional
from aio_statsd import TelegrafStatsdClient
from aiohttp import ClientSession
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from social.opensocial.api.app.config import Settings
from social.opensocial.api.app.errors import Unauthenticated, UpstreamFailure
from social.opensocial.api.atproto.oauth import OAuthCredential
from social.opensocial.api.atproto.xrpc import xrpc_get

logger = logging.getLogger(__name__)


class Profile(BaseModel):
    """Public profile of a signed-in user."""

    model_config = ConfigDict(populate_by_name=True)

    did: str
    handle: str
    display_name: Optional[str] = Field(default=None, alias="displayName")
    avatar: Optional[str] = None
    description: Optional[str] = None


async def get_profile(
    settings: Settings,
    statsd_client: TelegrafStatsdClient,
    http_session: ClientSession,
    credential: Optional[OAuthCredential],
) -> Profile:
    """
    Read the current profile of the credential's owner.

    The read goes through the user's PDS, proxied to the configured appview. Nothing is
    cached between calls.

    Raises:
        Unauthenticated: When no credential is given
        UpstreamFailure: When the read fails or returns an unexpected shape
    """
    if credential is None:
        raise Unauthenticated.no_session()

    body = await xrpc_get(
        http_session,
        statsd_client,
        credential,
        "app.bsky.actor.getProfile",
        {"actor": credential.did},
        proxy=settings.appview_service,
    )

    try:
        profile = Profile.model_validate(body)
    except ValidationError as e:
        raise UpstreamFailure.identity_network("getProfile returned an invalid body") from e

    if profile.did != credential.did:
        raise UpstreamFailure.identity_network("getProfile returned a different actor")

    return profile
