import logging
from aiohttp import web

from social.opensocial.api.app.config import (
    SessionAppKey,
    SettingsAppKey,
    TelegrafStatsdClientAppKey,
)
from social.opensocial.api.app.errors import Unauthenticated
from social.opensocial.api.app.handlers.helpers import restore_session_credential
from social.opensocial.api.atproto.profile import get_profile
from social.opensocial.api.community.membership import list_memberships

logger = logging.getLogger(__name__)


def _private_cache_headers(max_age: int) -> dict:
    return {"Cache-Control": f"max-age={max_age}, private"}


async def handle_users_me(request: web.Request) -> web.Response:
    """Return the signed-in user's current profile."""
    settings = request.app[SettingsAppKey]

    credential = await restore_session_credential(request)
    if credential is None:
        raise Unauthenticated.no_session()

    profile = await get_profile(
        settings,
        request.app[TelegrafStatsdClientAppKey],
        request.app[SessionAppKey],
        credential,
    )

    return web.json_response(
        profile.model_dump(mode="json", by_alias=True),
        headers=_private_cache_headers(settings.session_max_age),
    )


async def handle_users_me_memberships(request: web.Request) -> web.Response:
    """Return the signed-in user's community memberships with their status."""
    settings = request.app[SettingsAppKey]

    credential = await restore_session_credential(request)
    if credential is None:
        raise Unauthenticated.no_session()

    memberships = await list_memberships(settings, request.app[SessionAppKey], credential)

    return web.json_response(
        {
            "memberships": [
                membership.model_dump(mode="json", by_alias=True)
                for membership in memberships
            ]
        },
        headers=_private_cache_headers(settings.session_max_age),
    )
