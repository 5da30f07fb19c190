import asyncio
from datetime import datetime, timezone
import logging
from aiohttp import web
import bcrypt
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from social.opensocial.api.app.config import (
    DatabaseSessionMakerAppKey,
    TelegrafStatsdClientAppKey,
)
from social.opensocial.api.app.errors import Conflict, InvalidInput
from social.opensocial.api.app.handlers.helpers import api_key_helper, read_body
from social.opensocial.api.model.apps import (
    APP_STATUS_ACTIVE,
    App,
    generate_app_credentials,
)

logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = 10

REGISTER_FIELDS = ("name", "domain", "creator_did")


def hash_api_secret(api_secret: str) -> str:
    return bcrypt.hashpw(
        api_secret.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    ).decode("utf-8")


async def handle_register_app(request: web.Request) -> web.Response:
    """
    Register a third-party app.

    The plaintext API secret is part of this response only. The stored record keeps its
    bcrypt hash.
    """
    body = await read_body(request)
    values = {}
    for field in REGISTER_FIELDS:
        value = body.get(field, None)
        if not isinstance(value, str) or len(value.strip()) == 0:
            raise InvalidInput.missing_fields(*REGISTER_FIELDS)
        values[field] = value.strip()

    app_id, api_key, api_secret = generate_app_credentials()
    api_secret_hash = await asyncio.to_thread(hash_api_secret, api_secret)

    app = App(
        app_id=app_id,
        name=values["name"],
        domain=values["domain"],
        creator_did=values["creator_did"],
        api_key=api_key,
        api_secret_hash=api_secret_hash,
        status=APP_STATUS_ACTIVE,
        created_at=datetime.now(timezone.utc),
    )

    database_session_maker = request.app[DatabaseSessionMakerAppKey]
    try:
        async with database_session_maker() as database_session:
            async with database_session.begin():
                existing_stmt = select(App.app_id).where(App.domain == app.domain)
                existing = (await database_session.scalars(existing_stmt)).first()
                if existing is not None:
                    raise Conflict.duplicate_domain()
                database_session.add(app)
    except IntegrityError:
        # Lost a race with a concurrent registration for the same domain.
        raise Conflict.duplicate_domain()

    logger.info("Registered app app_id=%s domain=%s", app.app_id, app.domain)
    request.app[TelegrafStatsdClientAppKey].increment("opensocial.apps.registered", 1)

    return web.json_response(
        {
            "app": {
                "app_id": app.app_id,
                "name": app.name,
                "domain": app.domain,
                "api_key": app.api_key,
                "created_at": app.created_at.isoformat(),
            },
            "api_secret": api_secret,
            "message": "Store the api_secret securely - it will not be shown again",
        },
    )


async def handle_apps_me(request: web.Request) -> web.Response:
    """Describe the app identified by the X-API-Key header."""
    app = await api_key_helper(request)
    return web.json_response(
        {
            "app_id": app.app_id,
            "name": app.name,
            "domain": app.domain,
            "created_at": app.created_at.isoformat(),
        }
    )
