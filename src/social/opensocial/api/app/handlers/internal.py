from datetime import datetime, timezone
from aiohttp import web

from social.opensocial.api.app.config import SERVICE_NAME


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response(
        {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": SERVICE_NAME,
        }
    )
