from typing import Dict, MutableMapping, Optional, Set
from urllib.parse import urlparse

from social.opensocial.api.app.config import Settings

DEV_FRONTEND_ORIGINS = {
    "http://127.0.0.1:5174",
    "http://localhost:5174",
}


def _origin(url: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme and parsed.netloc:
        return f"{parsed.scheme}://{parsed.netloc}"
    return url.rstrip("/")


def allowed_origins(settings: Settings) -> Set[str]:
    if settings.production:
        return {_origin(settings.service_url)} if settings.service_url else set()
    return DEV_FRONTEND_ORIGINS | {_origin(settings.dev_frontend_url)}


def append_vary(headers: MutableMapping[str, str], value: str) -> None:
    current = headers.get("Vary", None)
    if current is None:
        headers["Vary"] = value
    elif value.lower() not in [v.strip().lower() for v in current.split(",")]:
        headers["Vary"] = f"{current}, {value}"


def get_cors_headers(origin_value: Optional[str], settings: Settings) -> Dict[str, str]:
    """Return CORS headers for a request from the given origin.

    Only the frontend origins are allowed, and they may send credentials.
    """
    headers = {
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, X-API-Key, Authorization",
        "Vary": "Origin",
    }

    if origin_value and _origin(origin_value) in allowed_origins(settings):
        headers["Access-Control-Allow-Origin"] = origin_value
        headers["Access-Control-Allow-Credentials"] = "true"

    return headers
