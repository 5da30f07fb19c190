"""Encrypted browser session cookie.

The browser session holds at most one claim, the DID of the signed-in user. It is
serialized as JSON, encrypted and authenticated with Fernet, and carried in a single
cookie. Tokens, refresh material and secrets never leave the server.
"""

import json
import logging
from typing import Mapping, Optional
from aiohttp import web
from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class BrowserSession:
    """Request-scoped view of the session cookie.

    Handlers change the session through `save` and `destroy`; the change is applied to the
    outgoing response by the session middleware.
    """

    def __init__(self, did: Optional[str] = None) -> None:
        self.did = did
        self.pending_save = False
        self.pending_destroy = False

    def save(self) -> None:
        self.pending_save = True
        self.pending_destroy = False

    def destroy(self) -> None:
        self.did = None
        self.pending_save = False
        self.pending_destroy = True

    def __repr__(self) -> str:
        return f"BrowserSession(did={self.did!r})"


class SessionCodec:
    """Reads and writes the session cookie.

    Decoding never raises: an absent, expired, tampered or malformed cookie is an empty
    session.
    """

    def __init__(
        self, fernet: Fernet, cookie_name: str, max_age: int, secure: bool
    ) -> None:
        self._fernet = fernet
        self.cookie_name = cookie_name
        self.max_age = max_age
        self.secure = secure

    def encode(self, did: Optional[str]) -> str:
        payload = json.dumps({"did": did}).encode("utf-8")
        return self._fernet.encrypt(payload).decode("ascii")

    def decode(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        try:
            payload = self._fernet.decrypt(value, ttl=self.max_age)
            data = json.loads(payload)
        except (InvalidToken, ValueError, TypeError):
            logger.debug("discarding unreadable session cookie")
            return None
        if not isinstance(data, dict):
            return None
        did = data.get("did", None)
        if isinstance(did, str) and len(did) > 0:
            return did
        return None

    def read(self, cookies: Mapping[str, str]) -> BrowserSession:
        return BrowserSession(self.decode(cookies.get(self.cookie_name)))

    def write(self, response: web.StreamResponse, session: BrowserSession) -> None:
        response.set_cookie(
            self.cookie_name,
            self.encode(session.did),
            max_age=self.max_age,
            path="/",
            secure=self.secure,
            httponly=True,
            samesite="Lax",
        )

    def destroy(self, response: web.StreamResponse) -> None:
        response.del_cookie(
            self.cookie_name,
            path="/",
            secure=self.secure,
            httponly=True,
            samesite="Lax",
        )
