"""
Configuration Module for the OpenSocial API

This module defines the configuration system for the OpenSocial API, using Pydantic for
settings validation and dependency injection through AppKeys.

The Settings class serves as the central configuration point, loaded from environment variables
with defaults suitable for development environments. All application components access settings
and shared resources through typed AppKeys, and process-wide resources are created once at
startup and treated as read-only afterwards.

Key configuration areas include:
- Environment (development or production) and the frontend the service redirects to
- Database connection
- Cryptographic materials (client assertion signing keys, session cookie secret)
- Monitoring and error reporting
"""

import base64
from typing import Annotated, Final, List, Literal, Optional
import logging
from aio_statsd import TelegrafStatsdClient
from jwcrypto import jwk
from pydantic import (
    AliasChoices,
    Field,
    field_validator,
    PostgresDsn,
)
from pydantic_settings import BaseSettings, NoDecode
from aiohttp import web, ClientSession
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    async_sessionmaker,
    AsyncSession,
)

from social.opensocial.api.app.session import SessionCodec
from social.opensocial.api.atproto.store import CredentialStore


logger = logging.getLogger(__name__)


OAUTH_SCOPE = "atproto transition:generic"
"""Scope requested for every authorization attempt."""

SERVICE_NAME = "opensocial-api"


class Settings(BaseSettings):
    """
    Application settings for the OpenSocial API.

    This class uses Pydantic's BaseSettings to automatically load values from environment
    variables, with sensible defaults for development environments. Aliases are provided
    where the service historically read a different variable name, for example the database
    connection string can be set with either PG_DSN or DATABASE_URL.
    """

    debug: bool = False
    """
    Enable debug mode for verbose logging and detailed error bodies.
    Set with DEBUG=true environment variable.
    """

    environment: Literal["development", "production"] = Field(
        "development",
        validation_alias=AliasChoices("environment", "node_env"),
    )
    """
    Deployment environment. Controls cookie security, cache lifetimes and redirect targets.
    Set with ENVIRONMENT or NODE_ENV environment variables.
    """

    http_port: int = Field(alias="port", default=3001)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    external_hostname: str = "127.0.0.1:3001"
    """
    Public hostname for the service, used for the OAuth client id and callback URL.
    Set with EXTERNAL_HOSTNAME environment variable.
    """

    service_url: Optional[str] = None
    """
    Frontend URL used as the post-login redirect and CORS origin in production.
    Set with SERVICE_URL environment variable.
    """

    dev_frontend_url: str = "http://127.0.0.1:5174"
    """
    Frontend URL used as the post-login redirect and CORS origin outside production.
    Set with DEV_FRONTEND_URL environment variable.
    """

    plc_hostname: str = "plc.directory"
    """
    Hostname for the PLC directory service for DID resolution.
    Set with PLC_HOSTNAME environment variable.
    """

    appview_service: str = "did:web:api.bsky.app#bsky_appview"
    """
    Service the user's PDS proxies profile reads to.
    Set with APPVIEW_SERVICE environment variable.
    """

    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    pg_dsn: PostgresDsn = Field(
        "postgresql+asyncpg://postgres:password@db/opensocial",
        validation_alias=AliasChoices("pg_dsn", "database_url"),
    )  # type: ignore
    """
    PostgreSQL connection string for database access.
    Set with PG_DSN or DATABASE_URL environment variables.
    """

    json_web_keys: Annotated[jwk.JWKSet, NoDecode] = jwk.JWKSet()
    """
    JSON Web Key Set containing the keys used to sign client assertions.
    Can be set to a JWKSet object or path to a JSON file containing keys.
    Set with JSON_WEB_KEYS environment variable.
    """

    active_signing_keys: List[str] = list()
    """
    List of key IDs (kid) from json_web_keys that should be used for signing and published
    in the JWKS document.
    Set with ACTIVE_SIGNING_KEYS environment variable.
    """

    cookie_secret: Fernet = Fernet(Fernet.generate_key())
    """
    Fernet key that encrypts and signs the browser session cookie.
    Can be set to a Fernet object or base64-encoded key string.
    Set with COOKIE_SECRET environment variable.
    """

    cookie_name: str = "sid"
    """
    Name of the browser session cookie.
    Set with COOKIE_NAME environment variable.
    """

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """

    @property
    def production(self) -> bool:
        return self.environment == "production"

    @property
    def session_max_age(self) -> int:
        """
        Lifetime of the session cookie in seconds.

        Every request that restores the signed-in credential re-issues the cookie, so the
        lifetime bounds idle time rather than the session. It is short in production and only
        a little longer in development.
        """
        return 60 if self.production else 300

    @property
    def metadata_max_age(self) -> int:
        """Cache lifetime in seconds for the client metadata and JWKS documents."""
        return 60 if self.production else 300

    @property
    def frontend_url(self) -> str:
        if self.production:
            return self.service_url or self.dev_frontend_url
        return self.dev_frontend_url

    @property
    def client_id(self) -> str:
        return f"https://{self.external_hostname}/oauth-client-metadata.json"

    @property
    def redirect_uri(self) -> str:
        return f"https://{self.external_hostname}/oauth/callback"

    @property
    def jwks_uri(self) -> str:
        return f"https://{self.external_hostname}/.well-known/jwks.json"

    @field_validator("json_web_keys", mode="before")
    @classmethod
    def decode_json_web_keys(cls, v) -> jwk.JWKSet:
        """
        Validate and process the json_web_keys setting.

        This validator accepts either:
        - An existing JWKSet object (for programmatic configuration)
        - A file path to a JSON file containing a JWK Set

        Raises:
            ValueError: If the input is neither a JWKSet nor a valid file path
        """
        if isinstance(v, jwk.JWKSet):
            return v
        elif isinstance(v, str):
            with open(v) as fd:
                data = fd.read()
                return jwk.JWKSet.from_json(data)
        raise ValueError(
            "json_web_keys must be a JWKSet object or a valid JSON file path"
        )

    @field_validator("cookie_secret", mode="before")
    @classmethod
    def decode_cookie_secret(cls, v) -> Fernet:
        """
        Validate and process the cookie_secret setting.

        This validator accepts either:
        - An existing Fernet object (for programmatic configuration)
        - A base64-encoded string containing a Fernet key

        Raises:
            ValueError: If the input is neither a Fernet object nor a valid base64 key
        """
        if isinstance(v, Fernet):
            return v
        elif isinstance(v, str):
            key_data = base64.b64decode(v)
            return Fernet(key_data)
        raise ValueError(
            "cookie_secret must be a Fernet object or a base64-encoded key string"
        )


# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

DatabaseAppKey: Final = web.AppKey("database", AsyncEngine)
"""AppKey for accessing the SQLAlchemy async database engine"""

DatabaseSessionMakerAppKey: Final = web.AppKey(
    "database_session_maker", async_sessionmaker[AsyncSession]
)
"""AppKey for accessing the SQLAlchemy async session factory"""

CredentialStoreAppKey: Final = web.AppKey("credential_store", CredentialStore)
"""AppKey for accessing the OAuth state and session store"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

SessionCodecAppKey: Final = web.AppKey("session_codec", SessionCodec)
"""AppKey for accessing the browser session cookie codec"""

TelegrafStatsdClientAppKey: Final = web.AppKey(
    "telegraf_statsd_client", TelegrafStatsdClient
)
"""AppKey for accessing the Telegraf/StatsD metrics client"""
