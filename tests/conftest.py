"""
Shared test configuration and fixtures for OpenSocial API tests.

Provides database setup against PostgreSQL (skipped when unavailable), an in-memory
credential store, test settings with a generated signing key, and an application wired up
for handler tests without any network or database access.
"""

import os
import uuid
from typing import Dict, Optional
from unittest.mock import Mock
import pytest
import pytest_asyncio
from aiohttp import ClientSession
from aiohttp.test_utils import TestClient, TestServer
from cryptography.fernet import Fernet
from jwcrypto import jwk
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from social.opensocial.api.app.config import (
    CredentialStoreAppKey,
    DatabaseSessionMakerAppKey,
    SessionAppKey,
    Settings,
    TelegrafStatsdClientAppKey,
)
from social.opensocial.api.app.server import create_app
from social.opensocial.api.atproto.store import Partition
from social.opensocial.api.model.base import Base


# Test database configuration
TEST_DB_HOST = os.getenv("TEST_DB_HOST", "postgres")
TEST_DB_PORT = os.getenv("TEST_DB_PORT", "5432")
TEST_DB_USER = os.getenv("TEST_DB_USER", "postgres")
TEST_DB_PASSWORD = os.getenv("TEST_DB_PASSWORD", "password")

# Admin URL for database creation/deletion (connects to postgres database)
ADMIN_DATABASE_URL = f"postgresql+asyncpg://{TEST_DB_USER}:{TEST_DB_PASSWORD}@{TEST_DB_HOST}:{TEST_DB_PORT}/postgres"

TEST_SIGNING_KEY_ID = "test-signing-key"


async def check_postgres_available():
    """Check if PostgreSQL is available for testing."""
    try:
        admin_engine = create_async_engine(ADMIN_DATABASE_URL, echo=False)
        async with admin_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        await admin_engine.dispose()
        return True
    except Exception:
        return False


@pytest_asyncio.fixture(scope="function")
async def test_database():
    """Create and clean up test database for each test function."""
    if not await check_postgres_available():
        pytest.skip("PostgreSQL database not available for testing")

    # Use a unique database name for each test to avoid conflicts
    unique_db_name = f"opensocial_test_{uuid.uuid4().hex[:8]}"
    unique_db_url = (
        f"postgresql+asyncpg://{TEST_DB_USER}:{TEST_DB_PASSWORD}@"
        f"{TEST_DB_HOST}:{TEST_DB_PORT}/{unique_db_name}"
    )

    admin_engine = create_async_engine(
        ADMIN_DATABASE_URL, echo=False, isolation_level="AUTOCOMMIT"
    )

    try:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"CREATE DATABASE {unique_db_name}"))

        yield unique_db_url

    finally:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"DROP DATABASE IF EXISTS {unique_db_name}"))
        await admin_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def engine(test_database):
    """Create async SQLAlchemy engine for testing with PostgreSQL."""
    engine = create_async_engine(test_database, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def database_session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class FakeCredentialStore:
    """In-memory stand-in for CredentialStore with the same async interface."""

    def __init__(self) -> None:
        self.partitions: Dict[Partition, Dict[str, str]] = {
            Partition.state: {},
            Partition.session: {},
        }

    async def put(self, partition: Partition, key: str, payload: str) -> None:
        self.partitions[partition][key] = payload

    async def get(self, partition: Partition, key: str) -> Optional[str]:
        return self.partitions[partition].get(key, None)

    async def delete(self, partition: Partition, key: str) -> None:
        self.partitions[partition].pop(key, None)


@pytest.fixture
def signing_key() -> jwk.JWK:
    return jwk.JWK.generate(
        kty="EC", crv="P-256", kid=TEST_SIGNING_KEY_ID, alg="ES256"
    )


@pytest.fixture
def settings(signing_key) -> Settings:
    json_web_keys = jwk.JWKSet()
    json_web_keys.add(signing_key)
    return Settings(
        debug=False,
        environment="development",
        external_hostname="api.opensocial.test",
        json_web_keys=json_web_keys,
        active_signing_keys=[TEST_SIGNING_KEY_ID],
        cookie_secret=Fernet(Fernet.generate_key()),
    )  # type: ignore


@pytest.fixture
def credential_store() -> FakeCredentialStore:
    return FakeCredentialStore()


@pytest.fixture
def statsd_client() -> Mock:
    return Mock()


@pytest.fixture
def http_session() -> Mock:
    """Client session placeholder; tests patch the functions that would use it."""
    return Mock(spec=ClientSession)


@pytest.fixture
def app(settings, credential_store, statsd_client, http_session):
    app = create_app(settings)
    app[CredentialStoreAppKey] = credential_store  # type: ignore
    app[TelegrafStatsdClientAppKey] = statsd_client
    app[SessionAppKey] = http_session
    return app


@pytest_asyncio.fixture
async def client(app):
    async with TestClient(TestServer(app)) as client:
        yield client


@pytest.fixture
def db_app(app, database_session_maker):
    """Application fixture backed by the PostgreSQL test database."""
    app[DatabaseSessionMakerAppKey] = database_session_maker
    return app


@pytest_asyncio.fixture
async def db_client(db_app):
    async with TestClient(TestServer(db_app)) as client:
        yield client
