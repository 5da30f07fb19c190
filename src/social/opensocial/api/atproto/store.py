"""Credential store for OAuth state and OAuth sessions.

Both partitions hold opaque string payloads keyed by an opaque string. Each operation runs in
its own database session and transaction, so the pooled connection is returned on every exit
path. Storage errors are not caught here.
"""

from enum import Enum
from typing import Optional
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import (
    async_sessionmaker,
    AsyncSession,
)

from social.opensocial.api.model.auth import (
    AuthSession,
    AuthState,
    upsert_auth_session_stmt,
    upsert_auth_state_stmt,
)


class Partition(str, Enum):
    """Logical partitions of the credential store."""

    state = "state"
    session = "session"


class CredentialStore:
    def __init__(self, database_session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._database_session_maker = database_session_maker

    async def put(self, partition: Partition, key: str, payload: str) -> None:
        if partition == Partition.state:
            stmt = upsert_auth_state_stmt(key, payload)
        else:
            stmt = upsert_auth_session_stmt(key, payload)

        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(stmt)

    async def get(self, partition: Partition, key: str) -> Optional[str]:
        if partition == Partition.state:
            stmt = select(AuthState.state).where(AuthState.key == key)
        else:
            stmt = select(AuthSession.session).where(AuthSession.key == key)

        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                return (await database_session.scalars(stmt)).first()

    async def delete(self, partition: Partition, key: str) -> None:
        if partition == Partition.state:
            stmt = delete(AuthState).where(AuthState.key == key)
        else:
            stmt = delete(AuthSession).where(AuthSession.key == key)

        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(stmt)
