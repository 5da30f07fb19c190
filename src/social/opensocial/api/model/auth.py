"""OAuth credential storage models.

Provides SQLAlchemy models for the two credential partitions: short-lived authorization
state created at login, and long-lived sessions keyed by the user's DID.
"""
from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import insert

from social.opensocial.api.model.base import Base


class AuthState(Base):
    """In-flight authorization attempt, keyed by the OAuth state token."""

    __tablename__ = "auth_state"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    state: Mapped[str] = mapped_column(Text, nullable=False)


class AuthSession(Base):
    """Established OAuth session, keyed by DID. At most one row per identity."""

    __tablename__ = "auth_session"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    session: Mapped[str] = mapped_column(Text, nullable=False)


def upsert_auth_state_stmt(key: str, state: str):
    """Create PostgreSQL upsert statement for authorization state records."""
    return (
        insert(AuthState)
        .values([{"key": key, "state": state}])
        .on_conflict_do_update(index_elements=["key"], set_={"state": state})
    )


def upsert_auth_session_stmt(key: str, session: str):
    """Create PostgreSQL upsert statement for session records.

    Replaces the stored session for an existing DID or inserts a new record.
    """
    return (
        insert(AuthSession)
        .values([{"key": key, "session": session}])
        .on_conflict_do_update(index_elements=["key"], set_={"session": session})
    )
