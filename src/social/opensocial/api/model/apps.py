"""Registered third-party app models.

An app is created once at registration. Its API secret is returned to the caller a single
time; only the bcrypt hash is stored.
"""
import secrets
from datetime import datetime
from typing import Tuple
from sqlalchemy import String, DateTime, Index, func
from sqlalchemy.orm import Mapped, mapped_column

from social.opensocial.api.model.base import Base, str255, str512

APP_STATUS_ACTIVE = "active"


class App(Base):
    """Third-party app allowed to call the API with its API key."""

    __tablename__ = "apps"

    app_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str255]
    domain: Mapped[str255]
    creator_did: Mapped[str512]
    api_key: Mapped[str] = mapped_column(String(128), nullable=False)
    api_secret_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=APP_STATUS_ACTIVE
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        Index("idx_apps_domain", "domain", unique=True),
        Index("idx_apps_api_key", "api_key", unique=True),
    )


def generate_app_credentials() -> Tuple[str, str, str]:
    """Generate an app id, API key and plaintext API secret."""
    app_id = f"app_{secrets.token_hex(8)}"
    api_key = f"osc_{secrets.token_hex(32)}"
    api_secret = secrets.token_hex(32)
    return app_id, api_key, api_secret
