"""init

Revision ID: 5c1e2a9d7f04
Revises:
Create Date: 2026-10-18 09:12:40.118203

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5c1e2a9d7f04"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "auth_state",
        sa.Column("key", sa.String(255), primary_key=True),
        sa.Column("state", sa.Text, nullable=False),
    )

    op.create_table(
        "auth_session",
        sa.Column("key", sa.String(255), primary_key=True),
        sa.Column("session", sa.Text, nullable=False),
    )

    op.create_table(
        "apps",
        sa.Column("app_id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("domain", sa.String(255), nullable=False),
        sa.Column("creator_did", sa.String(512), nullable=False),
        sa.Column("api_key", sa.String(128), nullable=False),
        sa.Column("api_secret_hash", sa.String(128), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_apps_domain", "apps", ["domain"], unique=True)
    op.create_index("idx_apps_api_key", "apps", ["api_key"], unique=True)


def downgrade() -> None:
    op.drop_index("idx_apps_api_key", table_name="apps")
    op.drop_index("idx_apps_domain", table_name="apps")
    op.drop_table("apps")
    op.drop_table("auth_session")
    op.drop_table("auth_state")
