"""Add connected_accounts and campaigns tables.

Revision ID: 001
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    insp = sa.inspect(conn)
    existing = set(insp.get_table_names())

    if "connected_accounts" not in existing:
        op.create_table(
            "connected_accounts",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("user_id", sa.String(255), nullable=False),
            sa.Column("remote_account_id", sa.String(255), nullable=False),
            sa.Column("access_credential", sa.Text(), nullable=False),
            sa.Column("refresh_credential", sa.Text(), nullable=True),
            sa.Column("username", sa.String(255), nullable=False),
            sa.Column("email", sa.String(255), nullable=True),
            sa.Column("profile_image", sa.Text(), nullable=True),
            sa.Column("connection_status", sa.String(20), nullable=True, server_default="connected"),
            sa.Column("last_credential_refresh", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("ad_accounts", sa.JSON(), nullable=True),
            sa.Column("recent_errors", sa.JSON(), nullable=True),
            sa.Column("settings", sa.JSON(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("remote_account_id", name="uq_connected_accounts_remote_account_id"),
        )
        op.create_index("ix_connected_accounts_user_id", "connected_accounts", ["user_id"], unique=False)
        op.create_index(
            "ix_connected_accounts_user_status", "connected_accounts", ["user_id", "connection_status"], unique=False,
        )

    if "campaigns" not in existing:
        op.create_table(
            "campaigns",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("campaign_id", sa.String(255), nullable=False),
            sa.Column("user_id", sa.String(255), nullable=False),
            # Lookup reference only; no foreign key so disconnecting never cascades
            sa.Column("connected_account_id", sa.Uuid(), nullable=False),
            sa.Column("ad_account_id", sa.String(255), nullable=False),
            sa.Column("name", sa.String(512), nullable=False),
            sa.Column("status", sa.String(20), nullable=True, server_default="draft"),
            sa.Column("objective", sa.String(20), nullable=False),
            sa.Column("budget", sa.JSON(), nullable=True),
            sa.Column("schedule", sa.JSON(), nullable=False),
            sa.Column("targeting", sa.JSON(), nullable=True),
            sa.Column("creatives", sa.JSON(), nullable=True),
            sa.Column("tracking", sa.JSON(), nullable=True),
            sa.Column("performance", sa.JSON(), nullable=True),
            sa.Column("last_sync", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("errors", sa.JSON(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("campaign_id", name="uq_campaigns_campaign_id"),
        )
        op.create_index("ix_campaigns_user_status", "campaigns", ["user_id", "status"], unique=False)
        op.create_index("ix_campaigns_account_status", "campaigns", ["connected_account_id", "status"], unique=False)
        op.create_index("ix_campaigns_ad_account_id", "campaigns", ["ad_account_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_campaigns_ad_account_id", table_name="campaigns")
    op.drop_index("ix_campaigns_account_status", table_name="campaigns")
    op.drop_index("ix_campaigns_user_status", table_name="campaigns")
    op.drop_table("campaigns")
    op.drop_index("ix_connected_accounts_user_status", table_name="connected_accounts")
    op.drop_index("ix_connected_accounts_user_id", table_name="connected_accounts")
    op.drop_table("connected_accounts")
