"""
Database Models — one row per synced document.
Key columns are real columns (unique, indexed); embedded sub-documents
(ad accounts, budgets, targeting, performance, error logs) live in JSON columns.
"""

import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    String, Text, Integer, DateTime, JSON, Index, UniqueConstraint, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column
from adsync.database import Base


def _utcnow() -> datetime:
    """Naive UTC now — matches DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  CONNECTED ACCOUNTS — one per user per platform
# ══════════════════════════════════════════════════════════════════════

class ConnectedAccountRow(Base):
    """A user's link to the ad platform. Credentials are stored encrypted."""
    __tablename__ = "connected_accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    remote_account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    access_credential: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_credential: Mapped[str] = mapped_column(Text, nullable=True)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=True)
    profile_image: Mapped[str] = mapped_column(Text, nullable=True)
    connection_status: Mapped[str] = mapped_column(String(20), default="connected")
    last_credential_refresh: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    ad_accounts: Mapped[list] = mapped_column(JSON, default=list)
    recent_errors: Mapped[list] = mapped_column(JSON, default=list)
    settings: Mapped[dict] = mapped_column(JSON, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("remote_account_id", name="uq_connected_accounts_remote_account_id"),
        Index("ix_connected_accounts_user_id", "user_id"),
        Index("ix_connected_accounts_user_status", "user_id", "connection_status"),
    )


# ══════════════════════════════════════════════════════════════════════
#  CAMPAIGNS — one per remote campaign id
# ══════════════════════════════════════════════════════════════════════

class CampaignRow(Base):
    """Local document for a remote campaign; references its connected account without cascade."""
    __tablename__ = "campaigns"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    connected_account_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    ad_account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="draft")
    objective: Mapped[str] = mapped_column(String(20), nullable=False)
    budget: Mapped[dict] = mapped_column(JSON, default=dict)
    schedule: Mapped[dict] = mapped_column(JSON, nullable=False)
    targeting: Mapped[dict] = mapped_column(JSON, default=dict)
    creatives: Mapped[list] = mapped_column(JSON, default=list)
    tracking: Mapped[dict] = mapped_column(JSON, default=dict)
    performance: Mapped[dict] = mapped_column(JSON, default=dict)
    last_sync: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    errors: Mapped[list] = mapped_column(JSON, default=list)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("campaign_id", name="uq_campaigns_campaign_id"),
        Index("ix_campaigns_user_status", "user_id", "status"),
        Index("ix_campaigns_account_status", "connected_account_id", "status"),
        Index("ix_campaigns_ad_account_id", "ad_account_id"),
    )
