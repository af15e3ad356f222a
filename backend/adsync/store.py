"""
Persistence capability for the sync core.

Every read-modify-write on a document goes through ``mutate_account`` /
``mutate_campaign``: load, normalize, apply, save with a compare-and-swap on
the row's ``version`` column, retrying on a concurrent write instead of
overwriting it.
"""

import logging
from typing import Callable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adsync.crypto import decrypt_value, encrypt_value
from adsync.domain import CREDENTIAL_MAX_AGE_DAYS, Campaign, ConnectedAccount
from adsync.errors import ConcurrentWriteError, DuplicateKeyError
from adsync.models import CampaignRow, ConnectedAccountRow

logger = logging.getLogger(__name__)

AccountMutation = Callable[[ConnectedAccount], None]
CampaignMutation = Callable[[Campaign], None]


class SyncStore:
    """Document-per-entity store used by the sync service."""

    async def get_account_by_user(self, user_id: str) -> Optional[ConnectedAccount]:
        raise NotImplementedError

    async def get_account(self, remote_account_id: str) -> Optional[ConnectedAccount]:
        raise NotImplementedError

    async def list_accounts(self) -> list[ConnectedAccount]:
        raise NotImplementedError

    async def insert_account(self, account: ConnectedAccount) -> ConnectedAccount:
        raise NotImplementedError

    async def mutate_account(self, remote_account_id: str, fn: AccountMutation) -> Optional[ConnectedAccount]:
        raise NotImplementedError

    async def delete_account(self, user_id: str) -> bool:
        raise NotImplementedError

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        raise NotImplementedError

    async def insert_campaign(self, campaign: Campaign) -> Campaign:
        raise NotImplementedError

    async def mutate_campaign(self, campaign_id: str, fn: CampaignMutation) -> Optional[Campaign]:
        raise NotImplementedError


# ── Row <-> document conversion ──────────────────────────────────────

_ACCOUNT_SCALARS = (
    "id", "user_id", "remote_account_id", "username", "email", "profile_image",
    "last_credential_refresh", "version", "created_at", "updated_at",
)
_ACCOUNT_DOCS = ("ad_accounts", "recent_errors", "settings")

_CAMPAIGN_SCALARS = (
    "id", "campaign_id", "user_id", "connected_account_id", "ad_account_id", "name",
    "last_sync", "version", "created_at", "updated_at",
)
_CAMPAIGN_DOCS = ("budget", "schedule", "targeting", "creatives", "tracking", "performance", "errors")


def account_from_row(row: ConnectedAccountRow) -> ConnectedAccount:
    data = {name: getattr(row, name) for name in _ACCOUNT_SCALARS + _ACCOUNT_DOCS}
    data["connection_status"] = row.connection_status
    data["access_credential"] = decrypt_value(row.access_credential)
    data["refresh_credential"] = decrypt_value(row.refresh_credential)
    return ConnectedAccount.model_validate(data)


def account_values(account: ConnectedAccount) -> dict:
    dumped = account.model_dump(mode="json", include=set(_ACCOUNT_DOCS))
    values = {name: getattr(account, name) for name in _ACCOUNT_SCALARS}
    values.update(dumped)
    values["connection_status"] = account.connection_status.value
    values["access_credential"] = encrypt_value(account.access_credential)
    values["refresh_credential"] = encrypt_value(account.refresh_credential)
    return values


def campaign_from_row(row: CampaignRow) -> Campaign:
    data = {name: getattr(row, name) for name in _CAMPAIGN_SCALARS + _CAMPAIGN_DOCS}
    data["status"] = row.status
    data["objective"] = row.objective
    return Campaign.model_validate(data)


def campaign_values(campaign: Campaign) -> dict:
    dumped = campaign.model_dump(mode="json", include=set(_CAMPAIGN_DOCS))
    values = {name: getattr(campaign, name) for name in _CAMPAIGN_SCALARS}
    values.update(dumped)
    values["status"] = campaign.status.value
    values["objective"] = campaign.objective.value
    return values


# ══════════════════════════════════════════════════════════════════════
#  SQLALCHEMY STORE
# ══════════════════════════════════════════════════════════════════════

class SqlAlchemyStore(SyncStore):
    """PostgreSQL-backed store; one short transaction per call."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_write_retries: int = 5,
        credential_max_age_days: int = CREDENTIAL_MAX_AGE_DAYS,
    ):
        self._session_factory = session_factory
        self.max_write_retries = max_write_retries
        self.credential_max_age_days = credential_max_age_days

    def _load_account(self, row: ConnectedAccountRow) -> ConnectedAccount:
        account = account_from_row(row)
        account.normalize(max_age_days=self.credential_max_age_days)
        return account

    # ── Connected accounts ───────────────────────────────────────────

    async def get_account_by_user(self, user_id: str) -> Optional[ConnectedAccount]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConnectedAccountRow)
                .where(ConnectedAccountRow.user_id == user_id)
                .order_by(ConnectedAccountRow.created_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return self._load_account(row) if row else None

    async def get_account(self, remote_account_id: str) -> Optional[ConnectedAccount]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConnectedAccountRow).where(ConnectedAccountRow.remote_account_id == remote_account_id)
            )
            row = result.scalar_one_or_none()
            return self._load_account(row) if row else None

    async def list_accounts(self) -> list[ConnectedAccount]:
        async with self._session_factory() as session:
            result = await session.execute(select(ConnectedAccountRow).order_by(ConnectedAccountRow.created_at))
            return [self._load_account(row) for row in result.scalars().all()]

    async def insert_account(self, account: ConnectedAccount) -> ConnectedAccount:
        account.prepare_for_save(max_age_days=self.credential_max_age_days)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(ConnectedAccountRow(**account_values(account)))
        except IntegrityError as exc:
            raise DuplicateKeyError("remote_account_id", account.remote_account_id) from exc
        return account

    async def mutate_account(self, remote_account_id: str, fn: AccountMutation) -> Optional[ConnectedAccount]:
        for attempt in range(1, self.max_write_retries + 1):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(ConnectedAccountRow).where(ConnectedAccountRow.remote_account_id == remote_account_id)
                    )
                    row = result.scalar_one_or_none()
                    if row is None:
                        return None
                    account = self._load_account(row)
                    expected = account.version
                    fn(account)
                    account.prepare_for_save(max_age_days=self.credential_max_age_days)
                    account.version = expected + 1
                    values = account_values(account)
                    values.pop("id")
                    updated = await session.execute(
                        update(ConnectedAccountRow)
                        .where(
                            ConnectedAccountRow.id == account.id,
                            ConnectedAccountRow.version == expected,
                        )
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if updated.rowcount == 1:
                        return account
            logger.info(f"Concurrent write on account {remote_account_id}, retrying ({attempt}/{self.max_write_retries})")
        raise ConcurrentWriteError(f"Account {remote_account_id} changed concurrently {self.max_write_retries} times")

    async def delete_account(self, user_id: str) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(ConnectedAccountRow).where(ConnectedAccountRow.user_id == user_id)
                )
                return result.rowcount > 0

    # ── Campaigns ────────────────────────────────────────────────────

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        async with self._session_factory() as session:
            result = await session.execute(select(CampaignRow).where(CampaignRow.campaign_id == campaign_id))
            row = result.scalar_one_or_none()
            return campaign_from_row(row) if row else None

    async def insert_campaign(self, campaign: Campaign) -> Campaign:
        campaign.prepare_for_save()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(CampaignRow(**campaign_values(campaign)))
        except IntegrityError as exc:
            raise DuplicateKeyError("campaign_id", campaign.campaign_id) from exc
        return campaign

    async def mutate_campaign(self, campaign_id: str, fn: CampaignMutation) -> Optional[Campaign]:
        for attempt in range(1, self.max_write_retries + 1):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(select(CampaignRow).where(CampaignRow.campaign_id == campaign_id))
                    row = result.scalar_one_or_none()
                    if row is None:
                        return None
                    campaign = campaign_from_row(row)
                    expected = campaign.version
                    fn(campaign)
                    campaign.prepare_for_save()
                    campaign.version = expected + 1
                    values = campaign_values(campaign)
                    values.pop("id")
                    updated = await session.execute(
                        update(CampaignRow)
                        .where(CampaignRow.id == campaign.id, CampaignRow.version == expected)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if updated.rowcount == 1:
                        return campaign
            logger.info(f"Concurrent write on campaign {campaign_id}, retrying ({attempt}/{self.max_write_retries})")
        raise ConcurrentWriteError(f"Campaign {campaign_id} changed concurrently {self.max_write_retries} times")
