"""
Sync Service — orchestrates calls to the ad platform and reconciles the
results into local documents.

Every operation follows the same shape: load the user's ConnectedAccount,
refresh its credential if needed, make one remote call under the caller's
deadline, then persist. Local writes that follow a remote success are
shielded from caller cancellation. Failures leave as ClassifiedError after a
best-effort append to the relevant error ring.

Known gap: a campaign created remotely whose local insert then fails is not
deleted remotely. ``list_campaigns`` adopts such orphans on the next pass
(see scripts/reconcile_campaigns.py).
"""

import asyncio
import functools
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional, Union

from adsync.config import Settings, get_settings
from adsync.domain import (
    Budget, Campaign, CampaignStatus, ConnectedAccount, Money, Schedule, Tracking,
)
from adsync.errors import (
    ClassifiedError, DeadlineExceeded, DuplicateKeyError, ErrorCode, RemoteFailure,
    classify, classify_exception, forbidden, not_found, validation_error,
)
from adsync.platform_client import PlatformClient
from adsync.schemas import AnalyticsParams, CampaignCreate, CampaignFilters, CampaignStatusUpdate
from adsync.services import credential_service
from adsync.services.credential_service import ClientFactory
from adsync.services.translator import (
    CampaignSummaryPatch, extract_created_campaign, from_remote_ad_account,
    from_remote_campaign, from_remote_campaign_summary, from_remote_status,
    to_remote_campaign, to_remote_status,
)
from adsync.store import SyncStore
from adsync.utils import utcnow, with_deadline

logger = logging.getLogger(__name__)

# Failures worth keeping in an entity's error ring
RECORDED_CODES = frozenset({
    ErrorCode.AUTH,
    ErrorCode.RATE_LIMIT,
    ErrorCode.REMOTE_API,
    ErrorCode.DATABASE,
    ErrorCode.DUPLICATE,
})

UPDATABLE_CAMPAIGN_FIELDS = {"status"}


class _Operation:
    """Entities touched so far by one operation, for failure recording."""

    def __init__(self, name: str):
        self.name = name
        self.account: Optional[ConnectedAccount] = None
        self.campaign_id: Optional[str] = None


def _apply_summary(campaign: Campaign, patch: CampaignSummaryPatch, now: datetime) -> None:
    if patch.status is not None:
        campaign.status = patch.status
    campaign.update_statistics(patch.stats, now=now)


class SyncService:
    def __init__(
        self,
        store: SyncStore,
        client_factory: ClientFactory,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.client_factory = client_factory
        self.settings = settings or get_settings()

    # ── Failure handling ─────────────────────────────────────────────

    @asynccontextmanager
    async def _operation(self, name: str):
        op = _Operation(name)
        try:
            yield op
        except Exception as exc:
            error = classify_exception(exc, production=self.settings.is_production)
            # A deadline that elapsed before the remote answered leaves local state untouched
            if error.code in RECORDED_CODES and not isinstance(exc, DeadlineExceeded):
                await self._record_failure(op, error)
            if error.status_code >= 500:
                logger.error(f"{name} failed: {error.code.value} {error.message}", exc_info=exc)
            else:
                logger.warning(f"{name} failed: {error.code.value} ({error.status_code}) {error.message}")
            if error is exc:
                raise
            raise error from exc

    async def _record_failure(self, op: _Operation, error: ClassifiedError) -> None:
        if op.account is not None:
            await credential_service.record_account_error(
                self.store, op.account, error.code.value, error.message,
            )
        if op.campaign_id is not None:
            try:
                await asyncio.shield(self.store.mutate_campaign(
                    op.campaign_id,
                    lambda c: c.record_error(error.code.value, error.message),
                ))
            except Exception as e:
                logger.warning(f"Could not record error on campaign {op.campaign_id}: {e}")

    # ── Shared steps ─────────────────────────────────────────────────

    async def _connect(
        self, op: _Operation, user_id: str, deadline: Optional[float],
    ) -> tuple[ConnectedAccount, PlatformClient]:
        """Load the user's account, refresh its credential if needed, and build a client."""
        account = await self.store.get_account_by_user(user_id)
        if account is None:
            raise not_found("No connected ad platform account for this user")
        op.account = account
        account = await credential_service.refresh_if_needed(
            account,
            self.store,
            self.client_factory(account.access_credential),
            self.settings,
            deadline=deadline,
        )
        op.account = account
        return account, self.client_factory(account.access_credential)

    def _currency(self, account: ConnectedAccount, requested: Optional[str] = None) -> str:
        return requested or account.settings.default_currency or self.settings.default_currency

    # ── Ad accounts ──────────────────────────────────────────────────

    async def list_ad_accounts(self, user_id: str, deadline: Optional[float] = None) -> dict:
        """Fetch the user's ad accounts and merge them into the connected account by id."""
        async with self._operation("list_ad_accounts") as op:
            account, client = await self._connect(op, user_id, deadline)
            response = await with_deadline(client.list_ad_accounts(), deadline)

            refs = [from_remote_ad_account(item) for item in response.get("items") or []]
            now = utcnow()
            updated = await asyncio.shield(self.store.mutate_account(
                account.remote_account_id,
                lambda acc: acc.upsert_ad_accounts(refs, now=now),
            ))
            if updated is None:
                raise not_found("Connected account was removed during sync")
            logger.info(f"Synced {len(refs)} ad accounts for user {user_id}")
            return {"ad_accounts": updated.ad_accounts}

    # ── Campaigns ────────────────────────────────────────────────────

    async def create_campaign(
        self,
        user_id: str,
        ad_account_id: str,
        campaign_data: Union[CampaignCreate, dict],
        deadline: Optional[float] = None,
    ) -> Campaign:
        """
        Create the campaign remotely, then persist the local document.
        Status and id come from the remote response; budget, schedule,
        targeting, tracking and creatives come from the request.
        """
        async with self._operation("create_campaign") as op:
            payload = (
                campaign_data if isinstance(campaign_data, CampaignCreate)
                else CampaignCreate.model_validate(campaign_data)
            )
            account, client = await self._connect(op, user_id, deadline)

            response = await with_deadline(
                client.create_campaign(ad_account_id, to_remote_campaign(payload)),
                deadline,
            )
            created = extract_created_campaign(response)
            if not created.get("id"):
                raise classify(RemoteFailure(
                    status_code=502,
                    payload=response,
                    message="Ad platform did not return a campaign id",
                ))

            campaign = self._build_campaign(account, ad_account_id, payload, created)
            campaign = await asyncio.shield(self.store.insert_campaign(campaign))
            logger.info(f"Created campaign {campaign.campaign_id} for user {user_id} in {ad_account_id}")
            return campaign

    def _build_campaign(
        self,
        account: ConnectedAccount,
        ad_account_id: str,
        payload: CampaignCreate,
        created: dict,
    ) -> Campaign:
        currency = self._currency(account, payload.currency)
        budget = Budget(spent=Money(amount=0.0, currency=currency))
        if payload.daily_budget is not None:
            budget.daily = Money(amount=payload.daily_budget, currency=currency)
        if payload.lifetime_budget is not None:
            budget.lifetime = Money(amount=payload.lifetime_budget, currency=currency)

        return Campaign(
            campaign_id=str(created["id"]),
            user_id=account.user_id,
            connected_account_id=account.id,
            ad_account_id=ad_account_id,
            name=created.get("name") or payload.name,
            status=from_remote_status(created.get("status")) or payload.status or CampaignStatus.DRAFT,
            objective=payload.objective,
            budget=budget,
            schedule=Schedule(
                start_date=payload.start_date,
                end_date=payload.end_date,
                timezone=payload.timezone or self.settings.default_timezone,
            ),
            targeting=payload.targeting,
            creatives=payload.creatives,
            tracking=payload.tracking or Tracking(),
        )

    async def list_campaigns(
        self,
        user_id: str,
        ad_account_id: str,
        filters: Union[CampaignFilters, dict, None] = None,
        deadline: Optional[float] = None,
    ) -> dict:
        """
        Fetch one page of remote campaigns and reconcile each into local state.
        Only status and performance totals are merged; campaigns with no local
        document are adopted.
        """
        async with self._operation("list_campaigns") as op:
            if not isinstance(filters, CampaignFilters):
                filters = CampaignFilters.model_validate(filters or {})
            account, client = await self._connect(op, user_id, deadline)

            page = await with_deadline(
                client.list_campaigns(
                    ad_account_id,
                    order=filters.order,
                    sort_by=filters.sort_by,
                    status=filters.status,
                    bookmark=filters.bookmark,
                ),
                deadline,
            )
            items = page.get("items") or []
            reconciled = await asyncio.shield(self._reconcile(account, ad_account_id, items))
            logger.info(f"Reconciled {len(reconciled)}/{len(items)} campaigns for {ad_account_id}")
            return {"items": items, "bookmark": page.get("bookmark"), "reconciled": reconciled}

    async def _reconcile(self, account: ConnectedAccount, ad_account_id: str, items: list[dict]) -> list[Campaign]:
        now = utcnow()
        reconciled = []
        for item in items:
            if not item.get("id"):
                continue
            campaign_id = str(item["id"])
            patch = from_remote_campaign_summary(item)

            existing = await self.store.get_campaign(campaign_id)
            if existing is not None and existing.user_id != account.user_id:
                logger.warning(f"Campaign {campaign_id} belongs to another user, skipping reconciliation")
                continue

            if existing is None:
                campaign = await self._adopt(account, ad_account_id, item, patch, now)
            else:
                campaign = await self.store.mutate_campaign(
                    campaign_id, functools.partial(_apply_summary, patch=patch, now=now),
                )
            if campaign is not None:
                reconciled.append(campaign)
        return reconciled

    async def _adopt(
        self,
        account: ConnectedAccount,
        ad_account_id: str,
        item: dict,
        patch: CampaignSummaryPatch,
        now: datetime,
    ) -> Optional[Campaign]:
        """Create the local document for a remote campaign we have never stored."""
        campaign = Campaign(
            user_id=account.user_id,
            connected_account_id=account.id,
            ad_account_id=ad_account_id,
            **from_remote_campaign(item, default_currency=self._currency(account)),
        )
        _apply_summary(campaign, patch, now)
        try:
            campaign = await self.store.insert_campaign(campaign)
        except DuplicateKeyError:
            # Inserted concurrently (by create or another pass); merge into that one
            return await self.store.mutate_campaign(
                campaign.campaign_id, functools.partial(_apply_summary, patch=patch, now=now),
            )
        logger.info(f"Adopted remote campaign {campaign.campaign_id} for user {account.user_id}")
        return campaign

    async def update_campaign(
        self,
        campaign_id: str,
        patch: Union[CampaignStatusUpdate, dict],
        user_id: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> Campaign:
        """Change a campaign's status remotely, then locally. No other field may change."""
        async with self._operation("update_campaign") as op:
            if isinstance(patch, dict):
                rejected = sorted(set(patch) - UPDATABLE_CAMPAIGN_FIELDS)
                if rejected:
                    raise validation_error(
                        "Only the campaign status can be updated",
                        [{"field": name, "message": "Field cannot be updated"} for name in rejected],
                    )
                patch = CampaignStatusUpdate.model_validate(patch)

            campaign = await self.store.get_campaign(campaign_id)
            if campaign is None:
                raise not_found(f"Campaign {campaign_id} not found")
            if user_id is not None and campaign.user_id != user_id:
                raise forbidden("Campaign belongs to another user")
            if campaign.status == CampaignStatus.ARCHIVED and patch.status != CampaignStatus.ARCHIVED:
                raise validation_error("An archived campaign cannot change status")
            op.campaign_id = campaign_id

            account, client = await self._connect(op, campaign.user_id, deadline)
            response = await with_deadline(
                client.update_campaigns(
                    campaign.ad_account_id,
                    [{"id": campaign_id, "status": to_remote_status(patch.status)}],
                ),
                deadline,
            )
            self._raise_item_exceptions(response)

            new_status = patch.status
            updated = await asyncio.shield(self.store.mutate_campaign(
                campaign_id, lambda c: c.apply_status(new_status),
            ))
            if updated is None:
                raise not_found(f"Campaign {campaign_id} not found")
            logger.info(f"Campaign {campaign_id} status -> {new_status.value}")
            return updated

    @staticmethod
    def _raise_item_exceptions(response: Any) -> None:
        """Bulk endpoints answer 200 with per-item exceptions."""
        if not isinstance(response, dict):
            return
        for item in response.get("items") or []:
            exceptions = item.get("exceptions") if isinstance(item, dict) else None
            if exceptions:
                first = exceptions[0] if isinstance(exceptions[0], dict) else {}
                raise classify(RemoteFailure(
                    status_code=400,
                    payload=response,
                    message=str(first.get("message") or "Ad platform rejected the update"),
                ))

    # ── Analytics ────────────────────────────────────────────────────

    async def get_analytics(
        self,
        user_id: str,
        ad_account_id: str,
        params: Union[AnalyticsParams, dict],
        deadline: Optional[float] = None,
    ) -> Any:
        """Remote analytics payload, verbatim. Nothing is written locally."""
        async with self._operation("get_analytics") as op:
            if not isinstance(params, AnalyticsParams):
                params = AnalyticsParams.model_validate(params)
            account, client = await self._connect(op, user_id, deadline)
            return await with_deadline(
                client.get_analytics(
                    ad_account_id,
                    start_date=params.start_date.isoformat(),
                    end_date=params.end_date.isoformat(),
                    level=params.level,
                    click_window_days=params.click_window_days,
                ),
                deadline,
            )

    # ── Connection lifecycle ─────────────────────────────────────────

    async def connect_account(
        self,
        user_id: str,
        code: str,
        redirect_uri: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> ConnectedAccount:
        async with self._operation("connect_account"):
            return await credential_service.connect_account(
                self.store, self.client_factory, self.settings,
                user_id, code, redirect_uri=redirect_uri, deadline=deadline,
            )

    async def get_connection(self, user_id: str) -> Optional[ConnectedAccount]:
        async with self._operation("get_connection"):
            return await credential_service.get_connection(self.store, user_id)

    async def disconnect_account(self, user_id: str) -> None:
        async with self._operation("disconnect_account"):
            if not await credential_service.disconnect_account(self.store, user_id):
                raise not_found("No connected ad platform account for this user")


def build_sync_service(settings: Optional[Settings] = None) -> SyncService:
    """Production wiring: PostgreSQL store and an httpx client per credential."""
    from adsync.database import async_session
    from adsync.platform_client import create_platform_client
    from adsync.store import SqlAlchemyStore

    settings = settings or get_settings()
    store = SqlAlchemyStore(
        async_session,
        max_write_retries=settings.max_write_retries,
        credential_max_age_days=settings.credential_max_age_days,
    )

    def client_factory(access_token: Optional[str]) -> PlatformClient:
        return create_platform_client(
            access_token=access_token,
            base_url=settings.platform_api_url,
            timeout=settings.http_timeout_seconds,
        )

    return SyncService(store, client_factory, settings)


@functools.lru_cache
def get_sync_service() -> SyncService:
    """FastAPI dependency; tests override it with an in-memory store."""
    return build_sync_service()
