"""
Shared fixtures: an in-memory SyncStore, a fake ad platform served through
httpx.MockTransport, and a SyncService wired to both.
"""

from datetime import timedelta
from typing import Any, Callable, Optional, Union

import httpx
import pytest

from adsync.config import Settings
from adsync.domain import CREDENTIAL_MAX_AGE_DAYS, Campaign, ConnectedAccount
from adsync.errors import ConcurrentWriteError, DuplicateKeyError
from adsync.platform_client import PlatformClient
from adsync.services.sync_service import SyncService
from adsync.store import SyncStore
from adsync.utils import utcnow

API_BASE = "https://api.platform.test/v5"


@pytest.fixture
def anyio_backend():
    return "asyncio"


def _copy(doc):
    """Round-trip through plain data, the way a document store would."""
    return type(doc).model_validate(doc.model_dump())


class MemoryStore(SyncStore):
    """
    Dict-backed store with the same normalize/version semantics as SqlAlchemyStore.
    ``interleave(key)`` runs between load and save of every mutate attempt, so a
    test can slip a concurrent write in before the version compare.
    """

    def __init__(self, credential_max_age_days: int = CREDENTIAL_MAX_AGE_DAYS, max_write_retries: int = 5):
        self.credential_max_age_days = credential_max_age_days
        self.max_write_retries = max_write_retries
        self.interleave: Optional[Callable[[str], None]] = None
        self.write_attempts = 0
        self.accounts: dict[str, ConnectedAccount] = {}
        self.campaigns: dict[str, Campaign] = {}
        self.insert_campaign_error: Optional[Exception] = None
        self.mutate_account_error: Optional[Exception] = None

    def _load_account(self, account: ConnectedAccount) -> ConnectedAccount:
        loaded = _copy(account)
        loaded.normalize(max_age_days=self.credential_max_age_days)
        return loaded

    async def get_account_by_user(self, user_id):
        matches = [a for a in self.accounts.values() if a.user_id == user_id]
        if not matches:
            return None
        return self._load_account(max(matches, key=lambda a: a.created_at))

    async def get_account(self, remote_account_id):
        account = self.accounts.get(remote_account_id)
        return self._load_account(account) if account else None

    async def list_accounts(self):
        return [self._load_account(a) for a in self.accounts.values()]

    async def insert_account(self, account):
        if account.remote_account_id in self.accounts:
            raise DuplicateKeyError("remote_account_id", account.remote_account_id)
        account.prepare_for_save(max_age_days=self.credential_max_age_days)
        self.accounts[account.remote_account_id] = _copy(account)
        return account

    def _interleave(self, key: str) -> None:
        self.write_attempts += 1
        if self.interleave is not None:
            self.interleave(key)

    async def mutate_account(self, remote_account_id, fn):
        if self.mutate_account_error is not None:
            raise self.mutate_account_error
        for _ in range(self.max_write_retries):
            stored = self.accounts.get(remote_account_id)
            if stored is None:
                return None
            expected = stored.version
            account = self._load_account(stored)
            fn(account)
            account.prepare_for_save(max_age_days=self.credential_max_age_days)
            account.version = expected + 1
            self._interleave(remote_account_id)
            if self.accounts[remote_account_id].version == expected:
                self.accounts[remote_account_id] = _copy(account)
                return account
        raise ConcurrentWriteError(f"Account {remote_account_id} changed concurrently {self.max_write_retries} times")

    async def delete_account(self, user_id):
        doomed = [k for k, a in self.accounts.items() if a.user_id == user_id]
        for key in doomed:
            del self.accounts[key]
        return bool(doomed)

    async def get_campaign(self, campaign_id):
        campaign = self.campaigns.get(campaign_id)
        return _copy(campaign) if campaign else None

    async def insert_campaign(self, campaign):
        if self.insert_campaign_error is not None:
            raise self.insert_campaign_error
        if campaign.campaign_id in self.campaigns:
            raise DuplicateKeyError("campaign_id", campaign.campaign_id)
        campaign.prepare_for_save()
        self.campaigns[campaign.campaign_id] = _copy(campaign)
        return campaign

    async def mutate_campaign(self, campaign_id, fn):
        for _ in range(self.max_write_retries):
            stored = self.campaigns.get(campaign_id)
            if stored is None:
                return None
            expected = stored.version
            campaign = _copy(stored)
            fn(campaign)
            campaign.prepare_for_save()
            campaign.version = expected + 1
            self._interleave(campaign_id)
            if self.campaigns[campaign_id].version == expected:
                self.campaigns[campaign_id] = _copy(campaign)
                return campaign
        raise ConcurrentWriteError(f"Campaign {campaign_id} changed concurrently {self.max_write_retries} times")


Handler = Callable[[httpx.Request], Any]


class FakePlatform:
    """Routes (method, path) to canned responses and records every request."""

    def __init__(self):
        self.routes: dict[tuple[str, str], Union[Handler, httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, status: int = 200, json: Any = None,
           headers: Optional[dict] = None, handler: Optional[Handler] = None) -> None:
        if handler is not None:
            self.routes[(method, path)] = handler
        else:
            self.routes[(method, path)] = httpx.Response(status, json=json if json is not None else {}, headers=headers)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and self._path(r) == path]

    @staticmethod
    def _path(request: httpx.Request) -> str:
        return request.url.path.removeprefix("/v5")

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, self._path(request)))
        if route is None:
            return httpx.Response(404, json={"code": 404, "message": f"No route {request.method} {request.url.path}"})
        if isinstance(route, httpx.Response):
            return route
        result = route(request)
        if not isinstance(result, httpx.Response):
            result = await result
        return result

    def client_factory(self, access_token: Optional[str]) -> PlatformClient:
        return PlatformClient(
            access_token=access_token,
            base_url=API_BASE,
            transport=httpx.MockTransport(self.handle),
        )


@pytest.fixture
def settings():
    return Settings(
        environment="development",
        platform_api_url=API_BASE,
        platform_client_id="client-id",
        platform_client_secret="client-secret",
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def service(store, platform, settings):
    return SyncService(store, platform.client_factory, settings)


def make_account(user_id: str = "user-1", remote_account_id: str = "acct-1", age_days: float = 1, **kwargs) -> ConnectedAccount:
    data = dict(
        user_id=user_id,
        remote_account_id=remote_account_id,
        access_credential="access-1",
        refresh_credential="refresh-1",
        username="shop_owner",
        last_credential_refresh=utcnow() - timedelta(days=age_days),
    )
    data.update(kwargs)
    return ConnectedAccount(**data)


@pytest.fixture
def account(store):
    return seed_account(store, make_account())


def seed_account(store: MemoryStore, account: ConnectedAccount) -> ConnectedAccount:
    account.prepare_for_save()
    store.accounts[account.remote_account_id] = _copy(account)
    return account


def seed_campaign(store: MemoryStore, campaign: Campaign) -> Campaign:
    campaign.prepare_for_save()
    store.campaigns[campaign.campaign_id] = _copy(campaign)
    return campaign


def make_campaign(account: ConnectedAccount, campaign_id: str = "cmp_1", **kwargs) -> Campaign:
    data = dict(
        campaign_id=campaign_id,
        user_id=account.user_id,
        connected_account_id=account.id,
        ad_account_id="act_1",
        name="Autumn",
        status="active",
        objective="awareness",
        budget={"daily": {"amount": 20.0, "currency": "EUR"}},
        schedule={"start_date": utcnow() - timedelta(days=3)},
        targeting={
            "locations": [{"type": "COUNTRY", "id": "FR", "name": "France"}],
            "languages": ["fr"],
            "keywords": [{"text": "boots", "match_type": "EXACT"}],
        },
    )
    data.update(kwargs)
    return Campaign(**data)
