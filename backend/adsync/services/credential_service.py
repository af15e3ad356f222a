"""
Credential Service — connection lifecycle and credential refresh for the ad platform.
Checks credential age before every remote call and refreshes it when it is
about to cross the expiry threshold.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from adsync.config import Settings
from adsync.domain import ConnectedAccount, ConnectionStatus
from adsync.errors import DeadlineExceeded, PersistenceConflict, classify, classify_exception
from adsync.platform_client import PlatformClient
from adsync.store import SyncStore
from adsync.utils import utcnow, with_deadline

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Optional[str]], PlatformClient]


def needs_refresh(account: ConnectedAccount, settings: Settings, now: Optional[datetime] = None) -> bool:
    """Expired, or within the refresh buffer of expiring, and refreshable."""
    if not account.refresh_credential:
        return False
    threshold = timedelta(days=settings.credential_max_age_days) - timedelta(hours=settings.credential_refresh_buffer_hours)
    return account.credential_age(now) >= threshold


async def refresh_if_needed(
    account: ConnectedAccount,
    store: SyncStore,
    client: PlatformClient,
    settings: Settings,
    deadline: Optional[float] = None,
    now: Optional[datetime] = None,
) -> ConnectedAccount:
    """
    Refresh the account's credential if needed and persist it.
    Returns the account (possibly updated). A failed refresh is recorded on the
    account and logged; the caller's next remote call reports the real failure.
    An elapsed deadline propagates without touching the account.
    """
    if not needs_refresh(account, settings, now):
        return account

    logger.info(f"Credential stale for account {account.remote_account_id}, refreshing...")

    try:
        token_data = await with_deadline(
            client.refresh_access_token(
                refresh_token=account.refresh_credential,
                client_id=settings.platform_client_id,
                client_secret=settings.platform_client_secret,
            ),
            deadline,
        )
    except DeadlineExceeded:
        raise
    except Exception as e:
        error = classify_exception(e, production=settings.is_production)
        logger.error(f"Credential refresh failed for {account.remote_account_id}: {error.code.value} {error.message}")
        await record_account_error(store, account, error.code.value, f"Credential refresh failed: {error.message}")
        return account

    new_access = token_data["access_token"]
    new_refresh = token_data.get("refresh_token")
    refreshed_at = now or utcnow()

    updated = await asyncio.shield(store.mutate_account(
        account.remote_account_id,
        lambda acc: acc.refresh(new_access, new_refresh, now=refreshed_at),
    ))
    if updated is None:
        # Disconnected while we were refreshing; keep the in-memory copy usable for this call
        return account.refresh(new_access, new_refresh, now=refreshed_at)
    logger.info(f"Credential refreshed for account {account.remote_account_id}")
    return updated


async def record_account_error(store: SyncStore, account: ConnectedAccount, code: str, message: str) -> None:
    """Best-effort append to the account's error ring. Never raises."""
    try:
        await asyncio.shield(store.mutate_account(
            account.remote_account_id,
            lambda acc: acc.record_error(code, message),
        ))
    except Exception as e:
        logger.warning(f"Could not record error on account {account.remote_account_id}: {e}")


async def connect_account(
    store: SyncStore,
    client_factory: ClientFactory,
    settings: Settings,
    user_id: str,
    code: str,
    redirect_uri: Optional[str] = None,
    deadline: Optional[float] = None,
) -> ConnectedAccount:
    """
    Exchange an authorization code, verify the credential against the user
    account endpoint, then create or re-link the ConnectedAccount.
    """
    token_data = await with_deadline(
        client_factory(None).exchange_code(
            code=code,
            redirect_uri=redirect_uri or settings.platform_redirect_uri,
            client_id=settings.platform_client_id,
            client_secret=settings.platform_client_secret,
        ),
        deadline,
    )
    access = token_data["access_token"]
    refresh = token_data.get("refresh_token")

    profile = await with_deadline(client_factory(access).get_user_account(), deadline)
    remote_account_id = str(profile.get("id") or profile["username"])
    username = profile.get("username") or remote_account_id

    existing = await store.get_account(remote_account_id)
    if existing is not None and existing.user_id != user_id:
        raise classify(PersistenceConflict(field="remote_account_id", value=remote_account_id))

    if existing is not None:
        def _relink(acc: ConnectedAccount) -> None:
            acc.refresh(access, refresh)
            acc.username = username
            acc.email = profile.get("email") or acc.email
            acc.profile_image = profile.get("profile_image") or acc.profile_image

        account = await asyncio.shield(store.mutate_account(remote_account_id, _relink))
        if account is not None:
            logger.info(f"Re-linked account {remote_account_id} for user {user_id}")
            return account

    account = ConnectedAccount(
        user_id=user_id,
        remote_account_id=remote_account_id,
        access_credential=access,
        refresh_credential=refresh,
        username=username,
        email=profile.get("email"),
        profile_image=profile.get("profile_image"),
        settings={"default_currency": settings.default_currency},
    )
    account = await asyncio.shield(store.insert_account(account))
    logger.info(f"Connected account {remote_account_id} for user {user_id}")
    return account


async def get_connection(store: SyncStore, user_id: str) -> Optional[ConnectedAccount]:
    """The user's normalized account; expired credentials already read as disconnected."""
    return await store.get_account_by_user(user_id)


async def disconnect_account(store: SyncStore, user_id: str) -> bool:
    removed = await store.delete_account(user_id)
    if removed:
        logger.info(f"Disconnected platform account for user {user_id}")
    return removed


def connection_summary(account: Optional[ConnectedAccount]) -> dict:
    if account is None:
        return {"connected": False, "status": ConnectionStatus.DISCONNECTED.value}
    return {
        "connected": account.connection_status == ConnectionStatus.CONNECTED,
        "status": account.connection_status.value,
        "username": account.username,
        "remoteAccountId": account.remote_account_id,
        "profileImage": account.profile_image,
        "lastCredentialRefresh": account.last_credential_refresh.isoformat(),
        "adAccounts": [ref.model_dump(mode="json", by_alias=True) for ref in account.ad_accounts],
    }
