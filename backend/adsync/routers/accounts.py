"""
Accounts Router — connect, check and disconnect the user's ad platform account,
and sync the ad accounts it can manage.
"""

import logging
from fastapi import APIRouter, Depends

from adsync.schemas import ConnectRequest
from adsync.services.credential_service import connection_summary
from adsync.services.rate_limiter import enforce_rate_limit
from adsync.services.sync_service import SyncService, get_sync_service

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/auth/initialize")
async def initialize_connection(
    body: ConnectRequest,
    user_id: str = Depends(enforce_rate_limit),
    service: SyncService = Depends(get_sync_service),
):
    """Exchange an OAuth authorization code and link the platform account."""
    account = await service.connect_account(user_id, body.code, redirect_uri=body.redirect_uri)
    return {"success": True, "data": connection_summary(account)}


@router.get("/auth/check")
async def check_connection(
    user_id: str = Depends(enforce_rate_limit),
    service: SyncService = Depends(get_sync_service),
):
    account = await service.get_connection(user_id)
    return {"success": True, "data": connection_summary(account)}


@router.post("/auth/disconnect")
async def disconnect(
    user_id: str = Depends(enforce_rate_limit),
    service: SyncService = Depends(get_sync_service),
):
    await service.disconnect_account(user_id)
    return {"success": True, "message": "Account disconnected"}


@router.get("/ad-accounts")
async def list_ad_accounts(
    user_id: str = Depends(enforce_rate_limit),
    service: SyncService = Depends(get_sync_service),
):
    result = await service.list_ad_accounts(user_id)
    return {
        "success": True,
        "data": [ref.model_dump(mode="json", by_alias=True) for ref in result["ad_accounts"]],
    }
