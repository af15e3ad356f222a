"""
Campaigns Router — create, list (with reconciliation), update status, analytics.
Payload validation happens in the sync service so every failure carries the
same classified error shape.
"""

import logging
from typing import Optional
from fastapi import APIRouter, Body, Depends, Query

from adsync.domain import Campaign
from adsync.services.rate_limiter import enforce_rate_limit
from adsync.services.sync_service import SyncService, get_sync_service

logger = logging.getLogger(__name__)

router = APIRouter()


def _campaign_out(campaign: Campaign) -> dict:
    data = campaign.model_dump(mode="json", by_alias=True)
    data["remainingBudget"] = campaign.remaining_budget
    data["isActiveNow"] = campaign.is_active_now()
    return data


@router.get("/campaigns")
async def list_campaigns(
    ad_account_id: str = Query(...),
    status: Optional[str] = Query(None),
    order: Optional[str] = Query(None),
    sort_by: Optional[str] = Query(None),
    bookmark: Optional[str] = Query(None),
    user_id: str = Depends(enforce_rate_limit),
    service: SyncService = Depends(get_sync_service),
):
    filters = {
        key: value
        for key, value in {"status": status, "order": order, "sort_by": sort_by, "bookmark": bookmark}.items()
        if value is not None
    }
    result = await service.list_campaigns(user_id, ad_account_id, filters)
    return {
        "success": True,
        "data": {
            "items": result["items"],
            "bookmark": result["bookmark"],
            "reconciled": [_campaign_out(c) for c in result["reconciled"]],
        },
    }


@router.post("/campaigns", status_code=201)
async def create_campaign(
    ad_account_id: str = Query(...),
    campaign_data: dict = Body(...),
    user_id: str = Depends(enforce_rate_limit),
    service: SyncService = Depends(get_sync_service),
):
    campaign = await service.create_campaign(user_id, ad_account_id, campaign_data)
    return {"success": True, "data": _campaign_out(campaign)}


@router.patch("/campaigns/{campaign_id}")
async def update_campaign(
    campaign_id: str,
    patch: dict = Body(...),
    user_id: str = Depends(enforce_rate_limit),
    service: SyncService = Depends(get_sync_service),
):
    campaign = await service.update_campaign(campaign_id, patch, user_id=user_id)
    return {"success": True, "data": _campaign_out(campaign)}


@router.get("/analytics")
async def get_analytics(
    ad_account_id: str = Query(...),
    start_date: str = Query(...),
    end_date: str = Query(...),
    level: str = Query("CAMPAIGN"),
    click_window_days: int = Query(30),
    user_id: str = Depends(enforce_rate_limit),
    service: SyncService = Depends(get_sync_service),
):
    data = await service.get_analytics(user_id, ad_account_id, {
        "start_date": start_date,
        "end_date": end_date,
        "level": level,
        "click_window_days": click_window_days,
    })
    return {"success": True, "data": data}
