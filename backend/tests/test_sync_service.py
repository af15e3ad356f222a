"""
Tests for the sync service: remote calls, reconciliation and failure policy.
"""

import asyncio
import json
from datetime import timedelta

import httpx
import pytest

from adsync.domain import CampaignStatus, ConnectionStatus
from adsync.errors import ClassifiedError, ConcurrentWriteError, ErrorCode
from adsync.utils import utcnow

from conftest import make_account, make_campaign, seed_account, seed_campaign

CAMPAIGNS = "/ad_accounts/act_1/campaigns"


def _future(days: int = 7) -> str:
    return (utcnow() + timedelta(days=days)).replace(microsecond=0).isoformat()


# ── list_ad_accounts ─────────────────────────────────────────────────

@pytest.mark.anyio
async def test_list_ad_accounts_upserts_by_id(service, store, platform, account):
    platform.on("GET", "/ad_accounts", json={"items": [
        {"id": "act_1", "name": "Main", "currency": "EUR", "owner": {"country": "FR"}},
        {"id": "act_2", "name": "Outlet", "currency": "EUR"},
    ], "bookmark": None})

    first = await service.list_ad_accounts("user-1")
    assert [ref.id for ref in first["ad_accounts"]] == ["act_1", "act_2"]

    platform.on("GET", "/ad_accounts", json={"items": [{"id": "act_1", "name": "Main (renamed)"}]})
    second = await service.list_ad_accounts("user-1")

    stored = store.accounts["acct-1"]
    assert [ref.id for ref in stored.ad_accounts] == ["act_1", "act_2"]
    assert stored.find_ad_account("act_1").name == "Main (renamed)"
    assert stored.find_ad_account("act_1").currency == "EUR"
    assert stored.find_ad_account("act_1").country == "FR"
    assert len(second["ad_accounts"]) == 2
    assert platform.requests[0].url.params["include_shared_accounts"] == "true"


@pytest.mark.anyio
async def test_missing_connected_account_is_not_found(service, platform):
    with pytest.raises(ClassifiedError) as info:
        await service.list_ad_accounts("nobody")
    assert info.value.code == ErrorCode.NOT_FOUND
    assert info.value.status_code == 404
    assert platform.requests == []


@pytest.mark.anyio
async def test_remote_429_is_classified_and_recorded(service, store, platform, account):
    platform.on("GET", "/ad_accounts", status=429, json={"code": 8, "message": "Rate limited"}, headers={"Retry-After": "45"})

    with pytest.raises(ClassifiedError) as info:
        await service.list_ad_accounts("user-1")

    assert info.value.code == ErrorCode.RATE_LIMIT
    assert info.value.status_code == 429
    assert info.value.details["retryAfter"] == 45
    assert store.accounts["acct-1"].recent_errors.latest().code == "RATE_LIMIT"
    assert len(platform.requests) == 1


@pytest.mark.anyio
async def test_remote_401_is_auth(service, store, platform, account):
    platform.on("GET", "/ad_accounts", status=401, json={"code": 2, "message": "Authentication failed."})
    with pytest.raises(ClassifiedError) as info:
        await service.list_ad_accounts("user-1")
    assert info.value.code == ErrorCode.AUTH
    assert store.accounts["acct-1"].recent_errors.latest().code == "AUTH"


@pytest.mark.anyio
async def test_failure_to_record_error_does_not_mask_original(service, store, platform, account):
    platform.on("GET", "/ad_accounts", status=503, json={"message": "Service unavailable"})
    store.mutate_account_error = RuntimeError("store down")

    with pytest.raises(ClassifiedError) as info:
        await service.list_ad_accounts("user-1")
    assert info.value.code == ErrorCode.REMOTE_API
    assert info.value.status_code == 503


@pytest.mark.anyio
async def test_expired_credential_without_refresh_fails_auth_remotely(service, store, platform):
    stale = make_account(age_days=31, refresh_credential=None)
    store.accounts[stale.remote_account_id] = stale
    platform.on("GET", "/ad_accounts", status=401, json={"message": "Token expired"})

    with pytest.raises(ClassifiedError) as info:
        await service.list_ad_accounts("user-1")

    assert info.value.code == ErrorCode.AUTH
    assert platform.calls("POST", "/oauth/token") == []
    stored = store.accounts["acct-1"]
    assert stored.connection_status == ConnectionStatus.DISCONNECTED
    assert stored.recent_errors.latest().code == "AUTH"


@pytest.mark.anyio
async def test_stale_credential_refreshed_before_remote_call(service, store, platform):
    seed_account(store, make_account(age_days=29.9))
    platform.on("POST", "/oauth/token", json={"access_token": "fresh-access"})
    platform.on("GET", "/ad_accounts", json={"items": []})

    await service.list_ad_accounts("user-1")

    call = platform.calls("GET", "/ad_accounts")[0]
    assert call.headers["Authorization"] == "Bearer fresh-access"
    assert store.accounts["acct-1"].access_credential == "fresh-access"


# ── create_campaign ──────────────────────────────────────────────────

@pytest.mark.anyio
async def test_create_campaign_scenario(service, store, platform, account):
    platform.on("POST", CAMPAIGNS, json={"id": "cmp_9", "status": "ACTIVE"})

    campaign = await service.create_campaign("user-1", "act_1", {
        "name": "Spring",
        "objective": "AWARENESS",
        "dailyBudget": 12.50,
        "startDate": _future(),
    })

    assert campaign.campaign_id == "cmp_9"
    assert campaign.budget.daily.amount == 12.50
    assert campaign.status == CampaignStatus.ACTIVE
    assert campaign.performance.total.ctr == 0
    assert campaign.user_id == "user-1"
    assert campaign.connected_account_id == account.id
    assert "cmp_9" in store.campaigns

    body = platform.calls("POST", CAMPAIGNS)[0]
    sent = json.loads(body.content)
    assert sent["daily_spend_cap"] == 12_500_000
    assert "lifetime_spend_cap" not in sent


@pytest.mark.anyio
async def test_create_campaign_reads_bulk_response_shape(service, store, platform, account):
    platform.on("POST", CAMPAIGNS, json={"items": [{"data": {"id": "cmp_10", "status": "PAUSED"}, "exceptions": []}]})

    campaign = await service.create_campaign("user-1", "act_1", {
        "name": "Bulk", "objective": "conversion", "lifetimeBudget": 300, "startDate": _future(),
        "targeting": {"locations": [{"id": "FR"}], "ageRange": {"min": 25, "max": 34}},
    })

    assert campaign.campaign_id == "cmp_10"
    assert campaign.status == CampaignStatus.PAUSED
    assert campaign.budget.lifetime.amount == 300
    assert campaign.remaining_budget == 300
    assert campaign.targeting.age_range.min == 25


@pytest.mark.anyio
async def test_create_campaign_validation(service, platform, account):
    with pytest.raises(ClassifiedError) as info:
        await service.create_campaign("user-1", "act_1", {"name": "No budget", "objective": "awareness", "startDate": _future()})
    assert info.value.code == ErrorCode.VALIDATION
    assert platform.requests == []

    with pytest.raises(ClassifiedError) as info:
        await service.create_campaign("user-1", "act_1", {
            "name": "Too big", "objective": "awareness", "dailyBudget": 10_000_001, "startDate": _future(),
        })
    assert info.value.code == ErrorCode.VALIDATION


@pytest.mark.anyio
async def test_create_campaign_remote_error_writes_nothing(service, store, platform, account):
    platform.on("POST", CAMPAIGNS, status=400, json={"code": 1, "message": "Invalid parameters."})

    with pytest.raises(ClassifiedError) as info:
        await service.create_campaign("user-1", "act_1", {
            "name": "Spring", "objective": "awareness", "dailyBudget": 5, "startDate": _future(),
        })
    assert info.value.code == ErrorCode.REMOTE_API
    assert info.value.status_code == 400
    assert info.value.details["payload"]["message"] == "Invalid parameters."
    assert store.campaigns == {}
    assert store.accounts["acct-1"].recent_errors.latest().message == "Invalid parameters."


@pytest.mark.anyio
async def test_create_campaign_local_failure_after_remote_success(service, store, platform, account):
    platform.on("POST", CAMPAIGNS, json={"id": "cmp_9", "status": "ACTIVE"})
    seed_campaign(store, make_campaign(account, campaign_id="cmp_9"))

    with pytest.raises(ClassifiedError) as info:
        await service.create_campaign("user-1", "act_1", {
            "name": "Spring", "objective": "awareness", "dailyBudget": 5, "startDate": _future(),
        })

    assert info.value.code == ErrorCode.DUPLICATE
    assert info.value.details["field"] == "campaign_id"
    # No compensating remote delete
    assert [r.method for r in platform.requests] == ["POST"]


@pytest.mark.anyio
async def test_create_campaign_database_failure(service, store, platform, account):
    platform.on("POST", CAMPAIGNS, json={"id": "cmp_9", "status": "ACTIVE"})
    store.insert_campaign_error = ConcurrentWriteError("write conflict")

    with pytest.raises(ClassifiedError) as info:
        await service.create_campaign("user-1", "act_1", {
            "name": "Spring", "objective": "awareness", "dailyBudget": 5, "startDate": _future(),
        })
    assert info.value.code == ErrorCode.DATABASE
    assert store.accounts["acct-1"].recent_errors.latest().code == "DATABASE"


@pytest.mark.anyio
async def test_deadline_before_remote_completes_writes_nothing(service, store, platform, account):
    async def slow(request):
        await asyncio.sleep(1)
        return httpx.Response(200, json={"id": "cmp_slow", "status": "ACTIVE"})

    platform.on("POST", CAMPAIGNS, handler=slow)

    before = store.accounts["acct-1"].model_dump()

    with pytest.raises(ClassifiedError) as info:
        await service.create_campaign("user-1", "act_1", {
            "name": "Slow", "objective": "awareness", "dailyBudget": 5, "startDate": _future(),
        }, deadline=0.05)

    assert info.value.code == ErrorCode.REMOTE_API
    assert info.value.status_code == 504
    assert store.campaigns == {}
    after = store.accounts["acct-1"]
    assert after.version == before["version"]
    assert len(after.recent_errors) == 0
    assert after.model_dump() == before


@pytest.mark.anyio
async def test_deadline_during_credential_refresh_writes_nothing(service, store, platform):
    seed_account(store, make_account(age_days=29.9))
    before = store.accounts["acct-1"].model_dump()

    async def slow_token(request):
        await asyncio.sleep(1)
        return httpx.Response(200, json={"access_token": "late"})

    platform.on("POST", "/oauth/token", handler=slow_token)

    with pytest.raises(ClassifiedError) as info:
        await service.list_ad_accounts("user-1", deadline=0.05)

    assert info.value.status_code == 504
    assert platform.calls("GET", "/ad_accounts") == []
    assert store.accounts["acct-1"].model_dump() == before


@pytest.mark.anyio
async def test_cancel_after_remote_success_still_writes(service, store, platform, account):
    insert_started = asyncio.Event()
    release = asyncio.Event()
    original_insert = store.insert_campaign

    async def slow_insert(campaign):
        insert_started.set()
        await release.wait()
        return await original_insert(campaign)

    store.insert_campaign = slow_insert
    platform.on("POST", CAMPAIGNS, json={"id": "cmp_9", "status": "ACTIVE"})

    task = asyncio.create_task(service.create_campaign("user-1", "act_1", {
        "name": "Spring", "objective": "awareness", "dailyBudget": 5, "startDate": _future(),
    }))
    await insert_started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    release.set()
    for _ in range(10):
        await asyncio.sleep(0)
    assert "cmp_9" in store.campaigns


# ── list_campaigns ───────────────────────────────────────────────────

@pytest.mark.anyio
async def test_list_campaigns_reconciliation_scenario(service, store, platform, account):
    before = seed_campaign(store, make_campaign(account, campaign_id="cmp_1", status="active"))
    platform.on("GET", CAMPAIGNS, json={"items": [
        {"id": "cmp_1", "status": "PAUSED", "name": "Renamed remotely",
         "summary_stats": {"impressions": 200, "clicks": 10, "spend": 3.5}},
    ], "bookmark": "next-page"})

    result = await service.list_campaigns("user-1", "act_1", {})

    assert result["bookmark"] == "next-page"
    assert result["items"][0]["id"] == "cmp_1"
    reconciled = result["reconciled"][0]
    assert reconciled.performance.total.ctr == 5
    assert reconciled.status == CampaignStatus.PAUSED
    assert reconciled.name == before.name
    assert reconciled.targeting == before.targeting
    assert reconciled.schedule == before.schedule
    assert reconciled.creatives == before.creatives
    assert reconciled.budget.spent.amount == 3.5
    assert len(reconciled.performance.daily) == 1

    stored = store.campaigns["cmp_1"]
    assert stored.performance.total.ctr == 5
    assert stored.targeting == before.targeting


@pytest.mark.anyio
async def test_list_campaigns_query_defaults_and_filters(service, platform, account):
    platform.on("GET", CAMPAIGNS, json={"items": []})

    await service.list_campaigns("user-1", "act_1")
    await service.list_campaigns("user-1", "act_1", {"status": "active", "order": "ascending", "bookmark": "b1"})

    first, second = platform.calls("GET", CAMPAIGNS)
    assert first.url.params["page_size"] == "100"
    assert first.url.params["order"] == "DESCENDING"
    assert first.url.params["sort_by"] == "CREATED_TIME"
    assert "status" not in first.url.params
    assert second.url.params["status"] == "ACTIVE"
    assert second.url.params["order"] == "ASCENDING"
    assert second.url.params["bookmark"] == "b1"


@pytest.mark.anyio
async def test_list_campaigns_twice_same_day_keeps_one_daily_entry(service, store, platform, account):
    seed_campaign(store, make_campaign(account, campaign_id="cmp_1"))
    platform.on("GET", CAMPAIGNS, json={"items": [{"id": "cmp_1", "summary_stats": {"impressions": 10}}]})
    await service.list_campaigns("user-1", "act_1")
    platform.on("GET", CAMPAIGNS, json={"items": [{"id": "cmp_1", "summary_stats": {"impressions": 30}}]})
    await service.list_campaigns("user-1", "act_1")

    stored = store.campaigns["cmp_1"]
    assert len(stored.performance.daily) == 1
    assert stored.performance.daily[0].impressions == 30


@pytest.mark.anyio
async def test_list_campaigns_adopts_orphaned_remote_campaign(service, store, platform, account):
    platform.on("GET", CAMPAIGNS, json={"items": [{
        "id": "cmp_orphan",
        "name": "Created before a failed insert",
        "status": "ACTIVE",
        "objective_type": "CONSIDERATION",
        "daily_spend_cap": 7_500_000,
        "start_time": 1767225600,
        "summary_stats": {"impressions": 50, "clicks": 5},
    }]})

    result = await service.list_campaigns("user-1", "act_1")

    adopted = store.campaigns["cmp_orphan"]
    assert adopted.user_id == "user-1"
    assert adopted.connected_account_id == account.id
    assert adopted.ad_account_id == "act_1"
    assert adopted.budget.daily.amount == 7.5
    assert adopted.objective.value == "consideration"
    assert adopted.performance.total.ctr == 10
    assert [c.campaign_id for c in result["reconciled"]] == ["cmp_orphan"]


@pytest.mark.anyio
async def test_list_campaigns_skips_campaign_owned_by_other_user(service, store, platform, account):
    other = make_account(user_id="user-2", remote_account_id="acct-2")
    seed_campaign(store, make_campaign(other, campaign_id="cmp_theirs"))
    platform.on("GET", CAMPAIGNS, json={"items": [{"id": "cmp_theirs", "summary_stats": {"impressions": 999}}]})

    result = await service.list_campaigns("user-1", "act_1")

    assert result["reconciled"] == []
    assert store.campaigns["cmp_theirs"].performance.total.impressions == 0


# ── update_campaign ──────────────────────────────────────────────────

@pytest.mark.anyio
async def test_update_campaign_status(service, store, platform, account):
    seed_campaign(store, make_campaign(account, campaign_id="cmp_1", status="active"))
    platform.on("PATCH", CAMPAIGNS, json={"items": [{"data": {"id": "cmp_1", "status": "PAUSED"}, "exceptions": []}]})

    updated = await service.update_campaign("cmp_1", {"status": "paused"}, user_id="user-1")

    assert updated.status == CampaignStatus.PAUSED
    assert store.campaigns["cmp_1"].status == CampaignStatus.PAUSED
    assert json.loads(platform.requests[0].content) == [{"id": "cmp_1", "status": "PAUSED"}]


@pytest.mark.anyio
async def test_update_campaign_rejects_non_status_fields(service, store, platform, account):
    seed_campaign(store, make_campaign(account, campaign_id="cmp_1"))
    with pytest.raises(ClassifiedError) as info:
        await service.update_campaign("cmp_1", {"status": "paused", "name": "New"}, user_id="user-1")
    assert info.value.code == ErrorCode.VALIDATION
    assert info.value.details["errors"][0]["field"] == "name"
    assert platform.requests == []


@pytest.mark.anyio
async def test_update_campaign_archived_is_final(service, store, platform, account):
    seed_campaign(store, make_campaign(account, campaign_id="cmp_1", status="archived"))
    with pytest.raises(ClassifiedError) as info:
        await service.update_campaign("cmp_1", {"status": "active"}, user_id="user-1")
    assert info.value.code == ErrorCode.VALIDATION
    assert platform.requests == []


@pytest.mark.anyio
async def test_update_campaign_owner_check_and_missing(service, store, platform, account):
    seed_campaign(store, make_campaign(account, campaign_id="cmp_1"))
    with pytest.raises(ClassifiedError) as info:
        await service.update_campaign("cmp_1", {"status": "paused"}, user_id="user-2")
    assert info.value.code == ErrorCode.FORBIDDEN

    with pytest.raises(ClassifiedError) as info:
        await service.update_campaign("cmp_missing", {"status": "paused"}, user_id="user-1")
    assert info.value.code == ErrorCode.NOT_FOUND


@pytest.mark.anyio
async def test_update_campaign_remote_item_exception_recorded_on_campaign(service, store, platform, account):
    seed_campaign(store, make_campaign(account, campaign_id="cmp_1", status="active"))
    platform.on("PATCH", CAMPAIGNS, json={"items": [{"data": None, "exceptions": [{"code": 2, "message": "Not allowed"}]}]})

    with pytest.raises(ClassifiedError) as info:
        await service.update_campaign("cmp_1", {"status": "paused"}, user_id="user-1")

    assert info.value.code == ErrorCode.REMOTE_API
    stored = store.campaigns["cmp_1"]
    assert stored.status == CampaignStatus.ACTIVE
    assert stored.errors.latest().message == "Not allowed"
    assert store.accounts["acct-1"].recent_errors.latest().message == "Not allowed"


# ── get_analytics ────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_get_analytics_returns_payload_verbatim_without_writes(service, store, platform, account):
    payload = [{"CAMPAIGN_ID": "cmp_1", "DATE": "2026-01-02", "SPEND_IN_DOLLAR": 12.3}]
    platform.on("GET", "/ad_accounts/act_1/analytics", json=payload)
    seed_campaign(store, make_campaign(account, campaign_id="cmp_1"))
    campaign_before = store.campaigns["cmp_1"].model_dump()
    account_version = store.accounts["acct-1"].version

    result = await service.get_analytics("user-1", "act_1", {
        "startDate": "2026-01-01", "endDate": "2026-01-31", "clickWindowDays": 7,
    })

    assert result == payload
    params = platform.requests[0].url.params
    assert params["start_date"] == "2026-01-01"
    assert params["end_date"] == "2026-01-31"
    assert params["level"] == "CAMPAIGN"
    assert params["click_window_days"] == "7"
    assert store.campaigns["cmp_1"].model_dump() == campaign_before
    assert store.accounts["acct-1"].version == account_version


@pytest.mark.anyio
async def test_get_analytics_rejects_inverted_range(service, platform, account):
    with pytest.raises(ClassifiedError) as info:
        await service.get_analytics("user-1", "act_1", {"start_date": "2026-02-01", "end_date": "2026-01-01"})
    assert info.value.code == ErrorCode.VALIDATION
    assert platform.requests == []


# ── connection lifecycle ─────────────────────────────────────────────

@pytest.mark.anyio
async def test_disconnect_missing_account_is_not_found(service):
    with pytest.raises(ClassifiedError) as info:
        await service.disconnect_account("nobody")
    assert info.value.code == ErrorCode.NOT_FOUND


@pytest.mark.anyio
async def test_get_connection_normalizes_expired(service, store):
    stale = make_account(age_days=31)
    store.accounts[stale.remote_account_id] = stale
    connection = await service.get_connection("user-1")
    assert connection.connection_status == ConnectionStatus.DISCONNECTED
