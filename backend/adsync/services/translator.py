"""
Schema Translator — pure mapping between local campaign documents and the
ad platform's wire shapes. No I/O, fully deterministic.

Budget amounts go out as integer micro-units: ``amount * 1_000_000`` rounded
half-up, and come back quantized to 2 decimal places (half-up).
"""

from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional

from pydantic import BaseModel, Field

from adsync.domain import (
    AdAccountRef, CampaignObjective, CampaignStatus, Targeting,
)
from adsync.schemas import CampaignCreate

MICRO_UNITS = Decimal(1_000_000)
CENTS = Decimal("0.01")

SUMMARY_STAT_FIELDS = ("impressions", "clicks", "spend", "ctr")


def to_micro_units(amount: float) -> int:
    return int((Decimal(str(amount)) * MICRO_UNITS).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_micro_units(micro: int) -> float:
    return float((Decimal(int(micro)) / MICRO_UNITS).quantize(CENTS, rounding=ROUND_HALF_UP))


def to_remote_status(status: CampaignStatus | str) -> str:
    return CampaignStatus(status.lower() if isinstance(status, str) else status).value.upper()


def from_remote_status(value: Optional[str]) -> Optional[CampaignStatus]:
    if not value:
        return None
    try:
        return CampaignStatus(value.lower())
    except ValueError:
        return None


def from_remote_objective(value: Optional[str]) -> CampaignObjective:
    """Unknown remote objective types fall back to awareness."""
    try:
        return CampaignObjective((value or "").lower())
    except ValueError:
        return CampaignObjective.AWARENESS


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_time(value: Any) -> Optional[datetime]:
    """Remote times are epoch seconds or ISO strings."""
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(value, str):
        if value.isdigit():
            return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    return None


# ── Local -> remote ──────────────────────────────────────────────────

def to_remote_targeting(targeting: Targeting) -> dict:
    age_range = None
    if targeting.age_range is not None:
        age_range = {"min": targeting.age_range.min, "max": targeting.age_range.max}
    return {
        "geo_targeting": {
            "locations": [loc.id for loc in targeting.locations],
        },
        "demographic_targeting": {
            "age_range": age_range,
            "gender": targeting.gender,
        },
        "languages": list(targeting.languages),
        "interests": [interest.id for interest in targeting.interests],
        "keywords": [{"value": kw.text, "match_type": kw.match_type} for kw in targeting.keywords],
    }


def to_remote_campaign(payload: CampaignCreate) -> dict:
    """Build the create-campaign body from a validated request payload."""
    body = {
        "name": payload.name,
        "objective_type": payload.objective.value.upper(),
        "start_time": _format_time(payload.start_date),
        "end_time": _format_time(payload.end_date),
        "tracking_urls": payload.tracking.urls.model_dump() if payload.tracking else {},
        "campaign_targeting": to_remote_targeting(payload.targeting),
    }
    if payload.status is not None:
        body["status"] = to_remote_status(payload.status)
    if payload.daily_budget is not None:
        body["daily_spend_cap"] = to_micro_units(payload.daily_budget)
    if payload.lifetime_budget is not None:
        body["lifetime_spend_cap"] = to_micro_units(payload.lifetime_budget)
    return body


# ── Remote -> local ──────────────────────────────────────────────────

class CampaignSummaryPatch(BaseModel):
    """What a campaign list item may change on a local campaign."""
    status: Optional[CampaignStatus] = None
    stats: dict = Field(default_factory=dict)


def from_remote_campaign_summary(item: dict) -> CampaignSummaryPatch:
    summary = item.get("summary_stats") or {}
    stats = {}
    for name in SUMMARY_STAT_FIELDS:
        value = summary.get(name) or 0
        stats[name] = int(value) if name in ("impressions", "clicks") else float(value)
    return CampaignSummaryPatch(status=from_remote_status(item.get("status")), stats=stats)


def from_remote_ad_account(item: dict) -> AdAccountRef:
    status = (item.get("status") or "PENDING").lower()
    if status not in ("active", "inactive", "pending"):
        status = "pending"
    owner = item.get("owner") or {}
    return AdAccountRef(
        id=str(item["id"]),
        name=item.get("name"),
        status=status,
        currency=item.get("currency"),
        country=item.get("country") or owner.get("country"),
    )


def from_remote_campaign(item: dict, default_currency: str = "EUR") -> dict:
    """
    Seed fields for adopting a remote campaign that has no local document
    (created elsewhere, or created here before a failed local write).
    """
    currency = item.get("currency") or default_currency
    budget: dict = {"spent": {"amount": 0.0, "currency": currency}}
    if item.get("daily_spend_cap") is not None:
        budget["daily"] = {"amount": from_micro_units(item["daily_spend_cap"]), "currency": currency}
    if item.get("lifetime_spend_cap") is not None:
        budget["lifetime"] = {"amount": from_micro_units(item["lifetime_spend_cap"]), "currency": currency}

    start = _parse_time(item.get("start_time")) or _parse_time(item.get("created_time"))
    if start is None:
        start = datetime.combine(date.today(), datetime.min.time())
    return {
        "campaign_id": str(item["id"]),
        "name": item.get("name") or f"Campaign {item['id']}",
        "status": from_remote_status(item.get("status")) or CampaignStatus.DRAFT,
        "objective": from_remote_objective(item.get("objective_type")),
        "budget": budget,
        "schedule": {
            "start_date": start,
            "end_date": _parse_time(item.get("end_time")),
        },
    }


def extract_created_campaign(response: Any) -> dict:
    """
    Created-campaign record from a create response.
    Accepts a bare object ``{id, status}`` or the bulk shape ``{items: [{data: {...}}]}``.
    """
    if isinstance(response, dict):
        if response.get("id"):
            return response
        for item in response.get("items") or []:
            if not isinstance(item, dict):
                continue
            data = item.get("data")
            if isinstance(data, dict) and data.get("id"):
                return data
            if item.get("id"):
                return item
    if isinstance(response, list):
        for item in response:
            if isinstance(item, dict) and item.get("id"):
                return item
    return {}
