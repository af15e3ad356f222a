"""
Sync Domain — the two persisted documents the sync core owns.

ConnectedAccount: one user's link to the ad platform (credentials, expiry
bookkeeping, discovered ad accounts, recent errors).
Campaign: one remote campaign's full lifecycle (status, budget, schedule,
targeting, creatives, daily/total performance).

Both are plain pydantic models; persistence lives in adsync.store.
"""

import enum
import uuid
from datetime import datetime, timedelta
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator
from pydantic.alias_generators import to_camel

from adsync.error_ring import ERROR_RING_CAPACITY, ErrorEntry, ErrorRing
from adsync.utils import as_naive_utc, field_key, truncate_to_day, upsert_by_key, utcnow

CREDENTIAL_MAX_AGE_DAYS = 30


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class ConnectionStatus(str, enum.Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    SUSPENDED = "suspended"


class AdAccountStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"


class CampaignStatus(str, enum.Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class CampaignObjective(str, enum.Enum):
    AWARENESS = "awareness"
    CONSIDERATION = "consideration"
    CONVERSION = "conversion"


def _lower(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


class _Value(BaseModel):
    """Value objects accept camelCase keys as well as field names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _Document(BaseModel):
    """Shared config for documents that embed an ErrorRing."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, arbitrary_types_allowed=True)


# ══════════════════════════════════════════════════════════════════════
#  CONNECTED ACCOUNT
# ══════════════════════════════════════════════════════════════════════

class AdAccountRef(_Value):
    id: str
    name: Optional[str] = None
    status: AdAccountStatus = AdAccountStatus.PENDING
    currency: Optional[str] = None
    country: Optional[str] = None
    last_sync: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value):
        return _lower(value)


class AccountSettings(_Value):
    default_currency: str = "EUR"
    default_language: str = "fr"
    notifications_enabled: bool = True


AD_ACCOUNT_MERGE_FIELDS = ("name", "status", "currency", "country")


class ConnectedAccount(_Document):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    user_id: str
    remote_account_id: str
    access_credential: str
    refresh_credential: Optional[str] = None
    username: str
    email: Optional[str] = None
    profile_image: Optional[str] = None
    connection_status: ConnectionStatus = ConnectionStatus.CONNECTED
    last_credential_refresh: datetime = Field(default_factory=utcnow)
    ad_accounts: list[AdAccountRef] = Field(default_factory=list)
    recent_errors: ErrorRing = Field(default_factory=ErrorRing)
    settings: AccountSettings = Field(default_factory=AccountSettings)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("recent_errors", mode="before")
    @classmethod
    def _ring(cls, value):
        if isinstance(value, ErrorRing):
            return value
        return ErrorRing(ERROR_RING_CAPACITY, value or [])

    @field_serializer("recent_errors")
    def _ring_out(self, ring: ErrorRing):
        return ring.to_list()

    @field_validator("last_credential_refresh", "created_at", "updated_at", mode="after")
    @classmethod
    def _naive(cls, value):
        return as_naive_utc(value)

    def credential_age(self, now: Optional[datetime] = None) -> timedelta:
        return (now or utcnow()) - self.last_credential_refresh

    def is_expired(self, now: Optional[datetime] = None, max_age_days: int = CREDENTIAL_MAX_AGE_DAYS) -> bool:
        return self.credential_age(now) > timedelta(days=max_age_days)

    def normalize(self, now: Optional[datetime] = None, max_age_days: int = CREDENTIAL_MAX_AGE_DAYS) -> bool:
        """Force ``disconnected`` on an expired credential. Returns True when the status changed."""
        if self.connection_status != ConnectionStatus.DISCONNECTED and self.is_expired(now, max_age_days):
            self.connection_status = ConnectionStatus.DISCONNECTED
            return True
        return False

    def prepare_for_save(self, now: Optional[datetime] = None, max_age_days: int = CREDENTIAL_MAX_AGE_DAYS) -> None:
        now = now or utcnow()
        if self.username:
            self.username = self.username.strip()
        self.normalize(now, max_age_days)
        self.updated_at = now

    def refresh(self, new_access: str, new_refresh: Optional[str] = None, now: Optional[datetime] = None) -> "ConnectedAccount":
        self.access_credential = new_access
        if new_refresh:
            self.refresh_credential = new_refresh
        self.last_credential_refresh = now or utcnow()
        self.connection_status = ConnectionStatus.CONNECTED
        return self

    def record_error(self, code: str, message: str, now: Optional[datetime] = None) -> ErrorEntry:
        return self.recent_errors.record(code, message, now or utcnow())

    def upsert_ad_accounts(self, refs: list[AdAccountRef], now: Optional[datetime] = None) -> list[AdAccountRef]:
        now = now or utcnow()

        def _stamp(ref: AdAccountRef) -> None:
            ref.last_sync = now

        return upsert_by_key(
            self.ad_accounts,
            refs,
            key=field_key("id"),
            fields=AD_ACCOUNT_MERGE_FIELDS,
            create=lambda ref: ref.model_copy(),
            stamp=_stamp,
        )

    def find_ad_account(self, ad_account_id: str) -> Optional[AdAccountRef]:
        for ref in self.ad_accounts:
            if ref.id == ad_account_id:
                return ref
        return None


# ══════════════════════════════════════════════════════════════════════
#  CAMPAIGN
# ══════════════════════════════════════════════════════════════════════

class Money(_Value):
    amount: float = 0.0
    currency: str = "EUR"


class Budget(_Value):
    daily: Optional[Money] = None
    lifetime: Optional[Money] = None
    spent: Money = Field(default_factory=Money)


class Schedule(_Value):
    start_date: datetime
    end_date: Optional[datetime] = None
    timezone: str = "UTC"

    @field_validator("start_date", "end_date", mode="after")
    @classmethod
    def _naive(cls, value):
        return as_naive_utc(value)


class Location(_Value):
    type: Literal["COUNTRY", "REGION", "METRO"] = "COUNTRY"
    id: str
    name: Optional[str] = None


class AgeRange(_Value):
    min: int = Field(ge=18, le=65)
    max: int = Field(ge=18, le=65)

    @model_validator(mode="after")
    def _ordered(self):
        if self.min > self.max:
            raise ValueError("age_range.min must not exceed age_range.max")
        return self


class Interest(_Value):
    id: str
    name: Optional[str] = None
    category: Optional[str] = None


class Keyword(_Value):
    text: str
    match_type: Literal["BROAD", "EXACT", "PHRASE"] = "BROAD"


class Targeting(_Value):
    locations: list[Location] = Field(default_factory=list)
    languages: list[str] = Field(default_factory=list)
    age_range: Optional[AgeRange] = None
    gender: Optional[Literal["ALL", "MALE", "FEMALE"]] = None
    interests: list[Interest] = Field(default_factory=list)
    keywords: list[Keyword] = Field(default_factory=list)


class CreativeStatistics(_Value):
    impressions: int = 0
    clicks: int = 0
    ctr: float = 0.0
    spend: float = 0.0


class Creative(_Value):
    id: Optional[str] = None
    type: Literal["PIN", "IMAGE", "VIDEO"] = "PIN"
    pin_id: Optional[str] = None
    image_url: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    destination_url: Optional[str] = None
    status: Optional[Literal["ACTIVE", "PAUSED", "REJECTED"]] = None
    statistics: CreativeStatistics = Field(default_factory=CreativeStatistics)


class TrackingUrls(_Value):
    impression: list[str] = Field(default_factory=list)
    click: list[str] = Field(default_factory=list)


class TrackingParameters(_Value):
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None


class Tracking(_Value):
    urls: TrackingUrls = Field(default_factory=TrackingUrls)
    parameters: TrackingParameters = Field(default_factory=TrackingParameters)


class PerformanceStats(_Value):
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    ctr: float = 0.0
    conversions: int = 0
    cost_per_conversion: float = 0.0

    def recompute(self) -> None:
        self.ctr = (self.clicks / self.impressions * 100) if self.impressions > 0 else 0.0
        self.cost_per_conversion = (self.spend / self.conversions) if self.conversions > 0 else 0.0


class DailyPerformance(PerformanceStats):
    date: datetime


class Performance(_Value):
    daily: list[DailyPerformance] = Field(default_factory=list)
    total: PerformanceStats = Field(default_factory=PerformanceStats)


STAT_FIELDS = tuple(PerformanceStats.model_fields)


class Campaign(_Document):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    campaign_id: str
    user_id: str
    connected_account_id: uuid.UUID
    ad_account_id: str
    name: str
    status: CampaignStatus = CampaignStatus.DRAFT
    objective: CampaignObjective
    budget: Budget = Field(default_factory=Budget)
    schedule: Schedule
    targeting: Targeting = Field(default_factory=Targeting)
    creatives: list[Creative] = Field(default_factory=list)
    tracking: Tracking = Field(default_factory=Tracking)
    performance: Performance = Field(default_factory=Performance)
    last_sync: datetime = Field(default_factory=utcnow)
    errors: ErrorRing = Field(default_factory=ErrorRing)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("status", "objective", mode="before")
    @classmethod
    def _normalize_enums(cls, value):
        return _lower(value)

    @field_validator("name", mode="after")
    @classmethod
    def _trim_name(cls, value: str) -> str:
        return value.strip()

    @field_validator("errors", mode="before")
    @classmethod
    def _ring(cls, value):
        if isinstance(value, ErrorRing):
            return value
        return ErrorRing(ERROR_RING_CAPACITY, value or [])

    @field_serializer("errors")
    def _ring_out(self, ring: ErrorRing):
        return ring.to_list()

    @model_validator(mode="after")
    def _derived(self):
        self.recompute()
        return self

    @property
    def remaining_budget(self) -> Optional[float]:
        if self.budget.lifetime is not None:
            return self.budget.lifetime.amount - self.budget.spent.amount
        return None

    def is_active_now(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return (
            self.status == CampaignStatus.ACTIVE
            and self.schedule.start_date <= now
            and (self.schedule.end_date is None or self.schedule.end_date >= now)
        )

    def recompute(self) -> None:
        """Refresh every derived field: ctr, cost per conversion, spent budget."""
        self.performance.total.recompute()
        for entry in self.performance.daily:
            entry.recompute()
        self.budget.spent.amount = self.performance.total.spend

    def update_statistics(self, patch: dict, now: Optional[datetime] = None) -> "Campaign":
        """Merge stats into the totals and into today's daily entry (one entry per day)."""
        now = now or utcnow()
        stats = {k: v for k, v in patch.items() if k in STAT_FIELDS}
        self.performance.total = PerformanceStats.model_validate(
            {**self.performance.total.model_dump(), **stats}
        )
        today = truncate_to_day(now)
        upsert_by_key(
            self.performance.daily,
            [{"date": today, **stats}],
            key=lambda item: truncate_to_day(field_key("date")(item)),
            fields=stats.keys(),
            create=DailyPerformance.model_validate,
        )
        self.performance.daily.sort(key=lambda entry: entry.date)
        self.recompute()
        self.last_sync = now
        return self

    def apply_status(self, status: CampaignStatus | str) -> None:
        self.status = CampaignStatus(_lower(status))
        self.updated_at = utcnow()

    def record_error(self, code: str, message: str, now: Optional[datetime] = None) -> ErrorEntry:
        return self.errors.record(code, message, now or utcnow())

    def prepare_for_save(self, now: Optional[datetime] = None) -> None:
        self.recompute()
        self.updated_at = now or utcnow()
