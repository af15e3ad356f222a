"""
Request payloads accepted by the sync core.
Fields accept both snake_case and camelCase keys.
"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from adsync.domain import (
    CampaignObjective, CampaignStatus, Creative, Targeting, Tracking,
)
from adsync.utils import as_naive_utc

MAX_BUDGET_AMOUNT = 10_000_000


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


def _lower(value):
    return value.lower() if isinstance(value, str) else value


class CampaignCreate(_Payload):
    name: str = Field(min_length=1, max_length=512)
    objective: CampaignObjective
    status: Optional[CampaignStatus] = None
    daily_budget: Optional[float] = Field(default=None, ge=0, le=MAX_BUDGET_AMOUNT)
    lifetime_budget: Optional[float] = Field(default=None, ge=0, le=MAX_BUDGET_AMOUNT)
    currency: Optional[str] = None
    start_date: datetime
    end_date: Optional[datetime] = None
    timezone: Optional[str] = None
    targeting: Targeting = Field(default_factory=Targeting)
    tracking: Optional[Tracking] = None
    creatives: list[Creative] = Field(default_factory=list)

    @field_validator("objective", "status", mode="before")
    @classmethod
    def _normalize_enums(cls, value):
        return _lower(value)

    @field_validator("start_date", "end_date", mode="after")
    @classmethod
    def _naive(cls, value):
        return as_naive_utc(value)

    @model_validator(mode="after")
    def _check_budget_and_schedule(self):
        if self.daily_budget is None and self.lifetime_budget is None:
            raise ValueError("Either daily_budget or lifetime_budget is required")
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class CampaignFilters(_Payload):
    status: Optional[str] = None
    order: str = "DESCENDING"
    sort_by: str = "CREATED_TIME"
    bookmark: Optional[str] = None

    @field_validator("status", "order", "sort_by", mode="before")
    @classmethod
    def _upper(cls, value):
        return value.upper() if isinstance(value, str) else value


class AnalyticsParams(_Payload):
    start_date: date
    end_date: date
    level: str = "CAMPAIGN"
    click_window_days: int = Field(default=30, ge=1, le=60)

    @model_validator(mode="after")
    def _ordered(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class CampaignStatusUpdate(_Payload):
    """Only the status may be changed on an existing campaign."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    status: CampaignStatus

    @field_validator("status", mode="before")
    @classmethod
    def _normalize(cls, value):
        return _lower(value)


class ConnectRequest(_Payload):
    code: str = Field(min_length=1)
    redirect_uri: Optional[str] = None
