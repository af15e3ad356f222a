"""
Ad Platform Client
Thin async REST client for the ad platform (Pinterest Ads API v5 shapes).
Non-2xx responses surface as PlatformAPIError with status and JSON body intact;
nothing here retries or interprets errors.
"""

import logging
from typing import Any, Optional
import httpx

from adsync.errors import PlatformAPIError

logger = logging.getLogger(__name__)

ANALYTICS_COLUMNS = [
    "SPEND",
    "IMPRESSION",
    "CLICK",
    "CTR",
    "ENGAGEMENT",
    "ENGAGEMENT_RATE",
    "CONVERSION",
    "COST_PER_CONVERSION",
]

CAMPAIGN_PAGE_SIZE = 100


def _retry_after(response: httpx.Response) -> Optional[int]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


def _json_or_text(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return {"message": response.text[:500]}


class PlatformClient:
    """
    Wrapper around the ad platform REST API.
    Each instance carries one user's bearer credential.
    """

    def __init__(
        self,
        access_token: Optional[str],
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def headers(self) -> dict[str, str]:
        h = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.access_token:
            h["Authorization"] = f"Bearer {self.access_token}"
        return h

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json: Any = None,
        data: Optional[dict] = None,
        auth: Optional[tuple[str, str]] = None,
        headers: Optional[dict] = None,
    ) -> Any:
        """Send one request and return the decoded JSON body."""
        logger.info(f"Platform call: {method} {path}")
        request_headers = dict(self.headers)
        if data is not None:
            request_headers["Content-Type"] = "application/x-www-form-urlencoded"
            request_headers.pop("Authorization", None)
        if headers:
            request_headers.update(headers)

        if params:
            params = {k: v for k, v in params.items() if v is not None}

        async with self._client() as client:
            response = await client.request(
                method,
                path,
                params=params,
                json=json,
                data=data,
                auth=auth,
                headers=request_headers,
            )

        if response.is_success:
            return _json_or_text(response)

        payload = _json_or_text(response)
        logger.warning(f"Platform call failed: {method} {path} -> {response.status_code}")
        raise PlatformAPIError(response.status_code, payload, retry_after=_retry_after(response))

    # ── OAuth ────────────────────────────────────────────────────────

    async def exchange_code(self, code: str, redirect_uri: str, client_id: str, client_secret: str) -> dict:
        """Exchange an authorization code for access/refresh tokens."""
        return await self.request(
            "POST",
            "/oauth/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
            auth=(client_id, client_secret),
        )

    async def refresh_access_token(self, refresh_token: str, client_id: str, client_secret: str) -> dict:
        """Exchange a refresh token for a new access token. Returns access_token, refresh_token?, expires_in."""
        return await self.request(
            "POST",
            "/oauth/token",
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            auth=(client_id, client_secret),
        )

    # ── Convenience Methods ──────────────────────────────────────────

    async def get_user_account(self) -> dict:
        return await self.request("GET", "/user_account")

    async def list_ad_accounts(self, owner_user_id: Optional[str] = None) -> dict:
        return await self.request("GET", "/ad_accounts", params={
            "owner_user_id": owner_user_id,
            "include_shared_accounts": "true",
        })

    async def create_campaign(self, ad_account_id: str, body: dict) -> dict:
        return await self.request("POST", f"/ad_accounts/{ad_account_id}/campaigns", json=body)

    async def list_campaigns(
        self,
        ad_account_id: str,
        order: str = "DESCENDING",
        sort_by: str = "CREATED_TIME",
        status: Optional[str] = None,
        bookmark: Optional[str] = None,
    ) -> dict:
        return await self.request("GET", f"/ad_accounts/{ad_account_id}/campaigns", params={
            "page_size": CAMPAIGN_PAGE_SIZE,
            "order": order,
            "sort_by": sort_by,
            "status": [status] if status else None,
            "bookmark": bookmark,
        })

    async def update_campaigns(self, ad_account_id: str, updates: list[dict]) -> dict:
        return await self.request("PATCH", f"/ad_accounts/{ad_account_id}/campaigns", json=updates)

    async def get_analytics(
        self,
        ad_account_id: str,
        start_date: str,
        end_date: str,
        level: str = "CAMPAIGN",
        click_window_days: int = 30,
    ) -> Any:
        return await self.request("GET", f"/ad_accounts/{ad_account_id}/analytics", params={
            "start_date": start_date,
            "end_date": end_date,
            "columns": ",".join(ANALYTICS_COLUMNS),
            "level": level,
            "click_window_days": click_window_days,
        })


def create_platform_client(
    access_token: Optional[str],
    base_url: str,
    timeout: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> PlatformClient:
    """Factory function to create a platform client."""
    return PlatformClient(
        access_token=access_token,
        base_url=base_url,
        timeout=timeout,
        transport=transport,
    )
