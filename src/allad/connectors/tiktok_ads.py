from __future__ import annotations

import asyncio
import json
import time
import weakref
from collections import deque
from typing import Any
from urllib.parse import urlencode

import httpx
from loguru import logger

from allad.connectors.base import (
    ConnectorCapabilities,
    ConnectorContext,
    require_client,
    require_positive_budget,
    token_set_from_body,
)
from allad.errors import (
    ConflictError,
    OAuthError,
    PlatformAuthError,
    PlatformConnectionError,
    PlatformError,
    ValidationError,
    parse_platform_error,
)
from allad.metrics import tiktok_metrics
from allad.models import AdAccount, Campaign, CampaignMetrics, CampaignStatus, TokenSet

API_BASE_URL = "https://business-api.tiktok.com/open_api/v1.3"
AUTHORIZE_URL = "https://business-api.tiktok.com/portal/auth"
SCOPES = ("ad.group.read", "ad.group.write", "campaign.read", "campaign.write")

ACCESS_TOKEN_TTL = 24 * 3600
REFRESH_TOKEN_TTL = 365 * 24 * 3600
MAX_REQUESTS_PER_MINUTE = 600

_STATUS = {
    "ENABLE": CampaignStatus.ACTIVE,
    "DISABLE": CampaignStatus.PAUSED,
    "DELETE": CampaignStatus.REMOVED,
}

_REPORT_METRICS = (
    "spend",
    "impressions",
    "clicks",
    "conversion",
    "complete_payment",
    "total_complete_payment_rate",
)


class SlidingWindowLimiter:
    """In-process sliding window: at most `max_requests` acquisitions per `window_seconds`."""

    def __init__(self, max_requests: int, window_seconds: float = 60.0):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._hits: deque[float] = deque()
        # one lock per event loop; an asyncio.Lock is bound to the loop that first waits on it
        self._locks: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock] = weakref.WeakKeyDictionary()

    def _prune(self, now: float) -> None:
        while self._hits and now - self._hits[0] >= self.window_seconds:
            self._hits.popleft()

    def _lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        lock = self._locks.get(loop)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[loop] = lock
        return lock

    async def acquire(self) -> None:
        async with self._lock():
            while True:
                now = time.monotonic()
                self._prune(now)
                if len(self._hits) < self.max_requests:
                    self._hits.append(now)
                    return
                await asyncio.sleep(self.window_seconds - (now - self._hits[0]))


# one limiter per TikTok app; the quota is enforced per app by TikTok
_LIMITERS: dict[str, SlidingWindowLimiter] = {}


def limiter_for(app_id: str) -> SlidingWindowLimiter:
    lim = _LIMITERS.get(app_id)
    if lim is None:
        lim = SlidingWindowLimiter(MAX_REQUESTS_PER_MINUTE, 60.0)
        _LIMITERS[app_id] = lim
    return lim


class TikTokAdsConnector:
    """
    TikTok Business API (v1.3) connector.

    Every response is wrapped as {"code", "message", "data"}; any non-zero
    code is an error even on HTTP 200. The advertiser id is per ad account
    and independent of the app id/secret pair.
    """

    capabilities = ConnectorCapabilities(
        oauth=True,
        token_refresh=True,
        list_accounts=True,
        read_campaigns=True,
        read_metrics=True,
        write_status=True,
        write_budget=True,
    )
    write_scope = "campaign.write"

    def __init__(self, ctx: ConnectorContext):
        self.ctx = ctx

    def _advertiser_id(self) -> str:
        return str(self.ctx.setting("advertiser_id") or self.ctx.credential.get("account_id") or "").strip()

    def _limiter(self) -> SlidingWindowLimiter:
        key = self.ctx.client.client_id if self.ctx.client else "default"
        return limiter_for(key)

    async def _call(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        token: str | None = None,
    ) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        access_token = self.ctx.access_token if token is None else token
        if access_token:
            headers["Access-Token"] = access_token
        # list/dict query values are JSON-encoded by TikTok convention
        q = {k: (json.dumps(v) if isinstance(v, (list, dict)) else v) for k, v in (params or {}).items()}

        await self._limiter().acquire()
        try:
            async with self.ctx.http() as client:
                r = await client.request(
                    method, f"{API_BASE_URL}{path}", params=q or None, json=json_body, headers=headers
                )
        except httpx.HTTPError as e:
            raise PlatformConnectionError(f"TikTok {method} {path} failed: {e}", platform="tiktok") from e
        try:
            obj = r.json()
        except ValueError:
            raise parse_platform_error("tiktok", status_code=r.status_code, message=r.text[:500]) from None
        code = obj.get("code") if isinstance(obj, dict) else None
        if r.status_code // 100 != 2 or code not in (0, "0"):
            msg = str((obj or {}).get("message") or r.text[:500])
            raise parse_platform_error(
                "tiktok",
                status_code=r.status_code if r.status_code // 100 != 2 else None,
                error_code=code,
                message=f"TikTok API error: {msg} (code={code})",
            )
        data = obj.get("data")
        return data if isinstance(data, dict) else {}

    # ------------------------------------------------------------------ #
    # OAuth                                                                #
    # ------------------------------------------------------------------ #

    def authorize_url(self, *, redirect_uri: str, state: str) -> str:
        client = require_client(self.ctx)
        params = {"app_id": client.client_id, "state": state, "redirect_uri": redirect_uri}
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    def _token_set(self, data: dict[str, Any]) -> TokenSet:
        if not data.get("access_token"):
            raise OAuthError("exchange_failed", "TikTok token response without access_token")
        body = dict(data)
        body.setdefault("expires_in", ACCESS_TOKEN_TTL)
        body.setdefault("refresh_token_expires_in", REFRESH_TOKEN_TTL)
        if isinstance(body.get("scope"), list):
            body["scope"] = " ".join(str(s) for s in body["scope"])
        return token_set_from_body(body)

    async def exchange_code(self, *, code: str, redirect_uri: str) -> TokenSet:
        client = require_client(self.ctx)
        try:
            data = await self._call(
                "POST",
                "/oauth2/access_token/",
                json_body={"app_id": client.client_id, "secret": client.client_secret, "auth_code": code},
                token="",
            )
        except PlatformError as e:
            raise OAuthError("invalid_grant", str(e)) from e
        return self._token_set(data)

    async def refresh(self, refresh_token: str) -> TokenSet:
        client = require_client(self.ctx)
        try:
            data = await self._call(
                "POST",
                "/oauth2/refresh_token/",
                json_body={
                    "app_id": client.client_id,
                    "secret": client.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                token="",
            )
        except PlatformAuthError as e:
            raise OAuthError("invalid_grant", str(e)) from e
        return self._token_set(data)

    # ------------------------------------------------------------------ #
    # advertisers / campaigns                                              #
    # ------------------------------------------------------------------ #

    async def list_accounts(self) -> list[AdAccount]:
        client = require_client(self.ctx)
        data = await self._call(
            "GET",
            "/oauth2/advertiser/get/",
            params={"app_id": client.client_id, "secret": client.client_secret},
        )
        out: list[AdAccount] = []
        for it in data.get("list") or []:
            adv_id = str(it.get("advertiser_id") or "").strip()
            if adv_id:
                out.append(AdAccount(account_id=adv_id, name=str(it.get("advertiser_name") or adv_id), raw=it))
        return out

    def _require_advertiser(self) -> str:
        adv = self._advertiser_id()
        if not adv:
            raise ValidationError("Missing TikTok advertiser_id on credential")
        return adv

    async def _get_campaigns(self, *, campaign_ids: list[str] | None = None) -> list[dict[str, Any]]:
        adv = self._require_advertiser()
        out: list[dict[str, Any]] = []
        page = 1
        while True:
            params: dict[str, Any] = {
                "advertiser_id": adv,
                "page": page,
                "page_size": 100,
                "fields": ["campaign_id", "campaign_name", "operation_status", "budget", "budget_mode", "objective_type"],
            }
            if campaign_ids:
                params["filtering"] = {"campaign_ids": campaign_ids}
            data = await self._call("GET", "/campaign/get/", params=params)
            out.extend(it for it in data.get("list") or [] if isinstance(it, dict))
            info = data.get("page_info") or {}
            if page >= int(info.get("total_page") or 1):
                return out
            page += 1

    async def list_campaigns(self) -> list[Campaign]:
        adv = self._require_advertiser()
        out: list[Campaign] = []
        for it in await self._get_campaigns():
            cid = str(it.get("campaign_id") or "")
            if not cid:
                continue
            try:
                budget = float(it["budget"]) if it.get("budget") not in (None, "") else None
            except (TypeError, ValueError):
                budget = None
            out.append(
                Campaign(
                    platform="tiktok",
                    platform_campaign_id=cid,
                    name=str(it.get("campaign_name") or cid),
                    status=_STATUS.get(str(it.get("operation_status") or "").upper(), CampaignStatus.UNKNOWN),
                    budget=budget,
                    account_id=adv,
                    raw_data=it,
                )
            )
        return out

    async def _operation_status(self, campaign_id: str) -> str:
        rows = await self._get_campaigns(campaign_ids=[campaign_id])
        if not rows:
            raise parse_platform_error("tiktok", status_code=404, message=f"Campaign not found: {campaign_id}")
        return str(rows[0].get("operation_status") or "").upper()

    async def get_campaign_status(self, campaign_id: str) -> str:
        return _STATUS.get(await self._operation_status(campaign_id), CampaignStatus.UNKNOWN)

    async def set_campaign_status(self, campaign_id: str, active: bool) -> dict[str, Any]:
        adv = self._require_advertiser()
        new_status = "ENABLE" if active else "DISABLE"
        before = await self._operation_status(campaign_id)
        if before == new_status:
            raise ConflictError(f"Campaign {campaign_id} is already {new_status}", platform="tiktok")
        await self._call(
            "POST",
            "/campaign/status/update/",
            json_body={"advertiser_id": adv, "campaign_ids": [campaign_id], "operation_status": new_status},
        )
        logger.info("[tiktok] campaign {} {} -> {}", campaign_id, before, new_status)
        return {"campaign_id": campaign_id, "before": {"status": before}, "after": {"status": new_status}}

    async def set_campaign_budget(self, campaign_id: str, budget: float) -> dict[str, Any]:
        value = require_positive_budget(budget)
        adv = self._require_advertiser()
        await self._call(
            "POST",
            "/campaign/update/",
            json_body={"advertiser_id": adv, "campaign_id": campaign_id, "budget": value},
        )
        return {"campaign_id": campaign_id, "after": {"budget": value}}

    async def fetch_metrics_daily(self, date_from: str, date_to: str) -> list[CampaignMetrics]:
        adv = self._require_advertiser()
        out: list[CampaignMetrics] = []
        page = 1
        while True:
            data = await self._call(
                "GET",
                "/report/integrated/get/",
                params={
                    "advertiser_id": adv,
                    "report_type": "BASIC",
                    "data_level": "AUCTION_CAMPAIGN",
                    "dimensions": ["campaign_id", "stat_time_day"],
                    "metrics": list(_REPORT_METRICS),
                    "start_date": date_from,
                    "end_date": date_to,
                    "page": page,
                    "page_size": 1000,
                },
            )
            for row in data.get("list") or []:
                if isinstance(row, dict):
                    m = tiktok_metrics(row)
                    if m.platform_campaign_id:
                        out.append(m)
            info = data.get("page_info") or {}
            if page >= int(info.get("total_page") or 1):
                return out
            page += 1

    async def health_check(self) -> tuple[bool, str | None]:
        if not self.ctx.access_token:
            return False, "Missing access_token on credential"
        if not self._advertiser_id():
            return False, "Missing advertiser_id on credential"
        return True, None
