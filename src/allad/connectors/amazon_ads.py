from __future__ import annotations

import asyncio
import gzip
import json
import time
from dataclasses import replace
from typing import Any
from urllib.parse import urlencode

import httpx
from loguru import logger

from allad.connectors.base import (
    ConnectorCapabilities,
    ConnectorContext,
    oauth2_token_request,
    require_client,
    require_positive_budget,
)
from allad.errors import (
    ConflictError,
    PlatformConnectionError,
    PlatformError,
    RateLimitError,
    ValidationError,
    parse_platform_error,
)
from allad.metrics import amazon_metrics
from allad.models import AdAccount, Campaign, CampaignMetrics, CampaignStatus, TokenSet

SCOPE = "advertising::campaign_management"

# region -> (API host, consent page, token endpoint)
REGIONS: dict[str, tuple[str, str, str]] = {
    "NA": (
        "https://advertising-api.amazon.com",
        "https://www.amazon.com/ap/oa",
        "https://api.amazon.com/auth/o2/token",
    ),
    "EU": (
        "https://advertising-api-eu.amazon.com",
        "https://eu.account.amazon.com/ap/oa",
        "https://api.amazon.co.uk/auth/o2/token",
    ),
    "FE": (
        "https://advertising-api-fe.amazon.com",
        "https://apac.account.amazon.com/ap/oa",
        "https://api.amazon.co.jp/auth/o2/token",
    ),
}

SP_CAMPAIGN_MEDIA_TYPE = "application/vnd.spCampaign.v3+json"

_STATUS = {
    "ENABLED": CampaignStatus.ACTIVE,
    "PAUSED": CampaignStatus.PAUSED,
    "ARCHIVED": CampaignStatus.REMOVED,
}

_AD_PRODUCTS = ("sp", "sb", "sd")


def split_campaign_id(raw: str) -> tuple[str, str]:
    """'sb:123' -> ('sb', '123'); bare ids are Sponsored Products."""
    raw = str(raw or "").strip()
    if ":" in raw:
        product, _, cid = raw.partition(":")
        product = product.lower()
        if product in _AD_PRODUCTS and cid:
            return product, cid
    return "sp", raw


class AmazonAdsConnector:
    """
    Amazon Advertising API connector.

    Endpoints are partitioned by region (NA/EU/FE). Sponsored Products use
    the v3 API with vendor media types; Sponsored Brands and Display still
    use v2-style paths. Campaign ids are stored with their ad product prefix
    (`sp:`, `sb:`, `sd:`) so writes can be routed to the right API.
    Every call is scoped to an advertising profile via a header.
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
    write_scope = SCOPE

    def __init__(self, ctx: ConnectorContext):
        self.ctx = ctx

    def _region(self) -> str:
        r = str(self.ctx.setting("region", "NA") or "NA").strip().upper()
        if r not in REGIONS:
            raise ValidationError(f"Unknown Amazon Ads region: {r!r}")
        return r

    def _api_host(self) -> str:
        return REGIONS[self._region()][0]

    def _profile_id(self) -> str:
        return str(self.ctx.setting("profile_id") or self.ctx.credential.get("account_id") or "").strip()

    def _max_retries(self) -> int:
        return int(self.ctx.config.get("max_retries", 5))

    def _backoff(self, attempt: int, retry_after: str | None) -> float:
        if retry_after:
            try:
                return max(0.0, float(retry_after))
            except ValueError:
                pass
        base = float(self.ctx.config.get("backoff_base_sec", 1.0))
        cap = float(self.ctx.config.get("backoff_max_sec", 30.0))
        return min(cap, base * (2**attempt))

    def _headers(self, *, scoped: bool = True, content_type: str | None = None) -> dict[str, str]:
        client = require_client(self.ctx)
        token = self.ctx.access_token
        if not token:
            raise ValidationError("Missing Amazon access_token on credential")
        h = {
            "Authorization": f"Bearer {token}",
            "Amazon-Advertising-API-ClientId": client.client_id,
        }
        if scoped:
            profile_id = self._profile_id()
            if not profile_id:
                raise ValidationError("Missing Amazon profile_id on credential")
            h["Amazon-Advertising-API-Scope"] = profile_id
        if content_type:
            h["Content-Type"] = content_type
            h["Accept"] = content_type
        return h

    async def _request(
        self,
        method: str,
        path: str,
        *,
        scoped: bool = True,
        content_type: str | None = None,
        json_body: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self._api_host()}{path}"
        headers = self._headers(scoped=scoped, content_type=content_type)
        attempt = 0
        async with self.ctx.http() as client:
            while True:
                try:
                    r = await client.request(method, url, headers=headers, json=json_body, params=params)
                except httpx.HTTPError as e:
                    raise PlatformConnectionError(
                        f"Amazon Ads {method} {path} failed: {e}", platform="amazon"
                    ) from e
                if r.status_code == 429 and attempt < self._max_retries():
                    delay = self._backoff(attempt, r.headers.get("Retry-After"))
                    attempt += 1
                    logger.warning("[amazon] 429 on {} {}; retry {} in {:.1f}s", method, path, attempt, delay)
                    await asyncio.sleep(delay)
                    continue
                break
        if r.status_code // 100 != 2:
            body = (r.text or "").strip()[:2000]
            err = parse_platform_error(
                "amazon", status_code=r.status_code, message=f"Amazon Ads {method} {path}: {body}"
            )
            if isinstance(err, RateLimitError):
                err.retry_after = self._backoff(attempt, r.headers.get("Retry-After"))
            raise err
        if not r.content:
            return None
        try:
            return r.json()
        except ValueError:
            return r.text

    # ------------------------------------------------------------------ #
    # OAuth                                                                #
    # ------------------------------------------------------------------ #

    def authorize_url(self, *, redirect_uri: str, state: str) -> str:
        client = require_client(self.ctx)
        params = {
            "client_id": client.client_id,
            "scope": SCOPE,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "state": state,
        }
        return f"{REGIONS[self._region()][1]}?{urlencode(params)}"

    async def exchange_code(self, *, code: str, redirect_uri: str) -> TokenSet:
        client = require_client(self.ctx)
        return await oauth2_token_request(
            self.ctx,
            REGIONS[self._region()][2],
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": client.client_id,
                "client_secret": client.client_secret,
            },
        )

    async def refresh(self, refresh_token: str) -> TokenSet:
        client = require_client(self.ctx)
        return await oauth2_token_request(
            self.ctx,
            REGIONS[self._region()][2],
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": client.client_id,
                "client_secret": client.client_secret,
            },
        )

    # ------------------------------------------------------------------ #
    # profiles / campaigns                                                 #
    # ------------------------------------------------------------------ #

    async def list_accounts(self) -> list[AdAccount]:
        rows = await self._request("GET", "/v2/profiles", scoped=False)
        out: list[AdAccount] = []
        for it in rows if isinstance(rows, list) else []:
            profile_id = str(it.get("profileId") or "").strip()
            if not profile_id:
                continue
            info = it.get("accountInfo") if isinstance(it.get("accountInfo"), dict) else {}
            out.append(
                AdAccount(
                    account_id=profile_id,
                    name=str(info.get("name") or f"{it.get('countryCode', '')} {profile_id}".strip()),
                    currency=it.get("currencyCode"),
                    timezone=it.get("timezone"),
                    status=info.get("type"),
                    raw=it,
                )
            )
        return out

    async def _list_sp(self) -> list[Campaign]:
        out: list[Campaign] = []
        next_token: str | None = None
        while True:
            body: dict[str, Any] = {"maxResults": 100}
            if next_token:
                body["nextToken"] = next_token
            obj = await self._request(
                "POST", "/sp/campaigns/list", content_type=SP_CAMPAIGN_MEDIA_TYPE, json_body=body
            )
            obj = obj if isinstance(obj, dict) else {}
            for it in obj.get("campaigns") or []:
                out.append(self._campaign("sp", it))
            next_token = obj.get("nextToken")
            if not next_token:
                return out

    async def _list_v2(self, product: str) -> list[Campaign]:
        rows = await self._request("GET", f"/{product}/campaigns")
        return [self._campaign(product, it) for it in rows if isinstance(it, dict)] if isinstance(rows, list) else []

    def _campaign(self, product: str, it: dict[str, Any]) -> Campaign:
        raw_id = str(it.get("campaignId") or "")
        state = str(it.get("state") or "").upper()
        budget_raw = it.get("budget")
        if isinstance(budget_raw, dict):
            budget_raw = budget_raw.get("budget")
        try:
            budget = float(budget_raw) if budget_raw is not None else None
        except (TypeError, ValueError):
            budget = None
        return Campaign(
            platform="amazon",
            platform_campaign_id=f"{product}:{raw_id}",
            name=str(it.get("name") or raw_id),
            status=_STATUS.get(state, CampaignStatus.UNKNOWN),
            budget=budget,
            account_id=self._profile_id(),
            raw_data={**it, "adProduct": product},
        )

    async def list_campaigns(self) -> list[Campaign]:
        products = self.ctx.config.get("ad_products") or list(_AD_PRODUCTS)
        out: list[Campaign] = []
        for product in products:
            if product == "sp":
                out.extend(await self._list_sp())
            elif product in {"sb", "sd"}:
                out.extend(await self._list_v2(product))
        return out

    async def _current_state(self, product: str, cid: str) -> str:
        if product == "sp":
            obj = await self._request(
                "POST",
                "/sp/campaigns/list",
                content_type=SP_CAMPAIGN_MEDIA_TYPE,
                json_body={"campaignIdFilter": {"include": [cid]}},
            )
            rows = obj.get("campaigns") if isinstance(obj, dict) else None
            if not rows:
                raise parse_platform_error("amazon", status_code=404, message=f"Campaign not found: {cid}")
            return str(rows[0].get("state") or "").upper()
        obj = await self._request("GET", f"/{product}/campaigns/{cid}")
        return str((obj or {}).get("state") or "").upper()

    async def get_campaign_status(self, campaign_id: str) -> str:
        product, cid = split_campaign_id(campaign_id)
        return _STATUS.get(await self._current_state(product, cid), CampaignStatus.UNKNOWN)

    async def _update(self, product: str, cid: str, fields: dict[str, Any]) -> Any:
        if product == "sp":
            return await self._request(
                "PUT",
                "/sp/campaigns",
                content_type=SP_CAMPAIGN_MEDIA_TYPE,
                json_body={"campaigns": [{"campaignId": cid, **fields}]},
            )
        # v2 uses lowercase states and numeric ids
        v2_fields = {k: (v.lower() if k == "state" else v) for k, v in fields.items()}
        return await self._request(
            "PUT", f"/{product}/campaigns", json_body=[{"campaignId": int(cid), **v2_fields}]
        )

    async def set_campaign_status(self, campaign_id: str, active: bool) -> dict[str, Any]:
        product, cid = split_campaign_id(campaign_id)
        new_state = "ENABLED" if active else "PAUSED"
        before = await self._current_state(product, cid)
        if before == new_state:
            raise ConflictError(f"Campaign {campaign_id} is already {new_state}", platform="amazon")
        await self._update(product, cid, {"state": new_state})
        logger.info("[amazon] campaign {} {} -> {}", campaign_id, before, new_state)
        return {"campaign_id": campaign_id, "before": {"state": before}, "after": {"state": new_state}}

    async def set_campaign_budget(self, campaign_id: str, budget: float) -> dict[str, Any]:
        value = require_positive_budget(budget)
        product, cid = split_campaign_id(campaign_id)
        if product == "sp":
            fields: dict[str, Any] = {"budget": {"budget": value, "budgetType": "DAILY"}}
        else:
            fields = {"budget": value}
        await self._update(product, cid, fields)
        return {"campaign_id": campaign_id, "after": {"budget": value}}

    # ------------------------------------------------------------------ #
    # reporting (v3, asynchronous)                                         #
    # ------------------------------------------------------------------ #

    async def fetch_metrics_daily(self, date_from: str, date_to: str) -> list[CampaignMetrics]:
        body = {
            "name": f"allad sp campaigns {date_from}..{date_to}",
            "startDate": date_from,
            "endDate": date_to,
            "configuration": {
                "adProduct": "SPONSORED_PRODUCTS",
                "groupBy": ["campaign"],
                "columns": ["date", "campaignId", "impressions", "clicks", "cost", "purchases7d", "sales7d"],
                "reportTypeId": "spCampaigns",
                "timeUnit": "DAILY",
                "format": "GZIP_JSON",
            },
        }
        created = await self._request(
            "POST",
            "/reporting/reports",
            content_type="application/vnd.createasyncreportrequest.v3+json",
            json_body=body,
        )
        report_id = str((created or {}).get("reportId") or "")
        if not report_id:
            raise PlatformError("Amazon report creation returned no reportId", platform="amazon")

        poll = float(self.ctx.config.get("report_poll_interval_sec", 5.0))
        timeout = float(self.ctx.config.get("report_timeout_sec", 600.0))
        deadline = time.monotonic() + timeout
        while True:
            status = await self._request("GET", f"/reporting/reports/{report_id}")
            status = status if isinstance(status, dict) else {}
            state = str(status.get("status") or "").upper()
            if state == "COMPLETED" and status.get("url"):
                break
            if state == "FAILED":
                raise PlatformError(
                    f"Amazon report {report_id} failed: {status.get('failureReason')}", platform="amazon"
                )
            if time.monotonic() > deadline:
                raise PlatformError(f"Amazon report {report_id} timed out", platform="amazon", retryable=True)
            await asyncio.sleep(poll)

        rows = await self._download_report(str(status["url"]))
        out: list[CampaignMetrics] = []
        for row in rows:
            m = amazon_metrics(row)
            if m.platform_campaign_id:
                out.append(replace(m, platform_campaign_id=f"sp:{m.platform_campaign_id}"))
        return out

    async def _download_report(self, url: str) -> list[dict[str, Any]]:
        # Pre-signed S3 URL; no auth headers.
        async with self.ctx.http(timeout=120.0) as client:
            r = await client.get(url)
        if r.status_code // 100 != 2:
            raise parse_platform_error("amazon", status_code=r.status_code, message="report download failed")
        raw = r.content
        if raw[:2] == b"\x1f\x8b":
            raw = gzip.decompress(raw)
        data = json.loads(raw.decode("utf-8") or "[]")
        return [d for d in data if isinstance(d, dict)] if isinstance(data, list) else []

    async def health_check(self) -> tuple[bool, str | None]:
        if self.ctx.client is None:
            return False, "Amazon Ads OAuth client is not configured"
        if not self.ctx.access_token:
            return False, "Missing access_token on credential"
        if not self._profile_id():
            return False, "Missing profile_id on credential"
        return True, None
