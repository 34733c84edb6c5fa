from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any

import httpx
from loguru import logger

from allad.connectors.base import ConnectorCapabilities, ConnectorContext, require_positive_budget
from allad.errors import (
    ConflictError,
    OAuthError,
    PlatformConnectionError,
    ValidationError,
    parse_platform_error,
)
from allad.metrics import naver_metrics
from allad.models import AdAccount, Campaign, CampaignMetrics, CampaignStatus, TokenSet

BASE_URL = "https://api.searchad.naver.com"

_STAT_FIELDS = ["impCnt", "clkCnt", "salesAmt", "ccnt", "convAmt"]


class _NaverSearchAdClient:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        secret_key: str,
        customer_id: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.secret_key = secret_key
        self.customer_id = customer_id
        self.transport = transport

    def _signature(self, timestamp_ms: str, method: str, uri: str) -> str:
        msg = f"{timestamp_ms}.{method}.{uri}"
        digest = hmac.new(
            self.secret_key.encode("utf-8", errors="strict"),
            msg.encode("utf-8", errors="strict"),
            hashlib.sha256,
        ).digest()
        return base64.b64encode(digest).decode("ascii", errors="strict")

    def _headers(self, method: str, uri: str) -> dict[str, str]:
        ts = str(int(time.time() * 1000))
        return {
            "Content-Type": "application/json; charset=UTF-8",
            "X-Timestamp": ts,
            "X-API-KEY": self.api_key,
            "X-Customer": str(self.customer_id),
            "X-Signature": self._signature(ts, method, uri),
        }

    async def request_json(
        self,
        *,
        method: str,
        uri: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | list[dict[str, Any]] | None = None,
        timeout: float = 30.0,
    ) -> Any:
        url = f"{self.base_url}{uri}"
        headers = self._headers(method, uri)
        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                r = await client.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    headers=headers,
                    timeout=timeout,
                )
        except httpx.HTTPError as e:
            raise PlatformConnectionError(f"Naver API {method} {uri} failed: {e}", platform="naver") from e
        if r.status_code // 100 != 2:
            body = (r.text or "").strip()[:4000]
            raise parse_platform_error(
                "naver", status_code=r.status_code, message=f"Naver API {method} {uri} failed: {body}"
            )
        if not r.content:
            return None
        try:
            return r.json()
        except ValueError:
            return r.text


class NaverSearchAdConnector:
    """
    Naver SearchAd connector.

    Authentication is an API key pair plus customer id, signed per request
    (HMAC-SHA256 over "timestamp.method.uri"); there is no OAuth and nothing
    to refresh. A campaign is paused by setting `userLock`.
    """

    capabilities = ConnectorCapabilities(
        read_campaigns=True,
        read_metrics=True,
        write_status=True,
        write_budget=True,
    )
    write_scope = None

    def __init__(self, ctx: ConnectorContext):
        self.ctx = ctx

    def _build_client(self) -> _NaverSearchAdClient:
        api_key = str(self.ctx.setting("api_key") or "").strip()
        secret_key = str(self.ctx.setting("secret_key") or "").strip()
        customer_id = str(self.ctx.setting("customer_id") or self.ctx.credential.get("account_id") or "").strip()
        if not api_key or not secret_key or not customer_id:
            raise ValidationError(
                "Naver SearchAd needs api_key, secret_key and customer_id",
                user_message="네이버 검색광고 API 키 정보가 부족합니다.",
            )
        return _NaverSearchAdClient(
            base_url=str(self.ctx.config.get("base_url") or BASE_URL),
            api_key=api_key,
            secret_key=secret_key,
            customer_id=customer_id,
            transport=self.ctx.transport,
        )

    def authorize_url(self, *, redirect_uri: str, state: str) -> str:
        raise OAuthError("unsupported", "Naver SearchAd uses API keys, not OAuth")

    async def exchange_code(self, *, code: str, redirect_uri: str) -> TokenSet:
        raise OAuthError("unsupported", "Naver SearchAd uses API keys, not OAuth")

    async def refresh(self, refresh_token: str) -> TokenSet:
        raise OAuthError("unsupported", "Naver SearchAd keys do not expire")

    async def list_accounts(self) -> list[AdAccount]:
        customer_id = str(self.ctx.setting("customer_id") or "").strip()
        return [AdAccount(account_id=customer_id, name=f"Naver {customer_id}")] if customer_id else []

    @staticmethod
    def _status(it: dict[str, Any]) -> str:
        if it.get("delFlag"):
            return CampaignStatus.REMOVED
        if it.get("userLock"):
            return CampaignStatus.PAUSED
        return CampaignStatus.ACTIVE

    async def list_campaigns(self) -> list[Campaign]:
        client = self._build_client()
        rows = await client.request_json(method="GET", uri="/ncc/campaigns")
        out: list[Campaign] = []
        for it in rows if isinstance(rows, list) else []:
            cid = str(it.get("nccCampaignId") or "").strip()
            if not cid:
                continue
            budget = it.get("dailyBudget") if it.get("useDailyBudget") else None
            out.append(
                Campaign(
                    platform="naver",
                    platform_campaign_id=cid,
                    name=str(it.get("name") or cid),
                    status=self._status(it),
                    budget=float(budget) if budget else None,
                    account_id=client.customer_id,
                    raw_data=it,
                )
            )
        return out

    async def get_campaign_status(self, campaign_id: str) -> str:
        client = self._build_client()
        data = await client.request_json(method="GET", uri=f"/ncc/campaigns/{campaign_id}")
        return self._status(data if isinstance(data, dict) else {})

    async def set_campaign_status(self, campaign_id: str, active: bool) -> dict[str, Any]:
        client = self._build_client()
        user_lock = not active

        before_data = await client.request_json(method="GET", uri=f"/ncc/campaigns/{campaign_id}")
        before_data = before_data if isinstance(before_data, dict) else {}
        if bool(before_data.get("userLock")) == user_lock:
            raise ConflictError(
                f"Campaign {campaign_id} already has userLock={user_lock}", platform="naver"
            )
        after_data = await client.request_json(
            method="PUT",
            uri=f"/ncc/campaigns/{campaign_id}",
            params={"fields": "userLock"},
            json_body={"nccCampaignId": campaign_id, "userLock": user_lock},
        )
        after_data = after_data if isinstance(after_data, dict) else {}
        logger.info("[naver] campaign {} userLock -> {}", campaign_id, user_lock)
        return {
            "campaign_id": campaign_id,
            "before": {"userLock": before_data.get("userLock"), "status": before_data.get("status")},
            "after": {"userLock": after_data.get("userLock", user_lock), "status": after_data.get("status")},
        }

    async def set_campaign_budget(self, campaign_id: str, budget: float) -> dict[str, Any]:
        value = require_positive_budget(budget)
        client = self._build_client()
        # Naver budgets are whole KRW.
        new_budget = int(round(value))

        before_data = await client.request_json(method="GET", uri=f"/ncc/campaigns/{campaign_id}")
        before_data = before_data if isinstance(before_data, dict) else {}
        after_data = await client.request_json(
            method="PUT",
            uri=f"/ncc/campaigns/{campaign_id}",
            params={"fields": "budget"},
            json_body={"nccCampaignId": campaign_id, "dailyBudget": new_budget, "useDailyBudget": True},
        )
        after_data = after_data if isinstance(after_data, dict) else {}
        return {
            "campaign_id": campaign_id,
            "before": {"budget": before_data.get("dailyBudget")},
            "after": {"budget": after_data.get("dailyBudget", new_budget)},
        }

    async def fetch_metrics_daily(self, date_from: str, date_to: str) -> list[CampaignMetrics]:
        client = self._build_client()
        campaigns = await client.request_json(method="GET", uri="/ncc/campaigns")
        ids = [
            str(c.get("nccCampaignId"))
            for c in (campaigns if isinstance(campaigns, list) else [])
            if c.get("nccCampaignId")
        ]
        out: list[CampaignMetrics] = []
        for cid in ids:
            data = await client.request_json(
                method="GET",
                uri="/stats",
                params={
                    "id": cid,
                    "fields": json.dumps(_STAT_FIELDS),
                    "timeRange": json.dumps({"since": date_from, "until": date_to}),
                    "timeIncrement": "1",
                },
            )
            rows = data.get("data") if isinstance(data, dict) else None
            for row in rows or []:
                if isinstance(row, dict):
                    out.append(naver_metrics({**row, "id": row.get("id") or cid}))
        return out

    async def health_check(self) -> tuple[bool, str | None]:
        try:
            self._build_client()
        except ValidationError as e:
            return False, str(e)
        return True, None
