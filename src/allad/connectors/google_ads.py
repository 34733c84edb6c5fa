from __future__ import annotations

import asyncio
import re
from typing import Any, Callable
from urllib.parse import urlencode

from loguru import logger

from allad.connectors.base import (
    ConnectorCapabilities,
    ConnectorContext,
    oauth2_token_request,
    require_client,
    require_positive_budget,
)
from allad.errors import AllAdError, ConflictError, PlatformError, ValidationError, parse_platform_error
from allad.metrics import google_metrics
from allad.models import AdAccount, Campaign, CampaignMetrics, CampaignStatus, TokenSet

AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
ADWORDS_SCOPE = "https://www.googleapis.com/auth/adwords"
SCOPES = (
    ADWORDS_SCOPE,
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
)

_STATUS = {
    "ENABLED": CampaignStatus.ACTIVE,
    "PAUSED": CampaignStatus.PAUSED,
    "REMOVED": CampaignStatus.REMOVED,
}

# GoogleAdsFailure codes worth a dedicated error class.
_KNOWN_CODES = (
    "DEVELOPER_TOKEN_NOT_APPROVED",
    "DEVELOPER_TOKEN_PROHIBITED",
    "USER_PERMISSION_DENIED",
    "RESOURCE_EXHAUSTED",
    "UNAUTHENTICATED",
)


def _normalize_customer_id(raw: Any) -> str:
    # Google Ads customer id is digits only (UI shows hyphens).
    return re.sub(r"\D+", "", str(raw or ""))


def _cost_micros_to_currency(cost_micros: Any) -> float:
    try:
        return float(cost_micros or 0) / 1_000_000.0
    except (TypeError, ValueError):
        return 0.0


def _enum_name(v: Any) -> str:
    # proto-plus enums expose .name; mocks and plain values are strings.
    name = getattr(v, "name", None)
    if isinstance(name, str):
        return name
    return str(v or "UNKNOWN").rsplit(".", 1)[-1]


def _map_google_error(exc: Exception) -> PlatformError:
    parts = [str(exc)]
    failure = getattr(exc, "failure", None)
    for err in getattr(failure, "errors", None) or []:
        parts.append(str(getattr(err, "error_code", "")))
        parts.append(str(getattr(err, "message", "")))
    text = " ".join(p for p in parts if p)
    for code in _KNOWN_CODES:
        if code in text:
            return parse_platform_error("google", error_code=code, message=text[:1000])
    return parse_platform_error("google", message=text[:1000])


class GoogleAdsConnector:
    """
    Google Ads connector.

    OAuth runs over plain HTTPS (httpx); everything else goes through GAQL
    and mutate services of the official `google-ads` Python client, which is
    synchronous and therefore called via asyncio.to_thread.

    Manager (MCC) access: `login_customer_id` is the manager account the
    OAuth user signed in with, `customer_id` is the operating account whose
    campaigns are read and changed. Both are digits-only.
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
    write_scope = ADWORDS_SCOPE

    def __init__(self, ctx: ConnectorContext):
        self.ctx = ctx

    # ------------------------------------------------------------------ #
    # OAuth                                                                #
    # ------------------------------------------------------------------ #

    def authorize_url(self, *, redirect_uri: str, state: str) -> str:
        client = require_client(self.ctx)
        params = {
            "client_id": client.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "access_type": "offline",
            "prompt": "consent select_account",
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(self, *, code: str, redirect_uri: str) -> TokenSet:
        client = require_client(self.ctx)
        return await oauth2_token_request(
            self.ctx,
            TOKEN_URL,
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
            TOKEN_URL,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": client.client_id,
                "client_secret": client.client_secret,
            },
        )

    # ------------------------------------------------------------------ #
    # google-ads client                                                    #
    # ------------------------------------------------------------------ #

    def _google_client(self, login_customer_id: str | None = None):
        from google.ads.googleads.client import GoogleAdsClient

        client = require_client(self.ctx)
        if not client.developer_token:
            raise ValidationError(
                "GOOGLE_ADS_DEVELOPER_TOKEN is not set",
                user_message="Google Ads 개발자 토큰이 설정되어 있지 않습니다.",
            )
        refresh_token = str(self.ctx.tokens.get("refresh_token") or "").strip()
        cfg: dict[str, Any] = {
            "developer_token": client.developer_token,
            "client_id": client.client_id,
            "client_secret": client.client_secret,
            "refresh_token": refresh_token,
            "use_proto_plus": True,
        }
        login_cid = _normalize_customer_id(
            login_customer_id if login_customer_id is not None else self.ctx.setting("login_customer_id")
        )
        if login_cid:
            cfg["login_customer_id"] = login_cid
        return GoogleAdsClient.load_from_dict(cfg)

    def _customer_id(self) -> str:
        cid = _normalize_customer_id(self.ctx.setting("customer_id") or self.ctx.credential.get("account_id"))
        if not cid:
            raise ValidationError("Missing Google Ads customer_id on credential")
        return cid

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except AllAdError:
            raise
        except Exception as e:  # noqa: BLE001
            raise _map_google_error(e) from e

    def _query_single(self, client: Any, cid: str, gaql: str) -> Any:
        """Run a GAQL query and return the first result row, or None."""
        ga_service = client.get_service("GoogleAdsService")
        q = gaql.strip()
        if "LIMIT" not in q.upper():
            q = q + " LIMIT 1"
        for row in ga_service.search(customer_id=cid, query=q):
            return row
        return None

    # ------------------------------------------------------------------ #
    # accounts / campaigns                                                 #
    # ------------------------------------------------------------------ #

    def _list_accounts_sync(self) -> list[AdAccount]:
        client = self._google_client(login_customer_id="")
        customer_service = client.get_service("CustomerService")
        resource_names = customer_service.list_accessible_customers().resource_names

        out: list[AdAccount] = []
        seen: set[str] = set()
        for rn in resource_names:
            cid = _normalize_customer_id(str(rn).rsplit("/", 1)[-1])
            if not cid or cid in seen:
                continue
            row = self._query_single(
                client,
                cid,
                "SELECT customer.id, customer.descriptive_name, customer.currency_code, "
                "customer.time_zone, customer.manager FROM customer",
            )
            if row is None:
                continue
            is_manager = bool(getattr(row.customer, "manager", False))
            seen.add(cid)
            out.append(
                AdAccount(
                    account_id=cid,
                    name=str(getattr(row.customer, "descriptive_name", "") or cid),
                    currency=str(getattr(row.customer, "currency_code", "") or "") or None,
                    timezone=str(getattr(row.customer, "time_zone", "") or "") or None,
                    is_manager=is_manager,
                )
            )
            if not is_manager:
                continue
            # Client accounts directly under this manager.
            mcc_client = self._google_client(login_customer_id=cid)
            ga_service = mcc_client.get_service("GoogleAdsService")
            q = (
                "SELECT customer_client.id, customer_client.descriptive_name, "
                "customer_client.currency_code, customer_client.time_zone, "
                "customer_client.manager, customer_client.status "
                "FROM customer_client WHERE customer_client.level = 1"
            )
            for child in ga_service.search(customer_id=cid, query=q):
                cc = child.customer_client
                child_id = _normalize_customer_id(getattr(cc, "id", ""))
                if not child_id or child_id in seen:
                    continue
                seen.add(child_id)
                out.append(
                    AdAccount(
                        account_id=child_id,
                        name=str(getattr(cc, "descriptive_name", "") or child_id),
                        currency=str(getattr(cc, "currency_code", "") or "") or None,
                        timezone=str(getattr(cc, "time_zone", "") or "") or None,
                        status=_enum_name(getattr(cc, "status", None)),
                        is_manager=bool(getattr(cc, "manager", False)),
                        login_customer_id=cid,
                    )
                )
        return out

    async def list_accounts(self) -> list[AdAccount]:
        return await self._run(self._list_accounts_sync)

    def _list_campaigns_sync(self) -> list[Campaign]:
        cid = self._customer_id()
        client = self._google_client()
        ga_service = client.get_service("GoogleAdsService")
        q = """
        SELECT
          campaign.id,
          campaign.name,
          campaign.status,
          campaign.advertising_channel_type,
          campaign_budget.amount_micros
        FROM campaign
        WHERE campaign.status != 'REMOVED'
        """
        out: list[Campaign] = []
        for batch in ga_service.search_stream(customer_id=cid, query=q):
            for row in batch.results:
                camp_id = str(getattr(row.campaign, "id", "") or "").strip()
                if not camp_id:
                    continue
                status_name = _enum_name(getattr(row.campaign, "status", None))
                out.append(
                    Campaign(
                        platform="google",
                        platform_campaign_id=camp_id,
                        name=str(getattr(row.campaign, "name", "") or camp_id),
                        status=_STATUS.get(status_name, CampaignStatus.UNKNOWN),
                        budget=_cost_micros_to_currency(getattr(row.campaign_budget, "amount_micros", 0)),
                        account_id=cid,
                        raw_data={
                            "status": status_name,
                            "channel": _enum_name(getattr(row.campaign, "advertising_channel_type", None)),
                        },
                    )
                )
        return out

    async def list_campaigns(self) -> list[Campaign]:
        return await self._run(self._list_campaigns_sync)

    def _campaign_status_sync(self, client: Any, cid: str, campaign_id: str) -> str:
        row = self._query_single(
            client, cid, f"SELECT campaign.status FROM campaign WHERE campaign.id = {campaign_id}"
        )
        if row is None:
            raise parse_platform_error("google", status_code=404, message=f"Campaign not found: {campaign_id}")
        return _enum_name(getattr(row.campaign, "status", None))

    async def get_campaign_status(self, campaign_id: str) -> str:
        campaign_id = _normalize_customer_id(campaign_id)

        def _get() -> str:
            cid = self._customer_id()
            name = self._campaign_status_sync(self._google_client(), cid, campaign_id)
            return _STATUS.get(name, CampaignStatus.UNKNOWN)

        return await self._run(_get)

    def _set_status_sync(self, campaign_id: str, active: bool) -> dict[str, Any]:
        cid = self._customer_id()
        client = self._google_client()
        new_status_name = "ENABLED" if active else "PAUSED"
        before_status = self._campaign_status_sync(client, cid, campaign_id)
        if before_status == new_status_name:
            raise ConflictError(
                f"Campaign {campaign_id} is already {new_status_name}", platform="google"
            )

        svc = client.get_service("CampaignService")
        op = client.get_type("CampaignOperation")
        op.update.resource_name = f"customers/{cid}/campaigns/{campaign_id}"
        op.update.status = getattr(client.enums.CampaignStatusEnum, new_status_name)
        op.update_mask.paths.extend(["status"])
        resp = svc.mutate_campaigns(customer_id=cid, operations=[op])
        resource_name = (
            resp.results[0].resource_name
            if resp.results
            else f"customers/{cid}/campaigns/{campaign_id}"
        )
        logger.info("[google] campaign {} {} -> {}", campaign_id, before_status, new_status_name)
        return {
            "campaign_id": campaign_id,
            "before": {"status": before_status},
            "after": {"status": new_status_name},
            "resource_name": resource_name,
        }

    async def set_campaign_status(self, campaign_id: str, active: bool) -> dict[str, Any]:
        return await self._run(self._set_status_sync, _normalize_customer_id(campaign_id), active)

    def _set_budget_sync(self, campaign_id: str, budget: float) -> dict[str, Any]:
        cid = self._customer_id()
        client = self._google_client()
        new_amount_micros = int(round(budget * 1_000_000))

        row = self._query_single(
            client,
            cid,
            f"SELECT campaign.campaign_budget, campaign_budget.amount_micros "
            f"FROM campaign WHERE campaign.id = {campaign_id}",
        )
        if row is None:
            raise parse_platform_error("google", status_code=404, message=f"Campaign not found: {campaign_id}")
        budget_resource = str(getattr(row.campaign, "campaign_budget", "") or "").strip()
        if not budget_resource:
            raise PlatformError(
                f"No campaign_budget resource for campaign {campaign_id}",
                platform="google",
                code="INVALID_REQUEST",
            )
        before_micros = int(getattr(getattr(row, "campaign_budget", None), "amount_micros", 0) or 0)

        svc = client.get_service("CampaignBudgetService")
        op = client.get_type("CampaignBudgetOperation")
        op.update.resource_name = budget_resource
        op.update.amount_micros = new_amount_micros
        op.update_mask.paths.extend(["amount_micros"])
        svc.mutate_campaign_budgets(customer_id=cid, operations=[op])

        return {
            "campaign_id": campaign_id,
            "before": {"budget": _cost_micros_to_currency(before_micros)},
            "after": {"budget": budget, "amount_micros": new_amount_micros},
            "resource_name": budget_resource,
        }

    async def set_campaign_budget(self, campaign_id: str, budget: float) -> dict[str, Any]:
        value = require_positive_budget(budget)
        return await self._run(self._set_budget_sync, _normalize_customer_id(campaign_id), value)

    # ------------------------------------------------------------------ #
    # metrics                                                              #
    # ------------------------------------------------------------------ #

    def _fetch_metrics_sync(self, date_from: str, date_to: str) -> list[CampaignMetrics]:
        cid = self._customer_id()
        client = self._google_client()
        ga_service = client.get_service("GoogleAdsService")
        q = f"""
        SELECT
          campaign.id,
          segments.date,
          metrics.impressions,
          metrics.clicks,
          metrics.conversions,
          metrics.conversions_value,
          metrics.cost_micros
        FROM campaign
        WHERE segments.date BETWEEN '{date_from}' AND '{date_to}'
        """
        out: list[CampaignMetrics] = []
        for batch in ga_service.search_stream(customer_id=cid, query=q):
            for row in batch.results:
                out.append(
                    google_metrics(
                        {
                            "campaign_id": str(getattr(row.campaign, "id", "") or ""),
                            "date": str(getattr(row.segments, "date", "") or ""),
                            "impressions": getattr(row.metrics, "impressions", 0),
                            "clicks": getattr(row.metrics, "clicks", 0),
                            "conversions": getattr(row.metrics, "conversions", 0),
                            "conversions_value": getattr(row.metrics, "conversions_value", 0),
                            "cost_micros": getattr(row.metrics, "cost_micros", 0),
                        }
                    )
                )
        return out

    async def fetch_metrics_daily(self, date_from: str, date_to: str) -> list[CampaignMetrics]:
        return await self._run(self._fetch_metrics_sync, date_from, date_to)

    async def health_check(self) -> tuple[bool, str | None]:
        if self.ctx.client is None:
            return False, "Google Ads OAuth client is not configured"
        if not self.ctx.client.developer_token:
            return False, "Missing GOOGLE_ADS_DEVELOPER_TOKEN"
        if not self.ctx.tokens.get("refresh_token"):
            return False, "Missing refresh_token on credential"
        if not _normalize_customer_id(self.ctx.setting("customer_id") or self.ctx.credential.get("account_id")):
            return False, "Missing customer_id on credential"
        return True, None
