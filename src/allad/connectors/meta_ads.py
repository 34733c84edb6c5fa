from __future__ import annotations

import hashlib
import hmac
import json
import re
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
    PlatformConnectionError,
    PlatformError,
    ValidationError,
    parse_platform_error,
)
from allad.metrics import META_PURCHASE_ACTIONS, meta_metrics
from allad.models import AdAccount, Campaign, CampaignMetrics, CampaignStatus, TokenSet

GRAPH_BASE_URL = "https://graph.facebook.com"
DIALOG_BASE_URL = "https://www.facebook.com"
DEFAULT_GRAPH_VERSION = "v23.0"
SCOPES = ("ads_management", "ads_read", "business_management")

_STATUS = {
    "ACTIVE": CampaignStatus.ACTIVE,
    "PAUSED": CampaignStatus.PAUSED,
    "DELETED": CampaignStatus.REMOVED,
    "ARCHIVED": CampaignStatus.REMOVED,
}


class MetaAdsConnector:
    """
    Meta Ads connector (Graph / Marketing API).

    Two token kinds are stored:
    - user tokens: short-lived from the OAuth dialog, swapped for a ~60 day
      long-lived token right after the code exchange, renewable by exchanging
      again while still valid (Meta has no refresh tokens);
    - system user tokens (Business Manager): never expire, nothing to refresh.

    Budgets come back in the account currency's minor unit (cents), hence
    `budget_offset`.
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
    write_scope = "ads_management"

    def __init__(self, ctx: ConnectorContext):
        self.ctx = ctx

    def _graph_version(self) -> str:
        v = str(self.ctx.config.get("graph_version") or "").strip()
        return v if v else DEFAULT_GRAPH_VERSION

    def _graph_url(self, path: str) -> str:
        base = str(self.ctx.config.get("graph_base_url") or GRAPH_BASE_URL).rstrip("/")
        return f"{base}/{self._graph_version()}/{path.lstrip('/')}"

    def _account_id(self) -> str:
        raw = str(self.ctx.setting("ad_account_id") or self.ctx.credential.get("account_id") or "").strip()
        raw = raw.removeprefix("act_").strip()
        # keep digits only (UI sometimes includes separators)
        return re.sub(r"\D+", "", raw)

    def _budget_offset(self) -> int:
        try:
            return int(self.ctx.setting("budget_offset", 100))
        except (TypeError, ValueError):
            return 100

    def _appsecret_proof(self, token: str) -> str | None:
        # https://developers.facebook.com/docs/graph-api/securing-requests/
        if self.ctx.client is None or not token:
            return None
        return hmac.new(
            self.ctx.client.client_secret.encode("utf-8", errors="strict"),
            token.encode("utf-8", errors="strict"),
            hashlib.sha256,
        ).hexdigest()

    def _auth_params(self, token: str | None = None) -> dict[str, Any]:
        token = token if token is not None else self.ctx.access_token
        if not token:
            raise ValidationError("Missing Meta access_token on credential")
        p: dict[str, Any] = {"access_token": token}
        proof = self._appsecret_proof(token)
        if proof:
            p["appsecret_proof"] = proof
        return p

    @staticmethod
    def _raise_for_graph_error(r: httpx.Response, obj: Any) -> None:
        if isinstance(obj, dict) and obj.get("error"):
            err = obj.get("error") or {}
            msg = str(err.get("message") or "unknown error")
            code = err.get("code")
            raise parse_platform_error(
                "facebook",
                status_code=r.status_code,
                error_code=code,
                message=f"Meta Graph API error: {msg} (code={code})",
            )
        if r.status_code // 100 != 2:
            raise parse_platform_error("facebook", status_code=r.status_code, message=r.text[:500])

    async def _graph(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        token: str | None = None,
    ) -> dict[str, Any]:
        p = dict(params or {})
        p.update(self._auth_params(token))
        try:
            async with self.ctx.http() as client:
                if method == "GET":
                    r = await client.get(self._graph_url(path), params=p)
                else:
                    r = await client.post(self._graph_url(path), params=p, data=data or {})
        except httpx.HTTPError as e:
            raise PlatformConnectionError(f"Meta Graph API request failed: {e}", platform="facebook") from e
        try:
            obj = r.json()
        except ValueError as e:
            raise PlatformError(
                f"Meta Graph API non-JSON response: {r.status_code}", platform="facebook"
            ) from e
        self._raise_for_graph_error(r, obj)
        return obj if isinstance(obj, dict) else {}

    async def _iter_graph_data(self, *, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Return the full data list of a Graph API collection endpoint, following cursor pagination."""
        p = dict(params)
        p.update(self._auth_params())

        url: str | None = self._graph_url(path)
        out: list[dict[str, Any]] = []
        async with self.ctx.http() as client:
            next_params: dict[str, Any] | None = p
            while url:
                try:
                    r = await client.get(url, params=next_params)
                except httpx.HTTPError as e:
                    raise PlatformConnectionError(
                        f"Meta Graph API request failed: {e}", platform="facebook"
                    ) from e
                try:
                    obj = r.json()
                except ValueError as e:
                    raise PlatformError(
                        f"Meta Graph API non-JSON response: {r.status_code}", platform="facebook"
                    ) from e
                self._raise_for_graph_error(r, obj)
                data = obj.get("data") if isinstance(obj, dict) else None
                if isinstance(data, list):
                    out.extend(it for it in data if isinstance(it, dict))
                paging = obj.get("paging") if isinstance(obj, dict) else None
                next_url = paging.get("next") if isinstance(paging, dict) else None
                url = str(next_url) if next_url else None
                next_params = None  # next URL already includes query params.
        return out

    # ------------------------------------------------------------------ #
    # OAuth                                                                #
    # ------------------------------------------------------------------ #

    def authorize_url(self, *, redirect_uri: str, state: str) -> str:
        client = require_client(self.ctx)
        params = {
            "client_id": client.client_id,
            "redirect_uri": redirect_uri,
            "state": state,
            "scope": ",".join(SCOPES),
            "response_type": "code",
        }
        return f"{DIALOG_BASE_URL}/{self._graph_version()}/dialog/oauth?{urlencode(params)}"

    async def _token_call(self, params: dict[str, Any]) -> dict[str, Any]:
        try:
            async with self.ctx.http() as client:
                r = await client.get(self._graph_url("oauth/access_token"), params=params)
        except httpx.HTTPError as e:
            raise PlatformConnectionError(f"Meta token request failed: {e}", platform="facebook") from e
        try:
            body = r.json()
        except ValueError:
            body = {}
        if r.status_code // 100 != 2 or not body.get("access_token"):
            err = body.get("error") if isinstance(body.get("error"), dict) else {}
            msg = str(err.get("message") or r.text[:300])
            # 100 with OAuthException = bad/used code or redirect_uri mismatch
            if "redirect_uri" in msg:
                raise OAuthError("redirect_uri_mismatch", msg)
            raise OAuthError("invalid_grant", f"Meta token exchange failed: {msg}")
        return body

    async def exchange_code(self, *, code: str, redirect_uri: str) -> TokenSet:
        client = require_client(self.ctx)
        short = await self._token_call(
            {
                "client_id": client.client_id,
                "client_secret": client.client_secret,
                "redirect_uri": redirect_uri,
                "code": code,
            }
        )
        return await self.refresh(str(short["access_token"]))

    async def refresh(self, refresh_token: str) -> TokenSet:
        """Exchange a still-valid user token for a fresh long-lived one."""
        client = require_client(self.ctx)
        body = await self._token_call(
            {
                "grant_type": "fb_exchange_token",
                "client_id": client.client_id,
                "client_secret": client.client_secret,
                "fb_exchange_token": refresh_token,
            }
        )
        tokens = token_set_from_body(body)
        # Meta tokens double as their own refresh credential.
        return TokenSet(
            access_token=tokens.access_token,
            refresh_token=tokens.access_token,
            expires_in=tokens.expires_in,
            token_type=tokens.token_type,
            scope=tokens.scope or " ".join(SCOPES),
            extra=tokens.extra,
        )

    # ------------------------------------------------------------------ #
    # accounts / campaigns                                                 #
    # ------------------------------------------------------------------ #

    async def token_owner(self) -> dict[str, Any]:
        """`/me` for the stored token; fails with the mapped Graph error when the token is unusable."""
        me = await self._graph("GET", "me", params={"fields": "id,name"})
        if not me.get("id"):
            raise PlatformError("Meta /me returned no id", platform="facebook")
        return me

    async def list_accounts(self) -> list[AdAccount]:
        rows = await self._iter_graph_data(
            path="me/adaccounts",
            params={"fields": "id,account_id,name,currency,timezone_name,account_status", "limit": 100},
        )
        out: list[AdAccount] = []
        for it in rows:
            acc_id = str(it.get("account_id") or str(it.get("id") or "").removeprefix("act_"))
            if not acc_id:
                continue
            out.append(
                AdAccount(
                    account_id=acc_id,
                    name=str(it.get("name") or acc_id),
                    currency=it.get("currency"),
                    timezone=it.get("timezone_name"),
                    status=str(it.get("account_status") or "") or None,
                    raw=it,
                )
            )
        return out

    def _budget_from_minor(self, raw: Any) -> float | None:
        if raw in (None, "", "0"):
            return None
        try:
            return float(raw) / self._budget_offset()
        except (TypeError, ValueError):
            return None

    async def list_campaigns(self) -> list[Campaign]:
        account_id = self._account_id()
        if not account_id:
            raise ValidationError("Missing Meta ad_account_id on credential")
        rows = await self._iter_graph_data(
            path=f"act_{account_id}/campaigns",
            params={
                "fields": "id,name,status,effective_status,objective,daily_budget,lifetime_budget",
                "limit": 500,
            },
        )
        out: list[Campaign] = []
        for it in rows:
            camp_id = str(it.get("id") or "").strip()
            if not camp_id:
                continue
            status_raw = str(it.get("status") or "").upper()
            budget = self._budget_from_minor(it.get("daily_budget"))
            if budget is None:
                budget = self._budget_from_minor(it.get("lifetime_budget"))
            out.append(
                Campaign(
                    platform="facebook",
                    platform_campaign_id=camp_id,
                    name=str(it.get("name") or camp_id),
                    status=_STATUS.get(status_raw, CampaignStatus.UNKNOWN),
                    budget=budget,
                    account_id=account_id,
                    raw_data=it,
                )
            )
        return out

    async def get_campaign_status(self, campaign_id: str) -> str:
        obj = await self._graph("GET", campaign_id, params={"fields": "status"})
        return _STATUS.get(str(obj.get("status") or "").upper(), CampaignStatus.UNKNOWN)

    async def set_campaign_status(self, campaign_id: str, active: bool) -> dict[str, Any]:
        before = await self._graph("GET", campaign_id, params={"fields": "status"})
        before_status = str(before.get("status") or "").upper()
        new_status = "ACTIVE" if active else "PAUSED"
        if before_status == new_status:
            raise ConflictError(f"Campaign {campaign_id} is already {new_status}", platform="facebook")
        await self._graph("POST", campaign_id, data={"status": new_status})
        logger.info("[meta] campaign {} {} -> {}", campaign_id, before_status, new_status)
        return {
            "campaign_id": campaign_id,
            "before": {"status": before_status},
            "after": {"status": new_status},
        }

    async def set_campaign_budget(self, campaign_id: str, budget: float) -> dict[str, Any]:
        value = require_positive_budget(budget)
        before = await self._graph("GET", campaign_id, params={"fields": "daily_budget"})
        minor = int(round(value * self._budget_offset()))
        await self._graph("POST", campaign_id, data={"daily_budget": str(minor)})
        return {
            "campaign_id": campaign_id,
            "before": {"budget": self._budget_from_minor(before.get("daily_budget"))},
            "after": {"budget": value, "daily_budget": minor},
        }

    # ------------------------------------------------------------------ #
    # metrics                                                              #
    # ------------------------------------------------------------------ #

    def _purchase_action_types(self) -> list[str]:
        raw = self.ctx.setting("conversion_action_types")
        if isinstance(raw, list):
            lst = [str(x).strip() for x in raw if str(x).strip()]
        elif isinstance(raw, str) and raw.strip():
            lst = [s.strip() for s in raw.split(",") if s.strip()]
        else:
            lst = list(META_PURCHASE_ACTIONS)
        out: list[str] = []
        for x in lst:
            if x not in out:
                out.append(x)
        return out

    async def fetch_metrics_daily(self, date_from: str, date_to: str) -> list[CampaignMetrics]:
        account_id = self._account_id()
        if not account_id:
            raise ValidationError("Missing Meta ad_account_id on credential")
        rows = await self._iter_graph_data(
            path=f"act_{account_id}/insights",
            params={
                "level": "campaign",
                "time_increment": 1,
                "time_range": json.dumps({"since": date_from, "until": date_to}),
                "fields": "campaign_id,date_start,spend,impressions,clicks,actions,action_values",
                "limit": 500,
            },
        )
        actions = self._purchase_action_types()
        return [meta_metrics(r, actions) for r in rows if r.get("campaign_id")]

    async def health_check(self) -> tuple[bool, str | None]:
        if not self.ctx.access_token:
            return False, "Missing access_token on credential"
        if not self._account_id():
            return False, "Missing ad_account_id on credential"
        return True, None
