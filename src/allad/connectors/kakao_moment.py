from __future__ import annotations

from typing import Any
from urllib.parse import urlencode

from allad.connectors.base import (
    ConnectorCapabilities,
    ConnectorContext,
    oauth2_token_request,
    require_client,
)
from allad.errors import PlatformError
from allad.models import AdAccount, Campaign, CampaignMetrics, TokenSet

AUTHORIZE_URL = "https://kauth.kakao.com/oauth/authorize"
TOKEN_URL = "https://kauth.kakao.com/oauth/token"
SCOPES = ("moment:read", "moment:write")


class KakaoMomentConnector:
    """
    Kakao Moment: OAuth connect and token refresh only.

    Campaign access is not wired up; those calls raise UNSUPPORTED so the
    accessor reports it instead of silently doing nothing.
    """

    capabilities = ConnectorCapabilities(oauth=True, token_refresh=True)
    write_scope = "moment:write"

    def __init__(self, ctx: ConnectorContext):
        self.ctx = ctx

    def authorize_url(self, *, redirect_uri: str, state: str) -> str:
        client = require_client(self.ctx)
        params = {
            "client_id": client.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": ",".join(SCOPES),
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
                "client_id": client.client_id,
                "client_secret": client.client_secret,
                "redirect_uri": redirect_uri,
                "code": code,
            },
        )

    async def refresh(self, refresh_token: str) -> TokenSet:
        client = require_client(self.ctx)
        return await oauth2_token_request(
            self.ctx,
            TOKEN_URL,
            {
                "grant_type": "refresh_token",
                "client_id": client.client_id,
                "client_secret": client.client_secret,
                "refresh_token": refresh_token,
            },
        )

    def _unsupported(self, what: str) -> PlatformError:
        return PlatformError(f"Kakao Moment {what} is not supported", platform="kakao", code="UNSUPPORTED")

    async def list_accounts(self) -> list[AdAccount]:
        return []

    async def list_campaigns(self) -> list[Campaign]:
        raise self._unsupported("campaign listing")

    async def get_campaign_status(self, campaign_id: str) -> str:
        raise self._unsupported("campaign status")

    async def set_campaign_status(self, campaign_id: str, active: bool) -> dict[str, Any]:
        raise self._unsupported("campaign status update")

    async def set_campaign_budget(self, campaign_id: str, budget: float) -> dict[str, Any]:
        raise self._unsupported("campaign budget update")

    async def fetch_metrics_daily(self, date_from: str, date_to: str) -> list[CampaignMetrics]:
        raise self._unsupported("metrics")

    async def health_check(self) -> tuple[bool, str | None]:
        if not self.ctx.access_token:
            return False, "Missing access_token on credential"
        return True, None
