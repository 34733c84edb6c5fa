from __future__ import annotations

from typing import Any

from allad.connectors.base import ConnectorCapabilities, ConnectorContext
from allad.errors import PlatformError
from allad.models import AdAccount, Campaign, CampaignMetrics, TokenSet


class CoupangConnector:
    """
    Coupang Ads has no public advertiser API.

    Campaigns and daily numbers are entered by hand and live only in our
    database; sync is a no-op and vendor writes are unsupported.
    """

    capabilities = ConnectorCapabilities()
    write_scope = None
    manual = True

    def __init__(self, ctx: ConnectorContext):
        self.ctx = ctx

    def _unsupported(self, what: str) -> PlatformError:
        return PlatformError(f"Coupang {what} is not supported", platform="coupang", code="UNSUPPORTED")

    def authorize_url(self, *, redirect_uri: str, state: str) -> str:
        raise self._unsupported("OAuth")

    async def exchange_code(self, *, code: str, redirect_uri: str) -> TokenSet:
        raise self._unsupported("OAuth")

    async def refresh(self, refresh_token: str) -> TokenSet:
        raise self._unsupported("token refresh")

    async def list_accounts(self) -> list[AdAccount]:
        return []

    async def list_campaigns(self) -> list[Campaign]:
        return []

    async def get_campaign_status(self, campaign_id: str) -> str:
        raise self._unsupported("campaign status")

    async def set_campaign_status(self, campaign_id: str, active: bool) -> dict[str, Any]:
        raise self._unsupported("campaign status update")

    async def set_campaign_budget(self, campaign_id: str, budget: float) -> dict[str, Any]:
        raise self._unsupported("campaign budget update")

    async def fetch_metrics_daily(self, date_from: str, date_to: str) -> list[CampaignMetrics]:
        return []

    async def health_check(self) -> tuple[bool, str | None]:
        return True, None
