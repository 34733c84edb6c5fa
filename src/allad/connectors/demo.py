from __future__ import annotations

import random
from typing import Any
from urllib.parse import urlencode

from allad.connectors.base import ConnectorCapabilities, ConnectorContext, require_positive_budget
from allad.errors import ConflictError
from allad.models import AdAccount, Campaign, CampaignMetrics, CampaignStatus, TokenSet
from allad.util import daterange_inclusive, new_token

# (credential id, campaign id) -> status; shared so toggles survive across connector instances
_STATE: dict[tuple[str, str], str] = {}
_BUDGETS: dict[tuple[str, str], float] = {}


class DemoConnector:
    """
    Generates fake data so web/worker flows can be exercised without vendor apps.

    The consent screen is skipped: `authorize_url` points straight back at the
    callback with a demo code. Metrics are seeded per campaign and day, so the
    same range always yields the same numbers.
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
    write_scope = None

    def __init__(self, ctx: ConnectorContext):
        self.ctx = ctx

    def _key(self, campaign_id: str) -> tuple[str, str]:
        return str(self.ctx.credential.get("id") or "demo"), campaign_id

    def _campaign_ids(self) -> list[str]:
        n = int(self.ctx.config.get("demo_campaigns", 3))
        return [f"demo_{self.ctx.platform}_{i}" for i in range(1, n + 1)]

    def authorize_url(self, *, redirect_uri: str, state: str) -> str:
        return f"{redirect_uri}?{urlencode({'code': 'demo-' + new_token()[:12], 'state': state})}"

    async def exchange_code(self, *, code: str, redirect_uri: str) -> TokenSet:
        return TokenSet(
            access_token=f"demo-access-{new_token()[:16]}",
            refresh_token=f"demo-refresh-{new_token()[:16]}",
            expires_in=3600,
            scope="demo",
        )

    async def refresh(self, refresh_token: str) -> TokenSet:
        return TokenSet(access_token=f"demo-access-{new_token()[:16]}", expires_in=3600, scope="demo")

    async def token_owner(self) -> dict[str, Any]:
        return {"id": f"demo-{self.ctx.platform}-system-user", "name": "Demo system user"}

    async def list_accounts(self) -> list[AdAccount]:
        return [AdAccount(account_id=f"demo-{self.ctx.platform}", name=f"Demo {self.ctx.platform}", currency="KRW")]

    async def list_campaigns(self) -> list[Campaign]:
        out: list[Campaign] = []
        for i, cid in enumerate(self._campaign_ids(), start=1):
            key = self._key(cid)
            out.append(
                Campaign(
                    platform=self.ctx.platform,
                    platform_campaign_id=cid,
                    name=f"Demo campaign {i}",
                    status=_STATE.get(key, CampaignStatus.ACTIVE),
                    budget=_BUDGETS.get(key, 50000.0 * i),
                    account_id=f"demo-{self.ctx.platform}",
                    raw_data={"demo": True},
                )
            )
        return out

    async def get_campaign_status(self, campaign_id: str) -> str:
        return _STATE.get(self._key(campaign_id), CampaignStatus.ACTIVE)

    async def set_campaign_status(self, campaign_id: str, active: bool) -> dict[str, Any]:
        key = self._key(campaign_id)
        before = _STATE.get(key, CampaignStatus.ACTIVE)
        after = CampaignStatus.ACTIVE if active else CampaignStatus.PAUSED
        if before == after:
            raise ConflictError(f"Campaign {campaign_id} is already {after}", platform=self.ctx.platform)
        _STATE[key] = after
        return {"campaign_id": campaign_id, "before": {"status": before}, "after": {"status": after}, "simulated": True}

    async def set_campaign_budget(self, campaign_id: str, budget: float) -> dict[str, Any]:
        value = require_positive_budget(budget)
        _BUDGETS[self._key(campaign_id)] = value
        return {"campaign_id": campaign_id, "after": {"budget": value}, "simulated": True}

    async def fetch_metrics_daily(self, date_from: str, date_to: str) -> list[CampaignMetrics]:
        out: list[CampaignMetrics] = []
        for cid in self._campaign_ids():
            for day in daterange_inclusive(date_from, date_to):
                rnd = random.Random(f"{cid}:{day}")
                cost = round(rnd.uniform(1000, 80000))
                conv = 0.0 if cost > 50000 else float(rnd.choice([0, 1, 2, 3]))
                out.append(
                    CampaignMetrics(
                        date=day,
                        impressions=int(cost * 5),
                        clicks=int(cost / 100),
                        conversions=conv,
                        cost=float(cost),
                        revenue=conv * 30000.0,
                        platform_campaign_id=cid,
                        raw_data={"demo": True},
                    )
                )
        return out

    async def health_check(self) -> tuple[bool, str | None]:
        return True, None
