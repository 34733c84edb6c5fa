from __future__ import annotations

from collections import defaultdict
from datetime import date
from typing import Any, Callable

import httpx
from loguru import logger

from allad.config import Settings
from allad.connectors.base import has_scope, require_positive_budget
from allad.errors import (
    AllAdError,
    ConflictError,
    NotFoundError,
    PlatformConnectionError,
    PlatformPermissionError,
    ValidationError,
)
from allad.metrics import aggregate_metrics, coupang_metrics, metrics_from_row
from allad.models import Campaign, CampaignMetrics, CampaignStatus, Platform
from allad.registry import build_connector
from allad.repo import Repo
from allad.teams import TeamService, can_access_platform, visible_platforms
from allad.util import days_back, new_id


class CampaignService:
    """
    Campaign access across platforms for one team.

    Vendor-facing calls take a decoded platform_credentials row; the
    user-facing wrappers resolve the caller's membership first and apply the
    role table (mutations need can_manage_campaigns, viewers only see the
    platforms they were given).
    """

    def __init__(
        self,
        settings: Settings,
        repo: Repo,
        *,
        connector_factory: Callable[..., Any] = build_connector,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self.repo = repo
        self.teams = TeamService(settings, repo)
        self.connector_factory = connector_factory
        self.transport = transport

    def connector_for(self, credential: dict[str, Any]):
        return self.connector_factory(
            str(credential["platform"]),
            self.settings,
            credential=credential,
            transport=self.transport,
        )

    # ------------------------------------------------------------------ #
    # vendor-facing                                                        #
    # ------------------------------------------------------------------ #

    async def list_campaigns(self, credential: dict[str, Any]) -> list[Campaign]:
        return await self.connector_for(credential).list_campaigns()

    def _require_write_scope(self, connector: Any, credential: dict[str, Any]) -> None:
        scope = getattr(connector, "write_scope", None)
        if not has_scope(connector.ctx, scope):
            raise PlatformPermissionError(
                f"credential {credential['id']} lacks scope {scope}",
                platform=str(credential["platform"]),
            )

    async def set_campaign_status(
        self, credential: dict[str, Any], campaign_id: str, active: bool
    ) -> dict[str, Any]:
        connector = self.connector_for(credential)
        self._require_write_scope(connector, credential)
        result = await connector.set_campaign_status(campaign_id, active)

        row = self.repo.get_campaign_by_platform_id(
            team_id=str(credential["team_id"]),
            platform=str(credential["platform"]),
            platform_campaign_id=campaign_id,
        )
        if row is not None:
            self.repo.update_campaign_state(
                str(row["id"]),
                status=CampaignStatus.ACTIVE if active else CampaignStatus.PAUSED,
                is_active=active,
            )
        logger.info(
            "[campaign] {} {} -> {}",
            credential["platform"],
            campaign_id,
            CampaignStatus.ACTIVE if active else CampaignStatus.PAUSED,
        )
        return result

    async def set_campaign_budget(
        self, credential: dict[str, Any], campaign_id: str, budget: Any
    ) -> dict[str, Any]:
        value = require_positive_budget(budget)
        connector = self.connector_for(credential)
        self._require_write_scope(connector, credential)
        result = await connector.set_campaign_budget(campaign_id, value)

        row = self.repo.get_campaign_by_platform_id(
            team_id=str(credential["team_id"]),
            platform=str(credential["platform"]),
            platform_campaign_id=campaign_id,
        )
        if row is not None:
            self.repo.update_campaign_budget(str(row["id"]), value)
        logger.info("[campaign] {} {} budget -> {}", credential["platform"], campaign_id, value)
        return result

    async def sync_credential(
        self, credential: dict[str, Any], *, date_from: str | None = None, date_to: str | None = None
    ) -> dict[str, int]:
        """Mirror campaigns and daily metrics of one credential into the database."""
        if date_from is None or date_to is None:
            date_from, date_to = days_back(self.settings.timezone, self.settings.sync_lookback_days)
        cred_id = str(credential["id"])
        team_id = str(credential["team_id"])
        platform = str(credential["platform"])
        connector = self.connector_for(credential)
        if not connector.capabilities.read_campaigns:
            return {"campaigns": 0, "metrics": 0}
        try:
            campaigns = await connector.list_campaigns()
            metrics = await connector.fetch_metrics_daily(date_from, date_to)
        except AllAdError as e:
            self.repo.set_credential_error(cred_id, str(e))
            logger.warning("[sync] credential {} failed: {}", cred_id, e)
            raise
        except httpx.HTTPError as e:
            self.repo.set_credential_error(cred_id, str(e))
            logger.warning("[sync] credential {} failed: {}", cred_id, e)
            raise PlatformConnectionError(f"sync request failed: {e}", platform=platform) from e

        ids: dict[str, str] = {}
        for c in campaigns:
            ids[c.platform_campaign_id] = self.repo.upsert_campaign(
                team_id=team_id,
                platform=platform,
                platform_campaign_id=c.platform_campaign_id,
                name=c.name,
                status=c.status,
                budget=c.budget,
                is_active=c.is_active,
                account_id=c.account_id or credential.get("account_id"),
                platform_credential_id=cred_id,
                raw_data=c.raw_data,
            )

        stored = 0
        for m in metrics:
            campaign_row_id = ids.get(m.platform_campaign_id)
            if campaign_row_id is None:
                # metrics for a campaign the list call did not return (removed, other account)
                row = self.repo.get_campaign_by_platform_id(
                    team_id=team_id, platform=platform, platform_campaign_id=m.platform_campaign_id
                )
                if row is None:
                    continue
                campaign_row_id = str(row["id"])
            self._store_metric(campaign_row_id, m)
            stored += 1

        self.repo.mark_credential_synced(cred_id)
        logger.info("[sync] {} {}: campaigns={} metrics={}", platform, cred_id, len(ids), stored)
        return {"campaigns": len(ids), "metrics": stored}

    def _store_metric(self, campaign_row_id: str, m: CampaignMetrics) -> None:
        self.repo.upsert_campaign_metric(
            campaign_id=campaign_row_id,
            day=m.date,
            impressions=m.impressions,
            clicks=m.clicks,
            conversions=m.conversions,
            cost=m.cost,
            revenue=m.revenue,
            raw_data=m.raw_data,
        )

    # ------------------------------------------------------------------ #
    # user-facing                                                          #
    # ------------------------------------------------------------------ #

    def _campaign_for(self, member: dict[str, Any], campaign_id: str) -> dict[str, Any]:
        row = self.repo.get_campaign(campaign_id)
        if (
            row is None
            or row["team_id"] != member["team_id"]
            or not can_access_platform(member, str(row["platform"]))
        ):
            raise NotFoundError(f"campaign not found: {campaign_id}", user_message="캠페인을 찾을 수 없습니다.")
        return row

    def _credential_for(self, campaign: dict[str, Any]) -> dict[str, Any]:
        cred_id = campaign.get("platform_credential_id")
        cred = self.repo.get_credential(str(cred_id)) if cred_id else None
        if cred is None or not cred["is_active"]:
            raise ValidationError(
                f"campaign {campaign['id']} has no active credential",
                user_message="연동된 계정이 없습니다. 플랫폼을 다시 연결해주세요.",
            )
        return cred

    def team_campaigns(self, user_id: str, *, platform: str | None = None) -> list[dict[str, Any]]:
        member = self.teams.membership(user_id)
        allowed = visible_platforms(member)
        if platform:
            allowed = [platform] if allowed is None or platform in allowed else []
        return self.repo.list_campaigns(team_id=str(member["team_id"]), platforms=allowed)

    async def change_status(self, user_id: str, campaign_id: str, active: bool) -> dict[str, Any]:
        member = self.teams.require_permission(user_id, "can_manage_campaigns")
        campaign = self._campaign_for(member, campaign_id)
        if campaign["platform"] == Platform.COUPANG:
            return self._set_manual_status(campaign, active)
        return await self.set_campaign_status(
            self._credential_for(campaign), str(campaign["platform_campaign_id"]), active
        )

    async def change_budget(self, user_id: str, campaign_id: str, budget: Any) -> dict[str, Any]:
        member = self.teams.require_permission(user_id, "can_manage_campaigns")
        value = require_positive_budget(budget)
        campaign = self._campaign_for(member, campaign_id)
        if campaign["platform"] == Platform.COUPANG:
            self.repo.update_campaign_budget(str(campaign["id"]), value)
            return {"campaign_id": campaign["platform_campaign_id"], "after": {"budget": value}}
        return await self.set_campaign_budget(
            self._credential_for(campaign), str(campaign["platform_campaign_id"]), value
        )

    def _set_manual_status(self, campaign: dict[str, Any], active: bool) -> dict[str, Any]:
        before = str(campaign.get("status") or CampaignStatus.UNKNOWN)
        after = CampaignStatus.ACTIVE if active else CampaignStatus.PAUSED
        if before == after:
            raise ConflictError(f"Campaign {campaign['id']} is already {after}", platform=Platform.COUPANG)
        self.repo.update_campaign_state(str(campaign["id"]), status=after, is_active=active)
        return {
            "campaign_id": campaign["platform_campaign_id"],
            "before": {"status": before},
            "after": {"status": after},
        }

    async def sync_team(self, user_id: str) -> dict[str, Any]:
        member = self.teams.require_permission(user_id, "can_manage_campaigns")
        report: dict[str, Any] = {"synced": 0, "failed": 0, "errors": []}
        for cred in self.repo.list_credentials(team_id=str(member["team_id"]), active_only=True):
            try:
                await self.sync_credential(cred)
                report["synced"] += 1
            except AllAdError as e:
                report["failed"] += 1
                report["errors"].append({"credential_id": cred["id"], "error": e.user_message})
        return report

    def campaign_metrics(self, user_id: str, campaign_id: str, *, date_from: str, date_to: str) -> dict[str, Any]:
        member = self.teams.membership(user_id)
        campaign = self._campaign_for(member, campaign_id)
        daily = [metrics_from_row(r) for r in self.repo.list_campaign_metrics(
            str(campaign["id"]), date_from=date_from, date_to=date_to
        )]
        return {
            "campaign": campaign,
            "total": aggregate_metrics(daily).to_dict(),
            "daily": [m.to_dict() for m in daily],
        }

    # ------------------------------------------------------------------ #
    # coupang (manual entry)                                               #
    # ------------------------------------------------------------------ #

    def create_manual_campaign(
        self, user_id: str, *, name: str, budget: Any = None, active: bool = True
    ) -> dict[str, Any]:
        member = self.teams.require_permission(user_id, "can_manage_campaigns")
        name = str(name or "").strip()
        if not name:
            raise ValidationError("campaign name is required", user_message="캠페인 이름을 입력해주세요.")
        value = require_positive_budget(budget) if budget not in (None, "") else None
        campaign_id = self.repo.upsert_campaign(
            team_id=str(member["team_id"]),
            platform=Platform.COUPANG,
            platform_campaign_id=new_id("cpg"),
            name=name,
            status=CampaignStatus.ACTIVE if active else CampaignStatus.PAUSED,
            budget=value,
            is_active=active,
            account_id="manual",
            raw_data={"manual": True},
        )
        row = self.repo.get_campaign(campaign_id)
        if row is None:
            raise NotFoundError(f"campaign not found: {campaign_id}", user_message="캠페인을 찾을 수 없습니다.")
        return row

    def add_manual_metrics(self, user_id: str, campaign_id: str, rows: list[dict[str, Any]]) -> int:
        """Store a batch of daily rows; nothing is written unless every row is valid."""
        member = self.teams.require_permission(user_id, "can_manage_campaigns")
        campaign = self._campaign_for(member, campaign_id)
        if campaign["platform"] != Platform.COUPANG:
            raise ValidationError("manual metrics are only accepted for coupang campaigns")
        batch: list[CampaignMetrics] = []
        for raw in rows:
            m = coupang_metrics(raw)
            try:
                date.fromisoformat(m.date)
            except ValueError:
                raise ValidationError(f"invalid date: {m.date!r}", user_message="날짜 형식은 YYYY-MM-DD 입니다.") from None
            if min(m.impressions, m.clicks, m.conversions, m.cost, m.revenue) < 0:
                raise ValidationError(
                    f"negative metric value on {m.date}", user_message="지표 값은 0 이상이어야 합니다."
                )
            batch.append(m)
        self.repo.upsert_campaign_metrics(
            str(campaign["id"]),
            [
                {
                    "day": m.date,
                    "impressions": m.impressions,
                    "clicks": m.clicks,
                    "conversions": m.conversions,
                    "cost": m.cost,
                    "revenue": m.revenue,
                    "raw_data": m.raw_data,
                }
                for m in batch
            ],
        )
        return len(batch)

    # ------------------------------------------------------------------ #
    # analytics                                                            #
    # ------------------------------------------------------------------ #

    def analytics(self, user_id: str, *, date_from: str, date_to: str) -> dict[str, Any]:
        """Totals, per-platform, per-day and per-day-per-platform aggregates over the caller's visible platforms."""
        member = self.teams.membership(user_id)
        rows = self.repo.list_team_metrics(
            team_id=str(member["team_id"]),
            date_from=date_from,
            date_to=date_to,
            platforms=visible_platforms(member),
        )
        by_platform: dict[str, list[CampaignMetrics]] = defaultdict(list)
        by_day: dict[str, list[CampaignMetrics]] = defaultdict(list)
        by_day_platform: dict[tuple[str, str], list[CampaignMetrics]] = defaultdict(list)
        for r in rows:
            m = metrics_from_row(r)
            by_platform[str(r["platform"])].append(m)
            by_day[m.date].append(m)
            by_day_platform[(m.date, str(r["platform"]))].append(m)
        every = [m for items in by_platform.values() for m in items]
        return {
            "date_from": date_from,
            "date_to": date_to,
            "total": aggregate_metrics(every).to_dict(),
            "by_platform": {p: aggregate_metrics(items).to_dict() for p, items in sorted(by_platform.items())},
            "daily": [aggregate_metrics(by_day[d], date=d).to_dict() for d in sorted(by_day)],
            "rows": [
                {"platform": p, **aggregate_metrics(items, date=d).to_dict()}
                for (d, p), items in sorted(by_day_platform.items())
            ],
        }
