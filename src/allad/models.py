from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class Platform:
    FACEBOOK = "facebook"
    GOOGLE = "google"
    KAKAO = "kakao"
    NAVER = "naver"
    COUPANG = "coupang"
    AMAZON = "amazon"
    TIKTOK = "tiktok"

    ALL = (FACEBOOK, GOOGLE, KAKAO, NAVER, COUPANG, AMAZON, TIKTOK)


class UserRole:
    MASTER = "master"
    TEAM_MATE = "team_mate"
    VIEWER = "viewer"

    ALL = (MASTER, TEAM_MATE, VIEWER)
    INVITABLE = (TEAM_MATE, VIEWER)


class InvitationStatus:
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    ALL = (PENDING, ACCEPTED, EXPIRED, CANCELLED)


class CampaignStatus:
    ACTIVE = "active"
    PAUSED = "paused"
    REMOVED = "removed"
    UNKNOWN = "unknown"


_PLATFORM_ALIASES = {
    "meta": Platform.FACEBOOK,
    "meta-ads": Platform.FACEBOOK,
    "facebook-ads": Platform.FACEBOOK,
    "google-ads": Platform.GOOGLE,
    "amazon-ads": Platform.AMAZON,
    "tiktok-ads": Platform.TIKTOK,
    "kakao-ads": Platform.KAKAO,
    "naver-searchad": Platform.NAVER,
}


def normalize_platform(raw: str) -> str:
    p = str(raw or "").strip().lower()
    p = _PLATFORM_ALIASES.get(p, p)
    if p not in Platform.ALL:
        raise ValueError(f"Unknown platform: {raw}")
    return p


@dataclass(frozen=True)
class TeamPermissions:
    can_view_all_platforms: bool
    can_manage_campaigns: bool
    can_create_reports: bool
    can_invite_members: bool
    # None means every platform; a tuple restricts to the listed ones.
    platform_access: tuple[str, ...] | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "can_view_all_platforms": self.can_view_all_platforms,
            "can_manage_campaigns": self.can_manage_campaigns,
            "can_create_reports": self.can_create_reports,
            "can_invite_members": self.can_invite_members,
            "platform_access": list(self.platform_access)
            if self.platform_access is not None
            else None,
        }


ROLE_PERMISSIONS: dict[str, TeamPermissions] = {
    UserRole.MASTER: TeamPermissions(
        can_view_all_platforms=True,
        can_manage_campaigns=True,
        can_create_reports=True,
        can_invite_members=True,
        platform_access=None,
    ),
    UserRole.TEAM_MATE: TeamPermissions(
        can_view_all_platforms=True,
        can_manage_campaigns=True,
        can_create_reports=True,
        can_invite_members=True,
        platform_access=None,
    ),
    UserRole.VIEWER: TeamPermissions(
        can_view_all_platforms=False,
        can_manage_campaigns=False,
        can_create_reports=False,
        can_invite_members=False,
        platform_access=(),
    ),
}


@dataclass(frozen=True)
class AdAccount:
    account_id: str
    name: str = ""
    currency: str | None = None
    timezone: str | None = None
    status: str | None = None
    is_manager: bool = False
    login_customer_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Campaign:
    platform: str
    platform_campaign_id: str
    name: str
    status: str
    budget: float | None = None
    account_id: str | None = None
    raw_data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == CampaignStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "platform_campaign_id": self.platform_campaign_id,
            "name": self.name,
            "status": self.status,
            "budget": self.budget,
            "is_active": self.is_active,
            "account_id": self.account_id,
        }


def _ratio(num: float, den: float, scale: float = 1.0) -> float:
    if not den:
        return 0.0
    return num / den * scale


@dataclass(frozen=True)
class CampaignMetrics:
    date: str
    impressions: int = 0
    clicks: int = 0
    conversions: float = 0.0
    cost: float = 0.0
    revenue: float = 0.0
    platform_campaign_id: str = ""
    raw_data: dict[str, Any] = field(default_factory=dict)

    @property
    def ctr(self) -> float:
        return _ratio(self.clicks, self.impressions, 100.0)

    @property
    def cpc(self) -> float:
        return _ratio(self.cost, self.clicks)

    @property
    def cpm(self) -> float:
        return _ratio(self.cost, self.impressions, 1000.0)

    @property
    def roas(self) -> float:
        return _ratio(self.revenue, self.cost)

    @property
    def roi(self) -> float:
        return _ratio(self.revenue - self.cost, self.cost, 100.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "impressions": self.impressions,
            "clicks": self.clicks,
            "conversions": self.conversions,
            "cost": self.cost,
            "revenue": self.revenue,
            "ctr": self.ctr,
            "cpc": self.cpc,
            "cpm": self.cpm,
            "roas": self.roas,
            "roi": self.roi,
        }


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    token_type: str = "Bearer"
    scope: str | None = None
    refresh_expires_in: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)
