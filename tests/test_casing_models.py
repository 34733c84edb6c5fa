from __future__ import annotations

import pytest

from allad.casing import to_camel_case, to_snake_case
from allad.models import ROLE_PERMISSIONS, CampaignMetrics, UserRole, normalize_platform


def test_to_camel_case_nested():
    row = {
        "campaign_id": "c1",
        "platform_access": ["google"],
        "daily": [{"cost_micros": 1, "is_active": True}],
        "meta": None,
    }
    assert to_camel_case(row) == {
        "campaignId": "c1",
        "platformAccess": ["google"],
        "daily": [{"costMicros": 1, "isActive": True}],
        "meta": None,
    }


def test_to_snake_case_leaves_values_alone():
    body = {"fullName": "Kim", "customerId": "123-456", "tags": ("aB", "cD")}
    assert to_snake_case(body) == {"full_name": "Kim", "customer_id": "123-456", "tags": ["aB", "cD"]}


def test_case_conversion_non_dict_passthrough():
    assert to_camel_case(None) is None
    assert to_snake_case("someValue") == "someValue"
    assert to_camel_case(5) == 5


def test_role_permissions_table():
    master = ROLE_PERMISSIONS[UserRole.MASTER]
    mate = ROLE_PERMISSIONS[UserRole.TEAM_MATE]
    viewer = ROLE_PERMISSIONS[UserRole.VIEWER]

    assert master.can_manage_campaigns and master.can_invite_members and master.can_view_all_platforms
    assert mate.can_manage_campaigns and mate.can_invite_members
    assert not viewer.can_manage_campaigns
    assert not viewer.can_invite_members
    assert not viewer.can_view_all_platforms
    assert viewer.to_dict()["platform_access"] == []
    assert master.to_dict()["platform_access"] is None


@pytest.mark.parametrize(
    "raw,expected",
    [("meta", "facebook"), ("Google-Ads", "google"), ("tiktok", "tiktok"), (" naver ", "naver")],
)
def test_normalize_platform(raw, expected):
    assert normalize_platform(raw) == expected


def test_normalize_platform_unknown():
    with pytest.raises(ValueError):
        normalize_platform("myspace")


def test_campaign_metrics_derived_values():
    m = CampaignMetrics(date="2026-01-01", impressions=2000, clicks=50, conversions=2, cost=10000, revenue=30000)
    assert m.ctr == pytest.approx(2.5)
    assert m.cpc == pytest.approx(200)
    assert m.cpm == pytest.approx(5000)
    assert m.roas == pytest.approx(3.0)
    assert m.roi == pytest.approx(200.0)


def test_campaign_metrics_zero_denominators():
    m = CampaignMetrics(date="2026-01-01")
    assert (m.ctr, m.cpc, m.cpm, m.roas, m.roi) == (0.0, 0.0, 0.0, 0.0, 0.0)


def test_documented_example_and_round_trip():
    row = {"team_id": "t1", "platform_campaign_id": "c1", "is_active": True, "raw_data": {"click_count": 3}}
    camel = to_camel_case(row)
    assert camel == {"teamId": "t1", "platformCampaignId": "c1", "isActive": True, "rawData": {"clickCount": 3}}
    assert to_camel_case(camel) == camel
    assert to_camel_case(to_snake_case(camel)) == camel
