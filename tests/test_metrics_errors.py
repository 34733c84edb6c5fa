from __future__ import annotations

import pytest

from allad.errors import (
    AccessTierError,
    ConflictError,
    PlatformAuthError,
    PlatformConnectionError,
    PlatformError,
    PlatformPermissionError,
    RateLimitError,
    TokenExpiredError,
    parse_platform_error,
)
from allad.metrics import aggregate_metrics, transform_platform_metrics


def test_google_metrics_converts_micros():
    m = transform_platform_metrics(
        "google",
        {
            "date": "2026-03-01",
            "campaign_id": "111",
            "impressions": "1000",
            "clicks": 20,
            "conversions": 1.5,
            "cost_micros": 12_500_000,
            "conversions_value": 40000,
        },
    )
    assert m.cost == pytest.approx(12.5)
    assert m.conversions == pytest.approx(1.5)
    assert m.revenue == pytest.approx(40000)
    assert m.platform_campaign_id == "111"


def test_meta_metrics_takes_first_purchase_action_only():
    m = transform_platform_metrics(
        "facebook",
        {
            "date_start": "2026-03-01",
            "campaign_id": "act_c",
            "impressions": "500",
            "clicks": "12",
            "spend": "3,000",
            "actions": [
                {"action_type": "omni_purchase", "value": "3"},
                {"action_type": "purchase", "value": "3"},
                {"action_type": "link_click", "value": "12"},
            ],
            "action_values": [{"action_type": "purchase", "value": "90000"}],
        },
    )
    assert m.conversions == 3
    assert m.cost == 3000
    assert m.revenue == 90000


def test_tiktok_metrics_nested_rows():
    m = transform_platform_metrics(
        "tiktok",
        {
            "dimensions": {"campaign_id": "17", "stat_time_day": "2026-03-01 00:00:00"},
            "metrics": {"impressions": "10", "clicks": "2", "spend": "1.5", "conversion": "1"},
        },
    )
    assert m.date == "2026-03-01"
    assert m.platform_campaign_id == "17"
    assert m.cost == pytest.approx(1.5)


def test_naver_metrics_and_bad_values():
    m = transform_platform_metrics("naver", {"id": "cmp-1", "impCnt": "n/a", "clkCnt": 3, "salesAmt": 1200})
    assert m.impressions == 0
    assert m.clicks == 3
    assert m.cost == 1200


def test_transform_unknown_platform():
    with pytest.raises(ValueError):
        transform_platform_metrics("myspace", {})


def test_aggregate_metrics_sums_and_recomputes_ratios():
    a = transform_platform_metrics("coupang", {"date": "2026-03-01", "impressions": 100, "clicks": 10, "cost": 1000, "revenue": 3000})
    b = transform_platform_metrics("coupang", {"date": "2026-03-02", "impressions": 300, "clicks": 10, "cost": 1000, "revenue": 1000})
    total = aggregate_metrics([a, b])
    assert total.impressions == 400
    assert total.clicks == 20
    assert total.ctr == pytest.approx(5.0)
    assert total.roas == pytest.approx(2.0)


@pytest.mark.parametrize(
    "platform,kwargs,cls",
    [
        ("facebook", {"error_code": 190}, TokenExpiredError),
        ("facebook", {"error_code": 17}, RateLimitError),
        ("facebook", {"error_code": 200}, PlatformPermissionError),
        ("tiktok", {"error_code": 40001}, RateLimitError),
        ("tiktok", {"error_code": 40100}, PlatformAuthError),
        ("google", {"error_code": "DEVELOPER_TOKEN_NOT_APPROVED"}, AccessTierError),
        ("amazon", {"status_code": 401}, PlatformAuthError),
        ("amazon", {"status_code": 403}, PlatformPermissionError),
        ("amazon", {"status_code": 409}, ConflictError),
        ("amazon", {"status_code": 429}, RateLimitError),
        ("naver", {"message": "connection reset by peer"}, PlatformConnectionError),
    ],
)
def test_parse_platform_error_mapping(platform, kwargs, cls):
    err = parse_platform_error(platform, **kwargs)
    assert type(err) is cls
    assert err.platform == platform


def test_parse_platform_error_server_errors_are_retryable():
    err = parse_platform_error("tiktok", error_code=50002, message="busy")
    assert err.code == "INTERNAL"
    assert err.retryable

    err = parse_platform_error("meta", status_code=503)
    assert err.code == "INTERNAL"
    assert err.retryable


def test_coupang_401_is_not_retryable():
    err = parse_platform_error("coupang", status_code=401)
    assert isinstance(err, PlatformAuthError)
    assert not err.retryable


def test_platform_error_str_and_user_message():
    err = parse_platform_error("google", status_code=400, message="bad field")
    assert isinstance(err, PlatformError)
    assert str(err) == "[google] bad field (INVALID_REQUEST)"
    assert err.user_message == "잘못된 요청입니다."
