"""
Per-platform mapping of vendor report rows into CampaignMetrics.

Every vendor reports the same handful of numbers in a different shape:
Google in micros, Meta as strings with conversions buried in `actions`,
TikTok as nested `dimensions`/`metrics` objects, Naver and Kakao with their
own abbreviations. Each mapper below is pure and tolerant of missing keys.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable

from allad.models import CampaignMetrics

_MICROS = 1_000_000

META_PURCHASE_ACTIONS = (
    "purchase",
    "omni_purchase",
    "offsite_conversion.fb_pixel_purchase",
)


def to_float(v: Any) -> float:
    try:
        return float(str(v).replace(",", "")) if v is not None and v != "" else 0.0
    except (TypeError, ValueError):
        return 0.0


def to_int(v: Any) -> int:
    return int(to_float(v))


def _first(row: dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in row and row[k] is not None:
            return row[k]
    return None


def google_metrics(row: dict[str, Any]) -> CampaignMetrics:
    cost_micros = _first(row, "cost_micros", "costMicros")
    cost = to_float(cost_micros) / _MICROS if cost_micros is not None else to_float(row.get("cost"))
    return CampaignMetrics(
        date=str(_first(row, "date", "segments_date") or ""),
        impressions=to_int(row.get("impressions")),
        clicks=to_int(row.get("clicks")),
        conversions=to_float(row.get("conversions")),
        cost=cost,
        revenue=to_float(_first(row, "conversions_value", "conversionsValue")),
        platform_campaign_id=str(_first(row, "campaign_id", "campaignId") or ""),
        raw_data=dict(row),
    )


def _action_sum(items: Any, action_types: Iterable[str]) -> float:
    if not isinstance(items, list):
        return 0.0
    wanted = set(action_types)
    found: dict[str, float] = {}
    for it in items:
        if not isinstance(it, dict):
            continue
        t = str(it.get("action_type") or "")
        if t in wanted:
            found[t] = found.get(t, 0.0) + to_float(it.get("value"))
    # Meta reports the same purchase under several action types; take the
    # first configured one that is present instead of double counting.
    for t in action_types:
        if t in found:
            return found[t]
    return 0.0


def meta_metrics(
    row: dict[str, Any], purchase_actions: Iterable[str] = META_PURCHASE_ACTIONS
) -> CampaignMetrics:
    purchase_actions = tuple(purchase_actions)
    return CampaignMetrics(
        date=str(_first(row, "date_start", "date") or ""),
        impressions=to_int(row.get("impressions")),
        clicks=to_int(row.get("clicks")),
        conversions=_action_sum(row.get("actions"), purchase_actions),
        cost=to_float(row.get("spend")),
        revenue=_action_sum(row.get("action_values"), purchase_actions),
        platform_campaign_id=str(row.get("campaign_id") or ""),
        raw_data=dict(row),
    )


def tiktok_metrics(row: dict[str, Any]) -> CampaignMetrics:
    dims = row.get("dimensions") if isinstance(row.get("dimensions"), dict) else {}
    mets = row.get("metrics") if isinstance(row.get("metrics"), dict) else {}
    day = str(dims.get("stat_time_day") or "")[:10]
    return CampaignMetrics(
        date=day,
        impressions=to_int(mets.get("impressions")),
        clicks=to_int(mets.get("clicks")),
        conversions=to_float(_first(mets, "conversion", "complete_payment")),
        cost=to_float(mets.get("spend")),
        # total_complete_payment_rate is TikTok's (oddly named) purchase value total.
        revenue=to_float(_first(mets, "total_complete_payment_rate", "total_purchase_value")),
        platform_campaign_id=str(dims.get("campaign_id") or ""),
        raw_data=dict(row),
    )


def amazon_metrics(row: dict[str, Any]) -> CampaignMetrics:
    return CampaignMetrics(
        date=str(row.get("date") or ""),
        impressions=to_int(row.get("impressions")),
        clicks=to_int(row.get("clicks")),
        conversions=to_float(_first(row, "purchases7d", "purchases14d", "conversions")),
        cost=to_float(row.get("cost")),
        revenue=to_float(_first(row, "sales7d", "sales14d", "sales")),
        platform_campaign_id=str(row.get("campaignId") or ""),
        raw_data=dict(row),
    )


def naver_metrics(row: dict[str, Any]) -> CampaignMetrics:
    return CampaignMetrics(
        date=str(_first(row, "dateStart", "date") or ""),
        impressions=to_int(row.get("impCnt")),
        clicks=to_int(row.get("clkCnt")),
        conversions=to_float(row.get("ccnt")),
        cost=to_float(row.get("salesAmt")),
        revenue=to_float(row.get("convAmt")),
        platform_campaign_id=str(row.get("id") or ""),
        raw_data=dict(row),
    )


def kakao_metrics(row: dict[str, Any]) -> CampaignMetrics:
    return CampaignMetrics(
        date=str(_first(row, "start", "date") or "")[:10],
        impressions=to_int(row.get("impCnt")),
        clicks=to_int(row.get("clickCnt")),
        conversions=to_float(row.get("convCnt")),
        cost=to_float(_first(row, "cost", "salesAmt")),
        revenue=to_float(row.get("convAmt")),
        platform_campaign_id=str(row.get("id") or ""),
        raw_data=dict(row),
    )


def coupang_metrics(row: dict[str, Any]) -> CampaignMetrics:
    return CampaignMetrics(
        date=str(row.get("date") or ""),
        impressions=to_int(row.get("impressions")),
        clicks=to_int(row.get("clicks")),
        conversions=to_float(row.get("conversions")),
        cost=to_float(row.get("cost")),
        revenue=to_float(row.get("revenue")),
        platform_campaign_id=str(row.get("campaign_id") or ""),
        raw_data=dict(row),
    )


_MAPPERS: dict[str, Callable[[dict[str, Any]], CampaignMetrics]] = {
    "google": google_metrics,
    "facebook": meta_metrics,
    "tiktok": tiktok_metrics,
    "amazon": amazon_metrics,
    "naver": naver_metrics,
    "kakao": kakao_metrics,
    "coupang": coupang_metrics,
}


def transform_platform_metrics(platform: str, row: dict[str, Any]) -> CampaignMetrics:
    mapper = _MAPPERS.get(platform)
    if mapper is None:
        raise ValueError(f"Unknown platform: {platform}")
    return mapper(row)


def aggregate_metrics(items: Iterable[CampaignMetrics], *, date: str = "") -> CampaignMetrics:
    impressions = clicks = 0
    conversions = cost = revenue = 0.0
    for m in items:
        impressions += m.impressions
        clicks += m.clicks
        conversions += m.conversions
        cost += m.cost
        revenue += m.revenue
    return CampaignMetrics(
        date=date,
        impressions=impressions,
        clicks=clicks,
        conversions=conversions,
        cost=cost,
        revenue=revenue,
    )


def metrics_from_row(row: dict[str, Any]) -> CampaignMetrics:
    """Rebuild CampaignMetrics from a stored campaign_metrics row."""
    return CampaignMetrics(
        date=str(row.get("date") or ""),
        impressions=to_int(row.get("impressions")),
        clicks=to_int(row.get("clicks")),
        conversions=to_float(row.get("conversions")),
        cost=to_float(row.get("cost")),
        revenue=to_float(row.get("revenue")),
        platform_campaign_id=str(row.get("platform_campaign_id") or ""),
    )
