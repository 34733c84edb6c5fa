from __future__ import annotations

from typing import Any

import httpx

from allad.config import Settings
from allad.connectors.amazon_ads import AmazonAdsConnector
from allad.connectors.base import ConnectorContext
from allad.connectors.coupang import CoupangConnector
from allad.connectors.demo import DemoConnector
from allad.connectors.google_ads import GoogleAdsConnector
from allad.connectors.kakao_moment import KakaoMomentConnector
from allad.connectors.meta_ads import MetaAdsConnector
from allad.connectors.naver_searchad import NaverSearchAdConnector
from allad.connectors.tiktok_ads import TikTokAdsConnector


def build_connector(
    platform: str,
    settings: Settings,
    *,
    credential: dict[str, Any] | None = None,
    config: dict[str, Any] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
):
    ctx = ConnectorContext(
        platform=platform,
        client=settings.oauth_client(platform),
        credential=credential or {},
        config=config or {},
        transport=transport,
    )

    # Coupang is manual-entry in every mode.
    if settings.demo_mode and platform != "coupang":
        return DemoConnector(ctx)

    if platform == "google":
        return GoogleAdsConnector(ctx)
    if platform == "facebook":
        return MetaAdsConnector(ctx)
    if platform == "amazon":
        return AmazonAdsConnector(ctx)
    if platform == "tiktok":
        return TikTokAdsConnector(ctx)
    if platform == "naver":
        return NaverSearchAdConnector(ctx)
    if platform == "kakao":
        return KakaoMomentConnector(ctx)
    if platform == "coupang":
        return CoupangConnector(ctx)

    raise ValueError(f"Unknown platform: {platform}")
