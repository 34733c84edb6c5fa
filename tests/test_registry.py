from __future__ import annotations

import asyncio
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import pytest

from allad.config import OAuthClient, Settings
from allad.connectors import (
    AmazonAdsConnector,
    CoupangConnector,
    DemoConnector,
    GoogleAdsConnector,
    KakaoMomentConnector,
    MetaAdsConnector,
    NaverSearchAdConnector,
    TikTokAdsConnector,
)
from allad.errors import OAuthError, PlatformError
from allad.registry import build_connector


def _settings(**overrides) -> Settings:
    base = dict(
        db_path=Path("unused.sqlite3"),
        timezone="Asia/Seoul",
        web_host="127.0.0.1",
        web_port=0,
        site_url="http://testserver",
        default_lang="ko",
        demo_mode=False,
        log_level="INFO",
    )
    base.update(overrides)
    return Settings(**base)


@pytest.mark.parametrize(
    "platform,cls",
    [
        ("google", GoogleAdsConnector),
        ("facebook", MetaAdsConnector),
        ("amazon", AmazonAdsConnector),
        ("tiktok", TikTokAdsConnector),
        ("naver", NaverSearchAdConnector),
        ("kakao", KakaoMomentConnector),
        ("coupang", CoupangConnector),
    ],
)
def test_build_connector_dispatch(platform, cls):
    assert isinstance(build_connector(platform, _settings()), cls)


def test_demo_mode_uses_demo_connector_except_coupang():
    settings = _settings(demo_mode=True)
    assert isinstance(build_connector("google", settings), DemoConnector)
    assert isinstance(build_connector("coupang", settings), CoupangConnector)


def test_build_connector_unknown_platform():
    with pytest.raises(ValueError):
        build_connector("myspace", _settings())


def test_unconfigured_client_raises_not_configured():
    with pytest.raises(OAuthError) as exc:
        build_connector("google", _settings()).authorize_url(redirect_uri="http://x/cb", state="s")
    assert exc.value.code == "not_configured"


def test_kakao_authorize_url_and_unsupported_campaign_calls():
    settings = _settings(oauth_clients={"kakao": OAuthClient("kakao-rest-key", "kakao-secret")})
    connector = build_connector("kakao", settings)

    q = parse_qs(urlparse(connector.authorize_url(redirect_uri="http://x/cb", state="st")).query)
    assert q["client_id"] == ["kakao-rest-key"]
    assert q["scope"] == ["moment:read,moment:write"]

    with pytest.raises(PlatformError) as exc:
        asyncio.run(connector.list_campaigns())
    assert exc.value.code == "UNSUPPORTED"
    assert not connector.capabilities.read_campaigns


def test_coupang_is_manual_only():
    connector = build_connector("coupang", _settings())
    assert asyncio.run(connector.list_campaigns()) == []
    with pytest.raises(PlatformError):
        connector.authorize_url(redirect_uri="http://x/cb", state="s")
