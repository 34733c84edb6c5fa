from allad.connectors.base import BaseConnector, ConnectorCapabilities, ConnectorContext
from allad.connectors.amazon_ads import AmazonAdsConnector
from allad.connectors.coupang import CoupangConnector
from allad.connectors.demo import DemoConnector
from allad.connectors.google_ads import GoogleAdsConnector
from allad.connectors.kakao_moment import KakaoMomentConnector
from allad.connectors.meta_ads import MetaAdsConnector
from allad.connectors.naver_searchad import NaverSearchAdConnector
from allad.connectors.tiktok_ads import TikTokAdsConnector

__all__ = [
    "BaseConnector",
    "ConnectorCapabilities",
    "ConnectorContext",
    "DemoConnector",
    "GoogleAdsConnector",
    "MetaAdsConnector",
    "AmazonAdsConnector",
    "TikTokAdsConnector",
    "NaverSearchAdConnector",
    "KakaoMomentConnector",
    "CoupangConnector",
]
