from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json

import httpx
import pytest

from allad.connectors.base import ConnectorContext
from allad.connectors.naver_searchad import NaverSearchAdConnector
from allad.errors import ConflictError, OAuthError, ValidationError


def _make_connector(handler, **creds) -> NaverSearchAdConnector:
    credentials = {"api_key": "key-1", "secret_key": "secret-1", **creds}
    ctx = ConnectorContext(
        platform="naver",
        credential={"id": "cred_naver", "account_id": "1234567", "credentials": credentials, "data": {"customer_id": "1234567"}},
        transport=httpx.MockTransport(handler),
    )
    return NaverSearchAdConnector(ctx)


def test_requests_are_signed():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[])

    asyncio.run(_make_connector(handler).list_campaigns())

    h = seen[0].headers
    assert h["X-API-KEY"] == "key-1"
    assert h["X-Customer"] == "1234567"
    msg = f"{h['X-Timestamp']}.GET./ncc/campaigns".encode()
    expected = base64.b64encode(hmac.new(b"secret-1", msg, hashlib.sha256).digest()).decode()
    assert h["X-Signature"] == expected


def test_missing_keys_fail_before_any_request():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    connector = _make_connector(handler, secret_key="")
    with pytest.raises(ValidationError):
        asyncio.run(connector.list_campaigns())
    ok, err = asyncio.run(connector.health_check())
    assert not ok
    assert "secret_key" in err


def test_oauth_is_unsupported():
    with pytest.raises(OAuthError):
        _make_connector(lambda r: httpx.Response(200)).authorize_url(redirect_uri="http://x/cb", state="s")


def test_list_campaigns_maps_lock_and_delete_flags():
    rows = [
        {"nccCampaignId": "cmp-1", "name": "Brand", "userLock": False, "useDailyBudget": True, "dailyBudget": 50000},
        {"nccCampaignId": "cmp-2", "name": "Generic", "userLock": True, "useDailyBudget": False, "dailyBudget": 0},
        {"nccCampaignId": "cmp-3", "name": "Old", "delFlag": True},
    ]
    campaigns = asyncio.run(_make_connector(lambda r: httpx.Response(200, json=rows)).list_campaigns())
    assert [(c.platform_campaign_id, c.status, c.budget) for c in campaigns] == [
        ("cmp-1", "active", 50000.0),
        ("cmp-2", "paused", None),
        ("cmp-3", "removed", None),
    ]


def test_pause_sets_user_lock_and_conflicts_when_locked():
    puts: list[tuple[str, dict]] = []
    state = {"userLock": False}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "PUT":
            body = json.loads(request.content)
            puts.append((request.url.params["fields"], body))
            state["userLock"] = body["userLock"]
        return httpx.Response(200, json={"nccCampaignId": "cmp-1", "userLock": state["userLock"], "status": "ELIGIBLE"})

    connector = _make_connector(handler)
    result = asyncio.run(connector.set_campaign_status("cmp-1", False))
    assert puts == [("userLock", {"nccCampaignId": "cmp-1", "userLock": True})]
    assert result["after"]["userLock"] is True

    with pytest.raises(ConflictError):
        asyncio.run(connector.set_campaign_status("cmp-1", False))


def test_budget_is_rounded_to_whole_won():
    puts: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "PUT":
            puts.append(json.loads(request.content))
            return httpx.Response(200, json=puts[-1])
        return httpx.Response(200, json={"nccCampaignId": "cmp-1", "dailyBudget": 10000})

    result = asyncio.run(_make_connector(handler).set_campaign_budget("cmp-1", 15000.6))
    assert puts == [{"nccCampaignId": "cmp-1", "dailyBudget": 15001, "useDailyBudget": True}]
    assert result["before"]["budget"] == 10000


def test_fetch_metrics_daily_queries_stats_per_campaign():
    stat_ids: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/stats":
            cid = request.url.params["id"]
            stat_ids.append(cid)
            assert json.loads(request.url.params["timeRange"]) == {"since": "2026-03-01", "until": "2026-03-02"}
            return httpx.Response(
                200,
                json={"data": [{"dateStart": "2026-03-01", "impCnt": 100, "clkCnt": 4, "salesAmt": 2000, "ccnt": 1, "convAmt": 9000}]},
            )
        return httpx.Response(200, json=[{"nccCampaignId": "cmp-1"}, {"nccCampaignId": "cmp-2"}])

    metrics = asyncio.run(_make_connector(handler).fetch_metrics_daily("2026-03-01", "2026-03-02"))
    assert stat_ids == ["cmp-1", "cmp-2"]
    assert [m.platform_campaign_id for m in metrics] == ["cmp-1", "cmp-2"]
    assert metrics[0].cost == 2000
    assert metrics[0].revenue == 9000
