from __future__ import annotations

import asyncio
from urllib.parse import parse_qs, urlparse
from unittest.mock import MagicMock, patch

import httpx
import pytest

from allad.config import OAuthClient
from allad.connectors.base import ConnectorContext
from allad.connectors.google_ads import GoogleAdsConnector
from allad.errors import AccessTierError, ConflictError, OAuthError, ValidationError

CID = "8666829099"


# ------------------------------------------------------------------ #
# Helpers                                                              #
# ------------------------------------------------------------------ #


def _make_connector(transport: httpx.AsyncBaseTransport | None = None) -> GoogleAdsConnector:
    ctx = ConnectorContext(
        platform="google",
        client=OAuthClient("cid.apps.googleusercontent.com", "shh", developer_token="dev-token"),
        credential={
            "id": "cred_google",
            "account_id": CID,
            "credentials": {"access_token": "at", "refresh_token": "rt"},
            "data": {"customer_id": "866-682-9099", "login_customer_id": "111-222-3333"},
        },
        transport=transport,
    )
    return GoogleAdsConnector(ctx)


def _mock_row(**attrs):
    """Create a mock GAQL row with nested attribute access."""
    row = MagicMock()
    for path, val in attrs.items():
        parts = path.split(".")
        obj = row
        for part in parts[:-1]:
            obj = getattr(obj, part)
        setattr(obj, parts[-1], val)
    return row


def _setup_client(search_rows_sequence=None, stream_rows=None):
    """
    Build a mock Google Ads client with pre-wired services.

    search_rows_sequence: list of lists, each inner list is the rows
    returned by successive ga_service.search() calls.
    """
    client = MagicMock()
    client.enums.CampaignStatusEnum.PAUSED = "PAUSED"
    client.enums.CampaignStatusEnum.ENABLED = "ENABLED"

    ga_service = MagicMock()
    if search_rows_sequence is not None:
        ga_service.search.side_effect = [list(rows) for rows in search_rows_sequence]
    if stream_rows is not None:
        batch = MagicMock()
        batch.results = list(stream_rows)
        ga_service.search_stream.return_value = [batch]

    services: dict[str, MagicMock] = {
        "GoogleAdsService": ga_service,
        "CampaignService": MagicMock(),
        "CampaignBudgetService": MagicMock(),
        "CustomerService": MagicMock(),
    }

    def get_service(name: str) -> MagicMock:
        return services.get(name, MagicMock())

    client.get_service.side_effect = get_service
    return client, services


# ------------------------------------------------------------------ #
# Tests                                                                #
# ------------------------------------------------------------------ #


def test_authorize_url_requests_offline_access():
    url = _make_connector().authorize_url(redirect_uri="http://x/api/auth/callback/google-ads", state="st")
    q = parse_qs(urlparse(url).query)
    assert q["access_type"] == ["offline"]
    assert "consent" in q["prompt"][0]
    assert "https://www.googleapis.com/auth/adwords" in q["scope"][0]
    assert q["state"] == ["st"]


def test_exchange_code_posts_form_and_parses_tokens():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(
            200,
            json={
                "access_token": "ya29",
                "refresh_token": "1//rt",
                "expires_in": 3599,
                "scope": "https://www.googleapis.com/auth/adwords openid",
                "token_type": "Bearer",
            },
        )

    connector = _make_connector(httpx.MockTransport(handler))
    tokens = asyncio.run(connector.exchange_code(code="4/abc", redirect_uri="http://x/cb"))

    assert seen["url"] == "https://oauth2.googleapis.com/token"
    assert seen["form"]["grant_type"] == ["authorization_code"]
    assert seen["form"]["code"] == ["4/abc"]
    assert tokens.access_token == "ya29"
    assert tokens.refresh_token == "1//rt"
    assert tokens.expires_in == 3599


def test_exchange_code_invalid_grant():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(400, json={"error": "invalid_grant", "error_description": "Bad Request"})
    )
    connector = _make_connector(transport)
    with pytest.raises(OAuthError) as exc:
        asyncio.run(connector.exchange_code(code="used", redirect_uri="http://x/cb"))
    assert exc.value.code == "invalid_grant"


def test_pause_campaign():
    connector = _make_connector()

    before_row = _mock_row(**{"campaign.status": "ENABLED"})
    client, services = _setup_client(search_rows_sequence=[[before_row]])

    mutate_result = MagicMock()
    mutate_result.resource_name = f"customers/{CID}/campaigns/111"
    services["CampaignService"].mutate_campaigns.return_value.results = [mutate_result]

    with patch.object(connector, "_google_client", return_value=client):
        result = asyncio.run(connector.set_campaign_status("111", False))

    assert result["before"]["status"] == "ENABLED"
    assert result["after"]["status"] == "PAUSED"
    assert result["resource_name"] == f"customers/{CID}/campaigns/111"
    call_args = services["CampaignService"].mutate_campaigns.call_args
    assert call_args.kwargs.get("customer_id") == CID


def test_pause_already_paused_campaign_conflicts():
    connector = _make_connector()
    client, services = _setup_client(search_rows_sequence=[[_mock_row(**{"campaign.status": "PAUSED"})]])

    with patch.object(connector, "_google_client", return_value=client):
        with pytest.raises(ConflictError):
            asyncio.run(connector.set_campaign_status("111", False))
    services["CampaignService"].mutate_campaigns.assert_not_called()


def test_set_budget_converts_to_micros():
    connector = _make_connector()
    row = _mock_row(
        **{
            "campaign.campaign_budget": f"customers/{CID}/campaignBudgets/555",
            "campaign_budget.amount_micros": 10_000_000,
        }
    )
    client, services = _setup_client(search_rows_sequence=[[row]])

    with patch.object(connector, "_google_client", return_value=client):
        result = asyncio.run(connector.set_campaign_budget("111", 25.5))

    assert result["before"]["budget"] == pytest.approx(10.0)
    assert result["after"]["amount_micros"] == 25_500_000
    services["CampaignBudgetService"].mutate_campaign_budgets.assert_called_once()


@pytest.mark.parametrize("budget", [0, -10, "abc", None])
def test_set_budget_rejects_bad_values_before_api(budget):
    connector = _make_connector()
    client, services = _setup_client()
    with patch.object(connector, "_google_client", return_value=client):
        with pytest.raises(ValidationError):
            asyncio.run(connector.set_campaign_budget("111", budget))
    services["GoogleAdsService"].search.assert_not_called()


def test_list_campaigns_maps_status_and_budget():
    connector = _make_connector()
    rows = [
        _mock_row(
            **{
                "campaign.id": 111,
                "campaign.name": "Brand",
                "campaign.status": "ENABLED",
                "campaign.advertising_channel_type": "SEARCH",
                "campaign_budget.amount_micros": 50_000_000_000,
            }
        ),
        _mock_row(
            **{
                "campaign.id": 222,
                "campaign.name": "Shopping",
                "campaign.status": "PAUSED",
                "campaign.advertising_channel_type": "SHOPPING",
                "campaign_budget.amount_micros": 0,
            }
        ),
    ]
    client, _services = _setup_client(stream_rows=rows)

    with patch.object(connector, "_google_client", return_value=client):
        campaigns = asyncio.run(connector.list_campaigns())

    assert [(c.platform_campaign_id, c.status, c.budget) for c in campaigns] == [
        ("111", "active", 50000.0),
        ("222", "paused", 0.0),
    ]
    assert campaigns[0].account_id == CID


def test_fetch_metrics_daily():
    connector = _make_connector()
    rows = [
        _mock_row(
            **{
                "campaign.id": 111,
                "segments.date": "2026-03-01",
                "metrics.impressions": 1000,
                "metrics.clicks": 30,
                "metrics.conversions": 2.0,
                "metrics.conversions_value": 80000.0,
                "metrics.cost_micros": 15_000_000_000,
            }
        )
    ]
    client, _services = _setup_client(stream_rows=rows)

    with patch.object(connector, "_google_client", return_value=client):
        metrics = asyncio.run(connector.fetch_metrics_daily("2026-03-01", "2026-03-01"))

    assert len(metrics) == 1
    assert metrics[0].cost == pytest.approx(15000.0)
    assert metrics[0].roas == pytest.approx(80000.0 / 15000.0)


def test_developer_token_errors_map_to_access_tier():
    connector = _make_connector()
    client, services = _setup_client()
    services["GoogleAdsService"].search.side_effect = RuntimeError("DEVELOPER_TOKEN_NOT_APPROVED: test access only")

    with patch.object(connector, "_google_client", return_value=client):
        with pytest.raises(AccessTierError):
            asyncio.run(connector.get_campaign_status("111"))


def test_missing_developer_token():
    ctx = ConnectorContext(platform="google", client=OAuthClient("id", "secret"), credential={"account_id": CID})
    connector = GoogleAdsConnector(ctx)
    ok, err = asyncio.run(connector.health_check())
    assert not ok
    assert "DEVELOPER_TOKEN" in err
