from __future__ import annotations

import csv
import io
from pathlib import Path
from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient

from allad.auth import LOGIN_FAILED_MESSAGE
from allad.config import Settings
from allad.web.app import create_app


def _settings_for_db(db_path: Path, **overrides) -> Settings:
    base = dict(
        db_path=db_path,
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


def _client(tmp_path: Path, **overrides) -> TestClient:
    return TestClient(create_app(_settings_for_db(tmp_path / "allad.sqlite3", **overrides)))


def _signup(client: TestClient, email: str = "master@example.com") -> dict:
    resp = client.post("/api/auth/signup", json={"email": email, "password": "password123", "fullName": "Kim"})
    assert resp.status_code == 201
    return resp.json()["data"]


def test_dashboard_redirects_anonymous_users_to_login(tmp_path: Path) -> None:
    client = _client(tmp_path)

    resp = client.get("/dashboard", follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"] == "/ko/login"

    assert client.get("/en/dashboard", follow_redirects=False).headers["location"] == "/en/login"
    assert client.get("/fr/dashboard", follow_redirects=False).headers["location"] == "/ko/login"


def test_signup_login_and_me_use_camel_case(tmp_path: Path) -> None:
    client = _client(tmp_path)
    data = _signup(client)
    assert data["user"]["fullName"] == "Kim"
    assert data["teamId"]
    assert "passwordHash" not in data["user"]

    me = client.get("/api/me").json()["data"]
    assert me["role"] == "master"
    assert me["teamId"] == data["teamId"]
    assert me["permissions"]["canManageCampaigns"] is True

    dash = client.get("/ko/dashboard", follow_redirects=False)
    assert dash.status_code == 200
    assert dash.json()["data"]["summary"]["total"]["cost"] == 0

    client.post("/api/auth/logout")
    assert client.get("/api/me").status_code == 401

    resp = client.post("/api/auth/login", json={"email": "master@example.com", "password": "password123"})
    token = resp.json()["data"]["token"]
    fresh = TestClient(client.app)
    assert fresh.get("/api/me", headers={"Authorization": f"Bearer {token}"}).status_code == 200


def test_errors_use_common_envelope(tmp_path: Path) -> None:
    client = _client(tmp_path)
    _signup(client)

    resp = client.post("/api/auth/login", json={"email": "master@example.com", "password": "wrong-password"})
    assert resp.status_code == 401
    assert resp.json() == {
        "success": False,
        "error": {"code": "UNAUTHENTICATED", "message": LOGIN_FAILED_MESSAGE},
    }

    resp = client.post("/api/auth/login", content=b"{not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["success"] is False

    resp = client.get("/api/analytics", params={"from": "yesterday"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    assert client.get("/api/campaigns/nope/metrics").status_code == 404


def test_oauth_callback_errors_redirect_to_integrated_page(tmp_path: Path) -> None:
    client = _client(tmp_path)

    resp = client.get(
        "/api/auth/callback/google-ads",
        params={"error": "access_denied", "state": "whatever"},
        follow_redirects=False,
    )
    assert resp.status_code == 302
    loc = urlparse(resp.headers["location"])
    assert f"{loc.scheme}://{loc.netloc}{loc.path}" == "http://testserver/ko/integrated"
    assert parse_qs(loc.query) == {"error": ["access_denied"], "platform": ["google"]}

    resp = client.get("/api/auth/callback/google-ads", params={"code": "c", "state": "forged"}, follow_redirects=False)
    assert parse_qs(urlparse(resp.headers["location"]).query)["error"] == ["invalid_state"]

    resp = client.get("/api/auth/callback/myspace", params={"code": "c"}, follow_redirects=False)
    assert parse_qs(urlparse(resp.headers["location"]).query)["error"] == ["invalid_request"]


def test_authorize_requires_login_and_configured_client(tmp_path: Path) -> None:
    client = _client(tmp_path)
    assert client.get("/api/auth/google/authorize", follow_redirects=False).status_code == 401

    _signup(client)
    resp = client.get("/api/auth/google/authorize", follow_redirects=False)
    assert resp.status_code == 503
    assert client.get("/api/auth/myspace/authorize", follow_redirects=False).status_code == 400


def test_demo_connect_sync_and_toggle(tmp_path: Path) -> None:
    client = _client(tmp_path, demo_mode=True)
    _signup(client)

    resp = client.get("/api/auth/google/authorize", follow_redirects=False)
    assert resp.status_code == 302
    callback = resp.headers["location"]
    assert callback.startswith("http://testserver/api/auth/callback/google-ads?")

    resp = client.get(callback, follow_redirects=False)
    q = parse_qs(urlparse(resp.headers["location"]).query)
    assert q == {"success": ["platform_connected"], "platform": ["google"], "accounts": ["1"]}

    creds = client.get("/api/credentials").json()["data"]
    assert len(creds) == 1
    assert "credentials" not in creds[0]
    assert creds[0]["accountId"] == "demo-google"

    report = client.post("/api/sync").json()["data"]
    assert report == {"synced": 1, "failed": 0, "errors": []}

    rows = client.get("/api/campaigns", params={"platform": "google-ads"}).json()["data"]
    assert len(rows) == 3
    campaign_id = rows[0]["id"]

    assert client.post(f"/api/campaigns/{campaign_id}/status", json={"active": False}).status_code == 200
    resp = client.post(f"/api/campaigns/{campaign_id}/status", json={"status": "paused"})
    assert resp.status_code == 409
    assert client.post(f"/api/campaigns/{campaign_id}/status", json={}).status_code == 400

    assert client.post(f"/api/campaigns/{campaign_id}/budget", json={"budget": -5}).status_code == 400
    resp = client.post(f"/api/campaigns/{campaign_id}/budget", json={"budget": 70000})
    assert resp.json()["data"]["after"]["budget"] == 70000

    metrics = client.get(f"/api/campaigns/{campaign_id}/metrics").json()["data"]
    assert metrics["campaign"]["id"] == campaign_id
    assert len(metrics["daily"]) >= 1


def test_naver_keys_and_coupang_manual_entry(tmp_path: Path) -> None:
    client = _client(tmp_path)
    _signup(client)

    resp = client.post("/api/credentials/naver", json={"apiKey": "k", "secretKey": "s", "customerId": "1234"})
    assert resp.status_code == 201
    cred_id = resp.json()["data"]["credentialId"]
    assert client.delete(f"/api/credentials/{cred_id}").json()["data"] == {"disconnected": True}

    resp = client.post("/api/coupang/campaigns", json={"name": "Rocket deal", "budget": 30000})
    assert resp.status_code == 201
    campaign = resp.json()["data"]
    assert campaign["platform"] == "coupang"
    assert campaign["isActive"] is True

    resp = client.post(
        f"/api/coupang/campaigns/{campaign['id']}/metrics",
        json={"metrics": [{"date": "2026-03-01", "cost": 10000, "revenue": 25000, "clicks": 10, "impressions": 400}]},
    )
    assert resp.json()["data"] == {"stored": 1}
    resp = client.post(f"/api/coupang/campaigns/{campaign['id']}/metrics", json={"date": "2026-03-02", "cost": 5000})
    assert resp.json()["data"] == {"stored": 1}

    summary = client.get("/api/analytics", params={"from": "2026-03-01", "to": "2026-03-31"}).json()["data"]
    assert summary["total"]["cost"] == 15000
    assert summary["byPlatform"]["coupang"]["revenue"] == 25000
    assert [d["date"] for d in summary["daily"]] == ["2026-03-01", "2026-03-02"]


def test_status_change_requires_a_real_boolean(tmp_path: Path) -> None:
    client = _client(tmp_path)
    _signup(client)
    campaign = client.post("/api/coupang/campaigns", json={"name": "Rocket deal"}).json()["data"]

    for bad in ("false", 0, None):
        resp = client.post(f"/api/campaigns/{campaign['id']}/status", json={"active": bad})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"
    assert client.post("/api/coupang/campaigns", json={"name": "X", "active": "no"}).status_code == 400

    assert client.post(f"/api/campaigns/{campaign['id']}/status", json={"active": False}).status_code == 200
    rows = client.get("/api/campaigns").json()["data"]
    assert rows[0]["status"] == "paused"


def test_analytics_export_returns_csv(tmp_path: Path) -> None:
    client = _client(tmp_path)
    _signup(client)
    campaign = client.post("/api/coupang/campaigns", json={"name": "Rocket deal"}).json()["data"]
    client.post(
        f"/api/coupang/campaigns/{campaign['id']}/metrics",
        json={"metrics": [{"date": "2026-03-01", "cost": 10000, "revenue": 25000, "clicks": 10, "impressions": 400}]},
    )

    resp = client.post(
        "/api/analytics/export",
        json={"format": "csv", "dateRange": {"start": "2026-03-01", "end": "2026-03-31T00:00:00.000Z"}},
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert 'filename="analytics-2026-03-01-to-2026-03-31.csv"' in resp.headers["content-disposition"]
    rows = list(csv.reader(io.StringIO(resp.text)))
    assert rows[0] == ["date", "platform", "impressions", "clicks", "cost", "conversions", "revenue", "ctr", "cpc", "roas"]
    assert rows[1] == ["2026-03-01", "coupang", "400", "10", "10000.00", "0", "25000.00", "2.50", "1000.00", "2.50"]
    assert rows[2][:2] == ["total", "coupang"]

    as_json = client.post("/api/analytics/export", json={"format": "json", "dateFrom": "2026-03-01", "dateTo": "2026-03-31"})
    assert as_json.json()["data"]["rows"][0]["platform"] == "coupang"

    assert client.post("/api/analytics/export", json={"format": "csv"}).status_code == 400
    bad = client.post("/api/analytics/export", json={"dateRange": {"start": "yesterday", "end": "2026-03-31"}})
    assert bad.status_code == 400


def test_meta_system_user_route_and_unknown_credential(tmp_path: Path) -> None:
    client = _client(tmp_path, demo_mode=True)
    _signup(client)

    assert client.post("/api/credentials/meta-system-user", json={"adAccountId": "998877"}).status_code == 400
    resp = client.post(
        "/api/credentials/meta-system-user",
        json={"accessToken": "su-token", "adAccountId": "act_998877", "businessId": "bm-1"},
    )
    assert resp.status_code == 201

    creds = client.get("/api/credentials").json()["data"]
    assert len(creds) == 1
    assert creds[0]["platform"] == "facebook"
    assert creds[0]["expiresAt"] is None
    assert creds[0]["data"]["tokenKind"] == "system_user"

    resp = client.delete("/api/credentials/cred_missing")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "NOT_FOUND"
