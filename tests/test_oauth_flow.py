from __future__ import annotations

import asyncio
import json
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from allad.auth import AuthService
from allad.config import OAuthClient, Settings
from allad.db import AllAdDB
from allad.errors import AuthorizationError, ConfigError, NotFoundError, OAuthError, TokenExpiredError, ValidationError
from allad.oauth import OAuthFlow, parse_callback_slug
from allad.repo import Repo
from allad.teams import TeamService
from allad.token_refresh import TokenRefreshService
from allad.util import utc_now


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
        oauth_clients={"tiktok": OAuthClient("app-1", "tt-secret")},
    )
    base.update(overrides)
    return Settings(**base)


def _tiktok_handler(*, accounts_status: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/oauth2/access_token/"):
            body = json.loads(request.content)
            assert body["auth_code"] == "auth-1"
            return httpx.Response(
                200,
                json={
                    "code": 0,
                    "message": "OK",
                    "data": {"access_token": "tt-at", "refresh_token": "tt-rt", "scope": [4, 5], "advertiser_ids": ["9001"]},
                },
            )
        if request.url.path.endswith("/oauth2/advertiser/get/"):
            if accounts_status != 200:
                return httpx.Response(accounts_status, json={"code": 50002, "message": "busy"})
            return httpx.Response(
                200,
                json={
                    "code": 0,
                    "message": "OK",
                    "data": {
                        "list": [
                            {"advertiser_id": "7001", "advertiser_name": "Shop KR"},
                            {"advertiser_id": "7002", "advertiser_name": "Shop JP"},
                        ]
                    },
                },
            )
        raise AssertionError(f"unexpected request {request.url}")

    return handler


def _setup(tmp_path: Path, *, handler=None, **overrides):
    db_path = tmp_path / "allad.sqlite3"
    AllAdDB(db_path).init()
    settings = _settings_for_db(db_path, **overrides)
    repo = Repo(db_path)
    auth = AuthService(settings, repo)
    master = str(auth.signup(email="master@example.com", password="password123")["user"]["id"])
    transport = httpx.MockTransport(handler) if handler else None
    return OAuthFlow(settings, repo, transport=transport), auth, repo, master


def _state_of(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


@pytest.mark.parametrize(
    "slug,expected",
    [
        ("google-ads", ("google", False)),
        ("meta-ads", ("facebook", False)),
        ("facebook-ads", ("facebook", False)),
        ("amazon-ads-lab", ("amazon", True)),
    ],
)
def test_parse_callback_slug(slug, expected):
    assert parse_callback_slug(slug) == expected


def test_parse_callback_slug_unknown():
    with pytest.raises(OAuthError):
        parse_callback_slug("myspace-ads")


def test_tiktok_connect_creates_one_credential_per_advertiser(tmp_path: Path) -> None:
    flow, _auth, repo, master = _setup(tmp_path, handler=_tiktok_handler())

    url = flow.start(master, "tiktok")
    assert url.startswith("https://business-api.tiktok.com/portal/auth?")
    assert parse_qs(urlparse(url).query)["redirect_uri"] == ["http://testserver/api/auth/callback/tiktok-ads"]

    res = asyncio.run(flow.complete("tiktok-ads", code="auth-1", state=_state_of(url)))
    assert res["platform"] == "tiktok"
    assert len(res["credential_ids"]) == 2

    creds = repo.list_credentials(team_id=res["team_id"])
    assert sorted(c["account_id"] for c in creds) == ["7001", "7002"]
    assert creds[0]["credentials"]["access_token"] == "tt-at"
    assert creds[0]["credentials"]["expires_at"]
    assert creds[0]["data"]["advertiser_id"] == creds[0]["account_id"]


def test_state_is_single_use(tmp_path: Path) -> None:
    flow, _auth, _repo, master = _setup(tmp_path, handler=_tiktok_handler())
    state = _state_of(flow.start(master, "tiktok"))

    asyncio.run(flow.complete("tiktok-ads", code="auth-1", state=state))
    with pytest.raises(OAuthError) as exc:
        asyncio.run(flow.complete("tiktok-ads", code="auth-1", state=state))
    assert exc.value.code == "invalid_state"


def test_unknown_and_mismatched_state(tmp_path: Path) -> None:
    flow, _auth, _repo, master = _setup(tmp_path, handler=_tiktok_handler())

    with pytest.raises(OAuthError) as exc:
        asyncio.run(flow.complete("tiktok-ads", code="auth-1", state="forged"))
    assert exc.value.code == "invalid_state"

    state = _state_of(flow.start(master, "tiktok"))
    with pytest.raises(OAuthError) as exc:
        asyncio.run(flow.complete("google-ads", code="auth-1", state=state))
    assert exc.value.code == "invalid_state"


def test_vendor_error_consumes_state(tmp_path: Path) -> None:
    flow, _auth, repo, master = _setup(tmp_path, handler=_tiktok_handler())
    state = _state_of(flow.start(master, "tiktok"))

    with pytest.raises(OAuthError) as exc:
        asyncio.run(flow.complete("tiktok-ads", code=None, state=state, error="access_denied"))
    assert exc.value.code == "access_denied"
    assert exc.value.user_message == "플랫폼 연동이 취소되었습니다."
    assert repo.consume_oauth_state(state) is None


def test_account_discovery_falls_back_to_token_advertisers(tmp_path: Path) -> None:
    flow, _auth, repo, master = _setup(tmp_path, handler=_tiktok_handler(accounts_status=500))
    state = _state_of(flow.start(master, "tiktok"))

    res = asyncio.run(flow.complete("tiktok-ads", code="auth-1", state=state))
    creds = repo.list_credentials(team_id=res["team_id"])
    assert [c["account_id"] for c in creds] == ["9001"]


def test_start_requires_configured_client_and_manager_role(tmp_path: Path) -> None:
    flow, auth, repo, master = _setup(tmp_path)
    with pytest.raises(ConfigError):
        flow.start(master, "google")
    with pytest.raises(ValidationError):
        flow.start(master, "naver")

    teams = TeamService(flow.settings, repo)
    viewer = str(auth.signup(email="viewer@example.com", password="password123")["user"]["id"])
    token = teams.invite_member(master, email="viewer@example.com", role="viewer")["invitation"]["token"]
    teams.accept_invitation(token, viewer)
    with pytest.raises(AuthorizationError):
        flow.start(viewer, "tiktok")


def test_demo_mode_flow_keeps_amazon_region(tmp_path: Path) -> None:
    flow, _auth, repo, master = _setup(tmp_path, demo_mode=True, oauth_clients={})

    url = flow.start(master, "amazon", options={"region": "eu"})
    q = parse_qs(urlparse(url).query)
    assert url.startswith("http://testserver/api/auth/callback/amazon-ads?")

    res = asyncio.run(flow.complete("amazon-ads", code=q["code"][0], state=q["state"][0]))
    cred = repo.get_credential(res["credential_ids"][0])
    assert cred["data"]["region"] == "EU"
    assert cred["data"]["profile_id"] == "demo-amazon"


def test_connect_naver_disconnect_and_list_hides_secrets(tmp_path: Path) -> None:
    flow, auth, _repo, master = _setup(tmp_path)

    with pytest.raises(ValidationError):
        flow.connect_naver(master, api_key="k", secret_key="", customer_id="123")
    cred_id = flow.connect_naver(master, api_key=" k ", secret_key="s", customer_id="123")

    listed = flow.list_credentials(master)
    assert [c["id"] for c in listed] == [cred_id]
    assert "credentials" not in listed[0]
    assert "secret_key" not in json.dumps(listed[0])
    assert listed[0]["data"] == {"customer_id": "123"}

    other = str(auth.signup(email="other@example.com", password="password123")["user"]["id"])
    with pytest.raises(NotFoundError):
        flow.disconnect(other, cred_id)
    with pytest.raises(NotFoundError):
        flow.disconnect(master, "cred_missing")

    flow.disconnect(master, cred_id)
    assert flow.list_credentials(master)[0]["is_active"] is False


def test_expired_state_is_rejected(tmp_path: Path) -> None:
    flow, _auth, repo, master = _setup(tmp_path, handler=_tiktok_handler())
    state = _state_of(flow.start(master, "tiktok"))
    with repo.connect() as conn:
        conn.execute("UPDATE oauth_states SET expires_at=? WHERE state=?", ("2000-01-01T00:00:00+00:00", state))

    with pytest.raises(OAuthError) as exc:
        asyncio.run(flow.complete("tiktok-ads", code="auth-1", state=state))
    assert exc.value.code == "invalid_state"
    assert repo.list_credentials() == []


def _meta_me_handler(seen: list):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        assert request.url.path == "/v23.0/me"
        if request.url.params["access_token"] == "bad-token":
            return httpx.Response(
                400, json={"error": {"message": "Invalid OAuth access token.", "type": "OAuthException", "code": 190}}
            )
        return httpx.Response(200, json={"id": "su-42", "name": "All-AD system user"})

    return handler


def test_meta_system_user_token_is_stored_without_expiry(tmp_path: Path) -> None:
    seen: list[httpx.Request] = []
    flow, _auth, repo, master = _setup(tmp_path, handler=_meta_me_handler(seen))

    cred_id = asyncio.run(
        flow.connect_meta_system_user(master, access_token=" su-token ", ad_account_id="act_998877", business_id="bm-1")
    )
    assert seen[0].url.params["access_token"] == "su-token"

    cred = repo.get_credential(cred_id)
    assert cred["platform"] == "facebook"
    assert cred["account_id"] == "998877"
    assert cred["credentials"]["expires_at"] is None
    assert cred["data"]["token_kind"] == "system_user"
    assert cred["data"]["system_user_id"] == "su-42"
    assert cred["data"]["business_id"] == "bm-1"

    refresher = TokenRefreshService(flow.settings, repo)
    assert refresher.due(cred, utc_now()) is None
    report = asyncio.run(refresher.refresh_expiring(team_id=str(cred["team_id"])))
    assert (report["successful"], report["failed"], report["skipped"]) == (0, 0, 1)


def test_meta_system_user_token_is_checked_first(tmp_path: Path) -> None:
    seen: list[httpx.Request] = []
    flow, _auth, repo, master = _setup(tmp_path, handler=_meta_me_handler(seen))

    with pytest.raises(ValidationError):
        asyncio.run(flow.connect_meta_system_user(master, access_token="su-token", ad_account_id="act_"))
    with pytest.raises(TokenExpiredError):
        asyncio.run(flow.connect_meta_system_user(master, access_token="bad-token", ad_account_id="998877"))
    assert len(seen) == 1
    assert repo.list_credentials() == []
