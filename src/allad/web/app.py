from __future__ import annotations

import csv
import io
from datetime import date
from typing import Any
from urllib.parse import urlencode

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, Response
from loguru import logger

from allad.auth import AuthService
from allad.campaigns import CampaignService
from allad.casing import to_camel_case, to_snake_case
from allad.config import Settings
from allad.db import AllAdDB
from allad.errors import (
    AccessTierError,
    AllAdError,
    AuthenticationError,
    AuthorizationError,
    ConfigError,
    ConflictError,
    NotFoundError,
    OAuthError,
    PlatformError,
    PlatformPermissionError,
    RateLimitError,
    ValidationError,
)
from allad.models import normalize_platform
from allad.oauth import OAuthFlow, parse_callback_slug
from allad.repo import Repo
from allad.teams import TeamService, permissions_for
from allad.token_refresh import TokenRefreshService
from allad.util import days_back

SESSION_COOKIE = "allad_session"
SUPPORTED_LANGS = ("ko", "en")

# most specific first
_STATUS_CODES: tuple[tuple[type[AllAdError], int], ...] = (
    (ValidationError, 400),
    (OAuthError, 400),
    (AuthenticationError, 401),
    (AuthorizationError, 403),
    (PlatformPermissionError, 403),
    (AccessTierError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (RateLimitError, 429),
    (ConfigError, 503),
    (PlatformError, 502),
)


def status_for(exc: AllAdError) -> int:
    for cls, status in _STATUS_CODES:
        if isinstance(exc, cls):
            return status
    return 400


def ok(data: Any = None, *, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"success": True, "data": to_camel_case(data)}, status_code=status_code)


def _parse_day(value: str | None, default: str) -> str:
    if not value:
        return default
    try:
        return date.fromisoformat(value.strip()).isoformat()
    except ValueError:
        raise ValidationError(f"invalid date: {value!r}", user_message="날짜 형식은 YYYY-MM-DD 입니다.") from None


def _platform_param(raw: str) -> str:
    try:
        return normalize_platform(raw)
    except ValueError as e:
        raise ValidationError(str(e), user_message="지원하지 않는 플랫폼입니다.") from None


async def _body(request: Request) -> dict[str, Any]:
    """JSON body with camelCase keys converted to snake_case."""
    raw = await request.body()
    if not raw:
        return {}
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("invalid json", user_message="잘못된 요청 형식입니다.") from None
    if not isinstance(payload, dict):
        raise ValidationError("body must be a JSON object", user_message="잘못된 요청 형식입니다.")
    return to_snake_case(payload)


def _bool_field(body: dict[str, Any], key: str, *, default: bool | None = None) -> bool:
    value = body.get(key, default)
    if not isinstance(value, bool):
        raise ValidationError(f"{key} must be true or false", user_message="잘못된 요청 형식입니다.")
    return value


def analytics_csv(report: dict[str, Any]) -> str:
    """One row per day and platform, plus a total line per platform."""
    buf = io.StringIO()
    w = csv.writer(buf, lineterminator="\n")
    w.writerow(["date", "platform", "impressions", "clicks", "cost", "conversions", "revenue", "ctr", "cpc", "roas"])

    def _row(day: str, platform: str, m: dict[str, Any]) -> list[Any]:
        return [
            day,
            platform,
            m["impressions"],
            m["clicks"],
            f"{m['cost']:.2f}",
            f"{m['conversions']:g}",
            f"{m['revenue']:.2f}",
            f"{m['ctr']:.2f}",
            f"{m['cpc']:.2f}",
            f"{m['roas']:.2f}",
        ]

    for r in report["rows"]:
        w.writerow(_row(r["date"], r["platform"], r))
    for platform, m in report["by_platform"].items():
        w.writerow(_row("total", platform, m))
    return buf.getvalue()


def _session_token(request: Request) -> str | None:
    header = str(request.headers.get("authorization") or "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.cookies.get(SESSION_COOKIE) or None


def create_app(settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    AllAdDB(settings.db_path).init()
    repo = Repo(settings.db_path)
    auth = AuthService(settings, repo)
    teams = TeamService(settings, repo)
    oauth = OAuthFlow(settings, repo, transport=transport)
    campaigns = CampaignService(settings, repo, transport=transport)
    tokens = TokenRefreshService(settings, repo, transport=transport)

    app = FastAPI(title="All-AD")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.site_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AllAdError)
    async def _allad_error(_request: Request, exc: AllAdError):
        status = status_for(exc)
        if status >= 500:
            logger.warning("[web] {}: {}", type(exc).__name__, exc)
        return JSONResponse(
            {"success": False, "error": {"code": exc.code, "message": exc.user_message}},
            status_code=status,
        )

    def _user(request: Request) -> dict[str, Any]:
        return auth.require_user(_session_token(request))

    def _lang(lang: str | None) -> str:
        return lang if lang in SUPPORTED_LANGS else settings.default_lang

    # ------------------------------------------------------------------ #
    # account                                                              #
    # ------------------------------------------------------------------ #

    @app.get("/api/health")
    def health():
        return ok({"status": "ok", "demo_mode": settings.demo_mode})

    @app.post("/api/auth/signup")
    async def signup(request: Request):
        body = await _body(request)
        res = auth.signup(
            email=str(body.get("email") or ""),
            password=str(body.get("password") or ""),
            full_name=body.get("full_name"),
        )
        token = auth.login(email=str(body.get("email") or ""), password=str(body.get("password") or ""))
        resp = ok({**res, "token": token}, status_code=201)
        _set_session_cookie(resp, token)
        return resp

    @app.post("/api/auth/login")
    async def login(request: Request):
        body = await _body(request)
        token = auth.login(email=str(body.get("email") or ""), password=str(body.get("password") or ""))
        user = auth.current_user(token)
        resp = ok({"token": token, "user": user})
        _set_session_cookie(resp, token)
        return resp

    @app.post("/api/auth/logout")
    def logout(request: Request):
        token = _session_token(request)
        if token:
            auth.logout(token)
        resp = ok({"logged_out": True})
        resp.delete_cookie(SESSION_COOKIE)
        return resp

    def _set_session_cookie(resp: JSONResponse, token: str) -> None:
        resp.set_cookie(
            SESSION_COOKIE,
            token,
            max_age=settings.session_ttl_hours * 3600,
            httponly=True,
            samesite="lax",
            secure=settings.site_url.startswith("https://"),
        )

    @app.get("/api/me")
    def me(request: Request):
        user = _user(request)
        member = teams.membership(str(user["id"]))
        return ok(
            {
                "user": user,
                "team_id": member["team_id"],
                "role": member["role"],
                "permissions": permissions_for(str(member["role"])).to_dict(),
                "platform_access": member.get("platform_access") or [],
            }
        )

    def _dashboard(request: Request, lang: str):
        user = auth.current_user(_session_token(request))
        if user is None:
            return RedirectResponse(url=f"/{lang}/login", status_code=302)
        date_from, date_to = days_back(settings.timezone, settings.sync_lookback_days)
        summary = campaigns.analytics(str(user["id"]), date_from=date_from, date_to=date_to)
        return ok({"user": user, "summary": summary})

    @app.get("/dashboard")
    def dashboard(request: Request):
        return _dashboard(request, settings.default_lang)

    @app.get("/{lang}/dashboard")
    def dashboard_lang(request: Request, lang: str):
        return _dashboard(request, _lang(lang))

    # ------------------------------------------------------------------ #
    # team                                                                 #
    # ------------------------------------------------------------------ #

    @app.get("/api/team")
    def team(request: Request):
        user_id = str(_user(request)["id"])
        data = teams.list_members(user_id)
        data["invitations"] = teams.list_invitations(user_id)
        return ok(data)

    @app.post("/api/team/invite")
    async def invite(request: Request):
        user_id = str(_user(request)["id"])
        body = await _body(request)
        res = teams.invite_member(user_id, email=str(body.get("email") or ""), role=str(body.get("role") or "viewer"))
        return ok(res, status_code=201)

    @app.post("/api/team/invitations/{token}/accept")
    def accept_invitation(request: Request, token: str):
        user_id = str(_user(request)["id"])
        return ok(teams.accept_invitation(token, user_id))

    @app.delete("/api/team/invitations/{invitation_id}")
    def cancel_invitation(request: Request, invitation_id: str):
        teams.cancel_invitation(str(_user(request)["id"]), invitation_id)
        return ok({"cancelled": True})

    @app.patch("/api/team/members/{member_id}")
    async def update_member(request: Request, member_id: str):
        user_id = str(_user(request)["id"])
        body = await _body(request)
        message = teams.update_member_role(user_id, member_id, str(body.get("role") or ""))
        return ok({"message": message})

    @app.delete("/api/team/members/{member_id}")
    def remove_member(request: Request, member_id: str):
        message = teams.remove_member(str(_user(request)["id"]), member_id)
        return ok({"message": message})

    @app.put("/api/team/members/{member_id}/platforms")
    async def set_member_platforms(request: Request, member_id: str):
        user_id = str(_user(request)["id"])
        body = await _body(request)
        platforms = body.get("platforms")
        if not isinstance(platforms, list):
            raise ValidationError("platforms must be a list")
        return ok({"platforms": teams.set_platform_access(user_id, member_id, [str(p) for p in platforms])})

    # ------------------------------------------------------------------ #
    # platform connections                                                 #
    # ------------------------------------------------------------------ #

    @app.get("/api/auth/{platform}/authorize")
    def authorize(
        request: Request,
        platform: str,
        lab: bool = False,
        region: str | None = None,
    ):
        user_id = str(_user(request)["id"])
        options = {"region": region.upper()} if region else None
        url = oauth.start(user_id, _platform_param(platform), lab=lab, options=options)
        return RedirectResponse(url=url, status_code=302)

    @app.get("/api/auth/callback/{slug}")
    async def oauth_callback(
        slug: str,
        code: str | None = None,
        state: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
    ):
        base = f"{settings.site_url}/{settings.default_lang}/integrated"
        try:
            platform, _lab = parse_callback_slug(slug)
        except OAuthError as e:
            return RedirectResponse(url=f"{base}?{urlencode({'error': e.code})}", status_code=302)
        try:
            res = await oauth.complete(
                slug, code=code, state=state, error=error, error_description=error_description
            )
        except (OAuthError, PlatformError) as e:
            logger.warning("[oauth] {} callback failed: {}", platform, e)
            params = {"error": e.code if isinstance(e, OAuthError) else "oauth_failed", "platform": platform}
            return RedirectResponse(url=f"{base}?{urlencode(params)}", status_code=302)
        params = {
            "success": "platform_connected",
            "platform": platform,
            "accounts": str(len(res["credential_ids"])),
        }
        return RedirectResponse(url=f"{base}?{urlencode(params)}", status_code=302)

    @app.post("/api/credentials/naver")
    async def connect_naver(request: Request):
        user_id = str(_user(request)["id"])
        body = await _body(request)
        cred_id = oauth.connect_naver(
            user_id,
            api_key=str(body.get("api_key") or ""),
            secret_key=str(body.get("secret_key") or ""),
            customer_id=str(body.get("customer_id") or ""),
        )
        return ok({"credential_id": cred_id}, status_code=201)

    @app.post("/api/credentials/meta-system-user")
    async def connect_meta_system_user(request: Request):
        user_id = str(_user(request)["id"])
        body = await _body(request)
        cred_id = await oauth.connect_meta_system_user(
            user_id,
            access_token=str(body.get("access_token") or ""),
            ad_account_id=str(body.get("ad_account_id") or ""),
            business_id=body.get("business_id"),
        )
        return ok({"credential_id": cred_id}, status_code=201)

    @app.get("/api/credentials")
    def list_credentials(request: Request):
        return ok(oauth.list_credentials(str(_user(request)["id"])))

    @app.delete("/api/credentials/{credential_id}")
    def disconnect(request: Request, credential_id: str):
        oauth.disconnect(str(_user(request)["id"]), credential_id)
        return ok({"disconnected": True})

    @app.post("/api/credentials/refresh")
    async def refresh_credentials(request: Request):
        user_id = str(_user(request)["id"])
        member = teams.require_permission(user_id, "can_manage_campaigns")
        body = await _body(request)
        platform = _platform_param(str(body["platform"])) if body.get("platform") else None
        report = await tokens.refresh_expiring(team_id=str(member["team_id"]), platform=platform)
        return ok(report)

    # ------------------------------------------------------------------ #
    # campaigns                                                            #
    # ------------------------------------------------------------------ #

    @app.get("/api/campaigns")
    def list_campaigns(request: Request, platform: str | None = None):
        user_id = str(_user(request)["id"])
        return ok(campaigns.team_campaigns(user_id, platform=_platform_param(platform) if platform else None))

    @app.post("/api/campaigns/{campaign_id}/status")
    async def campaign_status(request: Request, campaign_id: str):
        user_id = str(_user(request)["id"])
        body = await _body(request)
        if "active" in body:
            active = _bool_field(body, "active")
        elif body.get("status") in ("active", "paused"):
            active = body["status"] == "active"
        else:
            raise ValidationError("active or status is required", user_message="변경할 상태를 지정해주세요.")
        return ok(await campaigns.change_status(user_id, campaign_id, active))

    @app.post("/api/campaigns/{campaign_id}/budget")
    async def campaign_budget(request: Request, campaign_id: str):
        user_id = str(_user(request)["id"])
        body = await _body(request)
        return ok(await campaigns.change_budget(user_id, campaign_id, body.get("budget")))

    @app.get("/api/campaigns/{campaign_id}/metrics")
    def campaign_metrics(request: Request, campaign_id: str, date_from: str | None = None, date_to: str | None = None):
        user_id = str(_user(request)["id"])
        d0, d1 = days_back(settings.timezone, settings.sync_lookback_days)
        return ok(
            campaigns.campaign_metrics(
                user_id, campaign_id, date_from=_parse_day(date_from, d0), date_to=_parse_day(date_to, d1)
            )
        )

    @app.post("/api/sync")
    async def sync(request: Request):
        return ok(await campaigns.sync_team(str(_user(request)["id"])))

    @app.post("/api/coupang/campaigns")
    async def coupang_create(request: Request):
        user_id = str(_user(request)["id"])
        body = await _body(request)
        row = campaigns.create_manual_campaign(
            user_id,
            name=str(body.get("name") or ""),
            budget=body.get("budget"),
            active=_bool_field(body, "active", default=True),
        )
        return ok(row, status_code=201)

    @app.post("/api/coupang/campaigns/{campaign_id}/metrics")
    async def coupang_metrics(request: Request, campaign_id: str):
        user_id = str(_user(request)["id"])
        body = await _body(request)
        rows = body.get("metrics")
        if rows is None:
            rows = [body]
        if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
            raise ValidationError("metrics must be a list of objects")
        return ok({"stored": campaigns.add_manual_metrics(user_id, campaign_id, rows)})

    @app.get("/api/analytics")
    def analytics(request: Request):
        user_id = str(_user(request)["id"])
        d0, d1 = days_back(settings.timezone, settings.sync_lookback_days)
        q = request.query_params
        return ok(
            campaigns.analytics(
                user_id, date_from=_parse_day(q.get("from"), d0), date_to=_parse_day(q.get("to"), d1)
            )
        )

    @app.post("/api/analytics/export")
    async def analytics_export(request: Request):
        user_id = str(_user(request)["id"])
        body = await _body(request)
        date_range = body.get("date_range") if isinstance(body.get("date_range"), dict) else {}
        start = date_range.get("start") or body.get("date_from")
        end = date_range.get("end") or body.get("date_to")
        if not start or not end:
            raise ValidationError("date range is required", user_message="내보낼 기간을 지정해주세요.")
        d0, d1 = _parse_day(str(start)[:10], ""), _parse_day(str(end)[:10], "")
        report = campaigns.analytics(user_id, date_from=d0, date_to=d1)
        fmt = str(body.get("format") or "csv").lower()
        logger.info("[web] analytics export {} {}..{} rows={}", fmt, d0, d1, len(report["rows"]))
        if fmt != "csv":
            return ok({"format": fmt, **report})
        return Response(
            content=analytics_csv(report),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="analytics-{d0}-to-{d1}.csv"'},
        )

    return app


def run_web(settings: Settings) -> None:
    app = create_app(settings)
    uvicorn.run(app, host=settings.web_host, port=settings.web_port, log_level=settings.log_level.lower())
