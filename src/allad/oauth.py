"""
Platform connect flow.

start():    permission check -> single-use `state` row -> vendor consent URL
complete(): vendor redirect -> state check -> code exchange -> account
            discovery -> one platform_credentials row per ad account
"""

from __future__ import annotations

import re
from typing import Any, Callable

import httpx
from loguru import logger

from allad.config import Settings
from allad.errors import ConfigError, NotFoundError, OAuthError, PlatformError, ValidationError
from allad.models import AdAccount, Platform, TokenSet
from allad.registry import build_connector
from allad.repo import Repo
from allad.teams import TeamService
from allad.util import iso_after

CALLBACK_SLUGS: dict[str, str] = {
    Platform.GOOGLE: "google-ads",
    Platform.FACEBOOK: "meta-ads",
    Platform.AMAZON: "amazon-ads",
    Platform.TIKTOK: "tiktok-ads",
    Platform.KAKAO: "kakao-ads",
}

_SLUG_PLATFORMS = {slug: p for p, slug in CALLBACK_SLUGS.items()}
_SLUG_PLATFORMS["facebook-ads"] = Platform.FACEBOOK

OAUTH_ERROR_MESSAGES = {
    "access_denied": "플랫폼 연동이 취소되었습니다.",
    "invalid_state": "인증 요청이 만료되었거나 유효하지 않습니다. 다시 시도해주세요.",
    "invalid_grant": "인증 코드가 만료되었거나 이미 사용되었습니다.",
}


def parse_callback_slug(slug: str) -> tuple[str, bool]:
    """'google-ads-lab' -> ('google', True)."""
    s = str(slug or "").strip().lower()
    lab = s.endswith("-lab")
    if lab:
        s = s[: -len("-lab")]
    platform = _SLUG_PLATFORMS.get(s)
    if platform is None:
        raise OAuthError("invalid_request", f"Unknown OAuth callback: {slug}")
    return platform, lab


def token_payload(tokens: TokenSet) -> dict[str, Any]:
    """Credential JSON for a token set; expiries are absolute UTC timestamps."""
    return {
        "access_token": tokens.access_token,
        "refresh_token": tokens.refresh_token,
        "token_type": tokens.token_type,
        "scope": tokens.scope,
        "expires_at": iso_after(tokens.expires_in) if tokens.expires_in else None,
        "refresh_expires_at": iso_after(tokens.refresh_expires_in) if tokens.refresh_expires_in else None,
    }


def account_data(platform: str, account: AdAccount, options: dict[str, Any]) -> dict[str, Any]:
    if platform == Platform.GOOGLE:
        return {
            "customer_id": account.account_id,
            "login_customer_id": account.login_customer_id,
            "is_manager": account.is_manager,
            "currency": account.currency,
        }
    if platform == Platform.FACEBOOK:
        return {"ad_account_id": account.account_id, "token_kind": "user", "currency": account.currency}
    if platform == Platform.AMAZON:
        return {
            "profile_id": account.account_id,
            "region": str(options.get("region") or "NA").upper(),
            "currency": account.currency,
        }
    if platform == Platform.TIKTOK:
        return {"advertiser_id": account.account_id}
    return {}


class OAuthFlow:
    def __init__(
        self,
        settings: Settings,
        repo: Repo,
        *,
        connector_factory: Callable[..., Any] = build_connector,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self.repo = repo
        self.teams = TeamService(settings, repo)
        self.connector_factory = connector_factory
        self.transport = transport

    def redirect_uri(self, platform: str, *, lab: bool = False) -> str:
        slug = CALLBACK_SLUGS.get(platform)
        if slug is None:
            raise ValidationError(f"{platform} does not support OAuth")
        return f"{self.settings.site_url}/api/auth/callback/{slug}{'-lab' if lab else ''}"

    def _connector(self, platform: str, *, credential: dict[str, Any] | None = None, options: dict[str, Any] | None = None):
        return self.connector_factory(
            platform,
            self.settings,
            credential=credential,
            config=dict(options or {}),
            transport=self.transport,
        )

    def start(self, user_id: str, platform: str, *, lab: bool = False, options: dict[str, Any] | None = None) -> str:
        member = self.teams.require_permission(user_id, "can_manage_campaigns")
        redirect_uri = self.redirect_uri(platform, lab=lab)
        if not self.settings.demo_mode and self.settings.oauth_client(platform) is None:
            raise ConfigError(
                f"{platform} OAuth client is not configured",
                user_message="플랫폼 연동 설정이 되어 있지 않습니다.",
            )
        state = self.repo.create_oauth_state(
            team_id=str(member["team_id"]),
            user_id=user_id,
            platform=platform,
            redirect_uri=redirect_uri,
            ttl_minutes=self.settings.oauth_state_ttl_minutes,
            options=options,
        )
        return self._connector(platform, options=options).authorize_url(redirect_uri=redirect_uri, state=state)

    async def complete(
        self,
        slug: str,
        *,
        code: str | None,
        state: str | None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> dict[str, Any]:
        platform, _lab = parse_callback_slug(slug)
        st = self.repo.consume_oauth_state(state) if state else None

        if error:
            logger.info("[oauth] {} callback error={} ({})", platform, error, error_description or "")
            raise OAuthError(error, error_description or error, user_message=OAUTH_ERROR_MESSAGES.get(error))
        if st is None or st["platform"] != platform:
            raise OAuthError("invalid_state", user_message=OAUTH_ERROR_MESSAGES["invalid_state"])
        if not code:
            raise OAuthError("invalid_request", "missing code")

        options = st.get("options") or {}
        tokens = await self._connector(platform, options=options).exchange_code(
            code=code, redirect_uri=str(st["redirect_uri"])
        )
        creds = token_payload(tokens)
        accounts = await self._discover_accounts(platform, creds, tokens, options)

        ids: list[str] = []
        for acc in accounts:
            ids.append(
                self.repo.upsert_platform_credential(
                    team_id=str(st["team_id"]),
                    platform=platform,
                    account_id=acc.account_id,
                    account_name=acc.name or None,
                    credentials=creds,
                    data=account_data(platform, acc, options),
                    created_by=str(st["user_id"]),
                )
            )
        logger.info("[oauth] {} connected for team {}: {} account(s)", platform, st["team_id"], len(ids))
        return {"platform": platform, "team_id": st["team_id"], "credential_ids": ids}

    async def _discover_accounts(
        self, platform: str, creds: dict[str, Any], tokens: TokenSet, options: dict[str, Any]
    ) -> list[AdAccount]:
        connector = self._connector(platform, credential={"credentials": creds, "data": {}}, options=options)
        try:
            accounts = await connector.list_accounts()
        except PlatformError as e:
            logger.warning("[oauth] {} account discovery failed: {}", platform, e)
            accounts = []

        operating = [a for a in accounts if not a.is_manager]
        if operating:
            return operating
        if accounts:
            return accounts
        # TikTok returns the authorized advertisers with the token.
        adv_ids = tokens.extra.get("advertiser_ids")
        if isinstance(adv_ids, list) and adv_ids:
            return [AdAccount(account_id=str(a), name=str(a)) for a in adv_ids]
        return [AdAccount(account_id="default", name=f"{platform} account")]

    # ------------------------------------------------------------------ #
    # non-OAuth credentials                                                #
    # ------------------------------------------------------------------ #

    def connect_naver(self, user_id: str, *, api_key: str, secret_key: str, customer_id: str) -> str:
        member = self.teams.require_permission(user_id, "can_manage_campaigns")
        api_key, secret_key, customer_id = (str(v or "").strip() for v in (api_key, secret_key, customer_id))
        if not api_key or not secret_key or not customer_id:
            raise ValidationError(
                "api_key, secret_key and customer_id are required",
                user_message="API 키, 시크릿 키, 고객 ID를 모두 입력해주세요.",
            )
        return self.repo.upsert_platform_credential(
            team_id=str(member["team_id"]),
            platform=Platform.NAVER,
            account_id=customer_id,
            account_name=f"Naver {customer_id}",
            credentials={"api_key": api_key, "secret_key": secret_key},
            data={"customer_id": customer_id},
            created_by=user_id,
        )

    async def connect_meta_system_user(
        self,
        user_id: str,
        *,
        access_token: str,
        ad_account_id: str,
        business_id: str | None = None,
    ) -> str:
        """
        Store a Business Manager system-user token for one ad account.

        The token is checked against /me first. System-user tokens do not
        expire, so the credential carries no expires_at and the refresh job
        leaves it alone.
        """
        member = self.teams.require_permission(user_id, "can_manage_campaigns")
        access_token = str(access_token or "").strip()
        account_id = re.sub(r"\D+", "", str(ad_account_id or "").strip().removeprefix("act_"))
        if not access_token or not account_id:
            raise ValidationError(
                "access_token and ad_account_id are required",
                user_message="시스템 사용자 토큰과 광고 계정 ID를 입력해주세요.",
            )
        creds = {"access_token": access_token, "token_type": "bearer", "expires_at": None}
        connector = self._connector(
            Platform.FACEBOOK,
            credential={"credentials": creds, "account_id": account_id, "data": {"ad_account_id": account_id}},
        )
        owner = await connector.token_owner()
        cred_id = self.repo.upsert_platform_credential(
            team_id=str(member["team_id"]),
            platform=Platform.FACEBOOK,
            account_id=account_id,
            account_name=f"Meta act_{account_id}",
            credentials=creds,
            data={
                "ad_account_id": account_id,
                "token_kind": "system_user",
                "system_user_id": owner.get("id"),
                "business_id": str(business_id or "").strip() or None,
            },
            created_by=user_id,
        )
        logger.info("[oauth] facebook system user {} stored for team {}", owner.get("id"), member["team_id"])
        return cred_id

    def disconnect(self, user_id: str, credential_id: str) -> None:
        member = self.teams.require_permission(user_id, "can_manage_campaigns")
        cred = self.repo.get_credential(credential_id)
        if cred is None or cred["team_id"] != member["team_id"]:
            raise NotFoundError(f"credential not found: {credential_id}", user_message="연동 정보를 찾을 수 없습니다.")
        self.repo.deactivate_credential(credential_id)
        logger.info("[oauth] credential {} disconnected", credential_id)

    def list_credentials(self, user_id: str) -> list[dict[str, Any]]:
        member = self.teams.membership(user_id)
        rows = self.repo.list_credentials(team_id=str(member["team_id"]))
        return [public_credential(r) for r in rows]


def public_credential(row: dict[str, Any]) -> dict[str, Any]:
    """Credential row without tokens or API secrets."""
    creds = row.get("credentials") or {}
    out = {k: v for k, v in row.items() if k != "credentials"}
    out["expires_at"] = creds.get("expires_at")
    out["scope"] = creds.get("scope")
    return out
