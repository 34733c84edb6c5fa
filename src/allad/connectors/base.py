from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from allad.config import OAuthClient
from allad.errors import OAuthError, PlatformConnectionError, ValidationError, parse_platform_error
from allad.models import AdAccount, Campaign, CampaignMetrics, TokenSet
from allad.repo import credential_tokens


@dataclass(frozen=True)
class ConnectorCapabilities:
    oauth: bool = False
    token_refresh: bool = False
    list_accounts: bool = False
    read_campaigns: bool = False
    read_metrics: bool = False
    write_status: bool = False
    write_budget: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "oauth": self.oauth,
            "token_refresh": self.token_refresh,
            "list_accounts": self.list_accounts,
            "read_campaigns": self.read_campaigns,
            "read_metrics": self.read_metrics,
            "write_status": self.write_status,
            "write_budget": self.write_budget,
        }


@dataclass(frozen=True)
class ConnectorContext:
    platform: str
    client: OAuthClient | None = None
    # platform_credentials row (decoded), or {} before a credential exists
    credential: dict[str, Any] = field(default_factory=dict)
    config: dict[str, Any] = field(default_factory=dict)
    # Injected by tests (httpx.MockTransport); None means real network.
    transport: httpx.AsyncBaseTransport | None = None

    @property
    def tokens(self) -> dict[str, Any]:
        return credential_tokens(self.credential.get("credentials"))

    @property
    def access_token(self) -> str:
        return str(self.tokens.get("access_token") or "").strip()

    @property
    def data(self) -> dict[str, Any]:
        d = self.credential.get("data")
        return d if isinstance(d, dict) else {}

    def setting(self, key: str, default: Any = None) -> Any:
        """Look a value up in connector config, then credential data, then credentials."""
        if key in self.config and self.config[key] not in (None, ""):
            return self.config[key]
        if key in self.data and self.data[key] not in (None, ""):
            return self.data[key]
        creds = self.credential.get("credentials") or {}
        if key in creds and creds[key] not in (None, ""):
            return creds[key]
        return default

    def http(self, *, timeout: float | None = None, **kwargs: Any) -> httpx.AsyncClient:
        t = timeout if timeout is not None else float(self.config.get("http_timeout_sec", 30.0))
        return httpx.AsyncClient(transport=self.transport, timeout=t, **kwargs)


class BaseConnector(Protocol):
    capabilities: ConnectorCapabilities
    # scope a credential needs before campaigns may be mutated; None = no scope check
    write_scope: str | None

    def authorize_url(self, *, redirect_uri: str, state: str) -> str:
        """Vendor consent screen URL."""

    async def exchange_code(self, *, code: str, redirect_uri: str) -> TokenSet:
        """Trade a single-use authorization code for tokens."""

    async def refresh(self, refresh_token: str) -> TokenSet:
        """Obtain a fresh access token."""

    async def list_accounts(self) -> list[AdAccount]:
        """Ad accounts reachable with the current access token."""

    async def list_campaigns(self) -> list[Campaign]:
        """Campaigns of the credential's account mapped to the common model."""

    async def get_campaign_status(self, campaign_id: str) -> str:
        """Current common status (active/paused/removed/unknown)."""

    async def set_campaign_status(self, campaign_id: str, active: bool) -> dict[str, Any]:
        """Enable or pause. Raise ConflictError if already in that state."""

    async def set_campaign_budget(self, campaign_id: str, budget: float) -> dict[str, Any]:
        """Set the daily budget in account currency."""

    async def fetch_metrics_daily(self, date_from: str, date_to: str) -> list[CampaignMetrics]:
        """Per-campaign, per-day metrics."""

    async def health_check(self) -> tuple[bool, str | None]:
        """Return (ok, error). Must never raise."""


def require_client(ctx: ConnectorContext) -> OAuthClient:
    if ctx.client is None:
        raise OAuthError(
            "not_configured",
            f"{ctx.platform} OAuth client is not configured",
            user_message="플랫폼 연동 설정이 되어 있지 않습니다.",
        )
    return ctx.client


def require_positive_budget(budget: Any) -> float:
    try:
        value = float(budget)
    except (TypeError, ValueError):
        raise ValidationError(f"budget must be a number: {budget!r}", user_message="예산은 숫자여야 합니다.") from None
    if value != value or value <= 0:
        raise ValidationError(f"budget must be > 0: {budget!r}", user_message="예산은 0보다 커야 합니다.")
    return value


def scope_list(raw: Any) -> list[str]:
    if isinstance(raw, (list, tuple)):
        return [str(s).strip() for s in raw if str(s).strip()]
    if isinstance(raw, str):
        return [s for s in raw.replace(",", " ").split() if s]
    return []


def has_scope(ctx: ConnectorContext, required: str | None) -> bool:
    """True if the stored grant includes `required`. Rows without scope info are trusted."""
    if not required:
        return True
    granted = scope_list(ctx.tokens.get("scope"))
    if not granted:
        return True
    return required in granted


def _oauth_error_from_body(platform: str, status_code: int, body: Any) -> OAuthError:
    code = "exchange_failed"
    desc = ""
    if isinstance(body, dict):
        code = str(body.get("error") or code)
        desc = str(body.get("error_description") or body.get("message") or "")
    user = {
        "invalid_grant": "인증 코드가 만료되었거나 이미 사용되었습니다.",
        "redirect_uri_mismatch": "리디렉션 URI가 일치하지 않습니다.",
    }.get(code)
    return OAuthError(code, f"{platform} token endpoint {status_code}: {desc or code}", user_message=user)


async def oauth2_token_request(
    ctx: ConnectorContext, token_url: str, form: dict[str, Any]
) -> TokenSet:
    """POST a form-encoded RFC 6749 token request (authorization_code or refresh_token grant)."""
    try:
        async with ctx.http() as client:
            r = await client.post(
                token_url,
                data={k: v for k, v in form.items() if v is not None},
                headers={"Accept": "application/json"},
            )
    except httpx.HTTPError as e:
        raise PlatformConnectionError(f"token request failed: {e}", platform=ctx.platform) from e
    try:
        body = r.json()
    except ValueError:
        body = {}
    if r.status_code // 100 != 2 or not isinstance(body, dict) or not body.get("access_token"):
        if r.status_code in {400, 401} or (isinstance(body, dict) and body.get("error")):
            raise _oauth_error_from_body(ctx.platform, r.status_code, body)
        raise parse_platform_error(ctx.platform, status_code=r.status_code, message=r.text[:500])
    return token_set_from_body(body)


def token_set_from_body(body: dict[str, Any]) -> TokenSet:
    def _int(v: Any) -> int | None:
        try:
            return int(v) if v is not None and v != "" else None
        except (TypeError, ValueError):
            return None

    known = {"access_token", "refresh_token", "expires_in", "token_type", "scope", "refresh_token_expires_in"}
    return TokenSet(
        access_token=str(body["access_token"]),
        refresh_token=body.get("refresh_token") or None,
        expires_in=_int(body.get("expires_in")),
        token_type=str(body.get("token_type") or "Bearer"),
        scope=" ".join(scope_list(body.get("scope"))) or None,
        refresh_expires_in=_int(body.get("refresh_token_expires_in")),
        extra={k: v for k, v in body.items() if k not in known},
    )
