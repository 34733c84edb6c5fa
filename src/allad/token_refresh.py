from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable

import httpx
from loguru import logger

from allad.config import Settings
from allad.errors import AllAdError, OAuthError, PlatformAuthError
from allad.registry import build_connector
from allad.repo import Repo, credential_tokens
from allad.util import iso_after, parse_iso, utc_now

DEFAULT_EXPIRES_IN = 3600

# OAuth error codes after which the stored grant can never be used again
_IRRECOVERABLE = {"invalid_grant", "invalid_client", "unauthorized_client", "access_denied"}


def is_irrecoverable(exc: Exception) -> bool:
    if isinstance(exc, OAuthError):
        return exc.code in _IRRECOVERABLE
    return isinstance(exc, PlatformAuthError)


class TokenRefreshService:
    """
    Refreshes OAuth credentials that are about to expire.

    A credential is due when its `expires_at` falls inside the refresh
    buffer. Credentials without `expires_at` (Meta system-user tokens, Naver
    API keys) never expire and are skipped.
    """

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
        self.connector_factory = connector_factory
        self.transport = transport

    def due(self, credential: dict[str, Any], now: datetime) -> bool | None:
        """True = refresh now, False = still fresh, None = never expires."""
        expires_at = parse_iso(credential_tokens(credential.get("credentials")).get("expires_at"))
        if expires_at is None:
            return None
        return expires_at <= now + timedelta(minutes=self.settings.token_refresh_buffer_minutes)

    async def refresh_expiring(
        self,
        *,
        team_id: str | None = None,
        platform: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        now = now or utc_now()
        report: dict[str, Any] = {"successful": 0, "failed": 0, "skipped": 0, "errors": []}

        due: list[dict[str, Any]] = []
        for cred in self.repo.list_credentials(team_id=team_id, platform=platform, active_only=True):
            if self.due(cred, now):
                due.append(cred)
            else:
                report["skipped"] += 1

        results = await asyncio.gather(*(self.refresh_credential(c) for c in due), return_exceptions=True)
        for cred, res in zip(due, results):
            if isinstance(res, Exception):
                report["failed"] += 1
                report["errors"].append({"credential_id": cred["id"], "error": str(res)})
            else:
                report["successful"] += 1

        if due:
            logger.info(
                "[token] refreshed={} failed={} skipped={}",
                report["successful"],
                report["failed"],
                report["skipped"],
            )
        return report

    async def refresh_credential(self, credential: dict[str, Any]) -> dict[str, Any]:
        """Refresh one credential and persist the new tokens. Raises on failure."""
        cred_id = str(credential["id"])
        creds = dict(credential.get("credentials") or {})
        old = credential_tokens(creds)
        refresh_token = old.get("refresh_token")
        if not refresh_token:
            err = OAuthError("missing_refresh_token", f"credential {cred_id} has no refresh token")
            self.repo.set_credential_error(cred_id, str(err))
            raise err

        connector = self.connector_factory(
            str(credential["platform"]), self.settings, credential=credential, transport=self.transport
        )
        try:
            tokens = await connector.refresh(str(refresh_token))
        except (AllAdError, httpx.HTTPError) as e:
            dead = is_irrecoverable(e)
            self.repo.set_credential_error(cred_id, str(e), deactivate=dead)
            logger.warning("[token] credential {} refresh failed (deactivated={}): {}", cred_id, dead, e)
            raise

        creds.pop("oauth_tokens", None)
        creds.update(
            {
                "access_token": tokens.access_token,
                # vendors that do not rotate refresh tokens omit it
                "refresh_token": tokens.refresh_token or refresh_token,
                "token_type": tokens.token_type,
                "expires_at": iso_after(tokens.expires_in or DEFAULT_EXPIRES_IN),
            }
        )
        if tokens.scope or old.get("scope"):
            creds["scope"] = tokens.scope or old["scope"]
        if tokens.refresh_expires_in:
            creds["refresh_expires_at"] = iso_after(tokens.refresh_expires_in)
        self.repo.update_credential_tokens(cred_id, creds)
        return creds
