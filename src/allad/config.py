from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import os

from dotenv import load_dotenv


def _truthy(v: str | None) -> bool:
    if v is None:
        return False
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    return int(raw) if raw else default


def _env_secret(name: str) -> str | None:
    # Secrets never carry a default; unset and blank both mean "not configured".
    raw = (os.getenv(name) or "").strip()
    return raw or None


@dataclass(frozen=True)
class OAuthClient:
    client_id: str
    client_secret: str
    developer_token: str | None = None


# platform -> (client id var, client secret var, extra token var)
_OAUTH_ENV: dict[str, tuple[str, str, str | None]] = {
    "google": ("GOOGLE_ADS_CLIENT_ID", "GOOGLE_ADS_CLIENT_SECRET", "GOOGLE_ADS_DEVELOPER_TOKEN"),
    "facebook": ("META_APP_ID", "META_APP_SECRET", None),
    "amazon": ("AMAZON_ADS_CLIENT_ID", "AMAZON_ADS_CLIENT_SECRET", None),
    "tiktok": ("TIKTOK_APP_ID", "TIKTOK_APP_SECRET", None),
    "kakao": ("KAKAO_CLIENT_ID", "KAKAO_CLIENT_SECRET", None),
}


def _load_oauth_clients() -> dict[str, OAuthClient]:
    out: dict[str, OAuthClient] = {}
    for platform, (id_var, secret_var, extra_var) in _OAUTH_ENV.items():
        client_id = _env_secret(id_var)
        client_secret = _env_secret(secret_var)
        if not client_id or not client_secret:
            continue
        out[platform] = OAuthClient(
            client_id=client_id,
            client_secret=client_secret,
            developer_token=_env_secret(extra_var) if extra_var else None,
        )
    return out


@dataclass(frozen=True)
class Settings:
    db_path: Path
    timezone: str
    web_host: str
    web_port: int
    site_url: str
    default_lang: str
    demo_mode: bool
    log_level: str
    session_ttl_hours: int = 168
    invitation_ttl_days: int = 7
    team_member_limit: int = 10
    token_refresh_interval_minutes: int = 30
    token_refresh_buffer_minutes: int = 30
    oauth_state_ttl_minutes: int = 10
    sync_lookback_days: int = 7
    oauth_clients: dict[str, OAuthClient] = field(default_factory=dict)

    def oauth_client(self, platform: str) -> OAuthClient | None:
        return self.oauth_clients.get(platform)

    @staticmethod
    def load() -> "Settings":
        load_dotenv()

        db_path = Path(os.getenv("ALLAD_DB_PATH", "./data/allad.sqlite3"))
        timezone = os.getenv("ALLAD_TIMEZONE", "Asia/Seoul").strip() or "Asia/Seoul"
        web_host = os.getenv("ALLAD_WEB_HOST", "127.0.0.1")
        web_port = int(os.getenv("ALLAD_WEB_PORT", "8010"))
        site_url = (os.getenv("ALLAD_SITE_URL") or f"http://{web_host}:{web_port}").rstrip("/")
        default_lang = os.getenv("ALLAD_DEFAULT_LANG", "ko").strip() or "ko"

        return Settings(
            db_path=db_path,
            timezone=timezone,
            web_host=web_host,
            web_port=web_port,
            site_url=site_url,
            default_lang=default_lang,
            demo_mode=_truthy(os.getenv("ALLAD_DEMO_MODE", "0")),
            log_level=os.getenv("ALLAD_LOG_LEVEL", "INFO").strip().upper() or "INFO",
            session_ttl_hours=_env_int("ALLAD_SESSION_TTL_HOURS", 168),
            invitation_ttl_days=_env_int("ALLAD_INVITATION_TTL_DAYS", 7),
            team_member_limit=_env_int("ALLAD_TEAM_MEMBER_LIMIT", 10),
            token_refresh_interval_minutes=_env_int("ALLAD_TOKEN_REFRESH_INTERVAL_MINUTES", 30),
            token_refresh_buffer_minutes=_env_int("ALLAD_TOKEN_REFRESH_BUFFER_MINUTES", 30),
            oauth_state_ttl_minutes=_env_int("ALLAD_OAUTH_STATE_TTL_MINUTES", 10),
            sync_lookback_days=_env_int("ALLAD_SYNC_LOOKBACK_DAYS", 7),
            oauth_clients=_load_oauth_clients(),
        )
