from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any

from loguru import logger

from allad.auth import AuthService
from allad.campaigns import CampaignService
from allad.config import Settings
from allad.db import AllAdDB
from allad.models import Platform
from allad.repo import Repo
from allad.util import iso_after

DEMO_EMAIL = "demo@allad.local"
DEMO_PASSWORD = "demo-password"

_DEMO_PLATFORMS = (Platform.GOOGLE, Platform.FACEBOOK, Platform.AMAZON, Platform.TIKTOK, Platform.NAVER)


def seed_demo(settings: Settings, *, email: str = DEMO_EMAIL, password: str = DEMO_PASSWORD) -> dict[str, Any]:
    """Create a demo user with one demo credential per platform and mirror their data."""
    AllAdDB(settings.db_path).init()
    repo = Repo(settings.db_path)
    demo_settings = replace(settings, demo_mode=True)

    profile = repo.get_profile_by_email(email)
    if profile is None:
        user_id = str(AuthService(demo_settings, repo).signup(email=email, password=password, full_name="Demo")["user"]["id"])
    else:
        user_id = str(profile["id"])
    team_id = repo.create_team_for_user(user_id)

    cred_ids = [
        repo.upsert_platform_credential(
            team_id=team_id,
            platform=p,
            account_id=f"demo-{p}",
            account_name=f"Demo {p}",
            credentials={
                "access_token": f"demo-access-{p}",
                "refresh_token": f"demo-refresh-{p}",
                "expires_at": iso_after(3600),
                "scope": "demo",
            },
            data={"demo": True},
            created_by=user_id,
        )
        for p in _DEMO_PLATFORMS
    ]

    campaigns = CampaignService(demo_settings, repo)

    async def _sync() -> None:
        wanted = set(cred_ids)
        for cred in repo.list_credentials(team_id=team_id, active_only=True):
            if cred["id"] in wanted:
                await campaigns.sync_credential(cred)

    asyncio.run(_sync())
    logger.info("[seed] demo team {} with {} credentials", team_id, len(cred_ids))
    return {"user_id": user_id, "team_id": team_id, "email": email, "credential_ids": cred_ids}
