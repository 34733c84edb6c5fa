from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from allad.campaigns import CampaignService
from allad.config import Settings
from allad.db import AllAdDB
from allad.repo import Repo
from allad.token_refresh import TokenRefreshService
from allad.util import days_back


async def _tick(settings: Settings) -> dict[str, Any]:
    AllAdDB(settings.db_path).init()
    repo = Repo(settings.db_path)

    tokens = await TokenRefreshService(settings, repo).refresh_expiring()

    date_from, date_to = days_back(settings.timezone, settings.sync_lookback_days)
    campaigns = CampaignService(settings, repo)
    synced = failed = 0
    for cred in repo.list_credentials(active_only=True):
        try:
            await campaigns.sync_credential(cred, date_from=date_from, date_to=date_to)
            synced += 1
        except Exception as e:  # noqa: BLE001
            # One credential must not stop the others; sync_credential already stored last_error.
            failed += 1
            logger.warning("[worker] sync {} {} failed: {}: {}", cred["platform"], cred["id"], type(e).__name__, e)

    purged = repo.purge_oauth_states()
    summary = {"tokens": tokens, "synced": synced, "sync_failed": failed, "oauth_states_purged": purged}
    logger.info("[worker] tick done: synced={} failed={} purged_states={}", synced, failed, purged)
    return summary


def run_tick(settings: Settings) -> dict[str, Any]:
    return asyncio.run(_tick(settings))


async def _run_forever(settings: Settings) -> None:
    interval = max(1, settings.token_refresh_interval_minutes) * 60
    while True:
        try:
            await _tick(settings)
        except Exception as e:  # noqa: BLE001
            logger.exception("[worker] tick failed: {}: {}", type(e).__name__, e)
        await asyncio.sleep(interval)


def run_worker(settings: Settings) -> None:
    logger.info("[worker] starting, interval={}m", settings.token_refresh_interval_minutes)
    asyncio.run(_run_forever(settings))
