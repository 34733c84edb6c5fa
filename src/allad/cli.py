from __future__ import annotations

import asyncio
import json
from datetime import date

import typer

from allad.campaigns import CampaignService
from allad.config import Settings
from allad.db import AllAdDB
from allad.errors import AllAdError
from allad.log import setup_logging
from allad.models import normalize_platform
from allad.repo import Repo
from allad.seed import seed_demo
from allad.token_refresh import TokenRefreshService
from allad.util import days_back
from allad.web.app import run_web
from allad.worker import run_tick, run_worker

app = typer.Typer(no_args_is_help=True)


def _settings() -> Settings:
    settings = Settings.load()
    setup_logging(settings.log_level)
    return settings


def json_dumps(obj) -> str:
    return json.dumps(obj, ensure_ascii=False, indent=2, default=str)


def _platform_opt(platform: str | None) -> str | None:
    if not platform:
        return None
    try:
        return normalize_platform(platform)
    except ValueError as e:
        typer.echo(f"ERROR: {e}")
        raise typer.Exit(code=2) from e


@app.command("db")
def db_cmd(
    action: str = typer.Argument(..., help="init|seed-demo"),
) -> None:
    settings = _settings()
    if action == "init":
        AllAdDB(settings.db_path).init()
        typer.echo(f"OK db init: {settings.db_path}")
        return
    if action == "seed-demo":
        res = seed_demo(settings)
        typer.echo(json_dumps(res))
        return
    raise typer.BadParameter("action must be one of: init, seed-demo")


@app.command("web")
def web_cmd() -> None:
    run_web(_settings())


@app.command("worker")
def worker_cmd() -> None:
    run_worker(_settings())


@app.command("tick")
def tick_cmd() -> None:
    typer.echo(json_dumps(run_tick(_settings())))


@app.command("refresh-tokens")
def refresh_tokens_cmd(
    team_id: str | None = typer.Option(None, help="Only credentials of this team."),
    platform: str | None = typer.Option(None, help="google|facebook|amazon|tiktok|kakao"),
) -> None:
    """Refresh OAuth credentials that expire within the refresh buffer."""
    settings = _settings()
    AllAdDB(settings.db_path).init()
    service = TokenRefreshService(settings, Repo(settings.db_path))
    report = asyncio.run(service.refresh_expiring(team_id=team_id, platform=_platform_opt(platform)))
    typer.echo(json_dumps(report))
    if report["failed"]:
        raise typer.Exit(code=2)


@app.command("sync")
def sync_cmd(
    team_id: str | None = typer.Option(None, help="Only credentials of this team."),
    platform: str | None = typer.Option(None, help="Only this platform."),
    since: str | None = typer.Option(None, help="YYYY-MM-DD. Defaults to the lookback window."),
    until: str | None = typer.Option(None, help="YYYY-MM-DD. Defaults to today."),
) -> None:
    """Mirror campaigns and daily metrics of active credentials into SQLite."""
    settings = _settings()
    AllAdDB(settings.db_path).init()
    repo = Repo(settings.db_path)

    date_from, date_to = days_back(settings.timezone, settings.sync_lookback_days)
    try:
        date_from = date.fromisoformat(since.strip()).isoformat() if since else date_from
        date_to = date.fromisoformat(until.strip()).isoformat() if until else date_to
    except ValueError as e:
        typer.echo("ERROR: since/until must be YYYY-MM-DD")
        raise typer.Exit(code=2) from e

    creds = repo.list_credentials(team_id=team_id, platform=_platform_opt(platform), active_only=True)
    if not creds:
        typer.echo("Nothing to sync.")
        return
    service = CampaignService(settings, repo)

    async def _run() -> int:
        failed = 0
        for c in creds:
            try:
                res = await service.sync_credential(c, date_from=date_from, date_to=date_to)
                typer.echo(f"OK {c['platform']} {c['account_id']}: {res['campaigns']} campaigns, {res['metrics']} metric rows")
            except AllAdError as e:
                failed += 1
                typer.echo(f"ERROR {c['platform']} {c['account_id']}: {e}")
        return failed

    if asyncio.run(_run()):
        raise typer.Exit(code=2)
