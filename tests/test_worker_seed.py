from __future__ import annotations

from pathlib import Path

from allad.config import Settings
from allad.repo import Repo
from allad.seed import seed_demo
from allad.util import iso_after
from allad.worker import run_tick


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


def test_seed_demo_is_idempotent(tmp_path: Path) -> None:
    settings = _settings_for_db(tmp_path / "allad.sqlite3")
    first = seed_demo(settings)
    second = seed_demo(settings)

    assert first["team_id"] == second["team_id"]
    assert first["credential_ids"] == second["credential_ids"]

    repo = Repo(settings.db_path)
    campaigns = repo.list_campaigns(team_id=first["team_id"])
    assert {c["platform"] for c in campaigns} == {"google", "facebook", "amazon", "tiktok", "naver"}
    assert all(repo.get_credential(cid)["synced_at"] for cid in first["credential_ids"])


def test_tick_refreshes_due_tokens_and_syncs(tmp_path: Path) -> None:
    settings = _settings_for_db(tmp_path / "allad.sqlite3", demo_mode=True)
    seeded = seed_demo(settings)
    repo = Repo(settings.db_path)

    cred = repo.get_credential(seeded["credential_ids"][0])
    repo.update_credential_tokens(cred["id"], {**cred["credentials"], "expires_at": iso_after(60)})

    summary = run_tick(settings)
    assert summary["tokens"]["successful"] == 1
    assert summary["synced"] == 5
    assert summary["sync_failed"] == 0
    assert repo.get_credential(cred["id"])["credentials"]["access_token"].startswith("demo-access-")


def test_tick_keeps_going_when_one_credential_fails(tmp_path: Path) -> None:
    settings = _settings_for_db(tmp_path / "allad.sqlite3")
    seeded = seed_demo(settings)
    repo = Repo(settings.db_path)
    # outside demo mode the seeded Naver row has no API keys
    naver = next(
        c for c in repo.list_credentials(team_id=seeded["team_id"]) if c["platform"] == "naver"
    )
    for c in repo.list_credentials(team_id=seeded["team_id"]):
        if c["id"] != naver["id"]:
            repo.deactivate_credential(c["id"])

    summary = run_tick(settings)
    assert summary["synced"] == 0
    assert summary["sync_failed"] == 1
