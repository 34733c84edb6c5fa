from __future__ import annotations

from pathlib import Path

import pytest

from allad.auth import LOGIN_FAILED_MESSAGE, AuthService
from allad.config import Settings
from allad.db import AllAdDB
from allad.errors import AuthenticationError, AuthorizationError, NotFoundError, TeamError, ValidationError
from allad.repo import Repo
from allad.teams import TeamService, can_access_platform, visible_platforms


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


def _services(tmp_path: Path, **overrides):
    db_path = tmp_path / "allad.sqlite3"
    AllAdDB(db_path).init()
    settings = _settings_for_db(db_path, **overrides)
    repo = Repo(db_path)
    return AuthService(settings, repo), TeamService(settings, repo), repo


def _signup(auth: AuthService, email: str) -> str:
    return str(auth.signup(email=email, password="password123", full_name=None)["user"]["id"])


def test_signup_creates_team_with_single_master(tmp_path: Path) -> None:
    auth, teams, repo = _services(tmp_path)
    res = auth.signup(email="Owner@Example.com", password="password123", full_name="Owner")

    assert res["user"]["email"] == "owner@example.com"
    assert "password_hash" not in res["user"]
    members = repo.list_team_members(res["team_id"])
    assert [m["role"] for m in members] == ["master"]
    assert members[0]["user_id"] == res["user"]["id"]

    # idempotent: the same user never gets a second team
    assert teams.ensure_team(res["user"]["id"]) == res["team_id"]


def test_signup_rejects_duplicates_and_short_passwords(tmp_path: Path) -> None:
    auth, _teams, _repo = _services(tmp_path)
    _signup(auth, "a@example.com")
    with pytest.raises(ValidationError):
        auth.signup(email="A@example.com", password="password123")
    with pytest.raises(ValidationError):
        auth.signup(email="b@example.com", password="short")
    with pytest.raises(ValidationError):
        auth.signup(email="not-an-email", password="password123")


def test_login_failure_uses_single_message(tmp_path: Path) -> None:
    auth, _teams, _repo = _services(tmp_path)
    _signup(auth, "a@example.com")

    with pytest.raises(AuthenticationError) as wrong_pw:
        auth.login(email="a@example.com", password="wrong-password")
    with pytest.raises(AuthenticationError) as unknown:
        auth.login(email="nobody@example.com", password="password123")
    assert wrong_pw.value.user_message == LOGIN_FAILED_MESSAGE
    assert unknown.value.user_message == LOGIN_FAILED_MESSAGE

    token = auth.login(email="a@example.com", password="password123")
    assert auth.current_user(token)["email"] == "a@example.com"
    auth.logout(token)
    assert auth.current_user(token) is None


def test_invite_accept_flow(tmp_path: Path) -> None:
    auth, teams, repo = _services(tmp_path)
    master = _signup(auth, "master@example.com")
    guest = _signup(auth, "guest@example.com")

    res = teams.invite_member(master, email="guest@example.com", role="team_mate")
    token = res["invitation"]["token"]
    assert res["invite_url"].endswith(f"/ko/invite/{token}")

    joined = teams.accept_invitation(token, guest)
    membership = teams.membership(guest)
    assert membership["team_id"] == joined["team_id"]
    assert membership["role"] == "team_mate"

    # single use
    with pytest.raises(TeamError):
        teams.accept_invitation(token, guest)


def test_invite_as_master_is_downgraded_to_viewer(tmp_path: Path) -> None:
    auth, teams, _repo = _services(tmp_path)
    master = _signup(auth, "master@example.com")
    res = teams.invite_member(master, email="x@example.com", role="master")
    assert res["invitation"]["role"] == "viewer"


def test_accept_rejects_other_email_and_unknown_token(tmp_path: Path) -> None:
    auth, teams, _repo = _services(tmp_path)
    master = _signup(auth, "master@example.com")
    intruder = _signup(auth, "intruder@example.com")
    token = teams.invite_member(master, email="guest@example.com", role="viewer")["invitation"]["token"]

    with pytest.raises(TeamError) as exc:
        teams.accept_invitation(token, intruder)
    assert exc.value.user_message == "초대받은 이메일 계정으로 로그인해주세요."
    with pytest.raises(NotFoundError):
        teams.accept_invitation("no-such-token", intruder)


def test_team_mate_invites_viewers_only_and_viewer_cannot_invite(tmp_path: Path) -> None:
    auth, teams, _repo = _services(tmp_path)
    master = _signup(auth, "master@example.com")
    mate = _signup(auth, "mate@example.com")
    viewer = _signup(auth, "viewer@example.com")
    teams.accept_invitation(teams.invite_member(master, email="mate@example.com", role="team_mate")["invitation"]["token"], mate)
    teams.accept_invitation(teams.invite_member(master, email="viewer@example.com", role="viewer")["invitation"]["token"], viewer)

    with pytest.raises(AuthorizationError):
        teams.invite_member(mate, email="new@example.com", role="team_mate")
    assert teams.invite_member(mate, email="new@example.com", role="viewer")["invitation"]["role"] == "viewer"

    with pytest.raises(AuthorizationError):
        teams.invite_member(viewer, email="other@example.com", role="viewer")

    # viewers do not see invitation tokens
    assert all("token" not in inv for inv in teams.list_invitations(viewer))


def test_duplicate_invite_and_member_limit(tmp_path: Path) -> None:
    auth, teams, _repo = _services(tmp_path, team_member_limit=2)
    master = _signup(auth, "master@example.com")

    teams.invite_member(master, email="one@example.com", role="viewer")
    with pytest.raises(TeamError):
        teams.invite_member(master, email="ONE@example.com", role="viewer")
    # 1 master + 1 pending invitation reaches the limit of 2
    with pytest.raises(TeamError):
        teams.invite_member(master, email="two@example.com", role="viewer")


def test_master_manages_roles_and_viewer_platforms(tmp_path: Path) -> None:
    auth, teams, repo = _services(tmp_path)
    master = _signup(auth, "master@example.com")
    viewer = _signup(auth, "viewer@example.com")
    teams.accept_invitation(teams.invite_member(master, email="viewer@example.com", role="viewer")["invitation"]["token"], viewer)

    member = teams.membership(viewer)
    assert visible_platforms(member) == []
    assert teams.set_platform_access(master, member["id"], ["meta", "google"]) == ["facebook", "google"]

    member = teams.membership(viewer)
    assert visible_platforms(member) == ["facebook", "google"]
    assert can_access_platform(member, "google")
    assert not can_access_platform(member, "tiktok")

    master_member = teams.membership(master)
    with pytest.raises(TeamError):
        teams.update_member_role(master, master_member["id"], "viewer")
    with pytest.raises(TeamError):
        teams.remove_member(master, master_member["id"])
    with pytest.raises(AuthorizationError):
        teams.update_member_role(viewer, master_member["id"], "viewer")

    teams.update_member_role(master, member["id"], "team_mate")
    assert teams.membership(viewer)["role"] == "team_mate"
    teams.remove_member(master, member["id"])
    assert repo.get_membership(master_member["team_id"], viewer) is None


def test_expired_invitation_is_marked_and_rejected(tmp_path: Path) -> None:
    auth, teams, repo = _services(tmp_path)
    master = _signup(auth, "master@example.com")
    guest = _signup(auth, "guest@example.com")
    inv = teams.invite_member(master, email="guest@example.com", role="viewer")["invitation"]
    with repo.connect() as conn:
        conn.execute(
            "UPDATE team_invitations SET expires_at=? WHERE id=?", ("2000-01-01T00:00:00+00:00", inv["id"])
        )

    with pytest.raises(TeamError) as exc:
        teams.accept_invitation(inv["token"], guest)
    assert "expired" in str(exc.value)
    assert repo.get_invitation(inv["id"])["status"] == "expired"
    assert repo.get_membership(str(inv["team_id"]), guest) is None
