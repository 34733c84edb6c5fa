from __future__ import annotations

import re
import sqlite3
from typing import Any

import bcrypt
from loguru import logger

from allad.config import Settings
from allad.errors import AuthenticationError, NotFoundError, ValidationError
from allad.repo import Repo

LOGIN_FAILED_MESSAGE = "이메일 또는 비밀번호가 올바르지 않습니다"
MIN_PASSWORD_LENGTH = 8

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("ascii")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("ascii"))
    except ValueError:
        return False


def normalize_email(email: str) -> str:
    e = str(email or "").strip().lower()
    if not e or not _EMAIL_RE.match(e):
        raise ValidationError(f"invalid email: {email!r}", user_message="올바른 이메일 주소를 입력해주세요.")
    return e


def public_profile(profile: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in profile.items() if k != "password_hash"}


class AuthService:
    def __init__(self, settings: Settings, repo: Repo):
        self.settings = settings
        self.repo = repo

    def signup(self, *, email: str, password: str, full_name: str | None = None) -> dict[str, Any]:
        """Create a profile plus its own team, with the new user as the team's only master."""
        email = normalize_email(email)
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                "password too short",
                user_message=f"비밀번호는 {MIN_PASSWORD_LENGTH}자 이상이어야 합니다.",
            )
        name = (full_name or "").strip() or None
        try:
            user_id = self.repo.create_profile(email=email, password_hash=hash_password(password), full_name=name)
        except sqlite3.IntegrityError:
            raise ValidationError("email already registered", user_message="이미 가입된 이메일입니다.") from None
        team_id = self.repo.create_team_for_user(user_id)
        logger.info("[auth] signup user={} team={}", user_id, team_id)
        profile = self.repo.get_profile(user_id)
        if profile is None:
            raise NotFoundError(f"profile not found: {user_id}")
        return {"user": public_profile(profile), "team_id": team_id}

    def login(self, *, email: str, password: str) -> str:
        profile = self.repo.get_profile_by_email(str(email or "").strip())
        if profile is None or not verify_password(password or "", str(profile["password_hash"])):
            raise AuthenticationError("login failed", user_message=LOGIN_FAILED_MESSAGE)
        return self.repo.create_session(str(profile["id"]), ttl_hours=self.settings.session_ttl_hours)

    def current_user(self, token: str | None) -> dict[str, Any] | None:
        if not token:
            return None
        profile = self.repo.get_session_user(token)
        return public_profile(profile) if profile else None

    def require_user(self, token: str | None) -> dict[str, Any]:
        user = self.current_user(token)
        if user is None:
            raise AuthenticationError("not logged in", user_message="로그인이 필요합니다.")
        return user

    def logout(self, token: str) -> None:
        self.repo.delete_session(token)
