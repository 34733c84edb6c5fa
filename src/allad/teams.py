from __future__ import annotations

from typing import Any

from loguru import logger

from allad.auth import normalize_email
from allad.config import Settings
from allad.errors import AuthorizationError, NotFoundError, TeamError, ValidationError
from allad.models import ROLE_PERMISSIONS, Platform, TeamPermissions, UserRole, normalize_platform
from allad.repo import Repo

INVITE_CREATED = "초대 링크가 생성되었습니다."
ROLE_UPDATED = "권한이 성공적으로 변경되었습니다."
MEMBER_REMOVED = "팀원이 성공적으로 제거되었습니다."

_ACCEPT_ERRORS = {
    "not_found": "유효하지 않은 초대 링크입니다.",
    "not_pending": "이미 처리된 초대입니다.",
    "expired": "초대 링크가 만료되었습니다.",
    "email_mismatch": "초대받은 이메일 계정으로 로그인해주세요.",
    "already_member": "이미 팀에 소속되어 있습니다.",
}


def permissions_for(role: str) -> TeamPermissions:
    try:
        return ROLE_PERMISSIONS[role]
    except KeyError:
        raise ValidationError(f"Unknown role: {role}") from None


def can_access_platform(membership: dict[str, Any], platform: str) -> bool:
    perms = permissions_for(str(membership["role"]))
    if perms.can_view_all_platforms:
        return True
    return platform in (membership.get("platform_access") or [])


def visible_platforms(membership: dict[str, Any]) -> list[str] | None:
    """None = all platforms; otherwise the explicit list a viewer was given."""
    if permissions_for(str(membership["role"])).can_view_all_platforms:
        return None
    return [p for p in membership.get("platform_access") or [] if p in Platform.ALL]


class TeamService:
    def __init__(self, settings: Settings, repo: Repo):
        self.settings = settings
        self.repo = repo

    def membership(self, user_id: str) -> dict[str, Any]:
        m = self.repo.get_membership_for_user(user_id)
        if m is None:
            raise NotFoundError("user has no team", user_message="소속된 팀이 없습니다.")
        return m

    def ensure_team(self, user_id: str) -> str:
        """create_team_for_user: idempotent, returns the user's own team."""
        try:
            return self.repo.create_team_for_user(user_id)
        except KeyError:
            raise NotFoundError(f"profile not found: {user_id}") from None

    def require_permission(self, user_id: str, flag: str) -> dict[str, Any]:
        m = self.membership(user_id)
        if not getattr(permissions_for(str(m["role"])), flag):
            raise AuthorizationError(
                f"role {m['role']} lacks {flag}", user_message="이 작업을 수행할 권한이 없습니다."
            )
        return m

    def _require_master(self, user_id: str) -> dict[str, Any]:
        m = self.membership(user_id)
        if m["role"] != UserRole.MASTER:
            raise AuthorizationError("master only", user_message="팀 마스터만 수행할 수 있습니다.")
        return m

    def _member_of_team(self, team_id: str, member_id: str) -> dict[str, Any]:
        target = self.repo.get_member(member_id)
        if target is None or target["team_id"] != team_id:
            raise NotFoundError(f"member not found: {member_id}", user_message="팀원을 찾을 수 없습니다.")
        return target

    # ------------------------------------------------------------------ #
    # invitations                                                          #
    # ------------------------------------------------------------------ #

    def invite_member(self, actor_id: str, *, email: str, role: str) -> dict[str, Any]:
        actor = self.require_permission(actor_id, "can_invite_members")
        team_id = str(actor["team_id"])
        email = normalize_email(email)

        if role == UserRole.MASTER:
            role = UserRole.VIEWER
        if role not in UserRole.INVITABLE:
            raise ValidationError(f"Unknown role: {role}")
        if actor["role"] == UserRole.TEAM_MATE and role != UserRole.VIEWER:
            raise AuthorizationError(
                "team_mate may only invite viewers", user_message="팀메이트는 뷰어만 초대할 수 있습니다."
            )

        existing = self.repo.get_profile_by_email(email)
        if existing and self.repo.get_membership(team_id, str(existing["id"])):
            raise TeamError("already a member", user_message="이미 팀에 소속된 사용자입니다.")
        if self.repo.find_pending_invitation(team_id, email):
            raise TeamError("pending invitation exists", user_message="이미 초대가 진행 중인 이메일입니다.")
        if not self.repo.check_team_member_limit(team_id, self.settings.team_member_limit):
            raise TeamError("team member limit reached", user_message="팀원 수 한도에 도달했습니다.")

        inv = self.repo.create_invitation(
            team_id=team_id,
            email=email,
            role=role,
            invited_by=actor_id,
            ttl_days=self.settings.invitation_ttl_days,
        )
        logger.info("[team] invitation {} team={} role={}", inv["id"], team_id, role)
        return {
            "invitation": inv,
            "invite_url": f"{self.settings.site_url}/{self.settings.default_lang}/invite/{inv['token']}",
            "message": INVITE_CREATED,
        }

    def accept_invitation(self, token: str, user_id: str) -> dict[str, Any]:
        res = self.repo.accept_team_invitation(token, user_id)
        if not res.get("ok"):
            reason = str(res.get("error") or "not_found")
            if reason == "not_found":
                raise NotFoundError("invitation not found", user_message=_ACCEPT_ERRORS[reason])
            raise TeamError(f"invitation rejected: {reason}", user_message=_ACCEPT_ERRORS.get(reason))
        logger.info("[team] user {} joined team {} as {}", user_id, res["team_id"], res["role"])
        return {"team_id": res["team_id"], "role": res["role"]}

    def cancel_invitation(self, actor_id: str, invitation_id: str) -> None:
        actor = self.require_permission(actor_id, "can_invite_members")
        inv = self.repo.get_invitation(invitation_id)
        if inv is None or inv["team_id"] != actor["team_id"]:
            raise NotFoundError("invitation not found", user_message="초대를 찾을 수 없습니다.")
        if inv["status"] != "pending":
            raise TeamError("invitation is not pending", user_message=_ACCEPT_ERRORS["not_pending"])
        self.repo.set_invitation_status(invitation_id, "cancelled")

    def list_invitations(self, actor_id: str) -> list[dict[str, Any]]:
        m = self.membership(actor_id)
        rows = self.repo.list_invitations(str(m["team_id"]))
        if not permissions_for(str(m["role"])).can_invite_members:
            # tokens are bearer secrets
            rows = [{k: v for k, v in r.items() if k != "token"} for r in rows]
        return rows

    # ------------------------------------------------------------------ #
    # members                                                              #
    # ------------------------------------------------------------------ #

    def list_members(self, actor_id: str) -> dict[str, Any]:
        m = self.membership(actor_id)
        team = self.repo.get_team(str(m["team_id"]))
        return {
            "team": team,
            "role": m["role"],
            "permissions": permissions_for(str(m["role"])).to_dict(),
            "members": self.repo.list_team_members(str(m["team_id"])),
        }

    def update_member_role(self, actor_id: str, member_id: str, role: str) -> str:
        actor = self._require_master(actor_id)
        target = self._member_of_team(str(actor["team_id"]), member_id)
        if target["role"] == UserRole.MASTER:
            raise TeamError("cannot change master role", user_message="마스터의 권한은 변경할 수 없습니다.")
        if role not in UserRole.INVITABLE:
            raise ValidationError(f"role must be one of {UserRole.INVITABLE}: {role}")
        self.repo.update_member_role(member_id, role)
        return ROLE_UPDATED

    def remove_member(self, actor_id: str, member_id: str) -> str:
        actor = self._require_master(actor_id)
        target = self._member_of_team(str(actor["team_id"]), member_id)
        if target["role"] == UserRole.MASTER:
            raise TeamError("cannot remove master", user_message="마스터는 제거할 수 없습니다.")
        self.repo.delete_member(member_id)
        logger.info("[team] member {} removed from {}", member_id, actor["team_id"])
        return MEMBER_REMOVED

    def set_platform_access(self, actor_id: str, member_id: str, platforms: list[str]) -> list[str]:
        actor = self._require_master(actor_id)
        target = self._member_of_team(str(actor["team_id"]), member_id)
        if target["role"] != UserRole.VIEWER:
            raise TeamError("platform access applies to viewers only")
        try:
            cleaned = sorted({normalize_platform(p) for p in platforms})
        except ValueError as e:
            raise ValidationError(str(e)) from None
        self.repo.set_member_platform_access(member_id, cleaned)
        return cleaned
