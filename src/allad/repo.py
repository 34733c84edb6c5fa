from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from allad.util import iso_after, new_id, new_token, now_utc_iso, utc_now


_TOKEN_KEYS = ("access_token", "refresh_token", "expires_at", "scope", "token_type")


def credential_tokens(credentials: dict[str, Any] | None) -> dict[str, Any]:
    """
    Return the OAuth token fields of a credential blob.

    Older rows keep tokens nested under `oauth_tokens`; newer rows store them
    top-level. Top-level values win when both exist.
    """
    creds = credentials or {}
    nested = creds.get("oauth_tokens") if isinstance(creds.get("oauth_tokens"), dict) else {}
    out: dict[str, Any] = {}
    for k in _TOKEN_KEYS:
        v = creds.get(k)
        if v in (None, ""):
            v = nested.get(k)
        out[k] = v
    return out


def _loads(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


def _dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=True)


class Repo:
    """
    Repository used by the web app, worker and CLI.
    Keeps SQL in one place; returns plain dicts with JSON columns decoded.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    # ------------------------------------------------------------------ #
    # profiles / sessions                                                  #
    # ------------------------------------------------------------------ #

    def create_profile(self, *, email: str, password_hash: str, full_name: str | None) -> str:
        now = now_utc_iso()
        user_id = new_id("usr")
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO profiles(id, email, full_name, password_hash, created_at, updated_at)
                VALUES(?, ?, ?, ?, ?, ?)
                """,
                (user_id, email, full_name, password_hash, now, now),
            )
        return user_id

    def get_profile(self, user_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM profiles WHERE id=?", (user_id,)).fetchone()
        return dict(row) if row else None

    def get_profile_by_email(self, email: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM profiles WHERE email=? COLLATE NOCASE", (email.strip(),)
            ).fetchone()
        return dict(row) if row else None

    def create_session(self, user_id: str, *, ttl_hours: int) -> str:
        token = new_token()
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO sessions(token, user_id, created_at, expires_at) VALUES(?, ?, ?, ?)",
                (token, user_id, now_utc_iso(), iso_after(ttl_hours * 3600)),
            )
        return token

    def get_session_user(self, token: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT p.* FROM sessions s
                JOIN profiles p ON p.id = s.user_id
                WHERE s.token=? AND s.expires_at > ?
                """,
                (token, now_utc_iso()),
            ).fetchone()
        return dict(row) if row else None

    def delete_session(self, token: str) -> None:
        with self.connect() as conn:
            conn.execute("DELETE FROM sessions WHERE token=?", (token,))

    # ------------------------------------------------------------------ #
    # teams                                                                #
    # ------------------------------------------------------------------ #

    def create_team_for_user(self, user_id: str, *, name: str | None = None) -> str:
        """Create a team mastered by `user_id`; returns the existing one if already created."""
        now = now_utc_iso()
        with self.connect() as conn:
            row = conn.execute(
                "SELECT id FROM teams WHERE master_user_id=? ORDER BY created_at LIMIT 1",
                (user_id,),
            ).fetchone()
            if row:
                return str(row["id"])
            profile = conn.execute(
                "SELECT email, full_name FROM profiles WHERE id=?", (user_id,)
            ).fetchone()
            if not profile:
                raise KeyError(f"profile not found: {user_id}")
            label = name or f"{profile['full_name'] or profile['email']}의 팀"
            team_id = new_id("team")
            conn.execute(
                "INSERT INTO teams(id, name, master_user_id, created_at, updated_at) VALUES(?, ?, ?, ?, ?)",
                (team_id, label, user_id, now, now),
            )
            conn.execute(
                """
                INSERT INTO team_members(id, team_id, user_id, role, invited_by, joined_at)
                VALUES(?, ?, ?, 'master', NULL, ?)
                """,
                (new_id("mem"), team_id, user_id, now),
            )
        return team_id

    def get_team(self, team_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM teams WHERE id=?", (team_id,)).fetchone()
        return dict(row) if row else None

    def get_membership_for_user(self, user_id: str) -> dict[str, Any] | None:
        """The user's active team membership: the most recently joined one."""
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM team_members WHERE user_id=?
                ORDER BY joined_at DESC, rowid DESC
                LIMIT 1
                """,
                (user_id,),
            ).fetchone()
        return self._member_row(row)

    def get_membership(self, team_id: str, user_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM team_members WHERE team_id=? AND user_id=?", (team_id, user_id)
            ).fetchone()
        return self._member_row(row)

    def get_member(self, member_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM team_members WHERE id=?", (member_id,)).fetchone()
        return self._member_row(row)

    def list_team_members(self, team_id: str) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT m.*, p.email, p.full_name, p.avatar_url
                FROM team_members m JOIN profiles p ON p.id = m.user_id
                WHERE m.team_id=?
                ORDER BY CASE m.role WHEN 'master' THEN 0 WHEN 'team_mate' THEN 1 ELSE 2 END, m.joined_at
                """,
                (team_id,),
            ).fetchall()
        return [self._member_row(r) for r in rows]

    def update_member_role(self, member_id: str, role: str) -> None:
        with self.connect() as conn:
            conn.execute("UPDATE team_members SET role=? WHERE id=?", (role, member_id))

    def set_member_platform_access(self, member_id: str, platforms: list[str]) -> None:
        with self.connect() as conn:
            conn.execute(
                "UPDATE team_members SET platform_access_json=? WHERE id=?",
                (_dumps(platforms), member_id),
            )

    def delete_member(self, member_id: str) -> None:
        with self.connect() as conn:
            conn.execute("DELETE FROM team_members WHERE id=?", (member_id,))

    def check_team_member_limit(self, team_id: str, limit: int) -> bool:
        """True while members plus pending invitations stay below `limit`."""
        with self.connect() as conn:
            members = conn.execute(
                "SELECT COUNT(*) AS n FROM team_members WHERE team_id=?", (team_id,)
            ).fetchone()["n"]
            pending = conn.execute(
                """
                SELECT COUNT(*) AS n FROM team_invitations
                WHERE team_id=? AND status='pending' AND expires_at > ?
                """,
                (team_id, now_utc_iso()),
            ).fetchone()["n"]
        return int(members) + int(pending) < limit

    @staticmethod
    def _member_row(row: sqlite3.Row | None) -> dict[str, Any] | None:
        if row is None:
            return None
        d = dict(row)
        d["platform_access"] = _loads(d.pop("platform_access_json", None), [])
        return d

    # ------------------------------------------------------------------ #
    # invitations                                                          #
    # ------------------------------------------------------------------ #

    def create_invitation(
        self, *, team_id: str, email: str, role: str, invited_by: str, ttl_days: int
    ) -> dict[str, Any]:
        inv_id = new_id("inv")
        token = new_token()
        now = utc_now()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO team_invitations(
                  id, team_id, email, role, invited_by, status, token, created_at, expires_at
                ) VALUES(?, ?, ?, ?, ?, 'pending', ?, ?, ?)
                """,
                (
                    inv_id,
                    team_id,
                    email,
                    role,
                    invited_by,
                    token,
                    now.isoformat(),
                    (now + timedelta(days=ttl_days)).isoformat(),
                ),
            )
            row = conn.execute("SELECT * FROM team_invitations WHERE id=?", (inv_id,)).fetchone()
        return dict(row)

    def get_invitation(self, invitation_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM team_invitations WHERE id=?", (invitation_id,)).fetchone()
        return dict(row) if row else None

    def find_pending_invitation(self, team_id: str, email: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM team_invitations
                WHERE team_id=? AND email=? COLLATE NOCASE AND status='pending' AND expires_at > ?
                """,
                (team_id, email, now_utc_iso()),
            ).fetchone()
        return dict(row) if row else None

    def list_invitations(self, team_id: str, *, status: str | None = None) -> list[dict[str, Any]]:
        where = ["team_id=?"]
        params: list[Any] = [team_id]
        if status:
            where.append("status=?")
            params.append(status)
        with self.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM team_invitations WHERE {' AND '.join(where)} ORDER BY created_at DESC",
                params,
            ).fetchall()
        return [dict(r) for r in rows]

    def set_invitation_status(self, invitation_id: str, status: str) -> None:
        with self.connect() as conn:
            conn.execute(
                "UPDATE team_invitations SET status=? WHERE id=?", (status, invitation_id)
            )

    def accept_team_invitation(self, token: str, user_id: str) -> dict[str, Any]:
        """
        Consume an invitation token and add the user to the team in one transaction.

        Returns {"ok": True, "team_id", "role"} or {"ok": False, "error": reason}
        where reason is one of not_found, not_pending, expired, email_mismatch,
        already_member.
        """
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            inv = conn.execute(
                "SELECT * FROM team_invitations WHERE token=?", (token,)
            ).fetchone()
            if inv is None:
                return {"ok": False, "error": "not_found"}
            if inv["status"] != "pending":
                return {"ok": False, "error": "not_pending", "status": inv["status"]}
            if str(inv["expires_at"]) <= now:
                conn.execute(
                    "UPDATE team_invitations SET status='expired' WHERE id=?", (inv["id"],)
                )
                return {"ok": False, "error": "expired"}
            profile = conn.execute("SELECT email FROM profiles WHERE id=?", (user_id,)).fetchone()
            if profile is None or str(profile["email"]).lower() != str(inv["email"]).lower():
                return {"ok": False, "error": "email_mismatch"}
            existing = conn.execute(
                "SELECT id FROM team_members WHERE team_id=? AND user_id=?",
                (inv["team_id"], user_id),
            ).fetchone()
            if existing:
                return {"ok": False, "error": "already_member"}
            conn.execute(
                """
                INSERT INTO team_members(id, team_id, user_id, role, invited_by, joined_at)
                VALUES(?, ?, ?, ?, ?, ?)
                """,
                (new_id("mem"), inv["team_id"], user_id, inv["role"], inv["invited_by"], now),
            )
            conn.execute(
                "UPDATE team_invitations SET status='accepted', accepted_at=? WHERE id=?",
                (now, inv["id"]),
            )
        return {"ok": True, "team_id": inv["team_id"], "role": inv["role"]}

    # ------------------------------------------------------------------ #
    # platform credentials                                                 #
    # ------------------------------------------------------------------ #

    def upsert_platform_credential(
        self,
        *,
        team_id: str,
        platform: str,
        account_id: str,
        account_name: str | None,
        credentials: dict[str, Any],
        data: dict[str, Any] | None = None,
        created_by: str | None = None,
    ) -> str:
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO platform_credentials(
                  id, team_id, platform, account_id, account_name, credentials_json, data_json,
                  is_active, created_by, last_error, created_at, updated_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, 1, ?, NULL, ?, ?)
                ON CONFLICT(team_id, platform, account_id) DO UPDATE SET
                  account_name=COALESCE(excluded.account_name, platform_credentials.account_name),
                  credentials_json=excluded.credentials_json,
                  data_json=excluded.data_json,
                  is_active=1,
                  last_error=NULL,
                  updated_at=excluded.updated_at
                """,
                (
                    new_id("cred"),
                    team_id,
                    platform,
                    account_id,
                    account_name,
                    _dumps(credentials),
                    _dumps(data or {}),
                    created_by,
                    now,
                    now,
                ),
            )
            row = conn.execute(
                "SELECT id FROM platform_credentials WHERE team_id=? AND platform=? AND account_id=?",
                (team_id, platform, account_id),
            ).fetchone()
        return str(row["id"])

    def get_credential(self, credential_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM platform_credentials WHERE id=?", (credential_id,)
            ).fetchone()
        return self._credential_row(row)

    def list_credentials(
        self,
        *,
        team_id: str | None = None,
        platform: str | None = None,
        active_only: bool = False,
    ) -> list[dict[str, Any]]:
        where: list[str] = []
        params: list[Any] = []
        if team_id:
            where.append("team_id=?")
            params.append(team_id)
        if platform:
            where.append("platform=?")
            params.append(platform)
        if active_only:
            where.append("is_active=1")
        sql = "SELECT * FROM platform_credentials"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY platform, created_at"
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._credential_row(r) for r in rows]

    def update_credential_tokens(self, credential_id: str, credentials: dict[str, Any]) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                UPDATE platform_credentials
                SET credentials_json=?, last_error=NULL, updated_at=?
                WHERE id=?
                """,
                (_dumps(credentials), now_utc_iso(), credential_id),
            )

    def set_credential_error(self, credential_id: str, error: str, *, deactivate: bool = False) -> None:
        with self.connect() as conn:
            if deactivate:
                conn.execute(
                    "UPDATE platform_credentials SET last_error=?, is_active=0, updated_at=? WHERE id=?",
                    (error[:2000], now_utc_iso(), credential_id),
                )
            else:
                conn.execute(
                    "UPDATE platform_credentials SET last_error=?, updated_at=? WHERE id=?",
                    (error[:2000], now_utc_iso(), credential_id),
                )

    def deactivate_credential(self, credential_id: str) -> None:
        with self.connect() as conn:
            conn.execute(
                "UPDATE platform_credentials SET is_active=0, updated_at=? WHERE id=?",
                (now_utc_iso(), credential_id),
            )

    def mark_credential_synced(self, credential_id: str) -> None:
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute(
                "UPDATE platform_credentials SET synced_at=?, last_error=NULL, updated_at=? WHERE id=?",
                (now, now, credential_id),
            )

    @staticmethod
    def _credential_row(row: sqlite3.Row | None) -> dict[str, Any] | None:
        if row is None:
            return None
        d = dict(row)
        d["credentials"] = _loads(d.pop("credentials_json", None), {})
        d["data"] = _loads(d.pop("data_json", None), {})
        d["is_active"] = bool(d.get("is_active"))
        return d

    # ------------------------------------------------------------------ #
    # campaigns / metrics                                                  #
    # ------------------------------------------------------------------ #

    def upsert_campaign(
        self,
        *,
        team_id: str,
        platform: str,
        platform_campaign_id: str,
        name: str,
        status: str | None,
        budget: float | None,
        is_active: bool,
        account_id: str | None = None,
        platform_credential_id: str | None = None,
        raw_data: dict[str, Any] | None = None,
    ) -> str:
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO campaigns(
                  id, team_id, platform, platform_credential_id, platform_campaign_id, account_id,
                  name, status, budget, is_active, raw_data_json, created_at, updated_at, synced_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(team_id, platform, platform_campaign_id) DO UPDATE SET
                  platform_credential_id=COALESCE(excluded.platform_credential_id, campaigns.platform_credential_id),
                  account_id=COALESCE(excluded.account_id, campaigns.account_id),
                  name=excluded.name,
                  status=excluded.status,
                  budget=excluded.budget,
                  is_active=excluded.is_active,
                  raw_data_json=excluded.raw_data_json,
                  updated_at=excluded.updated_at,
                  synced_at=excluded.synced_at
                """,
                (
                    new_id("cmp"),
                    team_id,
                    platform,
                    platform_credential_id,
                    platform_campaign_id,
                    account_id,
                    name,
                    status,
                    budget,
                    1 if is_active else 0,
                    _dumps(raw_data or {}),
                    now,
                    now,
                    now,
                ),
            )
            row = conn.execute(
                "SELECT id FROM campaigns WHERE team_id=? AND platform=? AND platform_campaign_id=?",
                (team_id, platform, platform_campaign_id),
            ).fetchone()
        return str(row["id"])

    def get_campaign(self, campaign_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM campaigns WHERE id=?", (campaign_id,)).fetchone()
        return self._campaign_row(row)

    def get_campaign_by_platform_id(
        self, *, team_id: str, platform: str, platform_campaign_id: str
    ) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM campaigns WHERE team_id=? AND platform=? AND platform_campaign_id=?",
                (team_id, platform, platform_campaign_id),
            ).fetchone()
        return self._campaign_row(row)

    def list_campaigns(
        self,
        *,
        team_id: str,
        platforms: list[str] | None = None,
        active_only: bool = False,
    ) -> list[dict[str, Any]]:
        where = ["team_id=?"]
        params: list[Any] = [team_id]
        if platforms is not None:
            if not platforms:
                return []
            where.append(f"platform IN ({', '.join('?' for _ in platforms)})")
            params.extend(platforms)
        if active_only:
            where.append("is_active=1")
        with self.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM campaigns WHERE {' AND '.join(where)} ORDER BY platform, name",
                params,
            ).fetchall()
        return [self._campaign_row(r) for r in rows]

    def update_campaign_state(self, campaign_id: str, *, status: str, is_active: bool) -> None:
        with self.connect() as conn:
            conn.execute(
                "UPDATE campaigns SET status=?, is_active=?, updated_at=? WHERE id=?",
                (status, 1 if is_active else 0, now_utc_iso(), campaign_id),
            )

    def update_campaign_budget(self, campaign_id: str, budget: float) -> None:
        with self.connect() as conn:
            conn.execute(
                "UPDATE campaigns SET budget=?, updated_at=? WHERE id=?",
                (budget, now_utc_iso(), campaign_id),
            )

    @staticmethod
    def _campaign_row(row: sqlite3.Row | None) -> dict[str, Any] | None:
        if row is None:
            return None
        d = dict(row)
        d["raw_data"] = _loads(d.pop("raw_data_json", None), {})
        d["is_active"] = bool(d.get("is_active"))
        return d

    def upsert_campaign_metric(
        self,
        *,
        campaign_id: str,
        day: str,
        impressions: int,
        clicks: int,
        conversions: float,
        cost: float,
        revenue: float,
        raw_data: dict[str, Any] | None = None,
    ) -> None:
        self.upsert_campaign_metrics(
            campaign_id,
            [
                {
                    "day": day,
                    "impressions": impressions,
                    "clicks": clicks,
                    "conversions": conversions,
                    "cost": cost,
                    "revenue": revenue,
                    "raw_data": raw_data,
                }
            ],
        )

    def upsert_campaign_metrics(self, campaign_id: str, rows: list[dict[str, Any]]) -> None:
        """Write daily rows for one campaign in a single transaction."""
        now = now_utc_iso()
        with self.connect() as conn:
            conn.executemany(
                """
                INSERT INTO campaign_metrics(
                  id, campaign_id, date, impressions, clicks, conversions, cost, revenue,
                  raw_data_json, created_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(campaign_id, date) DO UPDATE SET
                  impressions=excluded.impressions,
                  clicks=excluded.clicks,
                  conversions=excluded.conversions,
                  cost=excluded.cost,
                  revenue=excluded.revenue,
                  raw_data_json=excluded.raw_data_json
                """,
                [
                    (
                        new_id("met"),
                        campaign_id,
                        r["day"],
                        r["impressions"],
                        r["clicks"],
                        r["conversions"],
                        r["cost"],
                        r["revenue"],
                        _dumps(r.get("raw_data") or {}),
                        now,
                    )
                    for r in rows
                ],
            )

    def list_campaign_metrics(
        self, campaign_id: str, *, date_from: str, date_to: str
    ) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT date, impressions, clicks, conversions, cost, revenue
                FROM campaign_metrics
                WHERE campaign_id=? AND date BETWEEN ? AND ?
                ORDER BY date
                """,
                (campaign_id, date_from, date_to),
            ).fetchall()
        return [dict(r) for r in rows]

    def list_team_metrics(
        self,
        *,
        team_id: str,
        date_from: str,
        date_to: str,
        platforms: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        where = ["c.team_id=?", "m.date BETWEEN ? AND ?"]
        params: list[Any] = [team_id, date_from, date_to]
        if platforms is not None:
            if not platforms:
                return []
            where.append(f"c.platform IN ({', '.join('?' for _ in platforms)})")
            params.extend(platforms)
        with self.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT c.platform, c.platform_campaign_id, m.date, m.impressions, m.clicks,
                       m.conversions, m.cost, m.revenue
                FROM campaign_metrics m JOIN campaigns c ON c.id = m.campaign_id
                WHERE {' AND '.join(where)}
                ORDER BY m.date, c.platform
                """,
                params,
            ).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------ #
    # oauth state                                                          #
    # ------------------------------------------------------------------ #

    def create_oauth_state(
        self,
        *,
        team_id: str,
        user_id: str,
        platform: str,
        redirect_uri: str,
        ttl_minutes: int,
        options: dict[str, Any] | None = None,
    ) -> str:
        state = new_token()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO oauth_states(
                  state, team_id, user_id, platform, redirect_uri, options_json, created_at, expires_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    state,
                    team_id,
                    user_id,
                    platform,
                    redirect_uri,
                    _dumps(options or {}),
                    now_utc_iso(),
                    iso_after(ttl_minutes * 60),
                ),
            )
        return state

    def consume_oauth_state(self, state: str) -> dict[str, Any] | None:
        """Mark a state as used and return it; None if unknown, expired or already used."""
        now = now_utc_iso()
        with self.connect() as conn:
            cur = conn.execute(
                "UPDATE oauth_states SET consumed_at=? WHERE state=? AND consumed_at IS NULL AND expires_at > ?",
                (now, state, now),
            )
            if cur.rowcount != 1:
                return None
            row = conn.execute("SELECT * FROM oauth_states WHERE state=?", (state,)).fetchone()
        if row is None:
            return None
        d = dict(row)
        d["options"] = _loads(d.pop("options_json", None), {})
        return d

    def purge_oauth_states(self, *, older_than: datetime | None = None) -> int:
        cutoff = (older_than or utc_now() - timedelta(days=1)).isoformat()
        with self.connect() as conn:
            cur = conn.execute("DELETE FROM oauth_states WHERE expires_at < ?", (cutoff,))
        return int(cur.rowcount or 0)

