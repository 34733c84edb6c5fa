from __future__ import annotations

import sqlite3
from pathlib import Path


SCHEMA_VERSION = 1


class AllAdDB:
    def __init__(self, db_path: Path):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    def init(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )
            current_version = self._get_schema_version(conn)
            if current_version > SCHEMA_VERSION:
                raise RuntimeError(
                    f"Database schema v{current_version} is newer than this build (v{SCHEMA_VERSION})"
                )

            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS profiles (
                  id TEXT PRIMARY KEY,
                  email TEXT NOT NULL UNIQUE COLLATE NOCASE,
                  full_name TEXT,
                  avatar_url TEXT,
                  password_hash TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS sessions (
                  token TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
                  created_at TEXT NOT NULL,
                  expires_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS teams (
                  id TEXT PRIMARY KEY,
                  name TEXT NOT NULL,
                  master_user_id TEXT NOT NULL REFERENCES profiles(id),
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS team_members (
                  id TEXT PRIMARY KEY,
                  team_id TEXT NOT NULL REFERENCES teams(id) ON DELETE CASCADE,
                  user_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
                  role TEXT NOT NULL CHECK (role IN ('master', 'team_mate', 'viewer')),
                  invited_by TEXT,
                  platform_access_json TEXT NOT NULL DEFAULT '[]',
                  joined_at TEXT NOT NULL,
                  UNIQUE (team_id, user_id)
                );

                -- exactly one master per team (creation always inserts one)
                CREATE UNIQUE INDEX IF NOT EXISTS idx_team_members_one_master
                ON team_members(team_id) WHERE role = 'master';

                CREATE TABLE IF NOT EXISTS team_invitations (
                  id TEXT PRIMARY KEY,
                  team_id TEXT NOT NULL REFERENCES teams(id) ON DELETE CASCADE,
                  email TEXT NOT NULL COLLATE NOCASE,
                  role TEXT NOT NULL CHECK (role IN ('team_mate', 'viewer')),
                  invited_by TEXT NOT NULL,
                  status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'accepted', 'expired', 'cancelled')),
                  token TEXT NOT NULL UNIQUE,
                  created_at TEXT NOT NULL,
                  expires_at TEXT NOT NULL,
                  accepted_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_team_invitations_team_status
                ON team_invitations(team_id, status);

                CREATE TABLE IF NOT EXISTS platform_credentials (
                  id TEXT PRIMARY KEY,
                  team_id TEXT NOT NULL REFERENCES teams(id) ON DELETE CASCADE,
                  platform TEXT NOT NULL CHECK (
                    platform IN ('facebook', 'google', 'kakao', 'naver', 'coupang', 'amazon', 'tiktok')
                  ),
                  account_id TEXT NOT NULL,
                  account_name TEXT,
                  credentials_json TEXT NOT NULL DEFAULT '{}',
                  data_json TEXT NOT NULL DEFAULT '{}',
                  is_active INTEGER NOT NULL DEFAULT 1,
                  created_by TEXT,
                  last_error TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  synced_at TEXT,
                  UNIQUE (team_id, platform, account_id)
                );

                CREATE TABLE IF NOT EXISTS campaigns (
                  id TEXT PRIMARY KEY,
                  team_id TEXT NOT NULL REFERENCES teams(id) ON DELETE CASCADE,
                  platform TEXT NOT NULL,
                  platform_credential_id TEXT REFERENCES platform_credentials(id) ON DELETE SET NULL,
                  platform_campaign_id TEXT NOT NULL,
                  account_id TEXT,
                  name TEXT NOT NULL,
                  status TEXT,
                  budget REAL,
                  is_active INTEGER NOT NULL DEFAULT 0,
                  raw_data_json TEXT NOT NULL DEFAULT '{}',
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  synced_at TEXT,
                  UNIQUE (team_id, platform, platform_campaign_id)
                );

                CREATE TABLE IF NOT EXISTS campaign_metrics (
                  id TEXT PRIMARY KEY,
                  campaign_id TEXT NOT NULL REFERENCES campaigns(id) ON DELETE CASCADE,
                  date TEXT NOT NULL,
                  impressions INTEGER NOT NULL DEFAULT 0,
                  clicks INTEGER NOT NULL DEFAULT 0,
                  conversions REAL NOT NULL DEFAULT 0,
                  cost REAL NOT NULL DEFAULT 0,
                  revenue REAL NOT NULL DEFAULT 0,
                  raw_data_json TEXT NOT NULL DEFAULT '{}',
                  created_at TEXT NOT NULL,
                  UNIQUE (campaign_id, date)
                );

                CREATE INDEX IF NOT EXISTS idx_campaign_metrics_date
                ON campaign_metrics(date);

                CREATE TABLE IF NOT EXISTS oauth_states (
                  state TEXT PRIMARY KEY,
                  team_id TEXT NOT NULL REFERENCES teams(id) ON DELETE CASCADE,
                  user_id TEXT NOT NULL,
                  platform TEXT NOT NULL,
                  redirect_uri TEXT NOT NULL,
                  options_json TEXT NOT NULL DEFAULT '{}',
                  created_at TEXT NOT NULL,
                  expires_at TEXT NOT NULL,
                  consumed_at TEXT
                );
                """
            )
            conn.execute(
                "INSERT OR REPLACE INTO meta(key, value) VALUES(?, ?)",
                ("schema_version", str(SCHEMA_VERSION)),
            )

    def _get_schema_version(self, conn: sqlite3.Connection) -> int:
        row = conn.execute(
            "SELECT value FROM meta WHERE key='schema_version'"
        ).fetchone()
        if not row:
            return 0
        try:
            return int(row["value"])
        except (TypeError, ValueError):
            return 0
