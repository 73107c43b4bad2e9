"""guild_etl.store

PostgreSQL document store (psycopg 3, explicit SQL).

Tables (see migrations/):
  - guild_character         one row per member; full record in JSONB
  - raid_progress_snapshot  one row per season; replaced whole
  - raid_team_member        raid-team view rows

Functions never commit.  The caller owns the transaction (and the
per-member SAVEPOINTs); dry runs roll back.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import psycopg


def _jsonb(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


# ---------------------------------------------------------------------------
# guild_character
# ---------------------------------------------------------------------------

def upsert_character(conn: psycopg.Connection, record: dict[str, Any]) -> bool:
    """Insert or replace one character record keyed by (name, server).

    The row is (re)activated.  Returns True if a new row was inserted.
    """
    doc = {**record, "is_active": True}
    row = conn.execute(
        """
        INSERT INTO guild_character (name, server, is_active, record)
        VALUES (%s, %s, true, %s::jsonb)
        ON CONFLICT (name, server) DO UPDATE
            SET record = EXCLUDED.record,
                is_active = true,
                updated_at = now()
        RETURNING (xmax = 0) AS was_inserted
        """,
        (doc["name"], doc["server"], _jsonb(doc)),
    ).fetchone()
    return bool(row[0]) if row else False


def find_active_characters(conn: psycopg.Connection) -> list[dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT record
        FROM guild_character
        WHERE is_active
        ORDER BY name, server
        """
    ).fetchall()
    return [r[0] for r in rows]


def find_character(conn: psycopg.Connection, name: str, server: str) -> dict[str, Any] | None:
    """Fetch one record regardless of active flag (None if absent)."""
    row = conn.execute(
        "SELECT record, is_active FROM guild_character WHERE name = %s AND server = %s",
        (name, server),
    ).fetchone()
    if row is None:
        return None
    return {**row[0], "is_active": bool(row[1])}


def count_active_characters(conn: psycopg.Connection) -> int:
    row = conn.execute("SELECT count(*) FROM guild_character WHERE is_active").fetchone()
    return int(row[0]) if row else 0


def mark_inactive_except(conn: psycopg.Connection, names: list[str]) -> int:
    """Deactivate every active row whose name is not in names.

    Returns the number of rows deactivated.  Already-inactive rows are left
    untouched, so repeated calls with the same names return 0.
    """
    cur = conn.execute(
        """
        UPDATE guild_character
        SET is_active = false,
            record = jsonb_set(record, '{is_active}', 'false'::jsonb),
            updated_at = now()
        WHERE is_active
          AND NOT (name = ANY(%s::text[]))
        """,
        (list(names),),
    )
    return cur.rowcount


# ---------------------------------------------------------------------------
# raid_progress_snapshot
# ---------------------------------------------------------------------------

def save_progress_snapshot(conn: psycopg.Connection, snapshot: dict[str, Any]) -> datetime:
    """Replace the season's snapshot.  Returns the stored last_updated."""
    row = conn.execute(
        """
        INSERT INTO raid_progress_snapshot
            (season_id, season_name, total_members, raids, last_updated)
        VALUES (%s, %s, %s, %s::jsonb, clock_timestamp())
        ON CONFLICT (season_id) DO UPDATE
            SET season_name = EXCLUDED.season_name,
                total_members = EXCLUDED.total_members,
                raids = EXCLUDED.raids,
                last_updated = EXCLUDED.last_updated
        RETURNING last_updated
        """,
        (
            snapshot["season_id"],
            snapshot["season_name"],
            int(snapshot.get("total_members") or 0),
            _jsonb(snapshot.get("raids") or []),
        ),
    ).fetchone()
    return row[0]


def _snapshot_row_to_dict(row: tuple) -> dict[str, Any]:
    season_id, season_name, total_members, raids, last_updated = row
    return {
        "season_id": season_id,
        "season_name": season_name,
        "total_members": total_members,
        "raids": raids if isinstance(raids, list) else json.loads(raids),
        "last_updated": last_updated.isoformat() if last_updated else None,
    }


def get_progress_snapshot(conn: psycopg.Connection, season_id: str) -> dict[str, Any] | None:
    row = conn.execute(
        """
        SELECT season_id, season_name, total_members, raids, last_updated
        FROM raid_progress_snapshot
        WHERE season_id = %s
        """,
        (season_id,),
    ).fetchone()
    return _snapshot_row_to_dict(row) if row else None


def get_all_progress_snapshots(conn: psycopg.Connection) -> list[dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT season_id, season_name, total_members, raids, last_updated
        FROM raid_progress_snapshot
        ORDER BY season_id
        """
    ).fetchall()
    return [_snapshot_row_to_dict(r) for r in rows]


# ---------------------------------------------------------------------------
# raid_team_member
# ---------------------------------------------------------------------------

def upsert_raid_team_member(conn: psycopg.Connection, member: dict[str, Any]) -> bool:
    row = conn.execute(
        """
        INSERT INTO raid_team_member (name, server, is_active, raid_ready, item_level, record)
        VALUES (%s, %s, true, %s, %s, %s::jsonb)
        ON CONFLICT (name, server) DO UPDATE
            SET raid_ready = EXCLUDED.raid_ready,
                item_level = EXCLUDED.item_level,
                record = EXCLUDED.record,
                is_active = true,
                updated_at = now()
        RETURNING (xmax = 0) AS was_inserted
        """,
        (
            member["name"],
            member["server"],
            bool(member.get("raid_ready")),
            member.get("item_level") or 0,
            _jsonb(member),
        ),
    ).fetchone()
    return bool(row[0]) if row else False


def mark_raid_team_inactive_except(conn: psycopg.Connection, names: list[str]) -> int:
    cur = conn.execute(
        """
        UPDATE raid_team_member
        SET is_active = false, updated_at = now()
        WHERE is_active
          AND NOT (name = ANY(%s::text[]))
        """,
        (list(names),),
    )
    return cur.rowcount


def find_raid_team_members(conn: psycopg.Connection) -> list[dict[str, Any]]:
    """Active raid-team rows, raid-ready first, then by item level."""
    rows = conn.execute(
        """
        SELECT record
        FROM raid_team_member
        WHERE is_active
        ORDER BY raid_ready DESC, item_level DESC, name
        """
    ).fetchall()
    return [r[0] for r in rows]


def count_raid_ready(conn: psycopg.Connection) -> int:
    row = conn.execute(
        "SELECT count(*) FROM raid_team_member WHERE is_active AND raid_ready"
    ).fetchone()
    return int(row[0]) if row else 0
