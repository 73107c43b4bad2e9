"""guild_etl.raid_team

Raid-team view: active character records → raid_team_member rows.

Each row carries role, item level, the raid-ready gate, missing enchants,
required-cloak presence, season tier count, jewelry summary and media.
Names absent from the input are deactivated, mirroring the character
reconciler.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import psycopg

from guild_etl.config import GuildConfig
from guild_etl.enrich import (
    TIER_SET_THRESHOLD,
    count_missing_enchants,
    count_tier_pieces,
    equipment_from_dicts,
    find_cloak,
    has_required_cloak,
    is_raid_ready,
    summarize_jewelry,
)
from guild_etl.normalize import as_number, dig
from guild_etl.store import (
    count_raid_ready,
    find_raid_team_members,
    mark_raid_team_inactive_except,
    upsert_raid_team_member,
)

log = logging.getLogger(__name__)


@dataclass
class RaidTeamResult:
    processed: int = 0
    created: int = 0
    updated: int = 0
    deactivated: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "deactivated": self.deactivated,
            "errors": list(self.errors),
        }


def build_raid_team_row(record: dict[str, Any], config: GuildConfig) -> dict[str, Any]:
    """Project one stored character record onto a raid-team row."""
    items = equipment_from_dicts(record.get("equipment"))
    item_level = as_number(dig(record, "item_level", "equipped"))
    spec = dig(record, "meta_data", "spec")
    cloak = find_cloak(items)
    tier_count = count_tier_pieces(items, config)

    return {
        "name": record["name"],
        "server": record["server"],
        "class": dig(record, "meta_data", "class"),
        "spec": spec,
        "role": config.role_for_spec(spec),
        "item_level": item_level,
        "guild_rank": dig(record, "guild_data", "rank", default=0),
        "raid_ready": is_raid_ready(item_level, items, config),
        "missing_enchants_count": count_missing_enchants(items),
        "missing_cloak": not has_required_cloak(items, config),
        "cloak_item_level": cloak.level if cloak else 0,
        "tier_pieces": tier_count,
        "has_tier_set": tier_count >= TIER_SET_THRESHOLD,
        "jewelry": summarize_jewelry(items).to_dict(),
        "media": record.get("media") or {"available": False},
        "last_updated": dig(record, "meta_data", "last_updated"),
        "is_active": True,
    }


def sync_raid_team(
    conn: psycopg.Connection,
    records: list[dict[str, Any]],
    config: GuildConfig,
) -> RaidTeamResult:
    """Upsert every record into the raid-team view; deactivate absent names.

    Each member runs in its own SAVEPOINT.  The caller commits.
    """
    result = RaidTeamResult()
    for idx, record in enumerate(records):
        identity = f"{record.get('name')}-{record.get('server')}"
        sp = f"raid_team_{idx}"
        conn.execute(f"SAVEPOINT {sp}")
        try:
            row = build_raid_team_row(record, config)
            was_inserted = upsert_raid_team_member(conn, row)
            conn.execute(f"RELEASE SAVEPOINT {sp}")
        except Exception as exc:
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
            result.errors.append({"member": identity, "error": f"{type(exc).__name__}: {exc}"})
            log.warning("raid team row failed for %s: %s", identity, exc)
            continue

        result.processed += 1
        if was_inserted:
            result.created += 1
        else:
            result.updated += 1
        log.debug("raid team %s ready=%s", identity, row["raid_ready"])

    names = [r["name"] for r in records if r.get("name")]
    result.deactivated = mark_raid_team_inactive_except(conn, names)
    return result


def raid_team_listing(conn: psycopg.Connection) -> dict[str, Any]:
    members = find_raid_team_members(conn)
    return {
        "members": members,
        "total": len(members),
        "raid_ready": count_raid_ready(conn),
    }
