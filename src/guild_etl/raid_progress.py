"""guild_etl.raid_progress

Guild-wide raid progress aggregation over stored character records.

Pure functions: the same member list and configuration always produce the
same output (no clocks, no I/O).  Members are the JSONB record dicts returned
by store.find_active_characters.

Per member and raid:
  1. Locate progress: current-season block first, then each retained
     expansion in stored order.  First match wins; matches are never merged.
  2. Per difficulty: percentage (half-up rounding, 0 when total is 0) and
     status ("complete" iff completed == total).
  3. Boss kills counted against the configured boss list only.
  4. Top progressors: percentage desc, then completed desc, top 10.
  5. Main / alt breakdown from the configured rank partition.
  6. Average progress: rounded mean percentage of members with that
     difficulty.
"""

from __future__ import annotations

from typing import Any

from guild_etl.config import GuildConfig, RaidConfig, SeasonConfig
from guild_etl.normalize import as_int, as_list, dig, percentage, round_half_up

TOP_PROGRESSORS_LIMIT = 10


# ---------------------------------------------------------------------------
# Per-character analysis
# ---------------------------------------------------------------------------

def analyze_character_raid_progress(
    raid_data: dict[str, Any] | None,
    raid_name: str,
    guild_config: GuildConfig,
) -> dict[str, Any]:
    """Progress for one raid inside one expansion/season block.

    Returns {"found": bool, "difficulties": {name: {...}}}.  Difficulty names
    are canonicalized through the configured aliases.
    """
    instances = as_list(raid_data.get("instances") if isinstance(raid_data, dict) else None)
    raid = next((i for i in instances if dig(i, "instance", "name") == raid_name), None)
    if raid is None:
        return {"found": False, "difficulties": {}}

    difficulties: dict[str, Any] = {}
    for mode in as_list(raid.get("modes")):
        difficulty = guild_config.canonical_difficulty(dig(mode, "difficulty", "name"))
        if not difficulty:
            continue
        progress = mode.get("progress") if isinstance(mode.get("progress"), dict) else {}
        completed = as_int(progress.get("completed_count"))
        total = as_int(progress.get("total_count"))
        difficulties[difficulty] = {
            "completed": completed,
            "total": total,
            "percentage": percentage(completed, total),
            "status": "complete" if completed == total else "incomplete",
            "encounters": [
                {
                    "name": dig(enc, "encounter", "name"),
                    "completed": bool(dig(enc, "last_kill_timestamp")),
                    "last_kill": dig(enc, "last_kill_timestamp"),
                }
                for enc in as_list(progress.get("encounters"))
            ],
        }
    return {"found": True, "difficulties": difficulties}


def locate_raid_progress(
    member: dict[str, Any],
    raid_name: str,
    guild_config: GuildConfig,
) -> dict[str, Any] | None:
    """Current season first, then expansions in stored order; first match wins."""
    history = member.get("raid_history") if isinstance(member.get("raid_history"), dict) else {}

    current = history.get("current_season")
    if isinstance(current, dict) and current.get("instances"):
        result = analyze_character_raid_progress(current, raid_name, guild_config)
        if result["found"]:
            return result

    for expansion in as_list(history.get("all_expansions")):
        if isinstance(expansion, dict) and expansion.get("instances"):
            result = analyze_character_raid_progress(expansion, raid_name, guild_config)
            if result["found"]:
                return result
    return None


# ---------------------------------------------------------------------------
# Guild aggregation
# ---------------------------------------------------------------------------

def _empty_difficulty(raid_config: RaidConfig) -> dict[str, Any]:
    return {
        "members_completed": 0,
        "members_with_progress": 0,
        "average_progress": 0,
        "boss_kills": {boss: 0 for boss in raid_config.bosses},
        "top_progressors": [],
    }


def aggregate_raid_progress(
    members: list[dict[str, Any]],
    raid_name: str,
    raid_config: RaidConfig,
    guild_config: GuildConfig,
) -> dict[str, Any]:
    result: dict[str, Any] = {
        "raid_name": raid_name,
        "total_members": len(members),
        "members_with_progress": 0,
        "difficulties": {d: _empty_difficulty(raid_config) for d in raid_config.difficulties},
        "member_breakdown": {
            "mains": {"total": 0, "with_progress": 0},
            "alts": {"total": 0, "with_progress": 0},
        },
    }
    breakdown = result["member_breakdown"]
    # every member with the difficulty, kept whole until the final sort/truncate
    progressors: dict[str, list[dict[str, Any]]] = {d: [] for d in raid_config.difficulties}

    for member in members:
        rank = dig(member, "guild_data", "rank")
        if not isinstance(rank, int):
            rank = None
        tier = None
        if rank in guild_config.main_ranks:
            tier = "mains"
        elif rank in guild_config.alt_ranks:
            tier = "alts"
        if tier:
            breakdown[tier]["total"] += 1

        progress = locate_raid_progress(member, raid_name, guild_config)
        if progress is None:
            continue

        result["members_with_progress"] += 1
        if tier:
            breakdown[tier]["with_progress"] += 1

        for difficulty, diff_progress in progress["difficulties"].items():
            agg = result["difficulties"].get(difficulty)
            if agg is None:
                continue
            if diff_progress["completed"] > 0:
                agg["members_with_progress"] += 1
            if diff_progress["status"] == "complete":
                agg["members_completed"] += 1
            for encounter in diff_progress["encounters"]:
                if encounter["completed"] and encounter["name"] in agg["boss_kills"]:
                    agg["boss_kills"][encounter["name"]] += 1
            progressors[difficulty].append({
                "name": member.get("name"),
                "server": member.get("server"),
                "completed": diff_progress["completed"],
                "total": diff_progress["total"],
                "percentage": diff_progress["percentage"],
                "guild_rank": guild_config.rank_label(rank),
                "class": dig(member, "meta_data", "class"),
                "spec": dig(member, "meta_data", "spec"),
            })

    for difficulty, entries in progressors.items():
        agg = result["difficulties"][difficulty]
        if entries:
            agg["average_progress"] = round_half_up(
                sum(e["percentage"] for e in entries) / len(entries)
            )
        # sorted() is stable: equal (percentage, completed) keep member order
        agg["top_progressors"] = sorted(
            entries, key=lambda e: (-e["percentage"], -e["completed"]),
        )[:TOP_PROGRESSORS_LIMIT]

    return result


def compute_season_progress(
    members: list[dict[str, Any]],
    season: SeasonConfig,
    guild_config: GuildConfig,
) -> dict[str, Any]:
    """Aggregate every configured raid of one season."""
    return {
        "season_id": season.id,
        "season_name": season.name,
        "total_members": len(members),
        "raids": [
            aggregate_raid_progress(members, raid.name, raid, guild_config)
            for raid in season.raids
        ],
    }


def progress_summary(
    members: list[dict[str, Any]],
    season: SeasonConfig,
    guild_config: GuildConfig,
) -> dict[str, Any]:
    """Heroic / mythic completion per raid for the home-page summary."""
    return summarize_snapshot(compute_season_progress(members, season, guild_config), season)


def summarize_snapshot(snapshot: dict[str, Any], season: SeasonConfig) -> dict[str, Any]:
    """Heroic / mythic completion built from an aggregated season snapshot."""
    total = snapshot.get("total_members") or 0
    by_name = {
        r.get("raid_name"): r for r in snapshot.get("raids") or [] if isinstance(r, dict)
    }
    raids = []
    for raid in season.raids:
        progress = by_name.get(raid.name) or {}
        entry: dict[str, Any] = {"name": raid.name}
        for difficulty, key in (("Heroic", "heroic_progress"), ("Mythic", "mythic_progress")):
            completed = dig(progress, "difficulties", difficulty, "members_completed", default=0)
            entry[key] = {
                "completed": completed,
                "total": total,
                "percentage": percentage(completed, total),
            }
        raids.append(entry)
    return {"current_season": season.name, "total_members": total, "raids": raids}
