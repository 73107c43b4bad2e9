"""guild_etl.roster_stats

Read-only roster reports over stored character records:
  - jewelry_gem_stats   per-member jewelry listing + gem popularity
  - roster_statistics   headline counts, top M+ / PvP, role split
  - filter_roster       roster view filters (missing enchants, lockouts, ...)
"""

from __future__ import annotations

from collections import Counter
from typing import Any

from guild_etl.config import JEWELRY_SLOTS, GuildConfig
from guild_etl.normalize import as_int, as_list, as_number, dig

POPULAR_GEMS_LIMIT = 10
TOP_RANKED_LIMIT = 5

ROSTER_FILTERS = (
    "missing-enchants",
    "locked-normal",
    "locked-heroic",
    "locked-mythic",
    "missing-tier",
    "not-ready",
    "active-season",
    "has-pvp-rating",
    "has-mplus-score",
)
ROLE_FILTERS = ("tank", "healer", "dps")


def _jewelry_items(record: dict[str, Any]) -> list[dict[str, Any]]:
    return [
        item for item in as_list(record.get("equipment"))
        if isinstance(item, dict) and (item.get("is_jewelry") or item.get("slot") in JEWELRY_SLOTS)
    ]


def jewelry_gem_stats(records: list[dict[str, Any]]) -> dict[str, Any]:
    """Jewelry socket totals and the most common gems across the roster.

    Only members with at least one socketed jewelry piece are listed, but
    every member's jewelry counts toward the totals.
    """
    summary = {
        "members_with_socketed_jewelry": 0,
        "total_jewelry_pieces": 0,
        "total_sockets": 0,
        "gemmed_sockets": 0,
        "empty_sockets": 0,
    }
    gems: Counter[str] = Counter()
    listing = []

    for record in records:
        pieces = []
        socketed = False
        for item in _jewelry_items(record):
            sockets = item.get("sockets") if isinstance(item.get("sockets"), dict) else {}
            summary["total_jewelry_pieces"] += 1
            if sockets.get("has_socket"):
                socketed = True
                summary["total_sockets"] += as_int(sockets.get("socket_count"))
                summary["gemmed_sockets"] += as_int(sockets.get("gemmed_sockets"))
                summary["empty_sockets"] += as_int(sockets.get("empty_socket_count"))
            for detail in as_list(sockets.get("socket_details")):
                gem = dig(detail, "gem")
                if gem:
                    gems[gem] += 1
            pieces.append({
                "slot": item.get("slot"),
                "name": item.get("name"),
                "level": item.get("level"),
                "sockets": sockets,
            })
        if socketed:
            summary["members_with_socketed_jewelry"] += 1
            listing.append({
                "name": record.get("name"),
                "server": record.get("server"),
                "class": dig(record, "meta_data", "class"),
                "spec": dig(record, "meta_data", "spec"),
                "guild_rank": dig(record, "guild_data", "rank"),
                "jewelry": pieces,
            })

    # most_common breaks ties by first-seen order
    summary["popular_gems"] = [
        {"name": name, "count": count} for name, count in gems.most_common(POPULAR_GEMS_LIMIT)
    ]
    return {"total_members": len(records), "jewelry_data": listing, "summary": summary}


def _mplus_score(record: dict[str, Any]) -> float:
    return as_number(dig(record, "processed_stats", "mythic_plus_score"))


def _pvp_rating(record: dict[str, Any]) -> int:
    return as_int(dig(record, "processed_stats", "pvp_rating"))


def _item_level(record: dict[str, Any]) -> float:
    return as_number(dig(record, "item_level", "equipped"))


def _ranked_entry(record: dict[str, Any], value: float) -> dict[str, Any]:
    return {
        "name": record.get("name"),
        "server": record.get("server"),
        "class": dig(record, "meta_data", "class"),
        "spec": dig(record, "meta_data", "spec"),
        "value": value,
    }


def roster_statistics(records: list[dict[str, Any]], config: GuildConfig) -> dict[str, Any]:
    ordered = sorted(records, key=_item_level, reverse=True)

    top_mplus = sorted(
        (r for r in ordered if _mplus_score(r) > 0), key=_mplus_score, reverse=True,
    )[:TOP_RANKED_LIMIT]
    top_pvp = sorted(
        (r for r in ordered if _pvp_rating(r) > 0), key=_pvp_rating, reverse=True,
    )[:TOP_RANKED_LIMIT]

    roles = Counter(config.role_for_spec(dig(r, "meta_data", "spec")) for r in ordered)

    return {
        "total_members": len(ordered),
        "missing_enchants": sum(1 for r in ordered if as_int(r.get("missing_enchants")) > 0),
        "raid_locked": sum(1 for r in ordered if dig(r, "lock_status", "is_locked")),
        "avg_top_mplus": (
            sum(_mplus_score(r) for r in top_mplus) / len(top_mplus) if top_mplus else 0
        ),
        "avg_top_pvp": (
            sum(_pvp_rating(r) for r in top_pvp) / len(top_pvp) if top_pvp else 0
        ),
        "role_counts": {
            "tanks": roles.get("TANK", 0),
            "healers": roles.get("HEALER", 0),
            "dps": roles.get("DPS", 0),
        },
        "top_mplus": [_ranked_entry(r, _mplus_score(r)) for r in top_mplus],
        "top_pvp": [_ranked_entry(r, _pvp_rating(r)) for r in top_pvp],
    }


def _matches(record: dict[str, Any], roster_filter: str) -> bool:
    if roster_filter == "missing-enchants":
        return as_int(record.get("missing_enchants")) > 0
    if roster_filter.startswith("locked-"):
        difficulty = roster_filter.split("-", 1)[1].capitalize()
        return bool(dig(record, "lock_status", "locked_to", difficulty))
    if roster_filter == "missing-tier":
        return not record.get("has_tier_set")
    if roster_filter == "not-ready":
        return not record.get("ready")
    if roster_filter == "active-season":
        return bool(record.get("is_active_in_season"))
    if roster_filter == "has-pvp-rating":
        return _pvp_rating(record) > 0
    if roster_filter == "has-mplus-score":
        return _mplus_score(record) > 0
    raise ValueError(f"Unknown roster filter '{roster_filter}'")


def filter_roster(
    records: list[dict[str, Any]],
    config: GuildConfig,
    roster_filter: str | None = None,
    role: str | None = None,
    min_item_level: float = 0,
) -> list[dict[str, Any]]:
    """Apply the roster view filters; result sorted by item level desc."""
    if roster_filter and roster_filter not in ROSTER_FILTERS:
        raise ValueError(f"Unknown roster filter '{roster_filter}'")
    result = list(records)
    if role:
        if role not in ROLE_FILTERS:
            raise ValueError(f"Unknown role filter '{role}'")
        result = [
            r for r in result
            if config.role_for_spec(dig(r, "meta_data", "spec")) == role.upper()
        ]
    if min_item_level > 0:
        result = [r for r in result if _item_level(r) >= min_item_level]
    if roster_filter:
        result = [r for r in result if _matches(r, roster_filter)]
    return sorted(result, key=_item_level, reverse=True)
