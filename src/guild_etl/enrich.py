"""guild_etl.enrich

Pure enrichment: raw Battle.net payloads → CharacterRecord.

No I/O happens here.  Every function tolerates missing or malformed nested
fields and falls back to zero / False / empty rather than raising, because
the API omits sections freely (no sockets, no raid history, no PvP, ...).

Derived facts:
  - readiness          every enchantable item carries an enchant
  - jewelry summary    socket / gem totals over NECK + FINGER_1/2
  - tier-set count     tier pieces inside the configured item-level band
                       whose set name matches a configured season set
  - raid-ready gate    stricter AND-gate for the raid-team view
  - lockout            kills on the current raid since the weekly reset
  - activity           profile modified since the current season started;
                       inactive members get ranked scores zeroed
"""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from typing import Any, Iterable

from guild_etl.config import CLOAK_SLOTS, JEWELRY_SLOTS, GuildConfig, SeasonConfig
from guild_etl.normalize import (
    as_int,
    as_list,
    as_number,
    dig,
    parse_timestamp,
    to_epoch_ms,
    trim,
)
from guild_etl.records import (
    CharacterRecord,
    DifficultyLock,
    EquipmentItem,
    JewelrySummary,
    LockStatus,
    ProcessedStats,
    SocketDetail,
    SocketSummary,
    SubFetch,
)

CURRENT_SEASON_EXPANSION = "Current Season"
TIER_SET_THRESHOLD = 4


# ---------------------------------------------------------------------------
# Item predicates
# ---------------------------------------------------------------------------

def slot_type(item: dict[str, Any]) -> str | None:
    return dig(item, "slot", "type")


def needs_enchant(item: dict[str, Any], enchantable_slots: Iterable[str]) -> bool:
    return slot_type(item) in set(enchantable_slots)


def has_enchant(item: dict[str, Any]) -> bool:
    return bool(as_list(item.get("enchantments") if isinstance(item, dict) else None))


def is_tier_item(item: dict[str, Any]) -> bool:
    return isinstance(item, dict) and isinstance(item.get("set"), dict)


def is_jewelry_item(item: dict[str, Any]) -> bool:
    return slot_type(item) in JEWELRY_SLOTS


def get_socket_info(item: dict[str, Any]) -> SocketSummary:
    """Summarize an item's sockets.  No sockets → all-zero summary."""
    sockets = as_list(item.get("sockets") if isinstance(item, dict) else None)
    if not sockets:
        return SocketSummary()

    details = []
    for socket in sockets:
        gem = dig(socket, "item", "name")
        details.append(SocketDetail(
            socket_type=dig(socket, "socket_type", "name") or dig(socket, "socket_type", "type"),
            gem=gem,
        ))
    gemmed = sum(1 for d in details if d.gem)
    return SocketSummary(
        has_socket=True,
        socket_count=len(details),
        gemmed_sockets=gemmed,
        empty_socket_count=len(details) - gemmed,
        socket_details=details,
    )


def build_equipment_item(raw: dict[str, Any], config: GuildConfig) -> EquipmentItem:
    return EquipmentItem(
        slot=slot_type(raw),
        name=trim(raw.get("name")) if isinstance(raw.get("name"), str) else None,
        level=as_number(dig(raw, "level", "value")),
        needs_enchant=needs_enchant(raw, config.enchantable_slots),
        has_enchant=has_enchant(raw),
        is_tier_item=is_tier_item(raw),
        is_jewelry=is_jewelry_item(raw),
        sockets=get_socket_info(raw),
        raw=raw,
    )


def build_equipment(payload: dict[str, Any] | None, config: GuildConfig) -> list[EquipmentItem]:
    items = as_list(payload.get("equipped_items") if isinstance(payload, dict) else None)
    return [build_equipment_item(raw, config) for raw in items if isinstance(raw, dict)]


# ---------------------------------------------------------------------------
# Gear facts
# ---------------------------------------------------------------------------

def count_missing_enchants(items: list[EquipmentItem]) -> int:
    return sum(1 for item in items if item.needs_enchant and not item.has_enchant)


def _is_jewelry(item: EquipmentItem) -> bool:
    return item.is_jewelry or item.slot in JEWELRY_SLOTS


def summarize_jewelry(items: list[EquipmentItem]) -> JewelrySummary:
    summary = JewelrySummary()
    for item in items:
        if not _is_jewelry(item):
            continue
        summary.total_jewelry_pieces += 1
        if item.sockets.has_socket:
            summary.socketed_jewelry_pieces += 1
            summary.total_sockets += item.sockets.socket_count
            summary.gemmed_sockets += item.sockets.gemmed_sockets
            summary.empty_sockets += item.sockets.empty_socket_count
    return summary


def item_set_name(item: EquipmentItem) -> str:
    name = dig(item.raw, "set", "item_set", "name", default="")
    return name if isinstance(name, str) else ""


def is_season_tier_piece(item: EquipmentItem, config: GuildConfig) -> bool:
    if not item.is_tier_item:
        return False
    if not config.tier_item_level_min <= item.level <= config.tier_item_level_max:
        return False
    set_name = item_set_name(item)
    return any(fragment in set_name for fragment in config.tier_set_names)


def count_tier_pieces(items: list[EquipmentItem], config: GuildConfig) -> int:
    return sum(1 for item in items if is_season_tier_piece(item, config))


def find_cloak(items: list[EquipmentItem]) -> EquipmentItem | None:
    for item in items:
        if item.slot in CLOAK_SLOTS:
            return item
    return None


def has_required_cloak(items: list[EquipmentItem], config: GuildConfig) -> bool:
    cloak = find_cloak(items)
    if cloak is None or not cloak.name:
        return False
    return cloak.name.lower() == config.raid_team_required_cloak.lower()


def is_raid_ready(equipped_item_level: float, items: list[EquipmentItem], config: GuildConfig) -> bool:
    """Raid-team gate.  Binary: no detail on which condition failed."""
    if equipped_item_level < config.raid_team_min_item_level:
        return False
    if count_missing_enchants(items) > 0:
        return False
    jewelry = summarize_jewelry(items)
    min_sockets = config.raid_team_min_jewelry_sockets
    if jewelry.total_sockets < min_sockets or jewelry.gemmed_sockets < min_sockets:
        return False
    return has_required_cloak(items, config)


# ---------------------------------------------------------------------------
# Raid history + lockouts
# ---------------------------------------------------------------------------

def split_raid_history(payload: dict[str, Any] | None) -> dict[str, Any]:
    """Keep the raw expansions; pull out the "Current Season" block."""
    expansions = [
        e for e in as_list(payload.get("expansions") if isinstance(payload, dict) else None)
        if isinstance(e, dict)
    ]
    current = next(
        (e for e in expansions if dig(e, "expansion", "name") == CURRENT_SEASON_EXPANSION),
        {},
    )
    return {"current_season": current, "all_expansions": expansions}


def last_reset_instant(now: datetime, reset_weekday: int) -> datetime:
    """Most recent occurrence of reset_weekday at 00:00 UTC (today counts)."""
    now_utc = now.astimezone(timezone.utc) if now.tzinfo else now.replace(tzinfo=timezone.utc)
    days_back = (now_utc.weekday() - reset_weekday) % 7
    reset_day = now_utc.date() - timedelta(days=days_back)
    return datetime.combine(reset_day, time.min, tzinfo=timezone.utc)


def find_raid_instance(season_data: dict[str, Any] | None, raid_name: str) -> dict[str, Any] | None:
    instances = as_list(season_data.get("instances") if isinstance(season_data, dict) else None)
    for instance in instances:
        if dig(instance, "instance", "name") == raid_name:
            return instance
    return None


def check_raid_lockouts(
    season_data: dict[str, Any] | None,
    raid_name: str | None,
    now: datetime,
    config: GuildConfig,
) -> LockStatus:
    """Difficulties with any encounter killed at or after the last reset."""
    reset_at = last_reset_instant(now, config.reset_weekday)
    status = LockStatus(raid_name=raid_name, reset_at=reset_at.isoformat())
    if not raid_name:
        return status

    raid = find_raid_instance(season_data, raid_name)
    if raid is None:
        return status

    for mode in as_list(raid.get("modes")):
        difficulty = config.canonical_difficulty(dig(mode, "difficulty", "name"))
        progress = mode.get("progress") if isinstance(mode, dict) else None
        if not difficulty or not isinstance(progress, dict):
            continue

        recent_names: list[str] = []
        recent_kills: list[datetime] = []
        for encounter in as_list(progress.get("encounters")):
            killed_at = parse_timestamp(dig(encounter, "last_kill_timestamp"))
            if killed_at is not None and killed_at >= reset_at:
                recent_kills.append(killed_at)
                recent_names.append(dig(encounter, "encounter", "name", default="Unknown"))

        if recent_kills:
            status.locked_to[difficulty] = DifficultyLock(
                completed=as_int(progress.get("completed_count")),
                total=as_int(progress.get("total_count")),
                last_kill=to_epoch_ms(max(recent_kills)),
                encounters=recent_names,
            )
    return status


# ---------------------------------------------------------------------------
# Activity gating
# ---------------------------------------------------------------------------

def profile_last_modified(profile: dict[str, Any]) -> datetime | None:
    for key in ("last_modified", "lastModified", "last_login_timestamp"):
        ts = parse_timestamp(profile.get(key))
        if ts is not None:
            return ts
    return None


def is_active_in_season(last_modified: datetime | None, season: SeasonConfig) -> bool:
    if last_modified is None:
        return False
    return last_modified >= season.start_instant


def reset_inactive_scores(
    mplus: dict[str, Any] | None,
    pvp: dict[str, Any] | None,
) -> tuple[dict[str, Any] | None, dict[str, Any] | None]:
    """Zero ranked scores so stale ratings never reach current rankings."""
    if mplus is not None:
        mplus = {**mplus, "current_mythic_rating": {"rating": 0}}
    if pvp is not None:
        pvp = {**pvp, "rating": 0, "summary": {"honor_level": 0}, "brackets": {}}
    return mplus, pvp


# ---------------------------------------------------------------------------
# PvP + media shaping
# ---------------------------------------------------------------------------

def bracket_key_from_href(href: str | None) -> str | None:
    """".../pvp-bracket/3v3?namespace=..." → "3v3"."""
    if not href or "pvp-bracket/" not in href:
        return None
    key = href.split("pvp-bracket/", 1)[1].split("?", 1)[0]
    return key or None


def bracket_keys(summary: dict[str, Any] | None) -> list[str]:
    keys = []
    for bracket in as_list(summary.get("brackets") if isinstance(summary, dict) else None):
        key = bracket_key_from_href(dig(bracket, "href"))
        if key:
            keys.append(key)
    return keys


def build_pvp_block(summary: SubFetch, brackets: dict[str, SubFetch]) -> dict[str, Any]:
    """Combine the PvP summary and per-bracket sub-fetches.

    Rating is the highest rating over the brackets that were fetched.
    A failed summary yields rating 0 and no brackets.
    """
    if not summary.available:
        return {"available": False, "summary": None, "brackets": {}, "unavailable_brackets": [], "rating": 0}

    fetched = {k: r.value for k, r in brackets.items() if r.available and isinstance(r.value, dict)}
    missing = sorted(k for k, r in brackets.items() if not r.available)
    rating = max((as_int(b.get("rating")) for b in fetched.values()), default=0)
    return {
        "available": True,
        "summary": summary.value,
        "brackets": fetched,
        "unavailable_brackets": missing,
        "rating": rating,
    }


def media_assets(payload: dict[str, Any] | None) -> dict[str, Any]:
    """Flatten character-media assets into render / avatar URLs."""
    assets = {
        a.get("key"): a.get("value")
        for a in as_list(payload.get("assets") if isinstance(payload, dict) else None)
        if isinstance(a, dict) and a.get("key")
    }
    result: dict[str, Any] = {"assets": assets}
    for key in ("main-raw", "main", "render"):
        if key in assets:
            result["render"] = assets[key]
            break
    if "avatar" in assets:
        result["avatar"] = assets["avatar"]
    return result


# ---------------------------------------------------------------------------
# Record assembly
# ---------------------------------------------------------------------------

def build_character_record(
    member: dict[str, Any],
    profile: dict[str, Any],
    equipment_payload: dict[str, Any] | None,
    config: GuildConfig,
    season: SeasonConfig,
    now: datetime,
    raid_payload: dict[str, Any] | None = None,
    mplus: dict[str, Any] | None = None,
    pvp: dict[str, Any] | None = None,
    media: SubFetch | None = None,
) -> CharacterRecord:
    """Assemble one enriched CharacterRecord.

    member           roster entry ({"character": {...}, "rank": n})
    profile          character profile payload
    equipment_payload character equipment payload
    raid_payload     encounters/raids payload; None when raid data not requested
    mplus / pvp      already-fetched blocks; None when not requested
    media            media sub-fetch result
    """
    character = member.get("character") if isinstance(member.get("character"), dict) else {}
    name = trim(character.get("name")) or trim(profile.get("name")) or ""
    server = (
        trim(dig(character, "realm", "slug"))
        or trim(dig(profile, "realm", "slug"))
        or ""
    )
    rank = member.get("rank")

    equipped = as_number(profile.get("equipped_item_level"))
    items = build_equipment(equipment_payload, config)
    missing = count_missing_enchants(items)
    tier_count = count_tier_pieces(items, config)

    raid_history = split_raid_history(raid_payload) if raid_payload is not None else None
    lock_status = None
    if raid_history is not None:
        primary = season.primary_raid
        lock_status = check_raid_lockouts(
            raid_history["current_season"], primary.name if primary else None, now, config,
        )

    last_modified = profile_last_modified(profile)
    active = is_active_in_season(last_modified, season)
    if not active:
        mplus, pvp = reset_inactive_scores(mplus, pvp)

    spec = dig(profile, "active_spec", "name")
    character_class = dig(profile, "character_class", "name")

    return CharacterRecord(
        name=name,
        server=server,
        equipped_item_level=equipped,
        average_item_level=as_number(profile.get("average_item_level")),
        character_class=character_class,
        spec=spec,
        last_updated=last_modified.isoformat() if last_modified else None,
        guild_rank=rank if isinstance(rank, int) and not isinstance(rank, bool) else None,
        equipment=items,
        raid_history=raid_history,
        mplus=mplus,
        pvp=pvp,
        ready=missing == 0,
        missing_enchants=missing,
        tier_piece_count=tier_count,
        has_tier_set=tier_count >= TIER_SET_THRESHOLD,
        jewelry=summarize_jewelry(items),
        lock_status=lock_status,
        is_active_in_season=active,
        processed_stats=ProcessedStats(
            mythic_plus_score=as_number(dig(mplus, "current_mythic_rating", "rating")),
            pvp_rating=as_int(pvp.get("rating")) if isinstance(pvp, dict) else 0,
            item_level=equipped,
            role=config.role_for_spec(spec),
            spec=spec,
            character_class=character_class,
        ),
        media=media if media is not None else SubFetch.unavailable(),
        is_active=True,
    )


def equipment_from_dicts(items: list[dict[str, Any]] | None) -> list[EquipmentItem]:
    """Rehydrate stored EquipmentItem dicts (record["equipment"])."""
    result = []
    for d in as_list(items):
        if not isinstance(d, dict):
            continue
        sockets = d.get("sockets") if isinstance(d.get("sockets"), dict) else {}
        result.append(EquipmentItem(
            slot=d.get("slot"),
            name=d.get("name"),
            level=as_number(d.get("level")),
            needs_enchant=bool(d.get("needs_enchant")),
            has_enchant=bool(d.get("has_enchant")),
            is_tier_item=bool(d.get("is_tier_item")),
            is_jewelry=bool(d.get("is_jewelry")),
            sockets=SocketSummary(
                has_socket=bool(sockets.get("has_socket")),
                socket_count=as_int(sockets.get("socket_count")),
                gemmed_sockets=as_int(sockets.get("gemmed_sockets")),
                empty_socket_count=as_int(sockets.get("empty_socket_count")),
                socket_details=[
                    SocketDetail(socket_type=s.get("socket_type"), gem=s.get("gem"))
                    for s in as_list(sockets.get("socket_details")) if isinstance(s, dict)
                ],
            ),
            raw=d.get("raw") if isinstance(d.get("raw"), dict) else {},
        ))
    return result
