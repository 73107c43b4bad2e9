"""guild_etl.records

Typed records for enriched character data.

Every field that the Battle.net API may omit is modelled with a safe
default, so a partially-populated payload still yields a complete record.
Records serialize to plain dicts (to_dict) for JSONB storage; the dict form
is what the aggregator and report helpers read back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Sub-fetch result (value | unavailable)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SubFetch:
    """Outcome of a best-effort sub-fetch (media, one PvP bracket)."""

    value: Any = None
    available: bool = True
    error: str | None = None

    @classmethod
    def ok(cls, value: Any) -> "SubFetch":
        return cls(value=value, available=True)

    @classmethod
    def unavailable(cls, error: str | None = None) -> "SubFetch":
        return cls(value=None, available=False, error=error)


# ---------------------------------------------------------------------------
# Equipment
# ---------------------------------------------------------------------------

@dataclass
class SocketDetail:
    socket_type: str | None
    gem: str | None

    def to_dict(self) -> dict[str, Any]:
        return {"socket_type": self.socket_type, "gem": self.gem}


@dataclass
class SocketSummary:
    has_socket: bool = False
    socket_count: int = 0
    gemmed_sockets: int = 0
    empty_socket_count: int = 0
    socket_details: list[SocketDetail] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_socket": self.has_socket,
            "socket_count": self.socket_count,
            "gemmed_sockets": self.gemmed_sockets,
            "empty_socket_count": self.empty_socket_count,
            "socket_details": [d.to_dict() for d in self.socket_details],
        }


@dataclass
class EquipmentItem:
    slot: str | None
    name: str | None
    level: float = 0
    needs_enchant: bool = False
    has_enchant: bool = False
    is_tier_item: bool = False
    is_jewelry: bool = False
    sockets: SocketSummary = field(default_factory=SocketSummary)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "slot": self.slot,
            "name": self.name,
            "level": self.level,
            "needs_enchant": self.needs_enchant,
            "has_enchant": self.has_enchant,
            "is_tier_item": self.is_tier_item,
            "is_jewelry": self.is_jewelry,
            "sockets": self.sockets.to_dict(),
            "raw": self.raw,
        }


@dataclass
class JewelrySummary:
    total_jewelry_pieces: int = 0
    socketed_jewelry_pieces: int = 0
    total_sockets: int = 0
    gemmed_sockets: int = 0
    empty_sockets: int = 0

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


# ---------------------------------------------------------------------------
# Lockout
# ---------------------------------------------------------------------------

@dataclass
class DifficultyLock:
    completed: int
    total: int
    last_kill: int | None
    encounters: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "completed": self.completed,
            "total": self.total,
            "last_kill": self.last_kill,
            "encounters": list(self.encounters),
        }


@dataclass
class LockStatus:
    raid_name: str | None = None
    reset_at: str | None = None
    locked_to: dict[str, DifficultyLock] = field(default_factory=dict)

    @property
    def is_locked(self) -> bool:
        return bool(self.locked_to)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_locked": self.is_locked,
            "raid_name": self.raid_name,
            "reset_at": self.reset_at,
            "locked_to": {k: v.to_dict() for k, v in self.locked_to.items()},
        }


# ---------------------------------------------------------------------------
# Character record
# ---------------------------------------------------------------------------

@dataclass
class ProcessedStats:
    mythic_plus_score: float = 0
    pvp_rating: int = 0
    item_level: float = 0
    role: str = "DPS"
    spec: str | None = None
    character_class: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "mythic_plus_score": self.mythic_plus_score,
            "pvp_rating": self.pvp_rating,
            "item_level": self.item_level,
            "role": self.role,
            "spec": self.spec,
            "class": self.character_class,
        }


@dataclass
class CharacterRecord:
    name: str
    server: str
    equipped_item_level: float = 0
    average_item_level: float = 0
    character_class: str | None = None
    spec: str | None = None
    last_updated: str | None = None
    guild_rank: int | None = None
    equipment: list[EquipmentItem] = field(default_factory=list)
    raid_history: dict[str, Any] | None = None
    mplus: dict[str, Any] | None = None
    pvp: dict[str, Any] | None = None
    ready: bool = True
    missing_enchants: int = 0
    tier_piece_count: int = 0
    has_tier_set: bool = False
    jewelry: JewelrySummary = field(default_factory=JewelrySummary)
    lock_status: LockStatus | None = None
    is_active_in_season: bool = False
    processed_stats: ProcessedStats = field(default_factory=ProcessedStats)
    media: SubFetch = field(default_factory=SubFetch.unavailable)
    is_active: bool = True

    @property
    def identity(self) -> str:
        return f"{self.name}-{self.server}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "server": self.server,
            "item_level": {
                "equipped": self.equipped_item_level,
                "average": self.average_item_level,
            },
            "meta_data": {
                "class": self.character_class,
                "spec": self.spec,
                "last_updated": self.last_updated,
            },
            "guild_data": {"rank": self.guild_rank},
            "equipment": [item.to_dict() for item in self.equipment],
            "raid_history": self.raid_history,
            "mplus": self.mplus,
            "pvp": self.pvp,
            "ready": self.ready,
            "missing_enchants": self.missing_enchants,
            "tier_piece_count": self.tier_piece_count,
            "has_tier_set": self.has_tier_set,
            "jewelry": self.jewelry.to_dict(),
            "lock_status": self.lock_status.to_dict() if self.lock_status else None,
            "is_active_in_season": self.is_active_in_season,
            "processed_stats": self.processed_stats.to_dict(),
            "media": media_to_dict(self.media),
            "is_active": self.is_active,
        }


def media_to_dict(media: SubFetch) -> dict[str, Any]:
    if not media.available or not isinstance(media.value, dict):
        return {"available": False}
    return {"available": True, **media.value}
