"""guild_etl.config

YAML configuration for the roster pipeline.

Two files live under config/:
  - guild.yml    guild identity, eligibility thresholds, gear rules,
                 rank partition, role tables, API throttling
  - seasons.yml  season catalog (raids, difficulties, boss rosters)

Both are loaded with yaml.safe_load, validated, and returned as frozen
dataclasses.  Any schema problem raises ConfigValidationError.

Usage:
    from pathlib import Path
    from guild_etl.config import load_guild_config, load_season_catalog

    guild = load_guild_config(Path("config/guild.yml"))
    seasons = load_season_catalog(Path("config/seasons.yml"))
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_DIR = Path(__file__).parent.parent.parent / "config"

REQUIRED_GUILD_KEYS = frozenset({
    "guild",
    "requirements",
    "gear",
    "tier_set",
    "ranks",
    "roles",
    "raid_team",
    "lockout",
})

REQUIRED_GUILD_IDENTITY_KEYS = frozenset({"region", "name", "realm"})

VALID_REGIONS = frozenset({"us", "eu", "kr", "tw"})

WEEKDAYS = (
    "monday", "tuesday", "wednesday", "thursday",
    "friday", "saturday", "sunday",
)

JEWELRY_SLOTS = frozenset({"NECK", "FINGER_1", "FINGER_2"})
CLOAK_SLOTS = frozenset({"CLOAK", "BACK"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ConfigValidationError(ValueError):
    """Raised when a YAML config file fails schema validation."""


# ---------------------------------------------------------------------------
# Guild config
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ApiSettings:
    timeout_seconds: float = 15.0
    request_interval_seconds: float = 0.05
    jitter_seconds: float = 0.0
    max_attempts: int = 3
    max_consecutive_failures: int = 5
    max_in_flight: int = 1


@dataclass(frozen=True)
class GuildConfig:
    """Parsed, validated guild settings loaded from guild.yml."""

    region: str
    guild_name: str
    guild_realm: str
    locale: str
    level_requirement: int
    item_level_requirement: float
    enchantable_slots: frozenset[str]
    tier_item_level_min: float
    tier_item_level_max: float
    tier_set_names: tuple[str, ...]
    guild_ranks: tuple[str, ...]
    main_ranks: frozenset[int]
    alt_ranks: frozenset[int]
    tanks: frozenset[str]
    healers: frozenset[str]
    raid_team_min_item_level: float
    raid_team_required_cloak: str
    raid_team_min_jewelry_sockets: int
    reset_weekday: int
    difficulty_aliases: dict[str, str] = field(default_factory=dict)
    api: ApiSettings = field(default_factory=ApiSettings)
    config_hash: str = ""

    def rank_label(self, rank: Any) -> str:
        if isinstance(rank, int) and not isinstance(rank, bool) and 0 <= rank < len(self.guild_ranks):
            return self.guild_ranks[rank]
        return "Unknown"

    def role_for_spec(self, spec: str | None) -> str:
        if spec in self.tanks:
            return "TANK"
        if spec in self.healers:
            return "HEALER"
        return "DPS"

    def canonical_difficulty(self, name: str | None) -> str | None:
        if name is None:
            return None
        return self.difficulty_aliases.get(name, name)


def load_guild_config(yaml_path: Path) -> GuildConfig:
    """Load, validate and return a GuildConfig from a YAML file.

    Raises:
        ConfigValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_guild_config(data)
    return build_guild_config(data, hashlib.sha256(raw.encode("utf-8")).hexdigest())


def build_guild_config(data: dict[str, Any], config_hash: str = "") -> GuildConfig:
    """Build a GuildConfig from an already-validated mapping."""
    guild = data["guild"]
    req = data["requirements"]
    gear = data["gear"]
    tier = data["tier_set"]
    ranks = data["ranks"]
    roles = data["roles"]
    team = data["raid_team"]
    lockout = data["lockout"]
    api = data.get("api") or {}

    return GuildConfig(
        region=str(guild["region"]).lower(),
        guild_name=str(guild["name"]),
        guild_realm=str(guild["realm"]),
        locale=str(guild.get("locale") or "en_US"),
        level_requirement=int(req["level"]),
        item_level_requirement=float(req["item_level"]),
        enchantable_slots=frozenset(gear.get("enchantable_slots") or []),
        tier_item_level_min=float(tier["item_level_min"]),
        tier_item_level_max=float(tier["item_level_max"]),
        tier_set_names=tuple(tier.get("set_names") or []),
        guild_ranks=tuple(ranks.get("labels") or []),
        main_ranks=frozenset(int(r) for r in ranks.get("main") or []),
        alt_ranks=frozenset(int(r) for r in ranks.get("alt") or []),
        tanks=frozenset(roles.get("tanks") or []),
        healers=frozenset(roles.get("healers") or []),
        raid_team_min_item_level=float(team["min_item_level"]),
        raid_team_required_cloak=str(team["required_cloak"]),
        raid_team_min_jewelry_sockets=int(team.get("min_jewelry_sockets", 6)),
        reset_weekday=WEEKDAYS.index(str(lockout["reset_weekday"]).lower()),
        difficulty_aliases=dict(data.get("difficulty_aliases") or {}),
        api=ApiSettings(
            timeout_seconds=float(api.get("timeout_seconds", 15.0)),
            request_interval_seconds=float(api.get("request_interval_seconds", 0.05)),
            jitter_seconds=float(api.get("jitter_seconds", 0.0)),
            max_attempts=int(api.get("max_attempts", 3)),
            max_consecutive_failures=int(api.get("max_consecutive_failures", 5)),
            max_in_flight=int(api.get("max_in_flight", 1)),
        ),
        config_hash=config_hash,
    )


def validate_guild_config(data: dict[str, Any]) -> None:
    """Raise ConfigValidationError if data does not match the guild schema.

    Validates:
      - Required top-level sections present
      - guild identity keys present, region known
      - tier item-level band is ordered (min <= max)
      - main and alt rank partitions do not overlap
      - reset_weekday is a weekday name
      - api.max_in_flight >= 1
    """
    if not isinstance(data, dict):
        raise ConfigValidationError("YAML root must be a mapping.")

    missing = REQUIRED_GUILD_KEYS - data.keys()
    if missing:
        raise ConfigValidationError(f"Missing required config sections: {sorted(missing)}")

    guild = data["guild"] or {}
    missing_identity = REQUIRED_GUILD_IDENTITY_KEYS - guild.keys()
    if missing_identity:
        raise ConfigValidationError(f"Missing guild keys: {sorted(missing_identity)}")
    if str(guild["region"]).lower() not in VALID_REGIONS:
        raise ConfigValidationError(
            f"Invalid region '{guild['region']}'. Must be one of {sorted(VALID_REGIONS)}."
        )

    req = data["requirements"] or {}
    for key in ("level", "item_level"):
        if key not in req:
            raise ConfigValidationError(f"Missing requirements.{key}")
        _require_number(req[key], f"requirements.{key}")

    tier = data["tier_set"] or {}
    for key in ("item_level_min", "item_level_max"):
        if key not in tier:
            raise ConfigValidationError(f"Missing tier_set.{key}")
        _require_number(tier[key], f"tier_set.{key}")
    if float(tier["item_level_min"]) > float(tier["item_level_max"]):
        raise ConfigValidationError(
            f"tier_set.item_level_min ({tier['item_level_min']}) must be <= "
            f"item_level_max ({tier['item_level_max']})."
        )

    ranks = data["ranks"] or {}
    overlap = set(ranks.get("main") or []) & set(ranks.get("alt") or [])
    if overlap:
        raise ConfigValidationError(f"Ranks cannot be both main and alt: {sorted(overlap)}")

    team = data["raid_team"] or {}
    for key in ("min_item_level", "required_cloak"):
        if key not in team:
            raise ConfigValidationError(f"Missing raid_team.{key}")

    weekday = str((data["lockout"] or {}).get("reset_weekday", "")).lower()
    if weekday not in WEEKDAYS:
        raise ConfigValidationError(
            f"lockout.reset_weekday '{weekday}' must be one of {list(WEEKDAYS)}."
        )

    api = data.get("api") or {}
    if int(api.get("max_in_flight", 1)) < 1:
        raise ConfigValidationError("api.max_in_flight must be >= 1.")


def _require_number(value: Any, label: str) -> None:
    try:
        float(value)
    except (TypeError, ValueError):
        raise ConfigValidationError(f"'{label}' value '{value}' is not numeric.")


# ---------------------------------------------------------------------------
# Season catalog
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RaidConfig:
    id: str
    name: str
    difficulties: tuple[str, ...]
    bosses: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "difficulties": list(self.difficulties),
            "boss_count": len(self.bosses),
            "bosses": list(self.bosses),
        }


@dataclass(frozen=True)
class SeasonConfig:
    id: str
    name: str
    start_date: date
    end_date: date | None
    raids: tuple[RaidConfig, ...]
    dungeons: tuple[str, ...] = ()

    @property
    def start_instant(self) -> datetime:
        """Season start as midnight UTC."""
        return datetime.combine(self.start_date, time.min, tzinfo=timezone.utc)

    @property
    def primary_raid(self) -> RaidConfig | None:
        return self.raids[0] if self.raids else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "raids": [r.to_dict() for r in self.raids],
            "dungeons": list(self.dungeons),
        }


@dataclass(frozen=True)
class SeasonCatalog:
    seasons: tuple[SeasonConfig, ...]
    current_season_id: str

    def get(self, season_id: str) -> SeasonConfig | None:
        for season in self.seasons:
            if season.id == season_id:
                return season
        return None

    def current(self) -> SeasonConfig:
        season = self.get(self.current_season_id)
        if season is None:
            raise ConfigValidationError(f"current_season '{self.current_season_id}' is not a configured season.")
        return season

    def find_raid(self, raid_name: str) -> tuple[SeasonConfig, RaidConfig] | None:
        """Map an API raid name to (season, raid) or None."""
        for season in self.seasons:
            for raid in season.raids:
                if raid.name == raid_name:
                    return season, raid
        return None


def load_season_catalog(yaml_path: Path) -> SeasonCatalog:
    raw = yaml_path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_season_catalog(data)
    return build_season_catalog(data)


def build_season_catalog(data: dict[str, Any]) -> SeasonCatalog:
    seasons = []
    for s in data["seasons"]:
        raids = tuple(
            RaidConfig(
                id=str(r["id"]),
                name=str(r["name"]),
                difficulties=tuple(r.get("difficulties") or []),
                bosses=tuple(r.get("bosses") or []),
            )
            for r in s.get("raids") or []
        )
        seasons.append(SeasonConfig(
            id=str(s["id"]),
            name=str(s["name"]),
            start_date=_as_date(s["start_date"]),
            end_date=_as_date(s["end_date"]) if s.get("end_date") else None,
            raids=raids,
            dungeons=tuple(s.get("dungeons") or []),
        ))
    return SeasonCatalog(seasons=tuple(seasons), current_season_id=str(data["current_season"]))


def validate_season_catalog(data: dict[str, Any]) -> None:
    """Raise ConfigValidationError if the season catalog is malformed.

    Validates:
      - 'seasons' is a non-empty list and 'current_season' names one of them
      - season ids unique; start_date parseable; end_date >= start_date
      - every raid has a name, at least one difficulty, and unique boss names
    """
    if not isinstance(data, dict):
        raise ConfigValidationError("YAML root must be a mapping.")
    seasons = data.get("seasons")
    if not isinstance(seasons, list) or not seasons:
        raise ConfigValidationError("'seasons' must be a non-empty list.")

    ids: set[str] = set()
    for s in seasons:
        for key in ("id", "name", "start_date"):
            if key not in s:
                raise ConfigValidationError(f"Season missing '{key}': {s}")
        sid = str(s["id"])
        if sid in ids:
            raise ConfigValidationError(f"Duplicate season id '{sid}'.")
        ids.add(sid)
        start = _as_date(s["start_date"])
        if s.get("end_date") and _as_date(s["end_date"]) < start:
            raise ConfigValidationError(f"Season '{sid}' ends before it starts.")
        for r in s.get("raids") or []:
            if not r.get("name") or not r.get("id"):
                raise ConfigValidationError(f"Raid in season '{sid}' missing id/name.")
            if not r.get("difficulties"):
                raise ConfigValidationError(f"Raid '{r['name']}' has no difficulties.")
            bosses = r.get("bosses") or []
            if len(set(bosses)) != len(bosses):
                raise ConfigValidationError(f"Raid '{r['name']}' has duplicate bosses.")

    current = data.get("current_season")
    if str(current) not in ids:
        raise ConfigValidationError(f"current_season '{current}' is not a configured season.")


def _as_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ConfigValidationError(f"Invalid date '{value}'.")
