"""Unit tests for guild_etl.config."""

from __future__ import annotations

import copy
import hashlib
from dataclasses import replace
from datetime import date, datetime, timezone
from pathlib import Path

import pytest
import yaml

from guild_etl.config import (
    DEFAULT_CONFIG_DIR,
    ConfigValidationError,
    build_guild_config,
    build_season_catalog,
    load_guild_config,
    load_season_catalog,
    validate_guild_config,
    validate_season_catalog,
)
from guild_payloads import GUILD_DATA, SEASONS_DATA


@pytest.fixture
def guild_yaml_path(tmp_path: Path) -> Path:
    p = tmp_path / "guild.yml"
    p.write_text(yaml.safe_dump(GUILD_DATA), encoding="utf-8")
    return p


@pytest.fixture
def seasons_yaml_path(tmp_path: Path) -> Path:
    p = tmp_path / "seasons.yml"
    p.write_text(yaml.safe_dump(SEASONS_DATA), encoding="utf-8")
    return p


def _guild(**overrides) -> dict:
    data = copy.deepcopy(GUILD_DATA)
    for path, value in overrides.items():
        section, key = path.split("__")
        data[section][key] = value
    return data


# ---------------------------------------------------------------------------
# Guild config
# ---------------------------------------------------------------------------

class TestLoadGuildConfig:
    def test_loads_and_hashes(self, guild_yaml_path):
        cfg = load_guild_config(guild_yaml_path)
        raw = guild_yaml_path.read_text(encoding="utf-8")
        assert cfg.config_hash == hashlib.sha256(raw.encode("utf-8")).hexdigest()
        assert cfg.region == "eu"
        assert cfg.guild_realm == "silvermoon"
        assert cfg.reset_weekday == 2
        assert cfg.api.request_interval_seconds == 0

    def test_shipped_config_is_valid(self):
        cfg = load_guild_config(DEFAULT_CONFIG_DIR / "guild.yml")
        assert cfg.raid_team_required_cloak == "Reshii Wraps"
        assert not cfg.main_ranks & cfg.alt_ranks

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_guild_config(tmp_path / "nope.yml")


class TestValidateGuildConfig:
    def test_valid(self):
        validate_guild_config(copy.deepcopy(GUILD_DATA))

    def test_root_not_mapping(self):
        with pytest.raises(ConfigValidationError, match="mapping"):
            validate_guild_config(["guild"])

    def test_missing_section(self):
        data = copy.deepcopy(GUILD_DATA)
        del data["raid_team"]
        with pytest.raises(ConfigValidationError, match="raid_team"):
            validate_guild_config(data)

    def test_bad_region(self):
        with pytest.raises(ConfigValidationError, match="region"):
            validate_guild_config(_guild(guild__region="cn"))

    def test_inverted_tier_band(self):
        with pytest.raises(ConfigValidationError, match="item_level_min"):
            validate_guild_config(_guild(tier_set__item_level_min=750))

    def test_non_numeric_requirement(self):
        with pytest.raises(ConfigValidationError, match="not numeric"):
            validate_guild_config(_guild(requirements__item_level="high"))

    def test_overlapping_ranks(self):
        with pytest.raises(ConfigValidationError, match="both main and alt"):
            validate_guild_config(_guild(ranks__alt=[2, 3]))

    def test_bad_weekday(self):
        with pytest.raises(ConfigValidationError, match="reset_weekday"):
            validate_guild_config(_guild(lockout__reset_weekday="someday"))

    def test_max_in_flight_below_one(self):
        with pytest.raises(ConfigValidationError, match="max_in_flight"):
            validate_guild_config(_guild(api__max_in_flight=0))


class TestGuildConfigHelpers:
    def test_rank_label(self, guild_config):
        assert guild_config.rank_label(0) == "Guild Master"
        assert guild_config.rank_label(99) == "Unknown"
        assert guild_config.rank_label(None) == "Unknown"
        assert guild_config.rank_label(True) == "Unknown"

    def test_role_for_spec(self, guild_config):
        assert guild_config.role_for_spec("Blood") == "TANK"
        assert guild_config.role_for_spec("Restoration") == "HEALER"
        assert guild_config.role_for_spec("Fire") == "DPS"
        assert guild_config.role_for_spec(None) == "DPS"

    def test_canonical_difficulty(self, guild_config):
        assert guild_config.canonical_difficulty("Raid Finder") == "LFR"
        assert guild_config.canonical_difficulty("Mythic") == "Mythic"
        assert guild_config.canonical_difficulty(None) is None

    def test_api_defaults(self):
        data = copy.deepcopy(GUILD_DATA)
        del data["api"]
        cfg = build_guild_config(data)
        assert cfg.api.max_in_flight == 1
        assert cfg.api.max_attempts == 3


# ---------------------------------------------------------------------------
# Season catalog
# ---------------------------------------------------------------------------

class TestSeasonCatalog:
    def test_load(self, seasons_yaml_path):
        catalog = load_season_catalog(seasons_yaml_path)
        assert catalog.current_season_id == "season-3"
        assert [s.id for s in catalog.seasons] == ["season-2", "season-3"]

    def test_shipped_catalog_is_valid(self):
        catalog = load_season_catalog(DEFAULT_CONFIG_DIR / "seasons.yml")
        assert catalog.current().primary_raid.name == "Manaforge Omega"
        assert len(catalog.current().primary_raid.bosses) == 8

    def test_current_and_get(self, catalog):
        assert catalog.current().name == "Season 3"
        assert catalog.get("season-2").primary_raid.name == "Liberation of Undermine"
        assert catalog.get("season-99") is None

    def test_current_outside_catalog_raises(self, catalog):
        broken = replace(catalog, current_season_id="season-99")
        with pytest.raises(ConfigValidationError, match="season-99"):
            broken.current()

    def test_start_instant_is_utc_midnight(self, season):
        assert season.start_date == date(2025, 8, 12)
        assert season.start_instant == datetime(2025, 8, 12, tzinfo=timezone.utc)

    def test_find_raid(self, catalog):
        found = catalog.find_raid("Liberation of Undermine")
        assert found is not None
        season, raid = found
        assert season.id == "season-2"
        assert raid.id == "undermine"
        assert catalog.find_raid("Molten Core") is None

    def test_to_dict(self, season):
        d = season.to_dict()
        assert d["end_date"] is None
        assert d["raids"][0]["boss_count"] == 3


class TestValidateSeasonCatalog:
    def test_valid(self):
        validate_season_catalog(copy.deepcopy(SEASONS_DATA))

    def test_empty_seasons(self):
        with pytest.raises(ConfigValidationError, match="non-empty"):
            validate_season_catalog({"current_season": "x", "seasons": []})

    def test_unknown_current(self):
        data = copy.deepcopy(SEASONS_DATA)
        data["current_season"] = "season-9"
        with pytest.raises(ConfigValidationError, match="season-9"):
            validate_season_catalog(data)

    def test_duplicate_id(self):
        data = copy.deepcopy(SEASONS_DATA)
        data["seasons"][1]["id"] = "season-2"
        with pytest.raises(ConfigValidationError, match="Duplicate"):
            validate_season_catalog(data)

    def test_end_before_start(self):
        data = copy.deepcopy(SEASONS_DATA)
        data["seasons"][0]["end_date"] = "2024-01-01"
        with pytest.raises(ConfigValidationError, match="ends before"):
            validate_season_catalog(data)

    def test_duplicate_bosses(self):
        data = copy.deepcopy(SEASONS_DATA)
        data["seasons"][1]["raids"][0]["bosses"] = ["Fractillus", "Fractillus"]
        with pytest.raises(ConfigValidationError, match="duplicate bosses"):
            validate_season_catalog(data)

    def test_raid_without_difficulties(self):
        data = copy.deepcopy(SEASONS_DATA)
        data["seasons"][1]["raids"][0]["difficulties"] = []
        with pytest.raises(ConfigValidationError, match="no difficulties"):
            validate_season_catalog(data)

    def test_invalid_date(self):
        data = copy.deepcopy(SEASONS_DATA)
        data["seasons"][0]["start_date"] = "not-a-date"
        with pytest.raises(ConfigValidationError, match="Invalid date"):
            validate_season_catalog(data)

    def test_build_accepts_yaml_dates(self):
        data = copy.deepcopy(SEASONS_DATA)
        data["seasons"][0]["start_date"] = date(2025, 2, 25)
        catalog = build_season_catalog(data)
        assert catalog.get("season-2").start_date == date(2025, 2, 25)
