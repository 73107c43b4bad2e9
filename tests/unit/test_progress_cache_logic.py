"""Unit tests for guild_etl.progress_cache (store calls patched)."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock, call, patch

import psycopg
import pytest

from guild_etl.progress_cache import NoMembersError, ProgressCache, UnknownSeasonError
from guild_etl.enrich import split_raid_history
from guild_payloads import RESET_MS, make_raid_payload

PATCH_ROOT = "guild_etl.progress_cache"
SAVED_AT = datetime(2025, 9, 5, 12, 0, tzinfo=timezone.utc)

MEMBER = {
    "name": "Alpha",
    "server": "silvermoon",
    "guild_data": {"rank": 0},
    "meta_data": {"class": "Mage", "spec": "Fire"},
    "raid_history": split_raid_history(make_raid_payload(modes={
        "Heroic": (1, 3, [("Plexus Sentinel", RESET_MS)]),
    })),
}

CACHED = {
    "season_id": "season-3",
    "season_name": "Season 3",
    "total_members": 40,
    "raids": [{"raid_name": "Manaforge Omega"}],
    "last_updated": "2025-09-01T00:00:00+00:00",
}


@pytest.fixture
def store():
    with patch(f"{PATCH_ROOT}.get_progress_snapshot") as get_snapshot, \
            patch(f"{PATCH_ROOT}.save_progress_snapshot", return_value=SAVED_AT) as save, \
            patch(f"{PATCH_ROOT}.find_active_characters", return_value=[MEMBER]) as find, \
            patch(f"{PATCH_ROOT}.count_active_characters", return_value=1) as count:
        get_snapshot.return_value = None
        yield {"get": get_snapshot, "save": save, "find": find, "count": count}


@pytest.fixture
def cache(catalog, guild_config):
    return ProgressCache(MagicMock(), catalog, guild_config)


class TestGetOrCompute:
    def test_miss_computes_and_persists(self, cache, store):
        result = cache.get_or_compute("season-3")
        assert result["cached"] is False
        assert result["last_updated"] == SAVED_AT.isoformat()
        assert result["season"]["id"] == "season-3"
        assert result["total_members"] == 1
        heroic = result["raids"][0]["difficulties"]["Heroic"]
        assert heroic["boss_kills"]["Plexus Sentinel"] == 1
        saved = store["save"].call_args.args[1]
        assert saved["season_id"] == "season-3"
        assert "cached" not in saved

    def test_hit_returns_snapshot(self, cache, store):
        store["get"].return_value = dict(CACHED)
        result = cache.get_or_compute("season-3")
        assert result["cached"] is True
        assert result["last_updated"] == CACHED["last_updated"]
        assert result["total_members"] == 40
        store["save"].assert_not_called()
        store["find"].assert_not_called()

    def test_force_bypasses_cache(self, cache, store):
        store["get"].return_value = dict(CACHED)
        result = cache.get_or_compute("season-3", force=True)
        assert result["cached"] is False
        store["get"].assert_not_called()
        store["save"].assert_called_once()

    def test_corrupt_snapshot_recomputes(self, cache, store):
        store["get"].return_value = {**CACHED, "raids": "garbage"}
        result = cache.get_or_compute("season-3")
        assert result["cached"] is False
        assert call("ROLLBACK TO SAVEPOINT progress_cache_read") in cache.conn.execute.call_args_list

    def test_read_error_recomputes(self, cache, store):
        store["get"].side_effect = psycopg.OperationalError("relation missing")
        result = cache.get_or_compute("season-3")
        assert result["cached"] is False

    def test_no_members_no_cache(self, cache, store):
        store["find"].return_value = []
        with pytest.raises(NoMembersError):
            cache.get_or_compute("season-3")
        store["save"].assert_not_called()

    def test_no_members_but_cached(self, cache, store):
        store["find"].return_value = []
        store["get"].return_value = dict(CACHED)
        assert cache.get_or_compute("season-3")["cached"] is True

    def test_unknown_season(self, cache, store):
        with pytest.raises(UnknownSeasonError):
            cache.get_or_compute("season-42")


class TestAllSeasons:
    def test_each_season_independent(self, cache, store):
        store["get"].side_effect = lambda conn, sid: dict(CACHED) if sid == "season-3" else None
        result = cache.get_all_seasons()
        assert set(result["seasons"]) == {"season-2", "season-3"}
        assert result["total_members"] == 1
        assert result["cache_age"] == [
            {"season_id": "season-2", "last_updated": SAVED_AT.isoformat(), "cached": False},
            {"season_id": "season-3", "last_updated": CACHED["last_updated"], "cached": True},
        ]

    def test_uncached_season_omitted_without_members(self, cache, store):
        store["find"].return_value = []
        store["count"].return_value = 0
        store["get"].side_effect = lambda conn, sid: dict(CACHED) if sid == "season-3" else None
        result = cache.get_all_seasons()
        assert list(result["seasons"]) == ["season-3"]
        assert result["cache_age"] == [
            {"season_id": "season-3", "last_updated": CACHED["last_updated"], "cached": True},
        ]
        store["save"].assert_not_called()

    def test_nothing_anywhere_raises(self, cache, store):
        store["find"].return_value = []
        with pytest.raises(NoMembersError):
            cache.get_all_seasons()


class TestSummary:
    def test_current_season_summary(self, cache, store):
        summary = cache.current_season_summary()
        assert summary["current_season"] == "Season 3"
        assert summary["raids"][0]["heroic_progress"] == {"completed": 0, "total": 1, "percentage": 0}

    def test_summary_without_members(self, cache, store):
        store["find"].return_value = []
        with pytest.raises(NoMembersError):
            cache.current_season_summary()

    def test_summary_falls_back_to_snapshot(self, cache, store):
        store["find"].return_value = []
        store["get"].return_value = {
            **CACHED,
            "raids": [{
                "raid_name": "Manaforge Omega",
                "difficulties": {"Heroic": {"members_completed": 10}},
            }],
        }
        summary = cache.current_season_summary()
        assert summary["total_members"] == 40
        assert summary["raids"][0]["heroic_progress"] == {"completed": 10, "total": 40, "percentage": 25}
        assert summary["raids"][0]["mythic_progress"]["completed"] == 0
        store["save"].assert_not_called()
