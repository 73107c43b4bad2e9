"""Unit tests for guild_etl.raid_progress (guild-wide aggregation)."""

from __future__ import annotations

import copy

from guild_etl.enrich import split_raid_history
from guild_etl.raid_progress import (
    TOP_PROGRESSORS_LIMIT,
    aggregate_raid_progress,
    analyze_character_raid_progress,
    compute_season_progress,
    locate_raid_progress,
    progress_summary,
)
from guild_payloads import RESET_MS, make_raid_payload

RAID = "Manaforge Omega"
BOSSES = ["Plexus Sentinel", "Loom'ithar", "Soulbinder Naazindhri"]


def _member(name, rank=2, modes=None, raid=RAID, expansion="Current Season", cls="Priest"):
    payload = make_raid_payload(raid, modes or {}, expansion)
    return {
        "name": name,
        "server": "silvermoon",
        "guild_data": {"rank": rank},
        "meta_data": {"class": cls, "spec": "Holy"},
        "raid_history": split_raid_history(payload),
    }


def _full_clear(difficulty="Heroic"):
    return {difficulty: (3, 3, [(b, RESET_MS) for b in BOSSES])}


def _raid(season):
    return season.primary_raid


# ---------------------------------------------------------------------------
# Per-character analysis
# ---------------------------------------------------------------------------

class TestAnalyzeCharacter:
    def test_missing_raid(self, guild_config):
        block = split_raid_history(make_raid_payload("Nerub-ar Palace"))["current_season"]
        assert analyze_character_raid_progress(block, RAID, guild_config) == {
            "found": False, "difficulties": {},
        }

    def test_difficulty_fields(self, guild_config):
        block = split_raid_history(make_raid_payload(modes={
            "Heroic": (1, 8, [("Plexus Sentinel", RESET_MS), ("Loom'ithar", None)]),
        }))["current_season"]
        result = analyze_character_raid_progress(block, RAID, guild_config)
        heroic = result["difficulties"]["Heroic"]
        assert heroic["percentage"] == 13
        assert heroic["status"] == "incomplete"
        assert heroic["encounters"] == [
            {"name": "Plexus Sentinel", "completed": True, "last_kill": RESET_MS},
            {"name": "Loom'ithar", "completed": False, "last_kill": None},
        ]

    def test_zero_total_is_complete(self, guild_config):
        block = split_raid_history(make_raid_payload(modes={"Normal": (0, 0, [])}))["current_season"]
        normal = analyze_character_raid_progress(block, RAID, guild_config)["difficulties"]["Normal"]
        assert normal["percentage"] == 0
        assert normal["status"] == "complete"

    def test_alias_applied(self, guild_config):
        block = split_raid_history(make_raid_payload(modes={"Raid Finder": (2, 8, [])}))["current_season"]
        result = analyze_character_raid_progress(block, RAID, guild_config)
        assert list(result["difficulties"]) == ["LFR"]


class TestLocateRaidProgress:
    def test_falls_back_to_expansions(self, guild_config):
        member = _member("Old", modes={"Mythic": (1, 8, [])}, expansion="The War Within")
        assert member["raid_history"]["current_season"] == {}
        result = locate_raid_progress(member, RAID, guild_config)
        assert result["difficulties"]["Mythic"]["completed"] == 1

    def test_first_expansion_match_wins(self, guild_config):
        first = make_raid_payload(modes={"Heroic": (2, 8, [])}, expansion_name="A")["expansions"][0]
        second = make_raid_payload(modes={"Heroic": (7, 8, [])}, expansion_name="B")["expansions"][0]
        member = {"raid_history": {"current_season": {}, "all_expansions": [first, second]}}
        result = locate_raid_progress(member, RAID, guild_config)
        assert result["difficulties"]["Heroic"]["completed"] == 2

    def test_no_history(self, guild_config):
        assert locate_raid_progress({"raid_history": None}, RAID, guild_config) is None
        assert locate_raid_progress({}, RAID, guild_config) is None


# ---------------------------------------------------------------------------
# Guild aggregation
# ---------------------------------------------------------------------------

class TestAggregateRaidProgress:
    def test_counts_and_average(self, guild_config, season):
        members = [
            _member("Alpha", modes=_full_clear()),
            _member("Bravo", modes={"Heroic": (1, 3, [("Plexus Sentinel", RESET_MS), ("Loom'ithar", None)])}),
            _member("Charlie", raid="Liberation of Undermine", modes=_full_clear()),
        ]
        result = aggregate_raid_progress(members, RAID, _raid(season), guild_config)
        assert result["total_members"] == 3
        assert result["members_with_progress"] == 2

        heroic = result["difficulties"]["Heroic"]
        assert heroic["members_completed"] == 1
        assert heroic["members_with_progress"] == 2
        assert heroic["average_progress"] == 67
        assert heroic["boss_kills"] == {
            "Plexus Sentinel": 2, "Loom'ithar": 1, "Soulbinder Naazindhri": 1,
        }
        assert [p["name"] for p in heroic["top_progressors"]] == ["Alpha", "Bravo"]

        mythic = result["difficulties"]["Mythic"]
        assert mythic["members_completed"] == 0
        assert mythic["top_progressors"] == []
        assert set(mythic["boss_kills"]) == set(BOSSES)

    def test_boss_outside_configured_list_ignored(self, guild_config, season):
        members = [_member("A", modes={"Heroic": (1, 8, [("Some Trash Boss", RESET_MS)])})]
        heroic = aggregate_raid_progress(members, RAID, _raid(season), guild_config)["difficulties"]["Heroic"]
        assert "Some Trash Boss" not in heroic["boss_kills"]
        assert sum(heroic["boss_kills"].values()) == 0

    def test_unconfigured_difficulty_ignored(self, guild_config, season):
        members = [_member("A", modes={"Story": (3, 3, [])})]
        result = aggregate_raid_progress(members, RAID, _raid(season), guild_config)
        assert "Story" not in result["difficulties"]
        assert result["members_with_progress"] == 1

    def test_top_progressors_sort_and_limit(self, guild_config, season):
        members = [_member(f"M{i:02d}", modes={"Normal": (i % 4, 3, [])}) for i in range(12)]
        members.append(_member("HalfA", modes={"Normal": (1, 2, [])}))
        members.append(_member("HalfB", modes={"Normal": (2, 4, [])}))
        top = aggregate_raid_progress(members, RAID, _raid(season), guild_config)["difficulties"]["Normal"]["top_progressors"]
        assert len(top) == TOP_PROGRESSORS_LIMIT
        percentages = [p["percentage"] for p in top]
        assert percentages == sorted(percentages, reverse=True)
        # equal percentage: more bosses completed first
        names = [p["name"] for p in top]
        assert names.index("HalfB") < names.index("HalfA")

    def test_full_ties_keep_member_order(self, guild_config, season):
        members = [_member(n, modes=_full_clear()) for n in ("Zed", "Amy", "Bob")]
        top = aggregate_raid_progress(members, RAID, _raid(season), guild_config)["difficulties"]["Heroic"]["top_progressors"]
        assert [p["name"] for p in top] == ["Zed", "Amy", "Bob"]

    def test_progressor_entry(self, guild_config, season):
        members = [_member("Alpha", rank=0, modes=_full_clear())]
        entry = aggregate_raid_progress(members, RAID, _raid(season), guild_config)["difficulties"]["Heroic"]["top_progressors"][0]
        assert entry == {
            "name": "Alpha",
            "server": "silvermoon",
            "completed": 3,
            "total": 3,
            "percentage": 100,
            "guild_rank": "Guild Master",
            "class": "Priest",
            "spec": "Holy",
        }

    def test_member_breakdown(self, guild_config, season):
        members = [
            _member("Main", rank=0, modes=_full_clear()),
            _member("MainNoProgress", rank=1, raid="Liberation of Undermine"),
            _member("Alt", rank=3, modes=_full_clear()),
            _member("Stranger", rank=9, modes=_full_clear()),
            _member("Broken", rank="x", modes=_full_clear()),
        ]
        breakdown = aggregate_raid_progress(members, RAID, _raid(season), guild_config)["member_breakdown"]
        assert breakdown == {
            "mains": {"total": 2, "with_progress": 1},
            "alts": {"total": 1, "with_progress": 1},
        }

    def test_deterministic(self, guild_config, season):
        members = [
            _member("A", modes=_full_clear()),
            _member("B", modes={"Heroic": (2, 3, [])}),
        ]
        first = aggregate_raid_progress(copy.deepcopy(members), RAID, _raid(season), guild_config)
        second = aggregate_raid_progress(copy.deepcopy(members), RAID, _raid(season), guild_config)
        assert first == second

    def test_no_members(self, guild_config, season):
        result = aggregate_raid_progress([], RAID, _raid(season), guild_config)
        assert result["total_members"] == 0
        assert result["difficulties"]["Heroic"]["average_progress"] == 0


class TestSeasonProgress:
    def test_compute_season_progress(self, guild_config, season):
        result = compute_season_progress([_member("A", modes=_full_clear())], season, guild_config)
        assert result["season_id"] == "season-3"
        assert result["season_name"] == "Season 3"
        assert result["total_members"] == 1
        assert [r["raid_name"] for r in result["raids"]] == [RAID]

    def test_progress_summary(self, guild_config, season):
        members = [
            _member("A", modes={**_full_clear("Heroic"), **_full_clear("Mythic")}),
            _member("B", modes=_full_clear("Heroic")),
            _member("C"),
        ]
        summary = progress_summary(members, season, guild_config)
        assert summary["current_season"] == "Season 3"
        assert summary["total_members"] == 3
        raid = summary["raids"][0]
        assert raid["name"] == RAID
        assert raid["heroic_progress"] == {"completed": 2, "total": 3, "percentage": 67}
        assert raid["mythic_progress"] == {"completed": 1, "total": 3, "percentage": 33}
