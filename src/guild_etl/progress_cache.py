"""guild_etl.progress_cache

Per-season cache of aggregated raid progress.

Rules:
  - not forced and a snapshot exists  → stored snapshot, cached=True,
                                         snapshot's own last_updated
  - otherwise                          → aggregate active members, replace
                                         the snapshot, cached=False
  - a failed or undecodable cache read degrades to recomputation
  - no active members and nothing cached → NoMembersError (get_all_seasons
    omits such seasons and raises only when none has data)

The cache never commits; the caller owns the transaction.  Cache reads run
inside a SAVEPOINT so a failed read does not poison the transaction used for
the fallback computation.
"""

from __future__ import annotations

import logging
from typing import Any

import psycopg

from guild_etl.config import GuildConfig, SeasonCatalog, SeasonConfig
from guild_etl.raid_progress import compute_season_progress, progress_summary, summarize_snapshot
from guild_etl.store import (
    count_active_characters,
    find_active_characters,
    get_progress_snapshot,
    save_progress_snapshot,
)

log = logging.getLogger(__name__)


class NoMembersError(Exception):
    """Raised when progress is requested but there are no active members."""


class UnknownSeasonError(KeyError):
    """Raised for a season id that is not in the catalog."""


class ProgressCache:
    def __init__(
        self,
        conn: psycopg.Connection,
        catalog: SeasonCatalog,
        guild_config: GuildConfig,
    ) -> None:
        self.conn = conn
        self.catalog = catalog
        self.guild_config = guild_config

    def _season(self, season_id: str) -> SeasonConfig:
        season = self.catalog.get(season_id)
        if season is None:
            raise UnknownSeasonError(season_id)
        return season

    def _read_cached(self, season_id: str) -> dict[str, Any] | None:
        sp = "progress_cache_read"
        self.conn.execute(f"SAVEPOINT {sp}")
        try:
            snapshot = get_progress_snapshot(self.conn, season_id)
            if snapshot is not None and not isinstance(snapshot.get("raids"), list):
                raise ValueError(f"snapshot for {season_id} has no raids list")
            self.conn.execute(f"RELEASE SAVEPOINT {sp}")
            return snapshot
        except (psycopg.Error, ValueError, TypeError) as exc:
            self.conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
            log.warning("progress cache read failed for %s (%s); recomputing", season_id, exc)
            return None

    def compute(self, season_id: str) -> dict[str, Any]:
        """Aggregate live, replace the stored snapshot, return it (cached=False)."""
        season = self._season(season_id)
        members = find_active_characters(self.conn)
        if not members:
            raise NoMembersError("No active guild members found")

        snapshot = compute_season_progress(members, season, self.guild_config)
        last_updated = save_progress_snapshot(self.conn, snapshot)
        log.info("progress snapshot recomputed for %s (%d members)", season_id, len(members))
        return {
            **snapshot,
            "season": season.to_dict(),
            "last_updated": last_updated.isoformat(),
            "cached": False,
        }

    def get_or_compute(self, season_id: str, force: bool = False) -> dict[str, Any]:
        season = self._season(season_id)
        if not force:
            cached = self._read_cached(season_id)
            if cached is not None:
                return {**cached, "season": season.to_dict(), "cached": True}
        return self.compute(season_id)

    def get_all_seasons(self, force: bool = False) -> dict[str, Any]:
        """Every configured season, each independently cached or recomputed.

        Seasons with neither members nor a snapshot are left out; only when
        no season has any data is NoMembersError raised.
        """
        seasons: dict[str, dict[str, Any]] = {}
        for season in self.catalog.seasons:
            try:
                seasons[season.id] = self.get_or_compute(season.id, force=force)
            except NoMembersError:
                log.info("no progress data for %s; omitted", season.id)
        if not seasons:
            raise NoMembersError("No active guild members found")
        return {
            "total_members": count_active_characters(self.conn),
            "seasons": seasons,
            "cache_age": [
                {"season_id": sid, "last_updated": s["last_updated"], "cached": s["cached"]}
                for sid, s in seasons.items()
            ],
        }

    def current_season_summary(self) -> dict[str, Any]:
        """Live summary from active members, else from the stored snapshot."""
        season = self.catalog.current()
        members = find_active_characters(self.conn)
        if members:
            return progress_summary(members, season, self.guild_config)
        cached = self._read_cached(season.id)
        if cached is None:
            raise NoMembersError("No active guild members found")
        return summarize_snapshot(cached, season)
