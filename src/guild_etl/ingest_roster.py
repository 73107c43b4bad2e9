"""guild_etl.ingest_roster

Roster ingestion run: Battle.net roster → enriched character records.

Phases:
  AUTHENTICATING → FETCHING_ROSTER → PROCESSING_MEMBERS → RECONCILING
  → AGGREGATING → DONE   (ERROR reachable from any phase)

Design principles:
  - Fatal only before member processing: an auth or roster failure raises
    IngestionAbortedError and nothing is written.
  - Per-member isolation: a fetch/enrich failure is recorded in the run's
    error list and the run moves on; each member's upsert runs inside its
    own SAVEPOINT so a DB error rolls back only that member.
  - Bounded concurrency: at most api.max_in_flight members are fetched at
    once (default 1).  Persistence always happens here, on the coordinator
    thread, in roster order.
  - Best-effort sub-fetches: media and PvP brackets degrade to
    "unavailable" instead of failing the member.
  - Cancellation: should_cancel() is checked before each member batch; a cancelled
    run skips reconciliation so nobody is deactivated by a partial run.
  - Dry-run: everything is fetched and computed, then rolled back.

Processing order per member:
  1.  profile  (below the item-level bar → skipped, nothing else fetched)
  2.  equipment
  3.  raid / mythic+ / pvp, per requested data types
  4.  media (best-effort)
  5.  enrich → CharacterRecord
  6.  SAVEPOINT member_{idx} → upsert_character
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Protocol

import psycopg

from guild_etl.battlenet_client import BattleNetClient, BattleNetError
from guild_etl.config import GuildConfig, SeasonCatalog, SeasonConfig
from guild_etl.enrich import (
    bracket_keys,
    build_character_record,
    build_pvp_block,
    media_assets,
)
from guild_etl.normalize import as_int, as_list, as_number, dig, trim
from guild_etl.progress_cache import NoMembersError, ProgressCache
from guild_etl.records import CharacterRecord, SubFetch
from guild_etl.reconcile import reconcile
from guild_etl.store import upsert_character

log = logging.getLogger(__name__)

VALID_DATA_TYPES = frozenset({"raid", "mplus", "pvp"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class IngestionAbortedError(Exception):
    """Raised when the run cannot start processing members (auth / roster)."""

    def __init__(self, phase: "RunPhase", message: str) -> None:
        super().__init__(f"{phase.value}: {message}")
        self.phase = phase


# ---------------------------------------------------------------------------
# Phases + progress events
# ---------------------------------------------------------------------------

class RunPhase(str, Enum):
    AUTHENTICATING = "authenticating"
    FETCHING_ROSTER = "fetching_roster"
    PROCESSING_MEMBERS = "processing_members"
    RECONCILING = "reconciling"
    AGGREGATING = "aggregating"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class ProgressEvent:
    type: str           # start | auth | roster-fetched | member-progress | member-error
                        # | cleanup | aggregation | complete | error
    phase: RunPhase
    correlation_id: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "phase": self.phase.value,
            "correlation_id": self.correlation_id,
            **self.data,
        }


class ProgressObserver(Protocol):
    def __call__(self, event: ProgressEvent) -> None:
        ...


# ---------------------------------------------------------------------------
# Counters + result
# ---------------------------------------------------------------------------

@dataclass
class IngestionCounters:
    # Roster
    roster_size: int = 0
    members_eligible: int = 0
    # Members
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped_below_item_level: int = 0
    member_errors: int = 0
    db_errors: int = 0
    media_unavailable: int = 0
    pvp_brackets_unavailable: int = 0
    # After-run
    deactivated: int = 0
    snapshots_saved: int = 0
    # API
    requests_sent: int = 0
    rate_limit_hits: int = 0
    # Outcome
    cancelled: bool = False
    final_phase: str | None = None
    abort_reason: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


@dataclass
class RunResult:
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped_below_item_level: int = 0
    deactivated: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    cancelled: bool = False
    snapshots_saved: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "skipped_below_item_level": self.skipped_below_item_level,
            "deactivated": self.deactivated,
            "errors": list(self.errors),
            "cancelled": self.cancelled,
            "snapshots_saved": self.snapshots_saved,
        }


def parse_data_types(value: str | Iterable[str] | None) -> frozenset[str]:
    """"raid,mplus" → {"raid", "mplus"}.  Unknown names raise ValueError."""
    if value is None:
        return frozenset()
    items = value.split(",") if isinstance(value, str) else list(value)
    names = frozenset(s.strip().lower() for s in items if s and s.strip())
    unknown = names - VALID_DATA_TYPES
    if unknown:
        raise ValueError(
            f"Unknown data types {sorted(unknown)}; choose from {sorted(VALID_DATA_TYPES)}"
        )
    return names


# ---------------------------------------------------------------------------
# Per-member fetch (runs on worker threads when max_in_flight > 1)
# ---------------------------------------------------------------------------

@dataclass
class FetchedMember:
    name: str
    realm: str
    record: CharacterRecord | None = None
    skipped: bool = False
    error: str | None = None
    media_unavailable: bool = False
    pvp_brackets_unavailable: int = 0


def member_identity(member: dict[str, Any]) -> tuple[str, str]:
    name = trim(dig(member, "character", "name")) or ""
    realm = trim(dig(member, "character", "realm", "slug")) or ""
    return name, realm


def fetch_media(client: BattleNetClient, realm: str, name: str) -> SubFetch:
    try:
        return SubFetch.ok(media_assets(client.fetch_media(realm, name)))
    except BattleNetError as exc:
        log.debug("media unavailable for %s-%s: %s", name, realm, exc)
        return SubFetch.unavailable(str(exc))


def fetch_pvp(client: BattleNetClient, realm: str, name: str) -> dict[str, Any]:
    """PvP summary plus each listed bracket; failed pieces are skipped."""
    try:
        summary = SubFetch.ok(client.fetch_pvp_summary(realm, name))
    except BattleNetError as exc:
        log.debug("pvp summary unavailable for %s-%s: %s", name, realm, exc)
        return build_pvp_block(SubFetch.unavailable(str(exc)), {})

    brackets: dict[str, SubFetch] = {}
    for key in bracket_keys(summary.value):
        try:
            brackets[key] = SubFetch.ok(client.fetch_pvp_bracket(realm, name, key))
        except BattleNetError as exc:
            log.debug("pvp bracket %s unavailable for %s-%s: %s", key, name, realm, exc)
            brackets[key] = SubFetch.unavailable(str(exc))
    return build_pvp_block(summary, brackets)


def fetch_member(
    client: BattleNetClient,
    member: dict[str, Any],
    config: GuildConfig,
    season: SeasonConfig,
    data_types: frozenset[str],
    now: datetime,
) -> FetchedMember:
    """Fetch and enrich one roster member.  Raises on non-best-effort failures."""
    name, realm = member_identity(member)
    if not name or not realm:
        raise ValueError("roster entry has no character name/realm")
    result = FetchedMember(name=name, realm=realm)

    profile = client.fetch_character_profile(realm, name)
    if as_number(profile.get("equipped_item_level")) < config.item_level_requirement:
        result.skipped = True
        return result

    equipment = client.fetch_equipment(realm, name)
    raid_payload = client.fetch_raid_progress(realm, name) if "raid" in data_types else None
    mplus = client.fetch_mythic_progress(realm, name) if "mplus" in data_types else None
    pvp = fetch_pvp(client, realm, name) if "pvp" in data_types else None
    media = fetch_media(client, realm, name)

    result.media_unavailable = not media.available
    if pvp is not None:
        result.pvp_brackets_unavailable = len(pvp.get("unavailable_brackets") or [])

    result.record = build_character_record(
        member, profile, equipment, config, season, now,
        raid_payload=raid_payload, mplus=mplus, pvp=pvp, media=media,
    )
    return result


def _fetch_member_safe(*args: Any) -> FetchedMember:
    member = args[1]
    try:
        return fetch_member(*args)
    except Exception as exc:
        name, realm = member_identity(member)
        return FetchedMember(name=name, realm=realm, error=f"{type(exc).__name__}: {exc}")


# ---------------------------------------------------------------------------
# Main pipeline
# ---------------------------------------------------------------------------

def run_roster_ingestion(
    conn: psycopg.Connection,
    client: BattleNetClient,
    config: GuildConfig,
    seasons: SeasonCatalog,
    data_types: Iterable[str],
    correlation_id: str,
    observer: ProgressObserver | None = None,
    should_cancel: Callable[[], bool] | None = None,
    dry_run: bool = False,
    now: datetime | None = None,
    counters: IngestionCounters | None = None,
) -> RunResult:
    """Full roster ingestion run.

    Commits at the end (rolls back when dry_run).  Raises
    IngestionAbortedError if authentication or the roster fetch fails.
    """
    now = now or datetime.now(timezone.utc)
    data_types = parse_data_types(data_types)
    counters = counters if counters is not None else IngestionCounters()
    result = RunResult()
    season = seasons.current()
    phase = RunPhase.AUTHENTICATING

    def emit(event_type: str, **data: Any) -> None:
        if observer is None:
            return
        try:
            observer(ProgressEvent(event_type, phase, correlation_id, data))
        except Exception as exc:  # noqa: BLE001
            log.warning("[%s] progress observer failed on %s: %s", correlation_id, event_type, exc)

    emit("start", data_types=sorted(data_types), dry_run=dry_run, season_id=season.id)

    try:
        # ------------------------------------------------------------------ #
        # Phase 1: Auth                                                        #
        # ------------------------------------------------------------------ #
        try:
            client.authenticate()
        except BattleNetError as exc:
            raise IngestionAbortedError(phase, str(exc)) from exc
        emit("auth", region=config.region)

        # ------------------------------------------------------------------ #
        # Phase 2: Roster                                                      #
        # ------------------------------------------------------------------ #
        phase = RunPhase.FETCHING_ROSTER
        try:
            roster = client.fetch_roster(config.guild_realm, config.guild_name)
        except BattleNetError as exc:
            raise IngestionAbortedError(phase, str(exc)) from exc

        roster_members = [m for m in as_list(roster.get("members")) if isinstance(m, dict)]
        eligible = [
            m for m in roster_members
            if as_int(dig(m, "character", "level")) >= config.level_requirement
        ]
        counters.roster_size = len(roster_members)
        counters.members_eligible = len(eligible)
        log.info(
            "[%s] roster fetched: %d members, %d eligible",
            correlation_id, len(roster_members), len(eligible),
        )
        emit("roster-fetched", total=len(roster_members), eligible=len(eligible))

        # ------------------------------------------------------------------ #
        # Phase 3: Per-member fetch + persist                                  #
        # ------------------------------------------------------------------ #
        phase = RunPhase.PROCESSING_MEMBERS
        touched: list[str] = []
        batch_size = max(1, config.api.max_in_flight)
        pool = ThreadPoolExecutor(max_workers=batch_size) if batch_size > 1 else None
        try:
            for start in range(0, len(eligible), batch_size):
                if should_cancel is not None and should_cancel():
                    counters.cancelled = True
                    log.info("[%s] cancelled before member %d", correlation_id, start)
                    break

                batch = eligible[start:start + batch_size]
                args = [(client, m, config, season, data_types, now) for m in batch]
                if pool is None:
                    fetched = [_fetch_member_safe(*a) for a in args]
                else:
                    fetched = [f.result() for f in [pool.submit(_fetch_member_safe, *a) for a in args]]

                for offset, item in enumerate(fetched):
                    idx = start + offset
                    status = _persist_member(conn, idx, item, touched, counters, result, correlation_id)
                    if status == "error":
                        emit("member-error", index=idx, total=len(eligible), name=item.name,
                             server=item.realm, error=result.errors[-1]["error"])
                    else:
                        emit("member-progress", index=idx, total=len(eligible), name=item.name,
                             server=item.realm, status=status)
        finally:
            if pool is not None:
                pool.shutdown(wait=True)

        counters.requests_sent = client.requests_sent
        counters.rate_limit_hits = client.rate_limit_hits

        # ------------------------------------------------------------------ #
        # Phase 4: Reconcile                                                   #
        # ------------------------------------------------------------------ #
        phase = RunPhase.RECONCILING
        if counters.cancelled:
            emit("cleanup", skipped=True, reason="cancelled")
        else:
            conn.execute("SAVEPOINT reconcile")
            try:
                counters.deactivated = reconcile(conn, touched).deactivated_count
                conn.execute("RELEASE SAVEPOINT reconcile")
                emit("cleanup", skipped=False, deactivated=counters.deactivated)
            except Exception as exc:
                conn.execute("ROLLBACK TO SAVEPOINT reconcile")
                counters.db_errors += 1
                counters.warnings.append(f"reconcile failed: {exc}")
                log.error("[%s] reconcile failed: %s", correlation_id, exc)
                emit("error", stage="reconcile", error=str(exc))

        # ------------------------------------------------------------------ #
        # Phase 5: Aggregate + snapshot                                        #
        # ------------------------------------------------------------------ #
        phase = RunPhase.AGGREGATING
        if not counters.cancelled:
            _refresh_snapshots(conn, config, seasons, counters, correlation_id)
            emit("aggregation", snapshots_saved=counters.snapshots_saved)

        if dry_run:
            conn.rollback()
        else:
            conn.commit()

    except IngestionAbortedError as exc:
        conn.rollback()
        phase = RunPhase.ERROR
        counters.final_phase = phase.value
        counters.abort_reason = str(exc)
        log.error("[%s] ingestion aborted: %s", correlation_id, exc)
        emit("error", stage=exc.phase.value, error=str(exc), fatal=True)
        raise
    except Exception as exc:
        conn.rollback()
        stage = phase.value
        phase = RunPhase.ERROR
        counters.final_phase = phase.value
        counters.abort_reason = f"{type(exc).__name__}: {exc}"
        emit("error", stage=stage, error=str(exc), fatal=True)
        raise

    phase = RunPhase.DONE
    counters.final_phase = phase.value
    result.deactivated = counters.deactivated
    result.snapshots_saved = counters.snapshots_saved
    result.cancelled = counters.cancelled
    emit("complete", **result.to_dict())
    return result


def _persist_member(
    conn: psycopg.Connection,
    idx: int,
    item: FetchedMember,
    touched: list[str],
    counters: IngestionCounters,
    result: RunResult,
    correlation_id: str,
) -> str:
    """Apply one fetched member to the store.  Returns its status label."""
    # attempted this run: neither a failure nor a skip gets the member deactivated
    if item.name:
        touched.append(item.name)

    if item.skipped:
        counters.skipped_below_item_level += 1
        result.skipped_below_item_level += 1
        return "skipped"

    if item.error is not None or item.record is None:
        error = item.error or "no record produced"
        counters.member_errors += 1
        result.errors.append({"member": f"{item.name}-{item.realm}", "error": error})
        log.warning("[%s] member %s-%s failed: %s", correlation_id, item.name, item.realm, error)
        return "error"

    if item.media_unavailable:
        counters.media_unavailable += 1
    counters.pvp_brackets_unavailable += item.pvp_brackets_unavailable

    sp = f"member_{idx}"
    conn.execute(f"SAVEPOINT {sp}")
    try:
        was_inserted = upsert_character(conn, item.record.to_dict())
        conn.execute(f"RELEASE SAVEPOINT {sp}")
    except Exception as exc:
        conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
        counters.db_errors += 1
        counters.member_errors += 1
        result.errors.append({"member": item.record.identity, "error": f"store: {exc}"})
        log.warning("[%s] upsert failed for %s: %s", correlation_id, item.record.identity, exc)
        return "error"

    counters.processed += 1
    result.processed += 1
    if was_inserted:
        counters.created += 1
        result.created += 1
        return "created"
    counters.updated += 1
    result.updated += 1
    return "updated"


def _refresh_snapshots(
    conn: psycopg.Connection,
    config: GuildConfig,
    seasons: SeasonCatalog,
    counters: IngestionCounters,
    correlation_id: str,
) -> None:
    """Recompute every season's progress snapshot.  Failures are non-fatal."""
    cache = ProgressCache(conn, seasons, config)
    for i, season in enumerate(seasons.seasons):
        sp = f"snapshot_{i}"
        conn.execute(f"SAVEPOINT {sp}")
        try:
            cache.compute(season.id)
            conn.execute(f"RELEASE SAVEPOINT {sp}")
            counters.snapshots_saved += 1
        except NoMembersError:
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
            counters.warnings.append("no active members; progress snapshots not refreshed")
            return
        except Exception as exc:
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
            counters.db_errors += 1
            counters.warnings.append(f"snapshot {season.id} failed: {exc}")
            log.error("[%s] snapshot %s failed: %s", correlation_id, season.id, exc)


# ---------------------------------------------------------------------------
# Report builder
# ---------------------------------------------------------------------------

def build_ingestion_report(counters: IngestionCounters, result: RunResult | None, dry_run: bool) -> str:
    lines = [
        "=== Roster Ingestion Run Report ===",
        f"dry_run          : {dry_run}",
        f"final_phase      : {counters.final_phase}",
        "",
        "--- Roster ---",
        f"roster_size      : {counters.roster_size}",
        f"eligible         : {counters.members_eligible}",
        "",
        "--- Members ---",
        f"processed        : {counters.processed}",
        f"created          : {counters.created}",
        f"updated          : {counters.updated}",
        f"skipped(ilvl)    : {counters.skipped_below_item_level}",
        f"member_errors    : {counters.member_errors}",
        f"media_unavailable: {counters.media_unavailable}",
        f"pvp_brackets_miss: {counters.pvp_brackets_unavailable}",
        "",
        "--- After run ---",
        f"deactivated      : {counters.deactivated}",
        f"snapshots_saved  : {counters.snapshots_saved}",
        f"cancelled        : {counters.cancelled}",
        "",
        "--- API ---",
        f"requests_sent    : {counters.requests_sent}",
        f"rate_limit_hits  : {counters.rate_limit_hits}",
        f"db_errors        : {counters.db_errors}",
    ]
    if counters.abort_reason:
        lines.append(f"abort_reason     : {counters.abort_reason}")
    if result is not None and result.errors:
        lines += ["", "--- Member errors (first 10) ---"]
        lines += [f"  {e['member']}: {e['error']}" for e in result.errors[:10]]
    if counters.warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in counters.warnings[:10]]
    return "\n".join(lines)
