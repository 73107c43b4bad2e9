"""guild_etl.cli

Unified CLI entrypoint for the guild roster pipeline.

Modes (--mode):
  ingest         fetch roster + members from Battle.net, enrich, persist,
                 reconcile, refresh progress snapshots (default)
  raid_progress  season raid progress (cached unless --force)
  summary        current-season heroic/mythic completion
  raid_team      rebuild the raid-team view from active members
  jewelry_stats  jewelry socket / gem statistics
  roster_stats   roster headline statistics and filtered roster listing

Usage (ingest):
    guild-etl \\
        --mode ingest \\
        --db-dsn "$DB_DSN" \\
        --data-types raid,mplus,pvp

Usage (raid_progress):
    guild-etl --mode raid_progress --db-dsn "$DB_DSN" --season season-3 --force

Credentials are read from the environment (BNET_CLIENT_ID /
BNET_CLIENT_SECRET by default), never from CLI args.
"""

from __future__ import annotations

import logging
import os
import sys
import uuid
from pathlib import Path
from typing import Any

import click
import psycopg

from guild_etl.config import (
    DEFAULT_CONFIG_DIR,
    ConfigValidationError,
    GuildConfig,
    SeasonCatalog,
    load_guild_config,
    load_season_catalog,
)
from guild_etl.shared import to_json, utc_now_iso, write_run_report

log = logging.getLogger(__name__)

MODES = ["ingest", "raid_progress", "summary", "raid_team", "jewelry_stats", "roster_stats"]


def _load_configs(guild_path: str, seasons_path: str, run_id: str) -> tuple[GuildConfig, SeasonCatalog]:
    try:
        return load_guild_config(Path(guild_path)), load_season_catalog(Path(seasons_path))
    except (ConfigValidationError, FileNotFoundError) as exc:
        click.echo(f"[{run_id}] FATAL: invalid configuration: {exc}", err=True)
        sys.exit(1)


def _finish(conn: psycopg.Connection, run_id: str, dry_run: bool) -> None:
    if dry_run:
        conn.rollback()
        click.echo(f"[{run_id}] DRY RUN: rolled back.")
    else:
        conn.commit()
        click.echo(f"[{run_id}] Committed.")


def _echo_observer(run_id: str):
    def observe(event: Any) -> None:
        d = event.to_dict()
        if event.type == "member-progress":
            click.echo(f"[{run_id}] [{d['index'] + 1}/{d['total']}] {d['name']}-{d['server']}: {d['status']}")
        elif event.type == "member-error":
            click.echo(f"[{run_id}] [{d['index'] + 1}/{d['total']}] {d['name']}-{d['server']}: ERROR {d['error']}", err=True)
        elif event.type == "error":
            click.echo(f"[{run_id}] {d.get('stage')} error: {d.get('error')}", err=True)
        else:
            click.echo(f"[{run_id}] {event.type}")
    return observe


@click.command()
@click.option("--mode", default="ingest", type=click.Choice(MODES), show_default=True, help="Pipeline mode")
@click.option("--db-dsn", required=True, help="PostgreSQL DSN")
@click.option(
    "--guild-config",
    default=str(DEFAULT_CONFIG_DIR / "guild.yml"),
    show_default=True,
    type=click.Path(),
    help="Guild settings YAML",
)
@click.option(
    "--seasons-config",
    default=str(DEFAULT_CONFIG_DIR / "seasons.yml"),
    show_default=True,
    type=click.Path(),
    help="Season catalog YAML",
)
# ingest flags
@click.option("--data-types", default="raid,mplus,pvp", show_default=True, help="[ingest] Comma-separated subset of raid,mplus,pvp")
@click.option("--client-id-env", default="BNET_CLIENT_ID", show_default=True, help="[ingest] Env var name holding the Battle.net client id")
@click.option("--client-secret-env", default="BNET_CLIENT_SECRET", show_default=True, help="[ingest] Env var name holding the Battle.net client secret")
@click.option("--max-in-flight", default=None, type=click.IntRange(min=1), help="[ingest] Override api.max_in_flight")
# raid_progress flags
@click.option("--season", "season_id", default=None, help="[raid_progress] Season id (default: current season)")
@click.option("--all-seasons", is_flag=True, default=False, help="[raid_progress] Report every configured season")
@click.option("--force", is_flag=True, default=False, help="[raid_progress] Recompute instead of serving the cached snapshot")
# roster_stats flags
@click.option("--filter", "roster_filter", default=None, help="[roster_stats] Roster filter, e.g. missing-enchants, locked-heroic")
@click.option("--role", default=None, type=click.Choice(["tank", "healer", "dps"]), help="[roster_stats] Role filter")
@click.option("--min-item-level", default=0.0, type=float, help="[roster_stats] Minimum equipped item level")
# shared
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str,
    guild_config: str,
    seasons_config: str,
    data_types: str,
    client_id_env: str,
    client_secret_env: str,
    max_in_flight: int | None,
    season_id: str | None,
    all_seasons: bool,
    force: bool,
    roster_filter: str | None,
    role: str | None,
    min_item_level: float,
    dry_run: bool,
    run_id: str | None,
    log_level: str,
) -> None:
    """Guild roster ingestion and raid-progress CLI."""
    logging.basicConfig(level=getattr(logging, log_level), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run_id = run_id or str(uuid.uuid4())
    started_at = utc_now_iso()
    config, catalog = _load_configs(guild_config, seasons_config, run_id)

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode == "ingest":
        _run_ingest(
            run_id, started_at, db_dsn, config, catalog,
            data_types=data_types,
            client_id_env=client_id_env,
            client_secret_env=client_secret_env,
            max_in_flight=max_in_flight,
            dry_run=dry_run,
            source_paths={"guild_config": guild_config, "seasons_config": seasons_config},
        )
        return

    from guild_etl.progress_cache import NoMembersError, ProgressCache, UnknownSeasonError
    from guild_etl.store import find_active_characters

    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        if mode == "raid_progress":
            cache = ProgressCache(conn, catalog, config)
            try:
                if all_seasons:
                    payload = cache.get_all_seasons(force=force)
                else:
                    payload = cache.get_or_compute(season_id or catalog.current_season_id, force=force)
            except NoMembersError as exc:
                click.echo(f"[{run_id}] {exc}", err=True)
                sys.exit(1)
            except UnknownSeasonError as exc:
                click.echo(f"[{run_id}] ERROR: unknown season {exc}", err=True)
                sys.exit(1)
            click.echo(to_json(payload))
            _finish(conn, run_id, dry_run)

        elif mode == "summary":
            try:
                payload = ProgressCache(conn, catalog, config).current_season_summary()
            except NoMembersError as exc:
                click.echo(f"[{run_id}] {exc}", err=True)
                sys.exit(1)
            click.echo(to_json(payload))

        elif mode == "raid_team":
            from guild_etl.raid_team import raid_team_listing, sync_raid_team
            result = sync_raid_team(conn, find_active_characters(conn), config)
            click.echo(to_json(raid_team_listing(conn)))
            click.echo(
                f"[{run_id}] raid_team processed={result.processed} created={result.created} "
                f"updated={result.updated} deactivated={result.deactivated} errors={len(result.errors)}"
            )
            _finish(conn, run_id, dry_run)
            report_path = write_run_report(
                run_id, started_at, mode, dry_run,
                {"guild_config": guild_config}, result,
            )
            click.echo(f"[{run_id}] Run report: {report_path}")

        elif mode == "jewelry_stats":
            from guild_etl.roster_stats import jewelry_gem_stats
            records = find_active_characters(conn)
            if not records:
                click.echo(f"[{run_id}] No guild data available", err=True)
                sys.exit(1)
            click.echo(to_json(jewelry_gem_stats(records)))

        elif mode == "roster_stats":
            from guild_etl.roster_stats import filter_roster, roster_statistics
            records = find_active_characters(conn)
            try:
                listing = filter_roster(
                    records, config,
                    roster_filter=roster_filter, role=role, min_item_level=min_item_level,
                )
            except ValueError as exc:
                click.echo(f"[{run_id}] ERROR: {exc}", err=True)
                sys.exit(1)
            click.echo(to_json({
                "statistics": roster_statistics(records, config),
                "members": [
                    {
                        "name": r.get("name"),
                        "server": r.get("server"),
                        "item_level": (r.get("item_level") or {}).get("equipped"),
                        "spec": (r.get("meta_data") or {}).get("spec"),
                    }
                    for r in listing
                ],
            }))
    except Exception:
        if not conn.closed:
            conn.rollback()
        raise
    finally:
        if not conn.closed:
            conn.close()


def _run_ingest(
    run_id: str,
    started_at: str,
    db_dsn: str,
    config: GuildConfig,
    catalog: SeasonCatalog,
    data_types: str,
    client_id_env: str,
    client_secret_env: str,
    max_in_flight: int | None,
    dry_run: bool,
    source_paths: dict[str, str],
) -> None:
    from dataclasses import replace

    from guild_etl.battlenet_client import BattleNetClient
    from guild_etl.ingest_roster import (
        IngestionAbortedError,
        IngestionCounters,
        build_ingestion_report,
        parse_data_types,
        run_roster_ingestion,
    )

    # Credentials come from env, never from CLI args
    client_id = os.environ.get(client_id_env, "")
    client_secret = os.environ.get(client_secret_env, "")
    if not client_id or not client_secret:
        click.echo(
            f"[{run_id}] FATAL: env vars {client_id_env} and {client_secret_env} must be set",
            err=True,
        )
        sys.exit(1)

    try:
        requested = parse_data_types(data_types)
    except ValueError as exc:
        click.echo(f"[{run_id}] ERROR: {exc}", err=True)
        sys.exit(1)

    if max_in_flight is not None:
        config = replace(config, api=replace(config.api, max_in_flight=max_in_flight))

    click.echo(
        f"[{run_id}] ingest guild={config.guild_name}@{config.guild_realm} "
        f"region={config.region} data_types={','.join(sorted(requested)) or '-'}"
    )

    counters = IngestionCounters()
    result = None
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        with BattleNetClient(
            client_id, client_secret, config.region,
            locale=config.locale, settings=config.api,
        ) as client:
            result = run_roster_ingestion(
                conn, client, config, catalog, requested,
                correlation_id=run_id,
                observer=_echo_observer(run_id),
                dry_run=dry_run,
                counters=counters,
            )
    except IngestionAbortedError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
    except Exception as exc:
        log.exception("[%s] ingestion failed", run_id)
        click.echo(f"[{run_id}] FATAL: {type(exc).__name__}: {exc}", err=True)
    finally:
        conn.close()

    click.echo(build_ingestion_report(counters, result, dry_run=dry_run))
    report_path = write_run_report(
        run_id, started_at, "ingest", dry_run, source_paths, counters,
        result=result.to_dict() if result is not None else None,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if result is None:
        sys.exit(1)
    if counters.db_errors > 0 and not dry_run:
        click.echo(f"[{run_id}] {counters.db_errors} DB errors, exiting non-zero", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
