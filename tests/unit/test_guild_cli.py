"""Unit tests for guild_etl.cli (no database; connections patched)."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import psycopg
import yaml
from click.testing import CliRunner

from guild_etl.cli import main
from guild_etl.ingest_roster import IngestionAbortedError, RunPhase, RunResult

DSN = "postgresql://unused/db"
ENV = {"BNET_CLIENT_ID": "id", "BNET_CLIENT_SECRET": "secret"}


def _invoke(args, env=None):
    runner = CliRunner()
    with runner.isolated_filesystem():
        return runner.invoke(main, ["--db-dsn", DSN, *args], env=env or {})


class TestConfigErrors:
    def test_missing_guild_config(self, tmp_path):
        result = _invoke(["--guild-config", str(tmp_path / "missing.yml")])
        assert result.exit_code == 1
        assert "invalid configuration" in result.output

    def test_invalid_guild_config(self, tmp_path):
        bad = tmp_path / "guild.yml"
        bad.write_text(yaml.safe_dump({"guild": {"region": "eu"}}), encoding="utf-8")
        result = _invoke(["--guild-config", str(bad)])
        assert result.exit_code == 1
        assert "Missing required config sections" in result.output


class TestIngestMode:
    def test_missing_credentials(self):
        with patch("guild_etl.cli.psycopg.connect") as connect:
            result = _invoke(["--mode", "ingest"], env={"BNET_CLIENT_ID": "", "BNET_CLIENT_SECRET": ""})
        assert result.exit_code == 1
        assert "BNET_CLIENT_ID" in result.output
        connect.assert_not_called()

    def test_unknown_data_type(self):
        with patch("guild_etl.cli.psycopg.connect") as connect:
            result = _invoke(["--data-types", "raid,arena"], env=ENV)
        assert result.exit_code == 1
        assert "arena" in result.output
        connect.assert_not_called()

    def test_successful_run_writes_report(self):
        runner = CliRunner()
        with runner.isolated_filesystem(), \
                patch("guild_etl.cli.psycopg.connect"), \
                patch("guild_etl.battlenet_client.BattleNetClient"), \
                patch("guild_etl.ingest_roster.run_roster_ingestion", return_value=RunResult(processed=3)) as run:
            result = runner.invoke(
                main, ["--db-dsn", DSN, "--run-id", "run-7", "--max-in-flight", "4"], env=ENV,
            )
            report = json.loads(open("artifacts/reports/run-7.json", encoding="utf-8").read())
        assert result.exit_code == 0, result.output
        assert "Roster Ingestion Run Report" in result.output
        assert report["mode"] == "ingest"
        assert report["result"]["processed"] == 3
        config = run.call_args.args[2]
        assert config.api.max_in_flight == 4
        assert run.call_args.args[4] == {"raid", "mplus", "pvp"}

    def test_aborted_run_exits_non_zero(self):
        with patch("guild_etl.cli.psycopg.connect"), \
                patch("guild_etl.battlenet_client.BattleNetClient"), \
                patch(
                    "guild_etl.ingest_roster.run_roster_ingestion",
                    side_effect=IngestionAbortedError(RunPhase.AUTHENTICATING, "401"),
                ):
            result = _invoke([], env=ENV)
        assert result.exit_code == 1
        assert "FATAL: authenticating: 401" in result.output

    def test_unexpected_failure_still_reports(self):
        runner = CliRunner()
        with runner.isolated_filesystem(), \
                patch("guild_etl.cli.psycopg.connect") as connect, \
                patch("guild_etl.battlenet_client.BattleNetClient"), \
                patch(
                    "guild_etl.ingest_roster.run_roster_ingestion",
                    side_effect=psycopg.OperationalError("commit failed"),
                ):
            result = runner.invoke(main, ["--db-dsn", DSN, "--run-id", "run-9"], env=ENV)
            report = json.loads(open("artifacts/reports/run-9.json", encoding="utf-8").read())
        assert result.exit_code == 1
        assert "FATAL: OperationalError: commit failed" in result.output
        assert "Roster Ingestion Run Report" in result.output
        assert report["mode"] == "ingest"
        assert "result" not in report
        connect.return_value.close.assert_called_once()


class TestReadModes:
    def test_unknown_roster_filter(self):
        with patch("guild_etl.cli.psycopg.connect"), \
                patch("guild_etl.store.find_active_characters", return_value=[]):
            result = _invoke(["--mode", "roster_stats", "--filter", "shiny"])
        assert result.exit_code == 1
        assert "Unknown roster filter" in result.output

    def test_jewelry_stats_without_members(self):
        with patch("guild_etl.cli.psycopg.connect"), \
                patch("guild_etl.store.find_active_characters", return_value=[]):
            result = _invoke(["--mode", "jewelry_stats"])
        assert result.exit_code == 1
        assert "No guild data available" in result.output

    def test_raid_progress_unknown_season(self):
        conn = MagicMock(closed=False)
        with patch("guild_etl.cli.psycopg.connect", return_value=conn):
            result = _invoke(["--mode", "raid_progress", "--season", "season-99"])
        assert result.exit_code == 1
        assert "unknown season" in result.output
        assert conn.close.called

    def test_summary_prints_json(self):
        with patch("guild_etl.cli.psycopg.connect"), \
                patch(
                    "guild_etl.progress_cache.ProgressCache.current_season_summary",
                    return_value={"current_season": "Season 3", "total_members": 0, "raids": []},
                ):
            result = _invoke(["--mode", "summary"])
        assert result.exit_code == 0, result.output
        assert '"current_season": "Season 3"' in result.output
