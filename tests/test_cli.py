"""Tests for the imagepipe command line."""

import os
from unittest.mock import AsyncMock, patch

from click.testing import CliRunner

from imagepipe.cli import cli
from imagepipe.lib.results import ItemResult


class TestSecret:
    def test_prints_hex_key(self):
        result = CliRunner().invoke(cli, ["secret", "--format", "hex", "--length", "16"])

        assert result.exit_code == 0
        assert len(result.output.strip()) == 32

    def test_replaces_existing_key_in_env_file(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text("DEBUG=1\nSECRET_KEY=old\n")

        result = CliRunner().invoke(cli, ["secret", "--write", str(env)])

        assert result.exit_code == 0
        lines = env.read_text().splitlines()
        assert lines[0] == "DEBUG=1"
        assert lines[1].startswith("SECRET_KEY=") and lines[1] != "SECRET_KEY=old"
        assert len(lines) == 2


class TestConfigOption:
    def test_sets_config_path(self, tmp_path, monkeypatch):
        # Restored at teardown; the command overwrites it
        monkeypatch.setenv("IMAGEPIPE_CONFIG", "unset.yaml")
        config = tmp_path / "prod.yaml"
        config.write_text("debug: false\n")

        result = CliRunner().invoke(cli, ["--config", str(config), "secret"])

        assert result.exit_code == 0
        assert os.environ["IMAGEPIPE_CONFIG"] == str(config.resolve())

    def test_missing_file_is_an_error(self, tmp_path):
        result = CliRunner().invoke(cli, ["--config", str(tmp_path / "nope.yaml"), "secret"])
        assert result.exit_code == 2


class TestDb:
    def test_without_arguments_prints_help(self):
        with patch("imagepipe.cli._run_alembic") as run:
            result = CliRunner().invoke(cli, ["db"])

        assert result.exit_code == 0
        assert "Run database migrations" in result.output
        run.assert_not_called()

    def test_passes_arguments_to_alembic(self):
        with patch("imagepipe.cli._run_alembic") as run:
            CliRunner().invoke(cli, ["db", "upgrade", "head"])

        run.assert_called_once_with(["upgrade", "head"])


class TestMaintenanceCommands:
    def test_orphans_scan_lists_keys(self):
        keys = ["order/1/design/a.webp", "order/1/design/b.webp"]
        with patch("imagepipe.cli._with_orchestrator", AsyncMock(return_value=keys)):
            result = CliRunner().invoke(cli, ["orphans", "scan", "--prefix", "order/"])

        assert result.exit_code == 0
        assert result.output.splitlines() == [*keys, "2 orphaned object(s)"]

    def test_orphans_delete_requires_confirmation(self):
        work = AsyncMock(return_value=[])
        with patch("imagepipe.cli._with_orchestrator", work):
            result = CliRunner().invoke(cli, ["orphans", "delete"], input="n\n")

        assert result.exit_code == 1
        work.assert_not_called()

    def test_purge_reports_failures(self):
        results = [ItemResult.success("a", "hard_deleted"), ItemResult.failure("b", "bucket offline")]
        with patch("imagepipe.cli._with_orchestrator", AsyncMock(return_value=results)):
            result = CliRunner().invoke(cli, ["purge-deleted", "--older-than", "7"])

        assert result.exit_code == 1
        assert "Purged 1 of 2 image(s)" in result.output
        assert "b: bucket offline" in result.output
