"""Tests for the command-line interface."""

from __future__ import annotations

from pathlib import Path

from typer.testing import CliRunner

from finsync import __version__
from finsync.cli import app

runner = CliRunner()


class TestCLI:
    def test_version(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_connectors_command(self) -> None:
        result = runner.invoke(app, ["connectors", "--config", "/nonexistent.yaml"])
        assert result.exit_code == 0
        assert "fints" in result.stdout
        assert "No connectors configured" in result.stdout

    def test_import_paypal_text(self, tmp_path: Path) -> None:
        source = tmp_path / "activity.txt"
        source.write_text("Jan 2024\nSpotify\n−9,99 €\n3 Jan . Automatic Payment\n", encoding="utf-8")

        result = runner.invoke(app, ["import-paypal-text", str(source)])
        assert result.exit_code == 0
        assert "1 imported" in result.stdout

    def test_import_amazon_unknown_format(self, tmp_path: Path) -> None:
        source = tmp_path / "orders.csv"
        source.write_text("foo,bar\n1,2\n")

        result = runner.invoke(app, ["import-amazon", str(source)])
        assert result.exit_code == 1
        assert "Found headers" in result.stdout

    def test_bad_date_option(self, tmp_path: Path) -> None:
        source = tmp_path / "activity.txt"
        source.write_text("")
        result = runner.invoke(app, ["import-paypal-text", str(source), "--from", "01.01.2024"])
        assert result.exit_code == 2

    def test_connect_requires_type_for_unknown_id(self) -> None:
        result = runner.invoke(app, ["connect", "mystery", "--config", "/nonexistent.yaml"])
        assert result.exit_code == 2
        assert "pass --type" in result.stdout

    def test_connect_unknown_type(self) -> None:
        result = runner.invoke(app, ["connect", "mystery", "--type", "telegraph", "--config", "/nonexistent.yaml"])
        assert result.exit_code == 2
        assert "Unknown connector type" in result.stdout
