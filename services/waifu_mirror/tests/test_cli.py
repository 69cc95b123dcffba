"""Tests for the command-line entry point."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

from typer.testing import CliRunner

from waifu_mirror import __version__
from waifu_mirror.cli import app

runner = CliRunner()


def test_version():
    result = runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_ingest_reports_count(tmp_path):
    with patch("waifu_mirror.ingest.ingest_once", new=AsyncMock(return_value=4)) as ingest_once:
        result = runner.invoke(app, ["ingest", "--data", str(tmp_path)])

    assert result.exit_code == 0
    assert "ingested 4 new images" in result.output
    settings = ingest_once.await_args.args[0]
    assert settings.mirror_data_dir == tmp_path


def test_ingest_failure_exits_nonzero(tmp_path):
    with patch("waifu_mirror.ingest.ingest_once", new=AsyncMock(side_effect=RuntimeError("disk full"))):
        result = runner.invoke(app, ["ingest", "--data", str(tmp_path)])

    assert result.exit_code == 1


def test_serve_passes_overrides(tmp_path):
    """Should build the app from CLI overrides and hand it to uvicorn."""
    with patch("waifu_mirror.cli.uvicorn.run") as run, patch("waifu_mirror.app.create_app") as create_app:
        result = runner.invoke(
            app,
            ["serve", "--port", "9001", "--data", str(tmp_path), "--interval", "5", "--no-ingest"],
        )

    assert result.exit_code == 0
    settings = create_app.call_args.args[0]
    assert settings.mirror_port == 9001
    assert settings.mirror_ingest_interval_minutes == 5
    assert settings.mirror_enable_periodic_ingest is False
    assert run.call_args.kwargs["port"] == 9001


def test_ingest_logs_under_configured_service(tmp_path, monkeypatch):
    monkeypatch.setenv("SERVICE_NAME", "mirror-cron")
    with patch("waifu_mirror.ingest.ingest_once", new=AsyncMock(return_value=0)), patch(
        "waifu_mirror.cli.configure_logging"
    ) as configure:
        result = runner.invoke(app, ["ingest", "--data", str(tmp_path)])

    assert result.exit_code == 0
    assert configure.call_args.kwargs["service"] == "mirror-cron"
