"""
Tests for the CLI interface.
"""
import json
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from conftest import TEST_KEY_HEX
from usage_ingest.cli.main import (
    app,
    EXIT_CODE_AUTH,
    EXIT_CODE_FAIL,
    EXIT_CODE_PASS,
    EXIT_CODE_RETRYABLE,
)
from usage_ingest.errors import TransientError

runner = CliRunner()

SCRAPED = (
    "Date,Model,Input (w/o Cache Write),Output Tokens,Cost,Cost to you\n"
    "2025-02-05T15:00:00Z,gpt-5,100,10,$0.10,$0.00\n"
    "2025-02-06T01:00:00Z,claude-4-sonnet,200,20,$0.20,$0.00\n"
)


@pytest.fixture
def config_file(tmp_path):
    """Write a config pointing every path into tmp_path."""
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({
        "database": {"path": str(tmp_path / "ingest.db")},
        "sessions": {"directory": str(tmp_path / "sessions")},
        "retention": {"raw_blobs": 5},
    }))
    return str(path)


@pytest.fixture
def export_file(tmp_path):
    path = tmp_path / "usage.csv"
    path.write_text(SCRAPED)
    return str(path)


class TestCLI:
    """Test CLI commands."""

    def test_init_creates_database(self, config_file, tmp_path):
        result = runner.invoke(app, ["init", "--config", config_file])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output
        assert (tmp_path / "ingest.db").exists()

    def test_config_from_environment(self, config_file, tmp_path):
        result = runner.invoke(app, ["init"], env={"USAGE_INGEST_CONFIG": config_file})

        assert result.exit_code == EXIT_CODE_PASS
        assert (tmp_path / "ingest.db").exists()

    def test_invalid_config_fails(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.dump({"unknown": {}}))

        result = runner.invoke(app, ["init", "--config", str(path)])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Configuration error" in result.output

    def test_run_once_from_file(self, config_file, export_file):
        """Test a full run over a saved scraped export."""
        result = runner.invoke(app, ["run-once", "--config", config_file, "--from-file", export_file])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Ingestion Run" in result.output
        assert "saved" in result.output

    def test_run_once_twice_is_idempotent(self, config_file, export_file):
        runner.invoke(app, ["run-once", "-c", config_file, "-f", export_file])
        result = runner.invoke(app, ["run-once", "-c", config_file, "-f", export_file])

        assert result.exit_code == EXIT_CODE_PASS
        assert "duplicate" in result.output

        status = runner.invoke(app, ["status", "-c", config_file])
        assert status.exit_code == EXIT_CODE_PASS
        assert "Usage events: 2" in status.output
        assert "Raw blobs stored: 1" in status.output
        assert "Watermark: none" not in status.output

    def test_run_once_structured_file(self, config_file, tmp_path):
        export = tmp_path / "usage.json"
        export.write_text(json.dumps({"rows": [{"model": "gpt-5", "output_tokens": 5}]}))

        result = runner.invoke(app, ["run-once", "-c", config_file, "-f", str(export), "--kind", "structured"])

        assert result.exit_code == EXIT_CODE_PASS
        status = runner.invoke(app, ["status", "-c", config_file])
        assert "Usage events: 1" in status.output

    def test_run_once_malformed_export_fails(self, config_file, tmp_path):
        export = tmp_path / "usage.json"
        export.write_text("{broken")

        result = runner.invoke(app, ["run-once", "-c", config_file, "-f", str(export), "-k", "structured"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "NORMALIZE_ERROR" in result.output

    def test_run_once_without_session_needs_login(self, config_file):
        result = runner.invoke(app, ["run-once", "--config", config_file])

        assert result.exit_code == EXIT_CODE_AUTH
        assert "AUTH_EXPIRED" in result.output

    def test_run_once_transient_failure_is_retryable(self, config_file, export_file):
        with patch("usage_ingest.fetch.local.LocalFileFetcher.fetch", side_effect=TransientError("slow")):
            result = runner.invoke(app, ["run-once", "-c", config_file, "-f", export_file])

        assert result.exit_code == EXIT_CODE_RETRYABLE
        assert "TRANSIENT" in result.output

    def test_status_on_empty_database(self, config_file):
        result = runner.invoke(app, ["status", "--config", config_file])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Usage events: 0" in result.output
        assert "Watermark: none" in result.output
        assert "missing" in result.output


class TestSessionCommands:
    """Test the login hand-off commands."""

    def _session_file(self, tmp_path):
        path = tmp_path / "captured.json"
        path.write_text(json.dumps({"cookies": [{"name": "token", "value": "abc"}]}))
        return str(path)

    def test_save_and_clear_session(self, config_file, tmp_path):
        result = runner.invoke(
            app,
            ["save-session", self._session_file(tmp_path), "-c", config_file],
            env={"SESSION_ENCRYPTION_KEY": TEST_KEY_HEX},
        )

        assert result.exit_code == EXIT_CODE_PASS
        assert len(list((tmp_path / "sessions").glob("session_*.json"))) == 1

        status = runner.invoke(app, ["status", "-c", config_file])
        assert "Session: present" in status.output

        cleared = runner.invoke(app, ["clear-session", "-c", config_file])
        assert cleared.exit_code == EXIT_CODE_PASS
        assert "Removed 1" in cleared.output
        assert list((tmp_path / "sessions").glob("session_*.json")) == []

    def test_save_session_without_key_fails(self, config_file, tmp_path, monkeypatch):
        monkeypatch.delenv("SESSION_ENCRYPTION_KEY", raising=False)

        result = runner.invoke(app, ["save-session", self._session_file(tmp_path), "-c", config_file])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "SESSION_ENCRYPTION_KEY" in result.output

    def test_save_session_plaintext(self, config_file, tmp_path, monkeypatch):
        monkeypatch.delenv("SESSION_ENCRYPTION_KEY", raising=False)

        result = runner.invoke(
            app, ["save-session", self._session_file(tmp_path), "-c", config_file, "--no-encrypt"]
        )

        assert result.exit_code == EXIT_CODE_PASS

    def test_save_session_rejects_non_object(self, config_file, tmp_path):
        path = tmp_path / "captured.json"
        path.write_text("[1, 2]")

        result = runner.invoke(app, ["save-session", str(path), "-c", config_file])

        assert result.exit_code == EXIT_CODE_FAIL

    def test_stored_session_is_used_for_fetch(self, config_file, tmp_path):
        runner.invoke(
            app,
            ["save-session", self._session_file(tmp_path), "-c", config_file, "--no-encrypt"],
        )

        with patch("usage_ingest.fetch.http.requests.Session.get") as mock_get:
            mock_get.return_value.status_code = 503
            result = runner.invoke(app, ["run-once", "-c", config_file])

        assert result.exit_code == EXIT_CODE_RETRYABLE
        assert mock_get.call_args.kwargs["headers"] == {"Cookie": "token=abc"}
