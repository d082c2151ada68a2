"""Tests for the command-line interface."""

import pytest
from click.testing import CliRunner

from opentrack.cli import cli
from opentrack.config import load_settings
from opentrack.database import Database
from opentrack.models import OpenEvent


@pytest.fixture
def runner(tmp_path, monkeypatch):
    # Keep load_settings away from any config.yaml or .env in the working directory
    monkeypatch.chdir(tmp_path)
    load_settings.cache_clear()
    yield CliRunner()
    load_settings.cache_clear()


def invoke(runner, db_path, *args):
    return runner.invoke(cli, ["--db", db_path, *args], obj={})


class TestCreate:
    """Tests for the create command."""

    def test_create_prints_pixel(self, runner, db_path):
        result = invoke(runner, db_path, "create", "--email", "bob@x.com", "--token", "abc123")

        assert result.exit_code == 0
        assert "Tracking id: abc123" in result.output
        assert "Tracking URL: http://localhost:3000/api/track?id=abc123&email=bob%40x.com" in result.output
        assert "HTML: <img" in result.output

        with Database(db_path) as db:
            assert db.get_message("abc123").original_recipient == "bob@x.com"

    def test_create_with_parent_and_base_url(self, runner, db_path):
        result = invoke(
            runner, db_path, "create",
            "--email", "carol@x.com",
            "--token", "fwd-1",
            "--parent", "abc123",
            "--base-url", "https://t.acme.io",
        )

        assert result.exit_code == 0
        assert "https://t.acme.io/api/track?id=fwd-1" in result.output
        with Database(db_path) as db:
            assert db.get_message("fwd-1").parent_tracking_id == "abc123"

    def test_duplicate_token(self, runner, db_path):
        invoke(runner, db_path, "create", "--email", "bob@x.com", "--token", "abc123")
        result = invoke(runner, db_path, "create", "--email", "bob@x.com", "--token", "abc123")

        assert result.exit_code != 0
        assert "already exists" in result.output

    def test_invalid_email(self, runner, db_path):
        result = invoke(runner, db_path, "create", "--email", "not-an-email")

        assert result.exit_code != 0
        assert "Invalid recipient email" in result.output


class TestReports:
    """Tests for the reporting commands."""

    def test_generate_id(self, runner, db_path):
        result = invoke(runner, db_path, "generate-id")

        assert result.exit_code == 0
        assert len(result.output.strip()) == 32

    def test_empty_reports(self, runner, db_path):
        assert "No tracked emails found." in invoke(runner, db_path, "emails").output
        assert "No events recorded." in invoke(runner, db_path, "stats").output
        assert "No events recorded for abc123." in invoke(runner, db_path, "history", "abc123").output
        assert "Email abc123 not found." in invoke(runner, db_path, "summary", "abc123").output

    def test_reports_with_data(self, runner, db_path):
        with Database(db_path) as db:
            db.create_message("abc123", "bob@x.com", subject="Hello")
            db.create_message("fwd-1", "carol@x.com", parent_tracking_id="abc123")
            db.insert_event(OpenEvent(tracking_id="abc123", ip="1.1.1.1", user_agent="UA-A"))
            db.insert_event(OpenEvent(tracking_id="abc123", ip="2.2.2.2", user_agent="UA-B"))

        emails = invoke(runner, db_path, "emails")
        assert emails.exit_code == 0
        assert "abc123" in emails.output
        assert "Hello" in emails.output

        stats = invoke(runner, db_path, "stats")
        assert "abc123" in stats.output

        history = invoke(runner, db_path, "history", "abc123")
        assert "=== abc123: bob@x.com ===" in history.output
        assert "anchor" in history.output
        assert "2.2.2.2" in history.output

        summary = invoke(runner, db_path, "summary", "abc123")
        assert "Opens: 2" in summary.output
        assert "Forwards: 1" in summary.output
        assert "fwd-1" in summary.output

    def test_unregistered_history(self, runner, db_path):
        with Database(db_path) as db:
            db.insert_event(OpenEvent(tracking_id="orphan", ip="1.1.1.1"))

        result = invoke(runner, db_path, "history", "orphan")

        assert "(unregistered)" in result.output

    def test_negative_depth_rejected(self, runner, db_path):
        result = invoke(runner, db_path, "summary", "abc123", "--depth", "-1")

        assert result.exit_code != 0
