from datetime import datetime, timezone

from typer.testing import CliRunner

from driver.cli import _format_message, app
from driver.state import ChatMessage

runner = CliRunner()


def test_config_command_prints_effective_settings(tmp_path, monkeypatch):
    monkeypatch.setattr("driver.config.DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")
    monkeypatch.setenv("DDP_CHAT_HISTORY_LIMIT", "7")
    result = runner.invoke(app, ["config"])
    assert result.exit_code == 0
    assert "keepalive_interval" in result.output
    assert "7" in result.output


def test_config_command_rejects_missing_file(tmp_path):
    result = runner.invoke(app, ["config", "--config", str(tmp_path / "nope.yaml")])
    assert result.exit_code != 0


def test_format_message_flags():
    message = ChatMessage(
        id="m1",
        room_id="GENERAL",
        sender_id="u-bob",
        sender_username="bob",
        text="hello @alice",
        timestamp=datetime(2024, 1, 1, 12, 30, 5, tzinfo=timezone.utc),
        is_bot=True,
        is_bot_mentioned=True,
    )
    line = _format_message(message)
    assert "12:30:05" in line
    assert "bob" in line
    assert "@you" in line
    assert "bot" in line
    assert "me[/]" not in line
