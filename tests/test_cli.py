from __future__ import annotations

import json

from typer.testing import CliRunner

from relaybot import __version__
from relaybot.cli.commands import app

runner = CliRunner()


def test_version_flag() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_policy_command_prints_effective_policy(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps(
            {
                "permission": {"default": "blocked", "admins": ["42"], "other": {"group:1": "trusted"}},
                "storage": {"dataDir": str(tmp_path / "data")},
            }
        ),
        encoding="utf-8",
    )

    result = runner.invoke(app, ["policy", "--config", str(config_path)])

    assert result.exit_code == 0, result.output
    assert "Permission policy (config)" in result.output
    assert "blocked" in result.output
    assert "group:1" in result.output


def test_invalid_config_exits_with_status_1(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    config_path = tmp_path / "config.json"
    config_path.write_text("{oops", encoding="utf-8")

    result = runner.invoke(app, ["policy", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "Config error" in result.output
