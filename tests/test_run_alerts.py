import json

import pytest

from conftest import CONFIG_DIR
from disruption_intel.alert_processing.run_alerts import main, parse_args


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    monkeypatch.setenv("XAI_API_KEY", "test-key")
    monkeypatch.chdir(tmp_path)
    return ["--config", str(CONFIG_DIR / "config.yaml"), "--db", str(tmp_path / "alerts.db")]


def test_parse_subcommands():
    args = parse_args(["--verbose", "generate", "--segments", "Hotel", "Airline"])
    assert args.command == "generate"
    assert args.segments == ["Hotel", "Airline"]
    assert args.verbose

    args = parse_args(["suppress", "abc123", "--reason", "duplicate story"])
    assert (args.alert_id, args.reason, args.operator) == ("abc123", "duplicate story", "cli")


def test_suppress_requires_reason():
    with pytest.raises(SystemExit):
        parse_args(["suppress", "abc123"])


def test_missing_config_fails(tmp_path):
    assert main(["--config", str(tmp_path / "nope.yaml"), "status"]) == 1


def test_status_prints_schedule_and_statistics(cli_env, capsys):
    assert main([*cli_env, "status"]) == 0

    output = capsys.readouterr().out
    payload, _ = json.JSONDecoder().raw_decode(output[output.index("{\n"):])
    assert set(payload["scheduler"]["next_run"]) == {"generation", "update_scan"}
    assert payload["auto_update"] == {"eligible": 0, "with_updates": 0, "suppressed": 0}


def test_operator_command_on_unknown_alert_fails(cli_env):
    assert main([*cli_env, "enable", "does-not-exist"]) == 1
