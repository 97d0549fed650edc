"""Tests for the command-line entrypoint."""

import json
import shutil
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from yieldkeeper import main as main_module

EXAMPLES = Path(__file__).resolve().parent.parent / "examples"


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    strategies = tmp_path / "strategies.json"
    snapshot = tmp_path / "snapshot.json"
    shutil.copy(EXAMPLES / "strategies.json", strategies)
    shutil.copy(EXAMPLES / "snapshot.json", snapshot)
    monkeypatch.setenv("YIELDKEEPER_STRATEGIES_FILE", str(strategies))
    monkeypatch.setenv("YIELDKEEPER_SNAPSHOT_FILE", str(snapshot))
    with patch.object(main_module, "setup_logging"):
        yield tmp_path


def _run(monkeypatch, *argv: str) -> None:
    monkeypatch.setattr(sys, "argv", ["yieldkeeper", *argv])
    main_module.main()


def test_registry_command(cli_env, monkeypatch, capsys):
    _run(monkeypatch, "registry")

    out = capsys.readouterr().out
    assert "4 strategies registered" in out
    assert "usdc-main-vault" in out
    assert "kaminoVault" in out


def test_plan_command_equal_mode(cli_env, monkeypatch, capsys):
    _run(monkeypatch, "plan", "--mode", "equal")

    result = json.loads(capsys.readouterr().out)
    plan = result["plan"]
    assert plan["policy"] == "equal_weight"
    assert plan["target"][-1]["strategyId"] == "idle"
    assert sum(row["positionValue"] for row in plan["target"]) == plan["totalValue"]
    assert plan["totalValue"] == 6_750_000_000
    kinds = [action["kind"] for action in result["actions"]]
    assert kinds == sorted(kinds, key=lambda k: k != "withdraw")


def test_missing_registry_exits_nonzero(tmp_path, monkeypatch):
    monkeypatch.setenv("YIELDKEEPER_STRATEGIES_FILE", str(tmp_path / "absent.json"))
    with patch.object(main_module, "setup_logging"):
        with pytest.raises(SystemExit) as exc_info:
            _run(monkeypatch, "registry")

    assert exc_info.value.code == 1


def test_no_command_prints_help(monkeypatch, capsys):
    with patch.object(main_module, "setup_logging"):
        with pytest.raises(SystemExit) as exc_info:
            _run(monkeypatch)

    assert exc_info.value.code == 2
    assert "registry" in capsys.readouterr().out


def test_invalid_settings_exit_nonzero(monkeypatch):
    monkeypatch.setenv("YIELDKEEPER_MAX_POOL_SHARE", "2.5")
    with patch.object(main_module, "setup_logging") as setup:
        with pytest.raises(SystemExit) as exc_info:
            _run(monkeypatch, "registry")

    assert exc_info.value.code == 1
    setup.assert_not_called()
