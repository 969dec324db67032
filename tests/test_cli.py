"""Tests for the command line entry point."""
import sys
import pytest
from loguru import logger
from sitedb.cli import main


@pytest.fixture
def site_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SITEDB_PATH", str(tmp_path / "site.db"))
    yield tmp_path
    logger.remove()
    logger.add(sys.stderr)


def test_usage_without_arguments():
    assert main([]) == 1


def test_invalid_command(site_env):
    assert main(["explode"]) == 1


def test_maintain_daily(site_env, capsys):
    assert main(["maintain", "daily"]) == 0
    assert "6/6 tasks succeeded" in capsys.readouterr().out


@pytest.mark.parametrize("argv", [
    ["health"],
    ["dashboard", "12"],
    ["errors"],
    ["alerts"],
    ["report", "1", "csv"],
])
def test_read_only_commands(site_env, argv):
    assert main(argv) == 0
