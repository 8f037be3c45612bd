"""Tests for the command line entry point."""

from unittest.mock import patch

import pytest

import main
from scheduler import SchedulerLock


def test_cron_commands_quote_paths():
    text = main.cron_commands("/usr/bin/python3", "/srv/my app/main.py", "/var/log/sync.log")

    assert "/usr/bin/python3 '/srv/my app/main.py' scheduler --loop >> /var/log/sync.log 2>&1" in text
    assert "* * * * * /usr/bin/python3 '/srv/my app/main.py' fetch-new" in text
    assert "*/10 * * * * /usr/bin/python3 '/srv/my app/main.py' reconcile" in text


@pytest.mark.parametrize("argv, command", [
    (["fetch-new"], "fetch-new"),
    (["reconcile"], "reconcile"),
    (["scheduler", "--loop"], "scheduler"),
    (["mappings", "--active"], "mappings"),
    (["cron-paths"], "cron-paths"),
])
def test_parser_commands(argv, command):
    args = main.build_parser().parse_args(argv)

    assert args.command == command
    assert callable(args.func)


def test_no_command_prints_help(capsys):
    assert main.main([]) == 1
    assert "Kaspi -> amoCRM" in capsys.readouterr().out


def test_missing_configuration_exits(monkeypatch, tmp_path, capsys):
    for key in ("KASPI_API_TOKEN", "AMO_SUBDOMAIN", "AMO_CLIENT_ID", "AMO_CLIENT_SECRET",
                "AMO_REDIRECT_URI"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)

    assert main.main(["status"]) == 2
    assert "Missing required configuration" in capsys.readouterr().err


def test_scheduler_exits_quietly_when_lock_is_held(settings, tmp_path, capsys):
    settings.lock_path = str(tmp_path / "cron.lock")
    holder = SchedulerLock(settings.lock_path)
    assert holder.acquire()
    try:
        args = main.build_parser().parse_args(["scheduler"])
        with patch.object(main, "build_services") as build:
            assert main.cmd_scheduler(args, settings) == 0
        build.assert_not_called()
        assert "already running" in capsys.readouterr().out
    finally:
        holder.release()


def test_scheduler_single_pass(settings, tmp_path):
    settings.lock_path = str(tmp_path / "cron.lock")
    args = main.build_parser().parse_args(["scheduler"])

    with patch.object(main, "build_services") as build:
        build.return_value.build_scheduler.return_value.run_once.return_value = ["fetch_new"]
        assert main.cmd_scheduler(args, settings) == 0

    build.return_value.build_scheduler.return_value.run_once.assert_called_once_with()
    lock = SchedulerLock(settings.lock_path)
    assert lock.acquire() is True
    lock.release()
