import logging

import pytest

from restore_chain.__main__ import monitor_end_state
from restore_chain.config import AppSettings
from restore_chain.models import RecoveryMode


def _settings(monkeypatch: pytest.MonkeyPatch, end_state: str) -> AppSettings:
    monkeypatch.setenv("RESTORE_END_STATE", end_state)
    monkeypatch.setenv("RESTORE_STANDBY_DIRECTORY", "/s")
    monkeypatch.setenv("MONITOR_DATABASE", "Sales")
    return AppSettings()


def test_monitor_keeps_database_restoring_instead_of_recovering(monkeypatch, caplog) -> None:
    settings = _settings(monkeypatch, "RECOVERY")

    with caplog.at_level(logging.WARNING, logger="restore_chain.__main__"):
        end_state = monitor_end_state(settings)

    assert end_state.mode == RecoveryMode.NORECOVERY
    assert "RESTORE_END_STATE=RECOVERY" in caplog.text


def test_monitor_standby_file_is_named_after_database(monkeypatch, caplog) -> None:
    settings = _settings(monkeypatch, "standby")

    with caplog.at_level(logging.WARNING, logger="restore_chain.__main__"):
        end_state = monitor_end_state(settings)

    assert end_state.mode == RecoveryMode.STANDBY
    assert end_state.standby_file == "/s/Sales_undo.bak"
    assert "RESTORE_END_STATE" not in caplog.text
