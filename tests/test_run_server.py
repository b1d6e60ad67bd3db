"""Tests for run_server.py wiring."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(__file__))

import pytest
import structlog

import run_server
from protocol import COORDINATOR_ACCOUNT, ESCROW_ACCOUNT
from conftest import ADMIN


def test_import_has_no_side_effects():
    assert callable(run_server.main)
    assert not hasattr(run_server, "app")


def test_build_components_shares_one_ledger(tmp_path):
    escrow, voting, reputation, ledger, events = run_server.build_components(str(tmp_path / "data"), ADMIN)
    assert escrow.transfer is ledger
    assert voting.transfer is ledger
    assert escrow.reputation is reputation
    assert reputation.owner == ESCROW_ACCOUNT
    assert voting.account == COORDINATOR_ACCOUNT
    assert voting.admin == ADMIN
    assert escrow.events is events
    db_files = sorted(f for f in os.listdir(tmp_path / "data") if f.endswith(".db"))
    assert db_files == ["escrow.db", "ledger.db", "reputation.db", "voting.db"]


def test_main_requires_admin(monkeypatch, capsys):
    monkeypatch.setattr(run_server, "ADMIN", "")
    try:
        with pytest.raises(SystemExit) as exc_info:
            run_server.main()
    finally:
        structlog.reset_defaults()
    assert exc_info.value.code == 1
    assert "AUDIT_ADMIN" in capsys.readouterr().err
