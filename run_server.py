#!/usr/bin/env python3
# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""auditbond host: escrow ledger + arbitration coordinator over HTTP.

Configuration comes from AUDIT_* env vars (never in code).
"""

import os, sys
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import structlog
import uvicorn

from protocol import COORDINATOR_ACCOUNT, ESCROW_ACCOUNT
from server.app import create_app
from server.escrow import EscrowLedger
from server.events import EventLog
from server.ledger import TokenLedger
from server.observability import configure_logging
from server.reputation import RewardRegistry
from server.store import AuditStore, PollStore
from server.voting import VotingCoordinator

DATA_DIR = os.environ.get("AUDIT_DATA_DIR", "/var/lib/auditbond")
PORT = int(os.environ.get("AUDIT_PORT", "8000"))
HOST = os.environ.get("AUDIT_HOST", "0.0.0.0")
ADMIN = os.environ.get("AUDIT_ADMIN", "")

log = structlog.get_logger("run_server")


def build_components(data_dir: str, admin: str):
    """One SQLite file per component under *data_dir*."""
    os.makedirs(data_dir, exist_ok=True)
    events = EventLog()
    ledger = TokenLedger(os.path.join(data_dir, "ledger.db"))
    reputation = RewardRegistry(owner=ESCROW_ACCOUNT, db_path=os.path.join(data_dir, "reputation.db"),
                                events=events)
    escrow = EscrowLedger(
        store=AuditStore(os.path.join(data_dir, "escrow.db")),
        transfer=ledger,
        account=ESCROW_ACCOUNT,
        events=events,
        reputation=reputation,
    )
    voting = VotingCoordinator(
        escrow,
        admin=admin,
        account=COORDINATOR_ACCOUNT,
        store=PollStore(os.path.join(data_dir, "voting.db")),
        transfer=ledger,
        events=events,
    )
    return escrow, voting, reputation, ledger, events


def main():
    configure_logging()
    if not ADMIN:
        print("AUDIT_ADMIN env var required (admin account id, acct_<hex>)", file=sys.stderr)
        sys.exit(1)

    escrow, voting, reputation, ledger, events = build_components(DATA_DIR, ADMIN)
    app = create_app(escrow=escrow, voting=voting, reputation=reputation, ledger=ledger, events=events)

    log.info("server_starting", host=HOST, port=PORT, data_dir=DATA_DIR,
             escrow_account=ESCROW_ACCOUNT, coordinator=COORDINATOR_ACCOUNT, admin=ADMIN)
    uvicorn.run(app, host=HOST, port=PORT)


if __name__ == "__main__":
    main()
