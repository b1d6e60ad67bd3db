# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Reward tokens and worker track records for the auditbond host.

SQLite-backed. Only the owner (the escrow ledger's account) may mint; each
mint bumps the recipient's success or failure counter and stores the reward
metadata under a sequential reward id starting at 0.
"""

import json
import sqlite3
import threading

import structlog

from protocol import UnAuthorisedCall
from server.models import RewardInfo, RewardStats

log = structlog.get_logger(__name__)


class RewardRegistry:
    """SQLite-backed reward token registry."""

    def __init__(self, owner: str, db_path: str = ":memory:", events=None):
        self.owner = owner
        self.events = events
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS records (
                account TEXT PRIMARY KEY,
                stats TEXT NOT NULL DEFAULT '{}'
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS rewards (
                id INTEGER PRIMARY KEY,
                recipient TEXT NOT NULL,
                data TEXT NOT NULL
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_reward_recipient ON rewards(recipient)")
        self.db.commit()

    def mint(self, recipient: str, audit_id: int, completion_time: int, extensions: int,
             amount: int, reference: str, positive: bool, *, caller: str) -> int:
        """Record an audit outcome for *recipient*. Returns the reward id."""
        if caller != self.owner:
            log.warning("mint_refused", caller=caller)
            raise UnAuthorisedCall("only the registry owner can mint")

        info = RewardInfo(
            recipient=recipient,
            audit_id=audit_id,
            completion_time=completion_time,
            extensions=extensions,
            amount=amount,
            reference=reference,
            positive=positive,
        )
        with self._lock:
            stats = self._stats(recipient) or RewardStats()
            if positive:
                stats.successful_audits += 1
            else:
                stats.unsuccessful_audits += 1
            reward_id = self._next_id()
            self.db.execute(
                "INSERT INTO records (account, stats) VALUES (?, ?) "
                "ON CONFLICT(account) DO UPDATE SET stats = excluded.stats",
                (recipient, json.dumps(stats.to_dict())),
            )
            self.db.execute(
                "INSERT INTO rewards (id, recipient, data) VALUES (?, ?, ?)",
                (reward_id, recipient, json.dumps(info.to_dict())),
            )
            self.db.commit()

        log.info("reward_minted", reward_id=reward_id, recipient=recipient,
                 audit_id=audit_id, positive=positive)
        if self.events is not None:
            self.events.publish("reward_minted", {
                "reward_id": reward_id, "recipient": recipient,
                "audit_id": audit_id, "positive": positive,
            })
        return reward_id

    def _next_id(self) -> int:
        row = self.db.execute("SELECT MAX(id) AS m FROM rewards").fetchone()
        return 0 if row["m"] is None else int(row["m"]) + 1

    def _stats(self, account: str) -> RewardStats | None:
        row = self.db.execute("SELECT stats FROM records WHERE account = ?", (account,)).fetchone()
        if not row:
            return None
        return RewardStats.from_dict(json.loads(row["stats"]))

    def show_auditors_record(self, account: str) -> RewardStats | None:
        """Success/failure counters for *account*, None if never minted to."""
        with self._lock:
            return self._stats(account)

    def show_reward_details(self, reward_id: int) -> RewardInfo | None:
        with self._lock:
            row = self.db.execute("SELECT data FROM rewards WHERE id = ?", (reward_id,)).fetchone()
        if not row:
            return None
        return RewardInfo.from_dict(json.loads(row["data"]))

    def current_reward_id(self) -> int:
        """Id the next mint will receive."""
        with self._lock:
            return self._next_id()

    def close(self):
        self.db.close()
