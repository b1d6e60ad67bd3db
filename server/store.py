# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Audit and poll storage for the auditbond host.

SQLite-backed keyed collections with explicit integer id counters.
Records cross this boundary only as versioned dicts (see server.models).
Writes are staged until the surrounding transaction() commits.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager

from server.models import AuditRecord, ExtensionRequest, VotePoll


class _SqliteStore:
    """Connection, id counters and transaction handling shared by the stores."""

    def __init__(self, db_path: str = ":memory:"):
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self):
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS counters (
                name TEXT PRIMARY KEY,
                value INTEGER NOT NULL DEFAULT 0
            )
        """)
        self._create_tables()
        self.db.commit()

    def _create_tables(self):
        raise NotImplementedError

    @contextmanager
    def transaction(self):
        """Commit everything written inside the block, or roll it all back."""
        with self._lock:
            try:
                yield self
            except BaseException:
                self.db.rollback()
                raise
            else:
                self.db.commit()

    def _counter(self, name: str) -> int:
        row = self.db.execute("SELECT value FROM counters WHERE name = ?", (name,)).fetchone()
        return int(row["value"]) if row else 0

    def _next_id(self, name: str) -> int:
        value = self._counter(name) + 1
        self.db.execute(
            "INSERT INTO counters (name, value) VALUES (?, ?) "
            "ON CONFLICT(name) DO UPDATE SET value = ?",
            (name, value, value),
        )
        return value

    def close(self):
        self.db.close()


class AuditStore(_SqliteStore):
    """Audits, pending extension requests and submitted deliverables."""

    def _create_tables(self):
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS audits (
                id INTEGER PRIMARY KEY,
                status TEXT NOT NULL,
                data TEXT NOT NULL
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_audit_status ON audits(status)")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS extension_requests (
                audit_id INTEGER PRIMARY KEY,
                data TEXT NOT NULL
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS submissions (
                audit_id INTEGER PRIMARY KEY,
                reference TEXT NOT NULL
            )
        """)

    def next_audit_id(self) -> int:
        return self._next_id("audit")

    def current_audit_id(self) -> int:
        return self._counter("audit")

    def put_audit(self, audit: AuditRecord):
        self.db.execute(
            "INSERT INTO audits (id, status, data) VALUES (?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET status = excluded.status, data = excluded.data",
            (audit.id, audit.status.value, json.dumps(audit.to_dict())),
        )

    def get_audit(self, audit_id: int) -> AuditRecord | None:
        row = self.db.execute("SELECT data FROM audits WHERE id = ?", (audit_id,)).fetchone()
        if not row:
            return None
        return AuditRecord.from_dict(json.loads(row["data"]))

    def list_by_status(self, status: str, limit: int = 50) -> list[AuditRecord]:
        rows = self.db.execute(
            "SELECT data FROM audits WHERE status = ? ORDER BY id DESC LIMIT ?",
            (status, limit),
        ).fetchall()
        return [AuditRecord.from_dict(json.loads(r["data"])) for r in rows]

    def put_extension_request(self, audit_id: int, request: ExtensionRequest):
        self.db.execute(
            "INSERT INTO extension_requests (audit_id, data) VALUES (?, ?) "
            "ON CONFLICT(audit_id) DO UPDATE SET data = excluded.data",
            (audit_id, json.dumps(request.to_dict())),
        )

    def get_extension_request(self, audit_id: int) -> ExtensionRequest | None:
        row = self.db.execute(
            "SELECT data FROM extension_requests WHERE audit_id = ?", (audit_id,),
        ).fetchone()
        if not row:
            return None
        return ExtensionRequest.from_dict(json.loads(row["data"]))

    def put_submission(self, audit_id: int, reference: str):
        self.db.execute(
            "INSERT INTO submissions (audit_id, reference) VALUES (?, ?) "
            "ON CONFLICT(audit_id) DO UPDATE SET reference = excluded.reference",
            (audit_id, reference),
        )

    def get_submission(self, audit_id: int) -> str | None:
        row = self.db.execute(
            "SELECT reference FROM submissions WHERE audit_id = ?", (audit_id,),
        ).fetchone()
        return row["reference"] if row else None


class PollStore(_SqliteStore):
    """Arbitration polls and the coordinator's tunable parameters."""

    def _create_tables(self):
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS polls (
                id INTEGER PRIMARY KEY,
                audit_id INTEGER NOT NULL,
                active INTEGER NOT NULL DEFAULT 1,
                data TEXT NOT NULL
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                name TEXT PRIMARY KEY,
                value INTEGER NOT NULL
            )
        """)

    def next_poll_id(self) -> int:
        return self._next_id("poll")

    def current_poll_id(self) -> int:
        return self._counter("poll")

    def put_poll(self, poll: VotePoll):
        self.db.execute(
            "INSERT INTO polls (id, audit_id, active, data) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET active = excluded.active, data = excluded.data",
            (poll.id, poll.audit_id, int(poll.active), json.dumps(poll.to_dict())),
        )

    def get_poll(self, poll_id: int) -> VotePoll | None:
        row = self.db.execute("SELECT data FROM polls WHERE id = ?", (poll_id,)).fetchone()
        if not row:
            return None
        return VotePoll.from_dict(json.loads(row["data"]))

    def polls_for_audit(self, audit_id: int) -> list[VotePoll]:
        rows = self.db.execute(
            "SELECT data FROM polls WHERE audit_id = ? ORDER BY id", (audit_id,),
        ).fetchall()
        return [VotePoll.from_dict(json.loads(r["data"])) for r in rows]

    def get_setting(self, name: str, default: int) -> int:
        row = self.db.execute("SELECT value FROM settings WHERE name = ?", (name,)).fetchone()
        return int(row["value"]) if row else default

    def put_setting(self, name: str, value: int):
        self.db.execute(
            "INSERT INTO settings (name, value) VALUES (?, ?) "
            "ON CONFLICT(name) DO UPDATE SET value = excluded.value",
            (name, value),
        )
