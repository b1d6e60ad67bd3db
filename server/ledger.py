# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Value transfer backends for the auditbond host.

The escrow ledger and the voting coordinator never move value themselves;
they call a ValueTransfer and check the returned success flag.

  - StubTransfer: records every transfer, succeeds unless told to fail.
  - TokenLedger: SQLite balances + allowances, enforces funds and allowance.
"""

import sqlite3
import threading
import time
from abc import ABC, abstractmethod

import structlog

log = structlog.get_logger(__name__)


class ValueTransfer(ABC):
    """Abstract transfer backend. Components inject one of these."""

    @abstractmethod
    def transfer(self, sender: str, to: str, amount: int) -> bool:
        """Move *amount* from *sender* to *to*. Returns success."""
        ...

    @abstractmethod
    def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> bool:
        """Move *amount* from *owner* to *to* on behalf of *spender*.
        Consumes the owner's allowance for the spender. Returns success."""
        ...

    def transfer_batch(self, sender: str, payouts: list[tuple[str, int]]) -> bool:
        """Pay several recipients from *sender*. Stops at the first failure."""
        for to, amount in payouts:
            if not self.transfer(sender, to, amount):
                return False
        return True


class StubTransfer(ValueTransfer):
    """No-op backend for testing. Every transfer succeeds unless configured to fail.

    fail=True fails everything; fail_for holds recipients whose incoming
    transfers fail; fail_pull makes transfer_from fail.
    """

    def __init__(self):
        self.sends: list[dict] = []  # log of transfers for test assertions
        self.pulls: list[dict] = []
        self.fail = False
        self.fail_pull = False
        self.fail_for: set[str] = set()

    def _refuses(self, to: str) -> bool:
        return self.fail or to in self.fail_for

    def transfer(self, sender: str, to: str, amount: int) -> bool:
        if self._refuses(to):
            return False
        self.sends.append({"from": sender, "to": to, "amount": amount})
        return True

    def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> bool:
        if self.fail or self.fail_pull:
            return False
        self.pulls.append({"spender": spender, "owner": owner, "to": to, "amount": amount})
        return True

    def transfer_batch(self, sender: str, payouts: list[tuple[str, int]]) -> bool:
        if any(self._refuses(to) for to, _ in payouts):
            return False
        for to, amount in payouts:
            self.sends.append({"from": sender, "to": to, "amount": amount})
        return True

    def received(self, account: str) -> int:
        """Total amount sent to *account* so far."""
        return sum(s["amount"] for s in self.sends if s["to"] == account)


class TokenLedger(ValueTransfer):
    """Fungible balance ledger backed by SQLite.

    Enforces:
    - Positive integer amounts
    - Insufficient balance / allowance -> False, never raises
    - All-or-nothing batches
    - Full transaction log

    Usage:
        ledger = TokenLedger()
        ledger.mint("acct_patron", 1000)
        ledger.approve("acct_patron", "escrow", 1000)
    """

    def __init__(self, db_path: str = ":memory:"):
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS balances (
                account TEXT PRIMARY KEY,
                amount INTEGER NOT NULL DEFAULT 0
            )
        """)
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS allowances (
                owner TEXT NOT NULL,
                spender TEXT NOT NULL,
                amount INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (owner, spender)
            )
        """)
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                from_account TEXT NOT NULL,
                to_account TEXT NOT NULL,
                amount INTEGER NOT NULL,
                tx_type TEXT NOT NULL,
                timestamp REAL NOT NULL
            )
        """)
        self._db.commit()

    def _get_balance(self, account: str) -> int:
        row = self._db.execute(
            "SELECT amount FROM balances WHERE account = ?", (account,),
        ).fetchone()
        return int(row["amount"]) if row else 0

    def _set_balance(self, account: str, amount: int):
        self._db.execute(
            "INSERT INTO balances (account, amount) VALUES (?, ?) "
            "ON CONFLICT(account) DO UPDATE SET amount = ?",
            (account, amount, amount),
        )

    def _get_allowance(self, owner: str, spender: str) -> int:
        row = self._db.execute(
            "SELECT amount FROM allowances WHERE owner = ? AND spender = ?",
            (owner, spender),
        ).fetchone()
        return int(row["amount"]) if row else 0

    def _set_allowance(self, owner: str, spender: str, amount: int):
        self._db.execute(
            "INSERT INTO allowances (owner, spender, amount) VALUES (?, ?, ?) "
            "ON CONFLICT(owner, spender) DO UPDATE SET amount = ?",
            (owner, spender, amount, amount),
        )

    def _move(self, sender: str, to: str, amount: int, tx_type: str):
        self._set_balance(sender, self._get_balance(sender) - amount)
        self._set_balance(to, self._get_balance(to) + amount)
        self._db.execute(
            "INSERT INTO transactions (from_account, to_account, amount, tx_type, timestamp) "
            "VALUES (?, ?, ?, ?, ?)",
            (sender, to, amount, tx_type, time.time()),
        )

    # --- ValueTransfer interface ---

    def transfer(self, sender: str, to: str, amount: int) -> bool:
        return self.transfer_batch(sender, [(to, amount)])

    def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> bool:
        if not isinstance(amount, int) or amount <= 0:
            return False
        with self._lock:
            allowed = self._get_allowance(owner, spender)
            if allowed < amount or self._get_balance(owner) < amount:
                log.warning("transfer_from_refused", owner=owner, spender=spender,
                            amount=amount, allowance=allowed)
                return False
            self._set_allowance(owner, spender, allowed - amount)
            self._move(owner, to, amount, "transfer_from")
            self._db.commit()
            return True

    def transfer_batch(self, sender: str, payouts: list[tuple[str, int]]) -> bool:
        if any(not isinstance(a, int) or a <= 0 for _, a in payouts):
            return False
        total = sum(a for _, a in payouts)
        with self._lock:
            if self._get_balance(sender) < total:
                log.warning("transfer_refused", sender=sender, amount=total)
                return False
            for to, amount in payouts:
                self._move(sender, to, amount, "transfer")
            self._db.commit()
            return True

    # --- Token administration ---

    def mint(self, to: str, amount: int):
        """Credit *to* with freshly issued tokens."""
        if amount <= 0:
            raise ValueError(f"Mint amount must be positive, got {amount}")
        with self._lock:
            self._set_balance(to, self._get_balance(to) + amount)
            self._db.execute(
                "INSERT INTO transactions (from_account, to_account, amount, tx_type, timestamp) "
                "VALUES (?, ?, ?, ?, ?)",
                ("", to, amount, "mint", time.time()),
            )
            self._db.commit()

    def approve(self, owner: str, spender: str, amount: int):
        """Set (not add to) the allowance *spender* may pull from *owner*."""
        if amount < 0:
            raise ValueError(f"Allowance must be non-negative, got {amount}")
        with self._lock:
            self._set_allowance(owner, spender, amount)
            self._db.commit()

    def allowance(self, owner: str, spender: str) -> int:
        with self._lock:
            return self._get_allowance(owner, spender)

    def balance_of(self, account: str) -> int:
        with self._lock:
            return self._get_balance(account)

    def total_supply(self) -> int:
        with self._lock:
            row = self._db.execute("SELECT COALESCE(SUM(amount), 0) AS s FROM balances").fetchone()
            return int(row["s"])

    def get_transactions(self, account: str = "") -> list[dict]:
        """Transaction log, optionally filtered to transfers touching *account*."""
        with self._lock:
            if account:
                rows = self._db.execute(
                    "SELECT * FROM transactions WHERE from_account = ? OR to_account = ? ORDER BY id",
                    (account, account),
                ).fetchall()
            else:
                rows = self._db.execute("SELECT * FROM transactions ORDER BY id").fetchall()
            return [dict(r) for r in rows]

    def close(self):
        self._db.close()
