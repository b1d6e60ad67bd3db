# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Arbitration voting coordinator for the auditbond host.

The admin opens a poll for a disputed audit with a fixed roster of arbiters.
Arbiters vote one outcome each; a reject settles the audit immediately, and
the vote that completes the roster finalizes the poll by averaging the
accumulated extension and haircut. After the override time the admin can
force finalization with whatever has been cast.

Finalization is one call into the escrow (as its arbiter-provider): accept
when the averaged extension is zero, otherwise an arbiter-driven extension.
The poll is persisted only once that call has succeeded.
"""

import threading
import time
from contextlib import contextmanager

import structlog

from protocol import (
    COORDINATOR_ACCOUNT, DEFAULT_ARBITERS_SHARE, DEFAULT_EXTENSION_MINOR,
    DEFAULT_EXTENSION_MODERATE, DEFAULT_HAIRCUT_MINOR, DEFAULT_HAIRCUT_MODERATE,
    MAX_ARBITER_HAIRCUT, MAX_ARBITER_SHARE, ONE_DAY,
    AssessmentFailed, AuditBondError, Discrepancy, InvalidArgument, PollNotFound,
    PollStillActive, ResultAlreadyPublished, RightsNotActivatedYet,
    TransferFailed, UnAuthorisedCall, ValueTooHigh, ValueTooLow, VotingFailed,
)
from server.escrow import ArbitrationTarget
from server.events import EventBuffer
from server.ledger import StubTransfer, ValueTransfer
from server.models import ArbiterSeat, VotePoll
from server.store import PollStore

log = structlog.get_logger(__name__)

_SETTING_DEFAULTS = {
    "haircut_minor": DEFAULT_HAIRCUT_MINOR,
    "haircut_moderate": DEFAULT_HAIRCUT_MODERATE,
    "extension_minor": DEFAULT_EXTENSION_MINOR,
    "extension_moderate": DEFAULT_EXTENSION_MODERATE,
    "arbiters_share": DEFAULT_ARBITERS_SHARE,
}


class VotingCoordinator:
    """Poll roster, vote aggregation and one-shot finalization."""

    def __init__(self, escrow: ArbitrationTarget, admin: str, account: str = COORDINATOR_ACCOUNT,
                 store: PollStore | None = None, transfer: ValueTransfer | None = None,
                 clock=time.time, events=None):
        self.escrow = escrow
        self.admin = admin
        self.account = account
        self.store = store or PollStore()
        self.transfer = transfer or StubTransfer()
        self.events = events
        self._clock = clock
        self._lock = threading.RLock()
        self._finalizing: set[int] = set()

    def _now(self) -> int:
        return int(self._clock())

    @contextmanager
    def _operation(self):
        with self._lock:
            buffer = EventBuffer(self.events)
            with self.store.transaction():
                yield buffer
            buffer.flush()

    def _require_admin(self, caller: str):
        if caller != self.admin:
            log.warning("admin_call_refused", caller=caller)
            raise UnAuthorisedCall("admin only")

    def _load(self, poll_id: int) -> VotePoll:
        poll = self.store.get_poll(poll_id)
        if poll is None:
            raise PollNotFound(f"poll {poll_id} does not exist")
        return poll

    def _setting(self, name: str) -> int:
        return self.store.get_setting(name, _SETTING_DEFAULTS[name])

    def _deltas(self, outcome: Discrepancy) -> tuple[int, int]:
        """(extension, haircut) an outcome adds to the running sums."""
        if outcome == Discrepancy.MINOR_DISCREPANCIES:
            return self._setting("extension_minor"), self._setting("haircut_minor")
        if outcome == Discrepancy.MODERATE_DISCREPANCIES:
            return self._setting("extension_moderate"), self._setting("haircut_moderate")
        return 0, 0

    # --- Polls ---

    def create_poll(self, audit_id: int, admin_override_time: int, arbiters: list[str],
                    *, caller: str) -> int:
        self._require_admin(caller)
        if not arbiters:
            raise InvalidArgument("a poll needs at least one arbiter")
        if len(set(arbiters)) != len(arbiters):
            raise InvalidArgument("arbiter roster contains duplicates")
        with self._operation() as buffer:
            poll = VotePoll(
                id=self.store.next_poll_id(),
                audit_id=audit_id,
                arbiters=tuple(ArbiterSeat(a) for a in arbiters),
                admin_override_time=admin_override_time,
            )
            self.store.put_poll(poll)
            buffer.add("poll_created", {
                "poll_id": poll.id, "audit_id": audit_id, "arbiters": list(arbiters),
                "admin_override_time": admin_override_time,
            })
        log.info("poll_created", poll_id=poll.id, audit_id=audit_id, arbiters=len(arbiters))
        return poll.id

    def vote(self, poll_id: int, outcome: Discrepancy | str, *, caller: str) -> VotePoll:
        try:
            outcome = Discrepancy(outcome)
        except ValueError:
            raise InvalidArgument(f"unknown outcome: {outcome!r}") from None
        with self._lock:
            poll = self._load(poll_id)
            index = poll.seat_index(caller)
            if index is None:
                raise UnAuthorisedCall(f"{caller} is not on the roster of poll {poll_id}")
            if not poll.active or poll_id in self._finalizing:
                raise ResultAlreadyPublished(f"poll {poll_id} is already finalized")
            if poll.arbiters[index].has_voted:
                raise VotingFailed(f"{caller} already voted in poll {poll_id}")

            if outcome == Discrepancy.REJECT:
                updated = poll.with_vote(index)
                return self._finalize(updated, caller, outcome, accept=False)

            extension, haircut = self._deltas(outcome)
            updated = poll.with_vote(index, extension, haircut)
            if not poll.is_final_vote():
                with self._operation() as buffer:
                    self.store.put_poll(updated)
                    buffer.add("vote_cast", {"poll_id": poll_id, "voter": caller, "outcome": outcome.value})
                log.info("vote_cast", poll_id=poll_id, voter=caller, outcome=outcome.value,
                         votes_cast=updated.votes_cast)
                return updated
            return self._finalize(updated, caller, outcome)

    def force_vote(self, poll_id: int, *, caller: str) -> VotePoll:
        """Admin finalizes with the votes cast so far once the override time is reached."""
        self._require_admin(caller)
        with self._lock:
            poll = self._load(poll_id)
            if self._now() < poll.admin_override_time:
                raise RightsNotActivatedYet(f"override for poll {poll_id} opens at {poll.admin_override_time}")
            if not poll.active or poll_id in self._finalizing:
                raise ResultAlreadyPublished(f"poll {poll_id} is already finalized")
            return self._finalize(poll, caller, None)

    def _finalize(self, poll: VotePoll, caller: str, outcome: Discrepancy | None,
                  accept: bool | None = None) -> VotePoll:
        """Settle the audit, then persist the inactive poll. Must hold self._lock."""
        if accept is None and poll.extension_sum > 0:
            extension = poll.extension_sum // poll.votes_cast
            haircut = poll.haircut_sum // poll.votes_cast
        else:
            # Zero accumulated extension needs no division, including the zero-vote case
            extension = 0
            haircut = 0
        final = poll.evolve(active=False, decided_extension=extension, decided_haircut=haircut)

        self._finalizing.add(poll.id)
        try:
            if accept is False:
                self.escrow.assess(poll.audit_id, False, caller=self.account)
            elif extension == 0:
                self.escrow.assess(poll.audit_id, True, caller=self.account)
            else:
                self.escrow.arbiter_extend_deadline(
                    poll.audit_id, self._now() + extension, haircut,
                    self._setting("arbiters_share"), caller=self.account,
                )
        except AuditBondError as exc:
            log.warning("finalization_failed", poll_id=poll.id, audit_id=poll.audit_id,
                        error=exc.code)
            raise AssessmentFailed(f"escrow refused to settle audit {poll.audit_id}: {exc.code}") from exc
        finally:
            self._finalizing.discard(poll.id)

        with self._operation() as buffer:
            self.store.put_poll(final)
            if outcome is not None:
                buffer.add("vote_cast", {"poll_id": poll.id, "voter": caller, "outcome": outcome.value})
            buffer.add("poll_finalized", {
                "poll_id": poll.id, "audit_id": poll.audit_id, "pusher": caller,
                "extension": extension, "haircut": haircut,
            })
        log.info("poll_finalized", poll_id=poll.id, audit_id=poll.audit_id, pusher=caller,
                 votes_cast=final.votes_cast, extension=extension, haircut=haircut)
        return final

    # --- Treasury ---

    def release_treasury_funds(self, poll_id: int, amount: int, *, caller: str) -> list[tuple[str, int]]:
        """Reward the arbiters of a finalized poll from the coordinator's balance."""
        self._require_admin(caller)
        with self._lock:
            poll = self._load(poll_id)
            if poll.active:
                raise PollStillActive(f"poll {poll_id} is still active")
            if amount <= 0:
                raise ValueTooLow("amount must be positive")

            voters = poll.voters()
            if voters:
                each = amount // len(voters)
                payouts = [(v, each) for v in voters if each > 0]
            else:
                payouts = [(self.admin, amount)]
            if payouts and not self.transfer.transfer_batch(self.account, payouts):
                log.warning("treasury_release_failed", poll_id=poll_id, amount=amount)
                raise TransferFailed(f"treasury release for poll {poll_id} was refused")

        if self.events is not None:
            self.events.publish("treasury_released", {
                "poll_id": poll_id, "amount": amount, "payouts": [list(p) for p in payouts],
            })
        log.info("treasury_released", poll_id=poll_id, amount=amount, recipients=len(payouts))
        return payouts

    def flush_out_tokens(self, amount: int, *, caller: str):
        """Move *amount* from the coordinator's balance to the admin."""
        self._require_admin(caller)
        if amount <= 0:
            raise ValueTooLow("amount must be positive")
        with self._lock:
            if not self.transfer.transfer(self.account, self.admin, amount):
                raise TransferFailed("flush was refused")
        log.info("tokens_flushed", amount=amount)

    # --- Configuration ---

    def change_haircut_for_discrepancies(self, minor: bool, haircut: int, *, caller: str):
        self._require_admin(caller)
        if haircut > MAX_ARBITER_HAIRCUT:
            raise ValueTooHigh(f"haircut {haircut}% exceeds {MAX_ARBITER_HAIRCUT}%")
        if haircut < 0:
            raise ValueTooLow("haircut cannot be negative")
        with self._operation():
            self.store.put_setting("haircut_minor" if minor else "haircut_moderate", haircut)
        log.info("haircut_changed", minor=minor, haircut=haircut)

    def change_time_extension_for_discrepancies(self, minor: bool, extension: int, *, caller: str):
        self._require_admin(caller)
        if extension < ONE_DAY:
            raise ValueTooLow(f"extension must be at least {ONE_DAY} seconds")
        with self._operation():
            self.store.put_setting("extension_minor" if minor else "extension_moderate", extension)
        log.info("time_extension_changed", minor=minor, extension=extension)

    def change_arbiters_share(self, share: int, *, caller: str):
        self._require_admin(caller)
        if share > MAX_ARBITER_SHARE:
            raise ValueTooHigh(f"share {share}% exceeds {MAX_ARBITER_SHARE}%")
        if share < 0:
            raise ValueTooLow("share cannot be negative")
        with self._operation():
            self.store.put_setting("arbiters_share", share)
        log.info("arbiters_share_changed", share=share)

    # --- Queries ---

    def get_poll(self, poll_id: int) -> VotePoll:
        with self._lock:
            return self._load(poll_id)

    def current_poll_id(self) -> int:
        with self._lock:
            return self.store.current_poll_id()

    def get_haircut_info(self, minor: bool) -> int:
        with self._lock:
            return self._setting("haircut_minor" if minor else "haircut_moderate")

    def get_time_extension_info(self, minor: bool) -> int:
        with self._lock:
            return self._setting("extension_minor" if minor else "extension_moderate")

    def arbiters_share(self) -> int:
        with self._lock:
            return self._setting("arbiters_share")

    def config(self) -> dict:
        with self._lock:
            return {
                "admin": self.admin,
                "account": self.account,
                "haircut_minor": self._setting("haircut_minor"),
                "haircut_moderate": self._setting("haircut_moderate"),
                "extension_minor": self._setting("extension_minor"),
                "extension_moderate": self._setting("extension_moderate"),
                "arbiters_share": self._setting("arbiters_share"),
            }
