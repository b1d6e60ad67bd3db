# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Escrow ledger for the auditbond host.

Holds each audit's value in custody and releases it according to the audit
lifecycle: patron funds, assigns a worker, worker submits, patron assesses,
and on rejection the arbiter-provider settles.

Every operation stages its new state in a store transaction, then moves
value through the ValueTransfer backend, then commits. A refused transfer
rolls the transaction back, so a failed payout never leaves a half-applied
state. Events are published only after the commit.
"""

import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager

import structlog

from protocol import (
    ARBITRATION_MAIN_PCT, ARBITRATION_PROVIDER_PCT, ESCROW_ACCOUNT,
    MAX_ARBITER_HAIRCUT, MAX_ARBITER_SHARE, MAX_PATRON_HAIRCUT, MIN_EXTENSION,
    PATRON_ACCEPT_PROVIDER_PCT, PATRON_ACCEPT_WORKER_PCT, TERMINAL_STATUSES,
    ArbitersExtendDeadlineConditionsNotMet, AuditBondError, AuditNotFound, AuditStatus,
    DeadlinePassed, InsufficientBalance, InvalidArgument, InvalidValue,
    TransferFromContractFailed, UnAuthorisedCall, WrongState,
)
from server.events import EventBuffer
from server.ledger import StubTransfer, ValueTransfer
from server.models import AuditRecord, ExtensionRequest
from server.store import AuditStore

log = structlog.get_logger(__name__)


def split(value: int, *percentages: int) -> list[int]:
    """Percent shares of *value*, each truncated independently."""
    return [value * pct // 100 for pct in percentages]


class ArbitrationTarget(ABC):
    """What an arbitration coordinator needs from the escrow it settles."""

    @abstractmethod
    def get_audit(self, audit_id: int) -> AuditRecord:
        ...

    @abstractmethod
    def assess(self, audit_id: int, accept: bool, *, caller: str) -> AuditStatus:
        ...

    @abstractmethod
    def arbiter_extend_deadline(self, audit_id: int, new_deadline: int, haircut: int,
                                arbiter_share: int, *, caller: str) -> AuditRecord:
        ...


class EscrowLedger(ArbitrationTarget):
    """Value-custody state machine for audits."""

    def __init__(self, store: AuditStore | None = None, transfer: ValueTransfer | None = None,
                 account: str = ESCROW_ACCOUNT, clock=time.time, events=None,
                 reputation=None):
        self.store = store or AuditStore()
        self.transfer = transfer or StubTransfer()
        self.account = account
        self.events = events
        self.reputation = reputation
        self._clock = clock
        self._lock = threading.RLock()

    def _now(self) -> int:
        return int(self._clock())

    @contextmanager
    def _operation(self):
        """Serialize, stage writes in a transaction, publish events after commit."""
        with self._lock:
            buffer = EventBuffer(self.events)
            with self.store.transaction():
                yield buffer
            buffer.flush()

    def _load(self, audit_id: int) -> AuditRecord:
        audit = self.store.get_audit(audit_id)
        if audit is None:
            raise AuditNotFound(f"audit {audit_id} does not exist")
        return audit

    def _pull(self, owner: str, amount: int) -> bool:
        return self.transfer.transfer_from(self.account, owner, self.account, amount)

    def _pay(self, audit_id: int, payouts: list[tuple[str, int]], buffer: EventBuffer):
        payouts = [(to, amount) for to, amount in payouts if amount > 0]
        if not payouts:
            return
        if not self.transfer.transfer_batch(self.account, payouts):
            log.warning("payout_failed", audit_id=audit_id, payouts=payouts)
            raise TransferFromContractFailed(f"payout for audit {audit_id} was refused")
        for to, amount in payouts:
            buffer.add("token_outgoing", {"audit_id": audit_id, "receiver": to, "amount": amount})

    def _updated(self, audit: AuditRecord, caller: str, buffer: EventBuffer):
        buffer.add("audit_updated", {"audit_id": audit.id, "audit": audit.to_dict(), "updated_by": caller})

    # --- Lifecycle ---

    def open_audit(self, value: int, arbiter_provider: str, deadline_offset: int, *, caller: str) -> int:
        """Fund a new audit from the caller's balance. Returns the audit id."""
        if value <= 0:
            raise InvalidValue(f"audit value must be positive, got {value}")
        with self._operation() as buffer:
            audit = AuditRecord(
                id=self.store.next_audit_id(),
                patron=caller,
                worker=caller,
                arbiter_provider=arbiter_provider,
                value=value,
                deadline=deadline_offset,
                start_time=self._now(),
            )
            self.store.put_audit(audit)
            if not self._pull(caller, value):
                log.warning("deposit_failed", caller=caller, value=value)
                raise InsufficientBalance(f"could not collect {value} from {caller}")
            buffer.add("token_incoming", {"audit_id": audit.id, "sender": caller, "amount": value})
            buffer.add("audit_created", {"audit_id": audit.id, "audit": audit.to_dict()})
        log.info("audit_created", audit_id=audit.id, patron=caller, value=value)
        return audit.id

    def assign_auditor(self, audit_id: int, worker: str, new_value: int, new_deadline: int,
                       *, caller: str) -> AuditRecord:
        """Patron names the worker and starts the clock, optionally renegotiating terms."""
        with self._operation() as buffer:
            audit = self._load(audit_id)
            if caller != audit.patron:
                raise UnAuthorisedCall("only the patron can assign an auditor")
            if audit.status != AuditStatus.CREATED:
                raise WrongState(f"audit {audit_id} is {audit.status.value}, not created")

            now = self._now()
            # While created, audit.deadline is still the offset the patron opened with
            if new_value == audit.value:
                updated = audit.evolve(worker=worker, deadline=now + new_deadline, start_time=now,
                                       status=AuditStatus.ASSIGNED)
                self.store.put_audit(updated)
            else:
                if new_value <= 0:
                    raise InvalidValue(f"audit value must be positive, got {new_value}")
                updated = audit.evolve(worker=worker, value=new_value, deadline=now + new_deadline,
                                       start_time=now, status=AuditStatus.ASSIGNED)
                self.store.put_audit(updated)
                if new_value > audit.value:
                    delta = new_value - audit.value
                    if not self._pull(caller, delta):
                        raise InsufficientBalance(f"could not collect {delta} from {caller}")
                    buffer.add("token_incoming", {"audit_id": audit_id, "sender": caller, "amount": delta})
                else:
                    self._pay(audit_id, [(audit.patron, audit.value - new_value)], buffer)
            buffer.add("audit_assigned", {"audit_id": audit_id, "worker": worker, "deadline": updated.deadline})
        log.info("audit_assigned", audit_id=audit_id, worker=worker, value=updated.value,
                 deadline=updated.deadline)
        return updated

    def request_additional_time(self, audit_id: int, proposed_time: int, haircut_percent: int,
                                *, caller: str) -> ExtensionRequest:
        """Worker asks for a new deadline in exchange for a haircut. Overwrites any pending request."""
        with self._operation() as buffer:
            audit = self._load(audit_id)
            if caller != audit.worker:
                raise UnAuthorisedCall("only the worker can request additional time")
            if audit.status in TERMINAL_STATUSES:
                raise WrongState(f"audit {audit_id} is already {audit.status.value}")
            request = ExtensionRequest(haircut_percentage=haircut_percent, new_deadline=proposed_time)
            self.store.put_extension_request(audit_id, request)
            buffer.add("extension_requested", {
                "audit_id": audit_id, "new_deadline": proposed_time, "haircut": haircut_percent,
            })
        log.info("extension_requested", audit_id=audit_id, new_deadline=proposed_time,
                 haircut=haircut_percent)
        return request

    def approve_additional_time(self, audit_id: int, *, caller: str) -> AuditRecord:
        """Patron accepts the pending request: haircut refunded, deadline moved."""
        with self._operation() as buffer:
            audit = self._load(audit_id)
            if caller != audit.patron:
                raise UnAuthorisedCall("only the patron can approve additional time")
            if audit.status in TERMINAL_STATUSES:
                raise WrongState(f"audit {audit_id} is already {audit.status.value}")
            request = self.store.get_extension_request(audit_id)
            if request is None or request.approved:
                raise InvalidArgument(f"no pending extension request for audit {audit_id}")
            if not 0 <= request.haircut_percentage <= MAX_PATRON_HAIRCUT:
                raise InvalidArgument(f"haircut {request.haircut_percentage}% out of range")

            cut, = split(audit.value, request.haircut_percentage)
            updated = audit.evolve(value=audit.value - cut, deadline=request.new_deadline)
            self.store.put_audit(updated)
            self.store.put_extension_request(
                audit_id, ExtensionRequest(request.haircut_percentage, request.new_deadline, approved=True))
            self._pay(audit_id, [(audit.patron, cut)], buffer)
            self._updated(updated, caller, buffer)
        log.info("extension_approved", audit_id=audit_id, cut=cut, deadline=updated.deadline)
        return updated

    def submit_deliverable(self, audit_id: int, reference: str, *, caller: str) -> AuditRecord:
        with self._operation() as buffer:
            audit = self._load(audit_id)
            if caller != audit.worker:
                raise UnAuthorisedCall("only the worker can submit")
            if audit.status != AuditStatus.ASSIGNED:
                raise WrongState(f"audit {audit_id} is {audit.status.value}, not assigned")
            if audit.deadline <= self._now():
                raise DeadlinePassed(f"deadline for audit {audit_id} has passed")
            updated = audit.evolve(status=AuditStatus.SUBMITTED)
            self.store.put_audit(updated)
            self.store.put_submission(audit_id, reference)
            buffer.add("audit_submitted", {"audit_id": audit_id, "reference": reference})
        log.info("audit_submitted", audit_id=audit_id, reference=reference)
        return updated

    def assess(self, audit_id: int, accept: bool, *, caller: str) -> AuditStatus:
        """Settle a submitted audit (patron) or a disputed one (arbiter-provider)."""
        with self._operation() as buffer:
            audit = self._load(audit_id)
            if caller == audit.patron and audit.status == AuditStatus.SUBMITTED:
                if accept:
                    payouts = list(zip(
                        (audit.worker, audit.arbiter_provider),
                        split(audit.value, PATRON_ACCEPT_WORKER_PCT, PATRON_ACCEPT_PROVIDER_PCT),
                    ))
                    status = AuditStatus.COMPLETED
                else:
                    payouts = []
                    status = AuditStatus.AWAITING_VALIDATION
            elif caller == audit.arbiter_provider and audit.status == AuditStatus.AWAITING_VALIDATION:
                main = audit.worker if accept else audit.patron
                payouts = list(zip(
                    (main, audit.arbiter_provider),
                    split(audit.value, ARBITRATION_MAIN_PCT, ARBITRATION_PROVIDER_PCT),
                ))
                status = AuditStatus.COMPLETED if accept else AuditStatus.EXPIRED
            else:
                raise UnAuthorisedCall(f"{caller} cannot assess audit {audit_id} while {audit.status.value}")

            paid = sum(amount for _, amount in payouts)
            updated = audit.evolve(status=status, value=audit.value - paid)
            self.store.put_audit(updated)
            self._pay(audit_id, payouts, buffer)
            if status == AuditStatus.AWAITING_VALIDATION:
                buffer.add("arbitration_requested", {"audit_id": audit_id, "patron": audit.patron})
            else:
                self._updated(updated, caller, buffer)
        log.info("audit_assessed", audit_id=audit_id, caller=caller, accept=accept, status=status.value)

        if status in TERMINAL_STATUSES:
            worker_share = payouts[0][1] if accept else 0
            self._reward(updated, accept, worker_share)
        return status

    def arbiter_extend_deadline(self, audit_id: int, new_deadline: int, haircut: int,
                                arbiter_share: int, *, caller: str) -> AuditRecord:
        """Arbiter-provider sends a disputed audit back to the worker with a new deadline."""
        with self._operation() as buffer:
            audit = self._load(audit_id)
            if caller != audit.arbiter_provider:
                raise UnAuthorisedCall("only the arbiter provider can extend after arbitration")
            if (audit.status != AuditStatus.AWAITING_VALIDATION
                    or not 0 <= haircut <= MAX_ARBITER_HAIRCUT
                    or not 0 <= arbiter_share <= MAX_ARBITER_SHARE
                    or new_deadline < self._now() + MIN_EXTENSION):
                log.warning("arbiter_extend_refused", audit_id=audit_id, status=audit.status.value,
                            haircut=haircut, arbiter_share=arbiter_share, new_deadline=new_deadline)
                raise ArbitersExtendDeadlineConditionsNotMet(f"cannot extend audit {audit_id}")

            arbiter_cut, haircut_value = split(audit.value, arbiter_share, haircut)
            remaining, = split(audit.value, 100 - (haircut + arbiter_share))
            updated = audit.evolve(value=remaining, deadline=new_deadline, status=AuditStatus.ASSIGNED)
            self.store.put_audit(updated)
            self._pay(audit_id, [(audit.arbiter_provider, arbiter_cut), (audit.patron, haircut_value)], buffer)
            self._updated(updated, caller, buffer)
        log.info("arbiter_extended", audit_id=audit_id, deadline=new_deadline,
                 arbiter_cut=arbiter_cut, haircut_value=haircut_value)
        return updated

    def expire_audit(self, audit_id: int, *, caller: str) -> AuditRecord:
        """Patron reclaims the remaining value of an unassigned or overdue audit.

        Every refusal is UnAuthorisedCall, including terminal audits and audits
        under arbitration, which the state machine never lets expire.
        """
        with self._operation() as buffer:
            audit = self._load(audit_id)
            if caller != audit.patron:
                raise UnAuthorisedCall("only the patron can expire an audit")
            if audit.status in TERMINAL_STATUSES or audit.status == AuditStatus.AWAITING_VALIDATION:
                raise UnAuthorisedCall(f"audit {audit_id} cannot expire while {audit.status.value}")
            if audit.status != AuditStatus.CREATED and audit.deadline > self._now():
                raise UnAuthorisedCall(f"deadline for audit {audit_id} has not passed")
            updated = audit.evolve(status=AuditStatus.EXPIRED, value=0)
            self.store.put_audit(updated)
            self._pay(audit_id, [(audit.patron, audit.value)], buffer)
            buffer.add("audit_expired", {"audit_id": audit_id, "refund": audit.value})
            self._updated(updated, caller, buffer)
        log.info("audit_expired", audit_id=audit_id, refund=audit.value)
        return updated

    def _reward(self, audit: AuditRecord, positive: bool, amount: int):
        if self.reputation is None:
            return
        request = self.store.get_extension_request(audit.id)
        try:
            self.reputation.mint(
                audit.worker,
                audit.id,
                completion_time=self._now() - audit.start_time,
                extensions=1 if request is not None and request.approved else 0,
                amount=amount,
                reference=self.store.get_submission(audit.id) or "",
                positive=positive,
                caller=self.account,
            )
        except (AuditBondError, sqlite3.Error):
            # Custody already committed; the track record is not part of it
            log.exception("reward_mint_failed", audit_id=audit.id, worker=audit.worker)

    # --- Queries ---

    def get_audit(self, audit_id: int) -> AuditRecord:
        with self._lock:
            return self._load(audit_id)

    def current_audit_id(self) -> int:
        with self._lock:
            return self.store.current_audit_id()

    def get_extension_request(self, audit_id: int) -> ExtensionRequest | None:
        with self._lock:
            self._load(audit_id)
            return self.store.get_extension_request(audit_id)

    def get_submission(self, audit_id: int) -> str | None:
        with self._lock:
            self._load(audit_id)
            return self.store.get_submission(audit_id)
