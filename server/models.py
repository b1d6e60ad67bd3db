# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Record types for the escrow ledger and the voting coordinator.

Plain dataclasses. The only encoding is to_dict()/from_dict(), used at the
store boundary; every dict carries the schema version under "v".
"""

from dataclasses import dataclass, replace

from protocol import AUDIT_TRANSITIONS, AuditStatus, WrongState

SCHEMA_VERSION = 1


def _check_version(d: dict, kind: str):
    v = d.get("v")
    if v != SCHEMA_VERSION:
        raise ValueError(f"Unsupported {kind} schema version: {v!r}")


@dataclass(frozen=True)
class AuditRecord:
    """One escrowed audit.

    deadline is the relative offset while the audit is CREATED, and an
    absolute timestamp once a worker is assigned.
    """
    id: int
    patron: str
    worker: str
    arbiter_provider: str
    value: int
    deadline: int
    start_time: int
    status: AuditStatus = AuditStatus.CREATED

    def evolve(self, **changes) -> "AuditRecord":
        status = changes.get("status", self.status)
        if status != self.status and status not in AUDIT_TRANSITIONS[self.status]:
            raise WrongState(f"audit {self.id} cannot move from {self.status.value} to {status.value}")
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "v": SCHEMA_VERSION,
            "id": self.id,
            "patron": self.patron,
            "worker": self.worker,
            "arbiter_provider": self.arbiter_provider,
            "value": self.value,
            "deadline": self.deadline,
            "start_time": self.start_time,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "AuditRecord":
        _check_version(d, "audit")
        return cls(
            id=int(d["id"]),
            patron=d["patron"],
            worker=d["worker"],
            arbiter_provider=d["arbiter_provider"],
            value=int(d["value"]),
            deadline=int(d["deadline"]),
            start_time=int(d["start_time"]),
            status=AuditStatus(d["status"]),
        )


@dataclass(frozen=True)
class ExtensionRequest:
    """Worker's pending request for more time, paid for with a haircut."""
    haircut_percentage: int
    new_deadline: int
    approved: bool = False

    def to_dict(self) -> dict:
        return {
            "v": SCHEMA_VERSION,
            "haircut_percentage": self.haircut_percentage,
            "new_deadline": self.new_deadline,
            "approved": self.approved,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ExtensionRequest":
        _check_version(d, "extension request")
        return cls(
            haircut_percentage=int(d["haircut_percentage"]),
            new_deadline=int(d["new_deadline"]),
            approved=bool(d.get("approved", False)),
        )


@dataclass(frozen=True)
class ArbiterSeat:
    account: str
    has_voted: bool = False

    def to_dict(self) -> dict:
        return {"account": self.account, "has_voted": self.has_voted}


@dataclass(frozen=True)
class VotePoll:
    """One arbitration session for a disputed audit.

    Roster membership is fixed at creation; only the has_voted flags change.
    extension_sum/haircut_sum accumulate until finalization, when the
    decided_* fields receive the averaged result.
    """
    id: int
    audit_id: int
    arbiters: tuple[ArbiterSeat, ...]
    admin_override_time: int
    active: bool = True
    votes_cast: int = 0
    extension_sum: int = 0
    haircut_sum: int = 0
    decided_extension: int = 0
    decided_haircut: int = 0

    def seat_index(self, account: str) -> int | None:
        for i, seat in enumerate(self.arbiters):
            if seat.account == account:
                return i
        return None

    def is_final_vote(self) -> bool:
        """True if the next vote completes the roster."""
        return self.votes_cast + 1 == len(self.arbiters)

    def with_vote(self, index: int, extension: int = 0, haircut: int = 0) -> "VotePoll":
        """Copy with seat *index* marked as voted and the deltas accumulated."""
        seats = list(self.arbiters)
        seats[index] = replace(seats[index], has_voted=True)
        return replace(
            self,
            arbiters=tuple(seats),
            votes_cast=self.votes_cast + 1,
            extension_sum=self.extension_sum + extension,
            haircut_sum=self.haircut_sum + haircut,
        )

    def voters(self) -> list[str]:
        return [s.account for s in self.arbiters if s.has_voted]

    def evolve(self, **changes) -> "VotePoll":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "v": SCHEMA_VERSION,
            "id": self.id,
            "audit_id": self.audit_id,
            "arbiters": [s.to_dict() for s in self.arbiters],
            "admin_override_time": self.admin_override_time,
            "active": self.active,
            "votes_cast": self.votes_cast,
            "extension_sum": self.extension_sum,
            "haircut_sum": self.haircut_sum,
            "decided_extension": self.decided_extension,
            "decided_haircut": self.decided_haircut,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "VotePoll":
        _check_version(d, "poll")
        return cls(
            id=int(d["id"]),
            audit_id=int(d["audit_id"]),
            arbiters=tuple(
                ArbiterSeat(account=s["account"], has_voted=bool(s.get("has_voted", False)))
                for s in d.get("arbiters", [])
            ),
            admin_override_time=int(d["admin_override_time"]),
            active=bool(d.get("active", True)),
            votes_cast=int(d.get("votes_cast", 0)),
            extension_sum=int(d.get("extension_sum", 0)),
            haircut_sum=int(d.get("haircut_sum", 0)),
            decided_extension=int(d.get("decided_extension", 0)),
            decided_haircut=int(d.get("decided_haircut", 0)),
        )


@dataclass
class RewardStats:
    """Success/failure counters for a worker."""
    successful_audits: int = 0
    unsuccessful_audits: int = 0

    def to_dict(self) -> dict:
        return {
            "v": SCHEMA_VERSION,
            "successful_audits": self.successful_audits,
            "unsuccessful_audits": self.unsuccessful_audits,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "RewardStats":
        _check_version(d, "reward stats")
        return cls(
            successful_audits=int(d.get("successful_audits", 0)),
            unsuccessful_audits=int(d.get("unsuccessful_audits", 0)),
        )


@dataclass(frozen=True)
class RewardInfo:
    recipient: str
    audit_id: int
    completion_time: int
    extensions: int
    amount: int
    reference: str
    positive: bool = True

    def to_dict(self) -> dict:
        return {
            "v": SCHEMA_VERSION,
            "recipient": self.recipient,
            "audit_id": self.audit_id,
            "completion_time": self.completion_time,
            "extensions": self.extensions,
            "amount": self.amount,
            "reference": self.reference,
            "positive": self.positive,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "RewardInfo":
        _check_version(d, "reward")
        return cls(
            recipient=d["recipient"],
            audit_id=int(d["audit_id"]),
            completion_time=int(d["completion_time"]),
            extensions=int(d["extensions"]),
            amount=int(d["amount"]),
            reference=d.get("reference", ""),
            positive=bool(d.get("positive", True)),
        )
