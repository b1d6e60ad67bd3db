# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Shared constants, enums and errors for the auditbond protocol.

All modules import from here to avoid circular dependencies.
"""

import os
from enum import Enum

# --- Protocol Constants ---

PROTOCOL_VERSION = 1

# Clock values are whole seconds
ONE_DAY = 86400
MIN_EXTENSION = ONE_DAY  # arbiter-driven deadlines must land at least this far out

# Payout splits (percent of the locked value)
PATRON_ACCEPT_WORKER_PCT = 98
PATRON_ACCEPT_PROVIDER_PCT = 2
ARBITRATION_MAIN_PCT = 95      # worker on accept, patron on reject
ARBITRATION_PROVIDER_PCT = 5

# Extension bounds
MAX_PATRON_HAIRCUT = 99        # approve_additional_time requires haircut < 100
MAX_ARBITER_HAIRCUT = 90
MAX_ARBITER_SHARE = 10

# Voting defaults (admin can change them later)
DEFAULT_HAIRCUT_MINOR = 5
DEFAULT_HAIRCUT_MODERATE = 15
DEFAULT_EXTENSION_MINOR = 7 * ONE_DAY
DEFAULT_EXTENSION_MODERATE = 15 * ONE_DAY
DEFAULT_ARBITERS_SHARE = 5

# Identity prefix for account ids derived from Ed25519 pubkeys
ACCOUNT_PREFIX = "acct_"

# Deployment accounts -- override via env
ESCROW_ACCOUNT = os.environ.get("AUDIT_ESCROW_ACCOUNT", "escrow")
COORDINATOR_ACCOUNT = os.environ.get("AUDIT_COORDINATOR", "coordinator")


# --- State Machine ---

class AuditStatus(Enum):
    CREATED = "created"
    ASSIGNED = "assigned"
    SUBMITTED = "submitted"
    AWAITING_VALIDATION = "awaiting_validation"  # patron rejected, arbiters decide
    COMPLETED = "completed"
    EXPIRED = "expired"


TERMINAL_STATUSES = {AuditStatus.COMPLETED, AuditStatus.EXPIRED}

# Valid transitions: current status -> set of valid next statuses
AUDIT_TRANSITIONS = {
    AuditStatus.CREATED: {AuditStatus.ASSIGNED, AuditStatus.EXPIRED},
    AuditStatus.ASSIGNED: {AuditStatus.SUBMITTED, AuditStatus.EXPIRED},
    AuditStatus.SUBMITTED: {
        AuditStatus.COMPLETED,
        AuditStatus.AWAITING_VALIDATION,
        AuditStatus.EXPIRED,
    },
    # Arbiter-driven extension sends the audit back to the worker
    AuditStatus.AWAITING_VALIDATION: {
        AuditStatus.COMPLETED,
        AuditStatus.EXPIRED,
        AuditStatus.ASSIGNED,
    },
    AuditStatus.COMPLETED: set(),
    AuditStatus.EXPIRED: set(),
}


# --- Arbiter vote outcomes ---

class Discrepancy(Enum):
    NO_DISCREPANCIES = "no_discrepancies"
    MINOR_DISCREPANCIES = "minor_discrepancies"
    MODERATE_DISCREPANCIES = "moderate_discrepancies"
    REJECT = "reject"


# --- Errors ---

class ErrorCategory(Enum):
    AUTHORIZATION = "authorization"
    STATE = "state"
    TEMPORAL = "temporal"
    VALIDATION = "validation"
    TRANSFER = "transfer"
    PROTOCOL = "protocol"


class AuditBondError(Exception):
    """Base for every typed failure an entry point can report."""
    code = "AuditBondError"
    category = ErrorCategory.PROTOCOL

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "category": self.category.value, "detail": self.message}


class UnAuthorisedCall(AuditBondError):
    code = "UnAuthorisedCall"
    category = ErrorCategory.AUTHORIZATION


class WrongState(AuditBondError):
    code = "WrongState"
    category = ErrorCategory.STATE


class AuditNotFound(AuditBondError):
    code = "AuditNotFound"
    category = ErrorCategory.STATE


class PollNotFound(AuditBondError):
    code = "PollNotFound"
    category = ErrorCategory.STATE


class PollStillActive(AuditBondError):
    code = "PollStillActive"
    category = ErrorCategory.STATE


class DeadlinePassed(AuditBondError):
    code = "DeadlinePassed"
    category = ErrorCategory.TEMPORAL


class RightsNotActivatedYet(AuditBondError):
    code = "RightsNotActivatedYet"
    category = ErrorCategory.TEMPORAL


class InvalidValue(AuditBondError):
    code = "InvalidValue"
    category = ErrorCategory.VALIDATION


class InvalidArgument(AuditBondError):
    code = "InvalidArgument"
    category = ErrorCategory.VALIDATION


class ArbitersExtendDeadlineConditionsNotMet(AuditBondError):
    code = "ArbitersExtendDeadlineConditionsNotMet"
    category = ErrorCategory.VALIDATION


class ValueTooHigh(AuditBondError):
    code = "ValueTooHigh"
    category = ErrorCategory.VALIDATION


class ValueTooLow(AuditBondError):
    code = "ValueTooLow"
    category = ErrorCategory.VALIDATION


class InsufficientBalance(AuditBondError):
    code = "InsufficientBalance"
    category = ErrorCategory.TRANSFER


class TransferFromContractFailed(AuditBondError):
    code = "TransferFromContractFailed"
    category = ErrorCategory.TRANSFER


class TransferFailed(AuditBondError):
    code = "TransferFailed"
    category = ErrorCategory.TRANSFER


class AssessmentFailed(AuditBondError):
    code = "AssessmentFailed"
    category = ErrorCategory.PROTOCOL


class ResultAlreadyPublished(AuditBondError):
    code = "ResultAlreadyPublished"
    category = ErrorCategory.PROTOCOL


class VotingFailed(AuditBondError):
    code = "VotingFailed"
    category = ErrorCategory.PROTOCOL


# --- Event types ---

EVENT_TYPES = {
    "token_incoming", "token_outgoing",
    "audit_created", "audit_assigned", "audit_updated", "audit_submitted",
    "audit_expired", "extension_requested", "arbitration_requested",
    "poll_created", "vote_cast", "poll_finalized", "treasury_released",
    "reward_minted",
}
