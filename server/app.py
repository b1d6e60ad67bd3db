# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for the auditbond host (FastAPI).

Endpoints for the audit lifecycle (open, assign, extend, submit, assess,
expire), arbitration polls (create, vote, force, treasury), coordinator
configuration, reputation and balance queries, and the event log.

Ed25519 authentication: every mutating request must be signed. The caller
identity passed to the components is derived from the signing pubkey.
"""

import sys
import os
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio
import json as json_mod
import queue as _queue_mod
import threading

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.responses import StreamingResponse
from pydantic import BaseModel

from crypto import verify_request_ed25519, pubkey_to_account_id, ReplayGuard
from protocol import (
    PROTOCOL_VERSION, AuditBondError, AuditNotFound, Discrepancy, ErrorCategory,
    PollNotFound,
)
from server.escrow import EscrowLedger
from server.events import EventLog
from server.observability import bind_request_context
from server.voting import VotingCoordinator

log = structlog.get_logger(__name__)

STATUS_BY_CATEGORY = {
    ErrorCategory.AUTHORIZATION: 403,
    ErrorCategory.STATE: 409,
    ErrorCategory.TEMPORAL: 409,
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.TRANSFER: 402,
    ErrorCategory.PROTOCOL: 409,
}


def status_for(exc: AuditBondError) -> int:
    if isinstance(exc, (AuditNotFound, PollNotFound)):
        return 404
    return STATUS_BY_CATEGORY.get(exc.category, 400)


# --- Request models ---

class OpenAuditRequest(BaseModel):
    value: int
    arbiter_provider: str
    deadline_offset: int

class AssignRequest(BaseModel):
    worker: str
    new_value: int
    new_deadline: int

class ExtensionRequestBody(BaseModel):
    proposed_time: int
    haircut_percent: int

class SubmitRequest(BaseModel):
    reference: str

class AssessRequest(BaseModel):
    accept: bool

class ArbiterExtendRequest(BaseModel):
    new_deadline: int
    haircut: int
    arbiter_share: int

class CreatePollRequest(BaseModel):
    audit_id: int
    admin_override_time: int
    arbiters: list[str]

class VoteRequest(BaseModel):
    outcome: Discrepancy

class AmountRequest(BaseModel):
    amount: int

class HaircutRequest(BaseModel):
    minor: bool
    haircut: int

class TimeExtensionRequest(BaseModel):
    minor: bool
    extension: int

class ArbitersShareRequest(BaseModel):
    share: int

class ApproveRequest(BaseModel):
    spender: str
    amount: int

class MintRequest(BaseModel):
    to: str
    amount: int


SSE_KEEPALIVE = 15.0


async def sse_frames(q: _queue_mod.Queue, event_type: str = "", keepalive: float = SSE_KEEPALIVE):
    """Yield SSE frames from *q*, waiting in a worker thread so the loop stays free."""
    while True:
        try:
            event = await asyncio.to_thread(q.get, True, keepalive)
        except _queue_mod.Empty:
            yield ": keepalive\n\n"
            continue
        if event_type and event["type"] != event_type:
            continue
        yield f"data: {json_mod.dumps(event)}\n\n"


async def _resolve_caller(request: Request) -> str:
    """Verify the Ed25519-signed request and return the caller's account id.

    Requires X-Audit-Timestamp, X-Audit-Signature, and X-Audit-Pubkey headers.
    The signature covers: METHOD\\nPATH\\nTIMESTAMP\\nBODY
    """
    timestamp = request.headers.get("X-Audit-Timestamp", "")
    signature = request.headers.get("X-Audit-Signature", "")
    pubkey_hex = request.headers.get("X-Audit-Pubkey", "")

    if not timestamp or not signature or not pubkey_hex:
        raise HTTPException(401, "Signed request required (X-Audit-Timestamp + X-Audit-Signature + X-Audit-Pubkey headers)")

    body = (await request.body()).decode("utf-8", errors="replace")
    ok, err = verify_request_ed25519(
        request.method, request.url.path, body,
        timestamp, signature, pubkey_hex,
    )
    if not ok:
        raise HTTPException(401, f"Authentication failed: {err}")

    replay_guard = getattr(request.app.state, "replay_guard", None)
    if replay_guard and not replay_guard.check_and_record(signature):
        raise HTTPException(401, "Replay detected")

    caller = pubkey_to_account_id(bytes.fromhex(pubkey_hex))
    bind_request_context(caller=caller, method=request.method, path=request.url.path)
    return caller


def create_app(
    escrow: EscrowLedger | None = None,
    voting: VotingCoordinator | None = None,
    reputation=None,
    ledger=None,
    events: EventLog | None = None,
) -> FastAPI:
    """Create FastAPI app with injected components.

    Missing components get in-memory defaults; the coordinator's admin then
    comes from AUDIT_ADMIN.
    """

    app = FastAPI(title="auditbond", version=str(PROTOCOL_VERSION))

    if events is None and escrow is not None:
        events = escrow.events
    _events = events if events is not None else EventLog()
    _escrow = escrow or EscrowLedger(events=_events, reputation=reputation)
    _voting = voting or VotingCoordinator(
        _escrow, admin=os.environ.get("AUDIT_ADMIN", "admin"), events=_events,
    )
    _reputation = reputation
    _ledger = ledger

    app.state.replay_guard = ReplayGuard()
    app.state.escrow = _escrow
    app.state.voting = _voting
    app.state.reputation = _reputation
    app.state.ledger = _ledger
    app.state.events = _events

    @app.exception_handler(AuditBondError)
    async def audit_error_handler(request: Request, exc: AuditBondError):
        status = status_for(exc)
        log.info("request_rejected", path=request.url.path, error=exc.code, status=status)
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.get("/")
    async def index():
        return {
            "name": "auditbond",
            "protocol_version": PROTOCOL_VERSION,
            "escrow_account": _escrow.account,
            "coordinator_account": _voting.account,
            "current_audit_id": _escrow.current_audit_id(),
            "current_poll_id": _voting.current_poll_id(),
        }

    # --- Audits ---

    @app.post("/audits")
    async def open_audit(req: OpenAuditRequest, request: Request):
        caller = await _resolve_caller(request)
        audit_id = _escrow.open_audit(req.value, req.arbiter_provider, req.deadline_offset, caller=caller)
        return {"audit_id": audit_id, "audit": _escrow.get_audit(audit_id).to_dict()}

    @app.get("/audits/{audit_id}")
    async def get_audit(audit_id: int):
        audit = _escrow.get_audit(audit_id)
        return {"audit": audit.to_dict(), "submission": _escrow.get_submission(audit_id)}

    @app.post("/audits/{audit_id}/assign")
    async def assign_auditor(audit_id: int, req: AssignRequest, request: Request):
        caller = await _resolve_caller(request)
        audit = _escrow.assign_auditor(audit_id, req.worker, req.new_value, req.new_deadline, caller=caller)
        return {"audit": audit.to_dict()}

    @app.post("/audits/{audit_id}/extension")
    async def request_additional_time(audit_id: int, req: ExtensionRequestBody, request: Request):
        caller = await _resolve_caller(request)
        ext = _escrow.request_additional_time(audit_id, req.proposed_time, req.haircut_percent, caller=caller)
        return {"request": ext.to_dict()}

    @app.get("/audits/{audit_id}/extension")
    async def get_extension_request(audit_id: int):
        ext = _escrow.get_extension_request(audit_id)
        return {"request": ext.to_dict() if ext else None}

    @app.post("/audits/{audit_id}/extension/approve")
    async def approve_additional_time(audit_id: int, request: Request):
        caller = await _resolve_caller(request)
        audit = _escrow.approve_additional_time(audit_id, caller=caller)
        return {"audit": audit.to_dict()}

    @app.post("/audits/{audit_id}/submit")
    async def submit_deliverable(audit_id: int, req: SubmitRequest, request: Request):
        caller = await _resolve_caller(request)
        audit = _escrow.submit_deliverable(audit_id, req.reference, caller=caller)
        return {"audit": audit.to_dict()}

    @app.post("/audits/{audit_id}/assess")
    async def assess(audit_id: int, req: AssessRequest, request: Request):
        caller = await _resolve_caller(request)
        status = _escrow.assess(audit_id, req.accept, caller=caller)
        return {"status": status.value, "audit": _escrow.get_audit(audit_id).to_dict()}

    @app.post("/audits/{audit_id}/arbiter_extend")
    async def arbiter_extend_deadline(audit_id: int, req: ArbiterExtendRequest, request: Request):
        caller = await _resolve_caller(request)
        audit = _escrow.arbiter_extend_deadline(
            audit_id, req.new_deadline, req.haircut, req.arbiter_share, caller=caller,
        )
        return {"audit": audit.to_dict()}

    @app.post("/audits/{audit_id}/expire")
    async def expire_audit(audit_id: int, request: Request):
        caller = await _resolve_caller(request)
        audit = _escrow.expire_audit(audit_id, caller=caller)
        return {"audit": audit.to_dict()}

    # --- Polls ---

    @app.post("/polls")
    async def create_poll(req: CreatePollRequest, request: Request):
        caller = await _resolve_caller(request)
        poll_id = _voting.create_poll(req.audit_id, req.admin_override_time, req.arbiters, caller=caller)
        return {"poll_id": poll_id, "poll": _voting.get_poll(poll_id).to_dict()}

    @app.get("/polls/{poll_id}")
    async def get_poll(poll_id: int):
        return {"poll": _voting.get_poll(poll_id).to_dict()}

    @app.post("/polls/{poll_id}/vote")
    async def vote(poll_id: int, req: VoteRequest, request: Request):
        caller = await _resolve_caller(request)
        poll = _voting.vote(poll_id, req.outcome, caller=caller)
        return {"poll": poll.to_dict()}

    @app.post("/polls/{poll_id}/force")
    async def force_vote(poll_id: int, request: Request):
        caller = await _resolve_caller(request)
        poll = _voting.force_vote(poll_id, caller=caller)
        return {"poll": poll.to_dict()}

    @app.post("/polls/{poll_id}/release")
    async def release_treasury_funds(poll_id: int, req: AmountRequest, request: Request):
        caller = await _resolve_caller(request)
        payouts = _voting.release_treasury_funds(poll_id, req.amount, caller=caller)
        return {"payouts": [{"to": to, "amount": amount} for to, amount in payouts]}

    # --- Coordinator configuration ---

    @app.post("/voting/haircut")
    async def change_haircut(req: HaircutRequest, request: Request):
        caller = await _resolve_caller(request)
        _voting.change_haircut_for_discrepancies(req.minor, req.haircut, caller=caller)
        return _voting.config()

    @app.post("/voting/time_extension")
    async def change_time_extension(req: TimeExtensionRequest, request: Request):
        caller = await _resolve_caller(request)
        _voting.change_time_extension_for_discrepancies(req.minor, req.extension, caller=caller)
        return _voting.config()

    @app.post("/voting/arbiters_share")
    async def change_arbiters_share(req: ArbitersShareRequest, request: Request):
        caller = await _resolve_caller(request)
        _voting.change_arbiters_share(req.share, caller=caller)
        return _voting.config()

    @app.post("/voting/flush")
    async def flush_out_tokens(req: AmountRequest, request: Request):
        caller = await _resolve_caller(request)
        _voting.flush_out_tokens(req.amount, caller=caller)
        return {"status": "ok", "amount": req.amount}

    @app.get("/voting/config")
    async def voting_config():
        return {**_voting.config(), "current_poll_id": _voting.current_poll_id()}

    # --- Reputation & balances ---

    @app.get("/reputation/{account}")
    async def show_auditors_record(account: str):
        if _reputation is None:
            raise HTTPException(501, "No reward registry configured")
        record = _reputation.show_auditors_record(account)
        return {"account": account, "record": record.to_dict() if record else None}

    @app.get("/balances/{account}")
    async def balance_of(account: str):
        if _ledger is None or not hasattr(_ledger, "balance_of"):
            raise HTTPException(501, "No balance ledger configured")
        return {"account": account, "balance": _ledger.balance_of(account)}

    @app.post("/balances/approve")
    async def approve_spender(req: ApproveRequest, request: Request):
        """Let *spender* (usually the escrow account) pull up to *amount* from the caller."""
        caller = await _resolve_caller(request)
        if _ledger is None or not hasattr(_ledger, "approve"):
            raise HTTPException(501, "No balance ledger configured")
        if req.amount < 0:
            raise HTTPException(400, "amount must be non-negative")
        _ledger.approve(caller, req.spender, req.amount)
        return {"owner": caller, "spender": req.spender, "allowance": _ledger.allowance(caller, req.spender)}

    @app.post("/balances/mint")
    async def mint(req: MintRequest, request: Request):
        caller = await _resolve_caller(request)
        if _ledger is None or not hasattr(_ledger, "mint"):
            raise HTTPException(501, "No balance ledger configured")
        if caller != _voting.admin:
            raise HTTPException(403, "Only the admin can mint")
        if req.amount <= 0:
            raise HTTPException(400, "amount must be positive")
        _ledger.mint(req.to, req.amount)
        return {"account": req.to, "balance": _ledger.balance_of(req.to)}

    # --- Event log ---

    @app.get("/events")
    async def list_events(since: int = 0):
        if since < 0:
            raise HTTPException(400, "since must be non-negative")
        return {"events": _events.since(since), "head": _events.head, "valid": _events.verify()}

    MAX_SSE_SUBSCRIBERS = 1000
    _sse_count = [0]
    _sse_lock = threading.Lock()

    @app.get("/events/stream")
    async def stream_events(event_type: str = ""):
        """SSE stream of new events, optionally filtered by type.

        Usage:
            curl -N http://localhost:8000/events/stream?event_type=poll_finalized
        """
        q = _queue_mod.Queue(maxsize=256)

        def _push(entry: dict):
            try:
                q.put_nowait(entry)
            except _queue_mod.Full:
                pass  # slow consumer drops events; /events has the full log

        with _sse_lock:
            if _sse_count[0] >= MAX_SSE_SUBSCRIBERS:
                raise HTTPException(503, "Too many SSE subscribers")
            _sse_count[0] += 1
        _events.subscribe(_push)

        async def event_generator():
            try:
                async for frame in sse_frames(q, event_type):
                    yield frame
            finally:
                _events.unsubscribe(_push)
                with _sse_lock:
                    _sse_count[0] -= 1

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    return app
