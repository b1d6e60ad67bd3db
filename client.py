# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""API client for the auditbond host.

Thin HTTP client with a pluggable transport interface.
Default transport: HTTP with Ed25519 authentication.

Typed failures reported by the host are raised again on this side as the
matching protocol exception, so callers handle the same error classes as
code that talks to the components directly.
"""

import json
from abc import ABC, abstractmethod

import httpx

from crypto import sign_request_ed25519, ed25519_privkey_to_pubkey, pubkey_to_account_id
from protocol import AuditBondError, Discrepancy

_ERRORS = {cls.code: cls for cls in AuditBondError.__subclasses__()}


def raise_for_error(status_code: int, body: dict):
    """Re-raise a host error body as its protocol exception."""
    cls = _ERRORS.get(body.get("error", ""))
    if cls is not None:
        raise cls(body.get("detail", ""))


class Transport(ABC):
    """Override this to talk to the host some other way."""

    @abstractmethod
    async def post(self, path: str, data: dict) -> dict:
        ...

    @abstractmethod
    async def get(self, path: str, params: dict | None = None) -> dict:
        ...


class HTTPTransport(Transport):
    """Default. Talks to the host over HTTP with Ed25519 auth."""

    def __init__(self, base_url: str = "http://localhost:8000", privkey_bytes: bytes | None = None):
        self.base_url = base_url.rstrip("/")
        self.privkey_bytes = privkey_bytes
        if privkey_bytes:
            self.pubkey_hex = ed25519_privkey_to_pubkey(privkey_bytes).hex()
        else:
            self.pubkey_hex = ""

    def _headers(self, method: str = "GET", path: str = "", body: str = "") -> dict:
        h = {"Content-Type": "application/json"}
        if self.privkey_bytes:
            h.update(sign_request_ed25519(self.privkey_bytes, self.pubkey_hex, method, path, body))
        return h

    @staticmethod
    def _handle(resp: httpx.Response) -> dict:
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            if isinstance(body, dict):
                raise_for_error(resp.status_code, body)
        resp.raise_for_status()
        return resp.json()

    async def post(self, path: str, data: dict) -> dict:
        body = json.dumps(data)
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                f"{self.base_url}{path}",
                content=body,
                headers=self._headers("POST", path, body),
                timeout=30.0,
            )
            return self._handle(resp)

    async def get(self, path: str, params: dict | None = None) -> dict:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self.base_url}{path}",
                params=params,
                headers=self._headers("GET", path),
                timeout=30.0,
            )
            return self._handle(resp)


class AuditClient:
    """High-level client for the auditbond host."""

    def __init__(self, transport: Transport | None = None, base_url: str = "http://localhost:8000",
                 privkey_bytes: bytes | None = None):
        self.privkey_bytes = privkey_bytes
        if privkey_bytes:
            self.account = pubkey_to_account_id(ed25519_privkey_to_pubkey(privkey_bytes))
        else:
            self.account = ""
        if transport:
            self.transport = transport
        else:
            self.transport = HTTPTransport(base_url, privkey_bytes=privkey_bytes)

    # --- Audits ---

    async def open_audit(self, value: int, arbiter_provider: str, deadline_offset: int) -> int:
        """Fund a new audit. Returns audit_id."""
        resp = await self.transport.post("/audits", {
            "value": value,
            "arbiter_provider": arbiter_provider,
            "deadline_offset": deadline_offset,
        })
        return resp["audit_id"]

    async def get_audit(self, audit_id: int) -> dict:
        return await self.transport.get(f"/audits/{audit_id}")

    async def assign_auditor(self, audit_id: int, worker: str, new_value: int, new_deadline: int) -> dict:
        resp = await self.transport.post(f"/audits/{audit_id}/assign", {
            "worker": worker, "new_value": new_value, "new_deadline": new_deadline,
        })
        return resp["audit"]

    async def request_additional_time(self, audit_id: int, proposed_time: int, haircut_percent: int) -> dict:
        resp = await self.transport.post(f"/audits/{audit_id}/extension", {
            "proposed_time": proposed_time, "haircut_percent": haircut_percent,
        })
        return resp["request"]

    async def get_extension_request(self, audit_id: int) -> dict | None:
        resp = await self.transport.get(f"/audits/{audit_id}/extension")
        return resp["request"]

    async def approve_additional_time(self, audit_id: int) -> dict:
        resp = await self.transport.post(f"/audits/{audit_id}/extension/approve", {})
        return resp["audit"]

    async def submit_deliverable(self, audit_id: int, reference: str) -> dict:
        resp = await self.transport.post(f"/audits/{audit_id}/submit", {"reference": reference})
        return resp["audit"]

    async def assess(self, audit_id: int, accept: bool) -> str:
        """Returns the audit's new status."""
        resp = await self.transport.post(f"/audits/{audit_id}/assess", {"accept": accept})
        return resp["status"]

    async def arbiter_extend_deadline(self, audit_id: int, new_deadline: int, haircut: int,
                                      arbiter_share: int) -> dict:
        resp = await self.transport.post(f"/audits/{audit_id}/arbiter_extend", {
            "new_deadline": new_deadline, "haircut": haircut, "arbiter_share": arbiter_share,
        })
        return resp["audit"]

    async def expire_audit(self, audit_id: int) -> dict:
        resp = await self.transport.post(f"/audits/{audit_id}/expire", {})
        return resp["audit"]

    # --- Polls ---

    async def create_poll(self, audit_id: int, admin_override_time: int, arbiters: list[str]) -> int:
        """Open an arbitration poll. Returns poll_id."""
        resp = await self.transport.post("/polls", {
            "audit_id": audit_id,
            "admin_override_time": admin_override_time,
            "arbiters": arbiters,
        })
        return resp["poll_id"]

    async def get_poll(self, poll_id: int) -> dict:
        resp = await self.transport.get(f"/polls/{poll_id}")
        return resp["poll"]

    async def vote(self, poll_id: int, outcome: Discrepancy | str) -> dict:
        resp = await self.transport.post(f"/polls/{poll_id}/vote", {
            "outcome": Discrepancy(outcome).value,
        })
        return resp["poll"]

    async def force_vote(self, poll_id: int) -> dict:
        resp = await self.transport.post(f"/polls/{poll_id}/force", {})
        return resp["poll"]

    async def release_treasury_funds(self, poll_id: int, amount: int) -> list[dict]:
        resp = await self.transport.post(f"/polls/{poll_id}/release", {"amount": amount})
        return resp["payouts"]

    # --- Coordinator configuration ---

    async def change_haircut_for_discrepancies(self, minor: bool, haircut: int) -> dict:
        return await self.transport.post("/voting/haircut", {"minor": minor, "haircut": haircut})

    async def change_time_extension_for_discrepancies(self, minor: bool, extension: int) -> dict:
        return await self.transport.post("/voting/time_extension", {"minor": minor, "extension": extension})

    async def change_arbiters_share(self, share: int) -> dict:
        return await self.transport.post("/voting/arbiters_share", {"share": share})

    async def flush_out_tokens(self, amount: int) -> dict:
        return await self.transport.post("/voting/flush", {"amount": amount})

    async def voting_config(self) -> dict:
        return await self.transport.get("/voting/config")

    # --- Queries ---

    async def show_auditors_record(self, account: str) -> dict | None:
        resp = await self.transport.get(f"/reputation/{account}")
        return resp["record"]

    async def balance_of(self, account: str) -> int:
        resp = await self.transport.get(f"/balances/{account}")
        return resp["balance"]

    async def approve(self, spender: str, amount: int) -> int:
        """Allow *spender* to pull up to *amount*. Returns the new allowance."""
        resp = await self.transport.post("/balances/approve", {"spender": spender, "amount": amount})
        return resp["allowance"]

    async def mint(self, to: str, amount: int) -> int:
        resp = await self.transport.post("/balances/mint", {"to": to, "amount": amount})
        return resp["balance"]

    async def events(self, since: int = 0) -> list[dict]:
        resp = await self.transport.get("/events", {"since": since})
        return resp["events"]
