"""Tests for client.py against a mock transport."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import httpx
import pytest

from client import AuditClient, HTTPTransport, Transport, raise_for_error
from crypto import generate_ed25519_keypair, pubkey_to_account_id, verify_request_ed25519
from protocol import AuditBondError, Discrepancy, RightsNotActivatedYet, UnAuthorisedCall, WrongState


class MockTransport(Transport):
    def __init__(self):
        self.calls = []

    async def post(self, path, data):
        self.calls.append(("POST", path, data))
        if path == "/audits":
            return {"audit_id": 1, "audit": {"id": 1, "status": "created"}}
        if path == "/polls":
            return {"poll_id": 4, "poll": {"id": 4, "active": True}}
        if path.endswith("/assess"):
            return {"status": "completed", "audit": {"id": 1, "status": "completed"}}
        if path.endswith("/extension"):
            return {"request": {"haircut_percentage": data["haircut_percent"]}}
        if path.endswith("/release"):
            return {"payouts": [{"to": "acct_arb1", "amount": data["amount"]}]}
        if path.endswith("/vote") or path.endswith("/force"):
            return {"poll": {"id": 4, "active": False}}
        if path == "/balances/approve":
            return {"allowance": data["amount"]}
        return {"audit": {"id": 1}}

    async def get(self, path, params=None):
        self.calls.append(("GET", path, params))
        if path.startswith("/reputation/"):
            return {"record": {"successful_audits": 2, "unsuccessful_audits": 0}}
        if path.startswith("/balances/"):
            return {"balance": 42}
        if path == "/events":
            return {"events": [{"seq": params["since"]}], "head": "x", "valid": True}
        if path.startswith("/polls/"):
            return {"poll": {"id": 4}}
        return {"audit": {"id": 1}, "submission": None}


@pytest.fixture
def mock_transport():
    return MockTransport()


@pytest.fixture
def audit_client(mock_transport):
    return AuditClient(transport=mock_transport)


# --- Transport ABC ---

def test_transport_is_abstract():
    with pytest.raises(TypeError):
        Transport()


# --- Audits ---

@pytest.mark.asyncio
async def test_open_audit(audit_client, mock_transport):
    audit_id = await audit_client.open_audit(100, "coordinator", 86400)
    assert audit_id == 1
    assert mock_transport.calls[-1] == (
        "POST", "/audits",
        {"value": 100, "arbiter_provider": "coordinator", "deadline_offset": 86400},
    )


@pytest.mark.asyncio
async def test_assign_auditor(audit_client, mock_transport):
    await audit_client.assign_auditor(1, "acct_w", 150, 3600)
    assert mock_transport.calls[-1] == (
        "POST", "/audits/1/assign", {"worker": "acct_w", "new_value": 150, "new_deadline": 3600},
    )


@pytest.mark.asyncio
async def test_request_additional_time(audit_client, mock_transport):
    request = await audit_client.request_additional_time(1, 2_000_000_000, 10)
    assert request["haircut_percentage"] == 10
    assert mock_transport.calls[-1][1] == "/audits/1/extension"


@pytest.mark.asyncio
async def test_assess_returns_status(audit_client, mock_transport):
    assert await audit_client.assess(1, True) == "completed"
    assert mock_transport.calls[-1] == ("POST", "/audits/1/assess", {"accept": True})


@pytest.mark.asyncio
async def test_arbiter_extend_deadline(audit_client, mock_transport):
    await audit_client.arbiter_extend_deadline(1, 5000, 10, 5)
    assert mock_transport.calls[-1] == (
        "POST", "/audits/1/arbiter_extend", {"new_deadline": 5000, "haircut": 10, "arbiter_share": 5},
    )


@pytest.mark.asyncio
async def test_expire_audit(audit_client, mock_transport):
    await audit_client.expire_audit(3)
    assert mock_transport.calls[-1] == ("POST", "/audits/3/expire", {})


# --- Polls ---

@pytest.mark.asyncio
async def test_create_poll(audit_client, mock_transport):
    poll_id = await audit_client.create_poll(1, 1_700_000_000, ["acct_arb1", "acct_arb2"])
    assert poll_id == 4
    assert mock_transport.calls[-1][2]["arbiters"] == ["acct_arb1", "acct_arb2"]


@pytest.mark.asyncio
async def test_vote_accepts_enum_or_string(audit_client, mock_transport):
    await audit_client.vote(4, Discrepancy.MINOR_DISCREPANCIES)
    assert mock_transport.calls[-1] == ("POST", "/polls/4/vote", {"outcome": "minor_discrepancies"})
    await audit_client.vote(4, "reject")
    assert mock_transport.calls[-1][2] == {"outcome": "reject"}


@pytest.mark.asyncio
async def test_vote_rejects_unknown_outcome(audit_client):
    with pytest.raises(ValueError):
        await audit_client.vote(4, "maybe")


@pytest.mark.asyncio
async def test_release_treasury_funds(audit_client, mock_transport):
    payouts = await audit_client.release_treasury_funds(4, 30)
    assert payouts == [{"to": "acct_arb1", "amount": 30}]
    assert mock_transport.calls[-1] == ("POST", "/polls/4/release", {"amount": 30})


@pytest.mark.asyncio
async def test_configuration_calls(audit_client, mock_transport):
    await audit_client.change_haircut_for_discrepancies(True, 20)
    await audit_client.change_time_extension_for_discrepancies(False, 86400)
    await audit_client.change_arbiters_share(7)
    assert [c[1] for c in mock_transport.calls] == [
        "/voting/haircut", "/voting/time_extension", "/voting/arbiters_share",
    ]
    assert mock_transport.calls[0][2] == {"minor": True, "haircut": 20}


# --- Queries ---

@pytest.mark.asyncio
async def test_show_auditors_record(audit_client, mock_transport):
    record = await audit_client.show_auditors_record("acct_w")
    assert record["successful_audits"] == 2
    assert mock_transport.calls[-1] == ("GET", "/reputation/acct_w", None)


@pytest.mark.asyncio
async def test_balance_and_approve(audit_client, mock_transport):
    assert await audit_client.balance_of("acct_p") == 42
    assert await audit_client.approve("escrow", 500) == 500


@pytest.mark.asyncio
async def test_events(audit_client, mock_transport):
    events = await audit_client.events(since=3)
    assert events == [{"seq": 3}]
    assert mock_transport.calls[-1] == ("GET", "/events", {"since": 3})


# --- Identity ---

def test_account_from_key():
    priv, pub = generate_ed25519_keypair()
    client = AuditClient(base_url="http://localhost:9", privkey_bytes=priv)
    assert client.account == pubkey_to_account_id(pub)
    assert isinstance(client.transport, HTTPTransport)


def test_http_transport_strips_trailing_slash():
    t = HTTPTransport("http://localhost:8000/")
    assert t.base_url == "http://localhost:8000"


def test_http_transport_signs_requests():
    priv, pub = generate_ed25519_keypair()
    t = HTTPTransport(privkey_bytes=priv)
    headers = t._headers("POST", "/audits", '{"value": 1}')
    ok, err = verify_request_ed25519(
        "POST", "/audits", '{"value": 1}',
        headers["X-Audit-Timestamp"], headers["X-Audit-Signature"], headers["X-Audit-Pubkey"],
    )
    assert ok, err
    assert headers["X-Audit-Pubkey"] == pub.hex()


def test_unsigned_transport_sends_no_auth_headers():
    t = HTTPTransport()
    assert "X-Audit-Signature" not in t._headers("POST", "/audits", "{}")


# --- Error mapping ---

def test_raise_for_error_maps_codes():
    with pytest.raises(WrongState, match="audit 1 is completed"):
        raise_for_error(409, {"error": "WrongState", "category": "state", "detail": "audit 1 is completed"})
    with pytest.raises(RightsNotActivatedYet):
        raise_for_error(409, {"error": "RightsNotActivatedYet"})


def test_raise_for_error_ignores_unknown_bodies():
    raise_for_error(500, {"detail": "boom"})
    raise_for_error(404, {"error": "SomethingElse"})


def _response(status, body):
    return httpx.Response(status, json=body, request=httpx.Request("POST", "http://localhost:8000/audits"))


def test_handle_raises_typed_error():
    with pytest.raises(UnAuthorisedCall) as exc_info:
        HTTPTransport._handle(_response(403, {
            "error": "UnAuthorisedCall", "category": "authorization", "detail": "admin only",
        }))
    assert isinstance(exc_info.value, AuditBondError)
    assert exc_info.value.message == "admin only"


def test_handle_falls_back_to_http_error():
    with pytest.raises(httpx.HTTPStatusError):
        HTTPTransport._handle(_response(401, {"detail": "Signed request required"}))


def test_handle_returns_json():
    assert HTTPTransport._handle(_response(200, {"audit_id": 1})) == {"audit_id": 1}
