"""Tests for crypto.py: event-log link hashing, account ids, signed requests."""

import sys
import os
import time

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from crypto import (
    ReplayGuard,
    canonical_json,
    ed25519_privkey_to_pubkey,
    generate_ed25519_keypair,
    hash_chain_append,
    hash_chain_init,
    pubkey_to_account_id,
    sign_request_ed25519,
    verify_request_ed25519,
)
from protocol import ACCOUNT_PREFIX


@pytest.fixture
def keypair():
    return generate_ed25519_keypair()


def _signed(keypair, method="POST", path="/audits/7/assess", body='{"accept": true}', timestamp=None):
    priv, pub = keypair
    return sign_request_ed25519(priv, pub.hex(), method, path, body, timestamp=timestamp)


def _check(headers, method="POST", path="/audits/7/assess", body='{"accept": true}', pubkey_hex=None):
    return verify_request_ed25519(
        method, path, body,
        headers["X-Audit-Timestamp"], headers["X-Audit-Signature"],
        pubkey_hex or headers["X-Audit-Pubkey"],
    )


# --- Event-log links ---

def test_genesis_link_is_empty_digest():
    assert hash_chain_init() == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_link_depends_on_history():
    entry = canonical_json({"type": "audit_created", "payload": {"audit_id": 1}}).decode("utf-8")
    first = hash_chain_append(hash_chain_init(), entry)
    assert first == hash_chain_append(hash_chain_init(), entry)
    assert hash_chain_append(first, entry) != first


def test_canonical_json_is_stable():
    assert canonical_json({"value": 100, "audit_id": 1}) == b'{"audit_id":1,"value":100}'
    assert canonical_json({"b": [1, 2], "a": {"y": 1, "x": 2}}) == b'{"a":{"x":2,"y":1},"b":[1,2]}'


# --- Identity ---

def test_account_id_from_private_key(keypair):
    priv, pub = keypair
    account = pubkey_to_account_id(ed25519_privkey_to_pubkey(priv))
    assert account == ACCOUNT_PREFIX + pub.hex()
    assert len(account) == len(ACCOUNT_PREFIX) + 64


# --- Signed requests ---

def test_signed_request_verifies(keypair):
    ok, err = _check(_signed(keypair))
    assert ok, err
    assert err == ""


@pytest.mark.parametrize("field, value", [
    ("method", "GET"),
    ("path", "/audits/8/assess"),
    ("body", '{"accept": false}'),
])
def test_any_signed_field_change_fails(keypair, field, value):
    ok, err = _check(_signed(keypair), **{field: value})
    assert not ok
    assert err == "invalid signature"


def test_other_signer_rejected(keypair):
    _, other_pub = generate_ed25519_keypair()
    ok, err = _check(_signed(keypair), pubkey_hex=other_pub.hex())
    assert not ok
    assert err == "invalid signature"


def test_stale_request_rejected(keypair):
    ok, err = _check(_signed(keypair, timestamp=time.time() - 600))
    assert not ok
    assert "expired" in err


def test_small_clock_skew_tolerated(keypair):
    ok, err = _check(_signed(keypair, timestamp=time.time() + 10))
    assert ok, err


def test_future_request_rejected(keypair):
    ok, err = _check(_signed(keypair, timestamp=time.time() + 120))
    assert not ok
    assert "future" in err


@pytest.mark.parametrize("timestamp, signature, pubkey_hex, expected", [
    ("soon", "00", "00" * 32, "invalid timestamp"),
    (None, "00", "zz", "invalid pubkey hex"),
    (None, "00", "abcd", "invalid pubkey length"),
    (None, "not-hex", "00" * 32, "invalid signature"),
])
def test_malformed_headers(timestamp, signature, pubkey_hex, expected):
    ts = str(int(time.time())) if timestamp is None else timestamp
    ok, err = verify_request_ed25519("POST", "/polls", "{}", ts, signature, pubkey_hex)
    assert not ok
    assert err == expected


# --- Replay protection ---

def test_replayed_signature_rejected():
    guard = ReplayGuard()
    assert guard.check_and_record("sig-a")
    assert not guard.check_and_record("sig-a")
    assert guard.check_and_record("sig-b")


def test_signature_usable_after_ttl():
    guard = ReplayGuard(ttl=-1)
    guard.check_and_record("sig-a")
    assert guard.check_and_record("sig-a")


def test_prune_drops_expired_entries():
    guard = ReplayGuard(ttl=-1)
    for i in range(100):
        guard.check_and_record(f"sig-{i}")
    assert len(guard._seen) <= 1
