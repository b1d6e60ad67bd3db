import sys
import os
import json

# Ensure the project root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from crypto import (
    generate_ed25519_keypair, pubkey_to_account_id, sign_request_ed25519,
)


START = 1_700_000_000
DAY = 86400


class FakeClock:
    """Manually advanced clock. Call it like time.time."""

    def __init__(self, now: int = START):
        self.now = now

    def __call__(self) -> float:
        return float(self.now)

    def advance(self, seconds: int):
        self.now += seconds


# Plain account names for component-level tests
PATRON = "acct_patron"
WORKER = "acct_worker"
PROVIDER = "coordinator"
ADMIN = "acct_admin"
ESCROW = "escrow"
STRANGER = "acct_stranger"
ARBITERS = ["acct_arb1", "acct_arb2", "acct_arb3"]


# Pre-generated keypairs for signed HTTP tests
_PATRON_PRIV, _PATRON_PUB = generate_ed25519_keypair()
_WORKER_PRIV, _WORKER_PUB = generate_ed25519_keypair()
_ADMIN_PRIV, _ADMIN_PUB = generate_ed25519_keypair()
_ARB_KEYS = [generate_ed25519_keypair() for _ in range(3)]

PATRON_PRIV, PATRON_PUB_HEX = _PATRON_PRIV, _PATRON_PUB.hex()
WORKER_PRIV, WORKER_PUB_HEX = _WORKER_PRIV, _WORKER_PUB.hex()
ADMIN_PRIV, ADMIN_PUB_HEX = _ADMIN_PRIV, _ADMIN_PUB.hex()

PATRON_ID = pubkey_to_account_id(_PATRON_PUB)
WORKER_ID = pubkey_to_account_id(_WORKER_PUB)
ADMIN_ID = pubkey_to_account_id(_ADMIN_PUB)
ARBITER_KEYS = [(priv, pub.hex(), pubkey_to_account_id(pub)) for priv, pub in _ARB_KEYS]


# Monotonic counter so repeated identical requests still get unique signatures
_nonce_counter = 0


def signed_post(client, path, data, privkey_bytes, pub_hex):
    """Make an Ed25519-signed POST request for tests."""
    global _nonce_counter
    _nonce_counter += 1
    body = json.dumps({**data, "_nonce": _nonce_counter})
    auth_headers = sign_request_ed25519(privkey_bytes, pub_hex, "POST", path, body)
    return client.post(path, content=body, headers={
        "Content-Type": "application/json",
        **auth_headers,
    })


def signed_headers(privkey_bytes, pub_hex, method, path, body=""):
    """Generate Ed25519 auth headers for a request."""
    return sign_request_ed25519(privkey_bytes, pub_hex, method, path, body)
