# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Shared crypto utilities for the auditbond protocol.

Provides:
- Ed25519 identity (keypair generation, signing, verification)
- Account ids derived from public keys
- SHA-256 hash chains for event-log integrity
- Ed25519 request signing + replay protection for the HTTP host

Dependencies: hashlib, json, cryptography
"""

import hashlib
import json
import time as _time

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives import serialization

from protocol import ACCOUNT_PREFIX


# ---------------------------------------------------------------------------
# SHA-256 hash chain -- for event log integrity
# ---------------------------------------------------------------------------

def sha256_hash(data: bytes) -> str:
    """SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def hash_chain_init() -> str:
    """Return the genesis link: SHA-256 of the empty string."""
    return sha256_hash(b"")


def hash_chain_append(chain: str, message: str) -> str:
    """Extend chain by one link: SHA256(chain || message)."""
    combined = (chain + message).encode("utf-8")
    return sha256_hash(combined)


# ---------------------------------------------------------------------------
# Canonical JSON -- deterministic serialization for hashing and signing
# ---------------------------------------------------------------------------

def canonical_json(obj: dict) -> bytes:
    """Canonical JSON: sorted keys, no extra whitespace, UTF-8."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


# ---------------------------------------------------------------------------
# Ed25519 identity
# ---------------------------------------------------------------------------

def generate_ed25519_keypair() -> tuple[bytes, bytes]:
    """Generate a new Ed25519 keypair. Returns (privkey_bytes, pubkey_bytes).
    Both are 32 bytes raw."""
    privkey = Ed25519PrivateKey.generate()
    priv_bytes = privkey.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )
    pub_bytes = privkey.public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )
    return priv_bytes, pub_bytes


def ed25519_privkey_to_pubkey(privkey_bytes: bytes) -> bytes:
    """Derive the 32-byte public key from a 32-byte private key."""
    privkey = Ed25519PrivateKey.from_private_bytes(privkey_bytes)
    return privkey.public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )


def ed25519_sign(privkey_bytes: bytes, data: bytes) -> str:
    """Sign data with Ed25519 private key. Returns 128-char hex signature."""
    privkey = Ed25519PrivateKey.from_private_bytes(privkey_bytes)
    return privkey.sign(data).hex()


def ed25519_verify(pubkey_bytes: bytes, data: bytes, sig_hex: str) -> bool:
    """Verify Ed25519 signature. Returns True if valid."""
    try:
        pubkey = Ed25519PublicKey.from_public_bytes(pubkey_bytes)
        pubkey.verify(bytes.fromhex(sig_hex), data)
        return True
    except (InvalidSignature, ValueError):
        return False


# ---------------------------------------------------------------------------
# Account identity: pubkey <-> account id
# ---------------------------------------------------------------------------

def pubkey_to_account_id(pubkey_bytes: bytes) -> str:
    """Convert 32-byte Ed25519 pubkey to an account id: 'acct_<64hex>'."""
    return ACCOUNT_PREFIX + pubkey_bytes.hex()


# ---------------------------------------------------------------------------
# Ed25519 request signing -- resolves the caller for every HTTP invocation
# ---------------------------------------------------------------------------

REQUEST_MAX_AGE = 300  # 5 minutes


class ReplayGuard:
    """Track seen signatures to prevent replay attacks. TTL matches REQUEST_MAX_AGE."""

    def __init__(self, ttl: int = REQUEST_MAX_AGE):
        self._seen: dict[str, float] = {}  # sig_hex -> expiry_timestamp
        self._ttl = ttl
        self._check_count = 0

    def check_and_record(self, sig_hex: str) -> bool:
        """Return False if sig was already seen, True if new (and record it)."""
        self._check_count += 1
        if self._check_count % 100 == 0:
            self._prune()

        now = _time.time()
        if sig_hex in self._seen and now < self._seen[sig_hex]:
            return False
        self._seen[sig_hex] = now + self._ttl
        return True

    def _prune(self):
        now = _time.time()
        self._seen = {k: v for k, v in self._seen.items() if v > now}


def sign_request_ed25519(
    privkey_bytes: bytes,
    pubkey_hex: str,
    method: str,
    path: str,
    body: str = "",
    timestamp: float | None = None,
) -> dict:
    """Sign an API request with Ed25519. Returns headers to include.

    Signs: METHOD\\nPATH\\nTIMESTAMP\\nBODY
    """
    ts = str(int(_time.time() if timestamp is None else timestamp))
    payload = f"{method}\n{path}\n{ts}\n{body}".encode("utf-8")
    sig = ed25519_sign(privkey_bytes, payload)
    return {
        "X-Audit-Timestamp": ts,
        "X-Audit-Signature": sig,
        "X-Audit-Pubkey": pubkey_hex,
    }


def verify_request_ed25519(
    method: str,
    path: str,
    body: str,
    timestamp: str,
    signature: str,
    pubkey_hex: str,
) -> tuple[bool, str]:
    """Verify an Ed25519-signed API request.

    Returns (ok, error_message).
    """
    try:
        ts = int(timestamp)
    except (ValueError, TypeError):
        return False, "invalid timestamp"

    age = _time.time() - ts
    if age < -30:  # allow 30s clock skew for future timestamps
        return False, f"request timestamp is in the future (skew={int(-age)}s)"
    if age > REQUEST_MAX_AGE:
        return False, f"request expired (age={int(age)}s, max={REQUEST_MAX_AGE}s)"

    try:
        pubkey_bytes = bytes.fromhex(pubkey_hex)
    except ValueError:
        return False, "invalid pubkey hex"
    if len(pubkey_bytes) != 32:
        return False, "invalid pubkey length"

    payload = f"{method}\n{path}\n{timestamp}\n{body}".encode("utf-8")
    if not ed25519_verify(pubkey_bytes, payload, signature):
        return False, "invalid signature"

    return True, ""
