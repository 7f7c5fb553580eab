# zkauth/keys.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Ephemeral key layer for zkLogin.
#
# Responsibilities:
#   - Create the short-lived Ed25519 keypair used for ONE login attempt
#   - Create the nonce randomness and bind (public key, max_epoch, randomness)
#     into the nonce handed to the identity provider
#   - Serialize keys for session storage and sign transaction bytes
#
# What this module is NOT:
#   - Not stateful (callers persist what they need in the session store)
#   - Not a zero-knowledge component (the prover is an external service)
#
# Wire formats:
#
#   extended public key = 0x00 (Ed25519 flag) || pk(32)
#   nonce               = b64url( blake2b-160( ext_pk || max_epoch u64 BE || randomness u128 BE ) )
#   user signature      = b64( 0x00 || ed25519(blake2b-256(intent || tx)) || pk(32) )
#
# The nonce is a pure function of its inputs: the prover recomputes it from
# the same values and checks it against the nonce claim inside the JWT.
# -----------------------------------------------------------------------------

import base64
import hashlib
import secrets

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)


ED25519_FLAG = 0x00
RANDOMNESS_BYTES = 16
NONCE_DIGEST_BYTES = 20
# TransactionData intent: scope=0, version=0, app_id=0
TRANSACTION_INTENT = bytes([0, 0, 0])


# -----------------------------------------------------------------------------
# Base64 helpers
# -----------------------------------------------------------------------------
def b64url_encode(b: bytes) -> str:
    """URL-safe Base64 WITHOUT padding (nonce transport in the OAuth URL)."""
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64_std(b: bytes) -> str:
    return base64.b64encode(b).decode("ascii")


def b64decode_loose(s: str) -> bytes:
    """
    Standard base64 decode with optional padding.

    Missing '=' padding is accepted, garbage characters are not.
    """
    s = str(s).strip()
    s += "=" * (-len(s) % 4)
    return base64.b64decode(s, validate=True)


# -----------------------------------------------------------------------------
# Keys
# -----------------------------------------------------------------------------
def generate_keypair() -> Ed25519PrivateKey:
    """Fresh ephemeral keypair. Never reuse one across login attempts."""
    return Ed25519PrivateKey.generate()


def public_key_bytes(public_key: Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def private_key_to_b64(private_key: Ed25519PrivateKey) -> str:
    raw = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return b64_std(raw)


def load_ed25519_private_key_from_b64(sk_b64: str) -> Ed25519PrivateKey:
    """
    Load a raw Ed25519 private key from Base64.

    The key MUST be exactly 32 bytes (raw seed), no PEM and no headers.
    """
    raw = b64decode_loose(sk_b64)
    if len(raw) != 32:
        raise ValueError("Ed25519 raw private key must be 32 bytes (base64 of 32 bytes)")
    return Ed25519PrivateKey.from_private_bytes(raw)


def extended_public_key(public_key: Ed25519PublicKey) -> bytes:
    """Scheme flag byte followed by the raw public key."""
    return bytes([ED25519_FLAG]) + public_key_bytes(public_key)


# -----------------------------------------------------------------------------
# Nonce
# -----------------------------------------------------------------------------
def generate_randomness() -> str:
    """128 bits of randomness as a decimal string, independent of any key."""
    return str(int.from_bytes(secrets.token_bytes(RANDOMNESS_BYTES), "big"))


def compute_nonce(public_key: Ed25519PublicKey, max_epoch: int, randomness: str) -> str:
    """
    Bind (public key, max_epoch, randomness) into the provider-facing nonce.

    Raises ValueError for a negative epoch or randomness outside 128 bits.
    """
    max_epoch = int(max_epoch)
    if max_epoch < 0:
        raise ValueError("max_epoch must be >= 0")

    r = int(randomness)
    if r < 0 or r.bit_length() > RANDOMNESS_BYTES * 8:
        raise ValueError("randomness must be a 128-bit unsigned integer")

    h = hashlib.blake2b(digest_size=NONCE_DIGEST_BYTES)
    h.update(extended_public_key(public_key))
    h.update(max_epoch.to_bytes(8, "big"))
    h.update(r.to_bytes(RANDOMNESS_BYTES, "big"))
    return b64url_encode(h.digest())


# -----------------------------------------------------------------------------
# Transaction signing
# -----------------------------------------------------------------------------
def sign_transaction(private_key: Ed25519PrivateKey, tx_bytes: bytes) -> str:
    """
    Sign TransactionData bytes with the ephemeral key.

    The signed message is the BLAKE2b-256 digest of the intent-prefixed
    transaction. Returns the serialized signature (flag || sig || pk), base64.
    """
    digest = hashlib.blake2b(TRANSACTION_INTENT + bytes(tx_bytes), digest_size=32).digest()
    sig = private_key.sign(digest)
    pk = public_key_bytes(private_key.public_key())
    return b64_std(bytes([ED25519_FLAG]) + sig + pk)
