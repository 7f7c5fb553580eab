"""
zkauth/zklogin.py

zkLogin glue between an OIDC identity token and a chain address.

- decode_claims():        unverified JWT claim decoding (the prover verifies the token)
- gen_address_seed():     seed binding salt + key claim + audience
- address_from_seed():    address = blake2b-256(0x05 || len(iss) || iss || seed)
- get_zklogin_signature(): composite signature = proof inputs + max_epoch + user signature

The production scheme hashes the seed with Poseidon inside the proof circuit.
Here the seed is a BLAKE2b digest reduced into the same BN254 scalar field, so
it has the same shape (decimal string < field order) and the same determinism.
"""

from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlparse

from jose import JWTError, jwt

from .errors import MalformedToken


ZKLOGIN_FLAG = 0x05
KEY_CLAIM_NAME = "sub"
BN254_FIELD_ORDER = 21888242871839275222246405745257275088548364400416034343698204186575808495617


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    aud: str
    iss: str


def extract_id_token(raw: Optional[str]) -> Optional[str]:
    """
    Pull `id_token` out of a redirect payload.

    Accepts a bare fragment/query string ("id_token=...&..."), one with its
    leading '#' or '?', or a full callback URL. Returns None when absent.
    """
    if not raw:
        return None

    raw = str(raw).strip()
    if "://" in raw:
        p = urlparse(raw)
        raw = p.fragment or p.query
    raw = raw.lstrip("#?")

    values = parse_qs(raw).get("id_token")
    if not values or not values[0].strip():
        return None
    return values[0].strip()


def decode_claims(token: str) -> TokenClaims:
    """
    Decode `sub`, `aud` and `iss` without verifying the signature.

    The trust boundary is the prover, which verifies the token against the
    provider's keys. A list-valued `aud` must hold exactly one audience.
    """
    try:
        claims = jwt.get_unverified_claims(token)
    except (JWTError, AttributeError, TypeError, ValueError) as e:
        raise MalformedToken(f"undecodable identity token: {e}") from e

    sub = claims.get("sub")
    aud = claims.get("aud")
    if isinstance(aud, list):
        aud = aud[0] if len(aud) == 1 else None

    if not isinstance(sub, str) or not sub:
        raise MalformedToken("identity token has no 'sub' claim")
    if not isinstance(aud, str) or not aud:
        raise MalformedToken("identity token has no single 'aud' claim")

    return TokenClaims(sub=sub, aud=aud, iss=str(claims.get("iss") or ""))


def _length_prefixed(value: str) -> bytes:
    b = value.encode("utf-8")
    return len(b).to_bytes(2, "big") + b


def gen_address_seed(salt: str, claim_name: str, claim_value: str, aud: str) -> str:
    """Deterministic address seed as a decimal string inside the BN254 scalar field."""
    salt_int = int(salt)
    if salt_int < 0:
        raise ValueError("salt must be a non-negative integer")

    h = hashlib.blake2b(digest_size=32)
    h.update(_length_prefixed(str(salt_int)))
    h.update(_length_prefixed(claim_name))
    h.update(_length_prefixed(claim_value))
    h.update(_length_prefixed(aud))
    return str(int.from_bytes(h.digest(), "big") % BN254_FIELD_ORDER)


def address_from_seed(address_seed: str, iss: str) -> str:
    iss_bytes = iss.encode("utf-8")
    if len(iss_bytes) > 255:
        raise ValueError("issuer too long")

    h = hashlib.blake2b(digest_size=32)
    h.update(bytes([ZKLOGIN_FLAG, len(iss_bytes)]))
    h.update(iss_bytes)
    h.update(int(address_seed).to_bytes(32, "big"))
    return "0x" + h.hexdigest()


def jwt_to_address(token: str, salt: str) -> str:
    claims = decode_claims(token)
    seed = gen_address_seed(str(salt), KEY_CLAIM_NAME, claims.sub, claims.aud)
    return address_from_seed(seed, claims.iss)


def normalize_address(address: str) -> str:
    address = str(address).strip()
    if address.startswith("0x"):
        return address
    return "0x" + address


def get_zklogin_signature(inputs: Dict[str, Any], max_epoch: int, user_signature: str) -> str:
    """
    Serialize the composite zkLogin signature.

    `inputs` is the prover's blob plus `addressSeed`; it is forwarded as-is.
    Layout: base64( 0x05 || canonical JSON {inputs, maxEpoch, userSignature} ).
    """
    body = json.dumps(
        {
            "inputs": inputs,
            "maxEpoch": int(max_epoch),
            "userSignature": user_signature,
        },
        sort_keys=True,
        separators=(",", ":"),
    ).encode("utf-8")
    return base64.b64encode(bytes([ZKLOGIN_FLAG]) + body).decode("ascii")
