"""
zkauth/audit.py

Tamper-evident audit log of zkLogin security events.

One JSON object per line (JSONL), hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each line stores prev_hash and hash. Chain state lives in zklogin_audit.state
next to the log; a flock on zklogin_audit.lock keeps the chain consistent
across processes.

Events never carry identity tokens, salts, keys or proofs, only their hashes
and lengths.
"""

from __future__ import annotations

import json
import os
import time
import hashlib
from pathlib import Path
from typing import Any, Dict, Optional

# Linux file lock
import fcntl

from .config import settings


GENESIS_HASH = "0" * 64


def log_path() -> Path:
    return Path(settings.AUDIT_DIR) / "zklogin_audit.jsonl"


def _state_path() -> Path:
    return Path(settings.AUDIT_DIR) / "zklogin_audit.state"


def _lock_path() -> Path:
    return Path(settings.AUDIT_DIR) / "zklogin_audit.lock"


def _canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def _read_last_hash_unlocked() -> str:
    """Last chain hash from the state file, GENESIS_HASH if missing or unreadable. Caller holds the lock."""
    path = _state_path()
    try:
        if not path.exists():
            return GENESIS_HASH
        s = path.read_text(encoding="utf-8").strip()
        if len(s) != 64:
            return GENESIS_HASH
        bytes.fromhex(s)
        return s.lower()
    except (OSError, ValueError):
        return GENESIS_HASH


def build_common(
    *,
    event: str,
    session_id: Optional[str] = None,
    provider: Optional[str] = None,
    address: Optional[str] = None,
    max_epoch: Optional[int] = None,
    nonce: Optional[str] = None,
    token: Optional[str] = None,
    signature: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Common audit fields for one event. Keep this boring and stable.

    The identity token and signatures are reduced to length + SHA3-256.
    """
    out: Dict[str, Any] = {
        "ts": int(time.time()),
        "event": event,
    }

    if session_id:
        out["session_id"] = session_id
    if provider:
        out["provider"] = provider
    if address:
        out["address"] = address
    if max_epoch is not None:
        out["max_epoch"] = int(max_epoch)
    if nonce:
        out["nonce"] = nonce

    if token is not None:
        b = token.encode("utf-8")
        out["token_len"] = len(b)
        out["token_sha3_256"] = _sha3_256_hex(b)

    if signature is not None:
        b = signature.encode("utf-8")
        out["signature_len"] = len(b)
        out["signature_sha3_256"] = _sha3_256_hex(b)

    return out


def append_event(event: Dict[str, Any]) -> None:
    """Append one event with hash chaining. No-op when AUDIT_ENABLED is off."""
    if not settings.AUDIT_ENABLED:
        return

    Path(settings.AUDIT_DIR).mkdir(parents=True, exist_ok=True)

    with open(_lock_path(), "a+", encoding="utf-8") as lockf:
        fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
        try:
            prev_hash = _read_last_hash_unlocked()

            # callers cannot inject their own chain fields
            e = dict(event)
            e.pop("prev_hash", None)
            e.pop("hash", None)

            next_hash = _sha3_256_hex(bytes.fromhex(prev_hash) + _canonical_json_bytes(e))

            stored = dict(e)
            stored["prev_hash"] = prev_hash
            stored["hash"] = next_hash

            with open(log_path(), "ab") as f:
                f.write(_canonical_json_bytes(stored) + b"\n")
                f.flush()
                os.fsync(f.fileno())

            _state_path().write_text(next_hash + "\n", encoding="utf-8")
        finally:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)


def verify_log_chain(path: Optional[Path] = None) -> bool:
    """Verify the hash chain of an audit log. A missing log is valid."""
    path = path or log_path()
    if not path.exists():
        return True

    prev = GENESIS_HASH
    try:
        with open(path, "rb") as f:
            for raw_line in f:
                raw_line = raw_line.strip()
                if not raw_line:
                    continue
                obj = json.loads(raw_line.decode("utf-8"))

                if obj.get("prev_hash") != prev:
                    return False

                obj2 = dict(obj)
                line_hash = obj2.pop("hash", None)
                obj2.pop("prev_hash", None)

                expect = _sha3_256_hex(bytes.fromhex(prev) + _canonical_json_bytes(obj2))
                if expect != line_hash:
                    return False

                prev = line_hash

        return True
    except (OSError, ValueError, AttributeError):
        return False
