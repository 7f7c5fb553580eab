# tests/conftest.py
from __future__ import annotations

import hashlib
from typing import Any

import pytest
from jose import jwt

from zkauth.config import settings
from zkauth.errors import NetworkFailure
from zkauth.flow import ZkLoginFlow
from zkauth.models import ExecuteResult, ProverRequest
from zkauth.storage import SessionStore, registry

TEST_ISSUER = "https://accounts.google.com"
TEST_AUDIENCE = "test-client.apps.googleusercontent.com"


def make_token(sub: str = "110169484474386276334", aud: Any = TEST_AUDIENCE, **extra: Any) -> str:
    claims = {"iss": TEST_ISSUER, "sub": sub, "aud": aud, "nonce": "n", **extra}
    return jwt.encode(claims, "test-secret", algorithm="HS256")


def mocked_address(token: str, salt: str) -> str:
    return "0x" + hashlib.sha256(f"{token}:{salt}".encode()).hexdigest()


def uleb128(n: int) -> bytes:
    out = bytearray()
    while True:
        byte = n & 0x7F
        n >>= 7
        if n:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def bcs_bytes(b: bytes) -> bytes:
    return uleb128(len(b)) + b


def gas_data(owner: bytes) -> bytes:
    object_ref = b"\x11" * 32 + (7).to_bytes(8, "little") + bcs_bytes(b"\x22" * 32)
    return uleb128(1) + object_ref + owner + (1000).to_bytes(8, "little") + (5_000_000).to_bytes(8, "little")


def transfer_tx(
    sender: bytes, recipient: bytes, gas_owner: bytes | None = None, expiration: bytes = b"\x00"
) -> bytes:
    """TransactionData::V1 of a programmable `TransferObjects([GasCoin], Input(0))`."""
    inputs = uleb128(1) + b"\x00" + bcs_bytes(recipient)  # Pure(recipient)
    commands = uleb128(1) + b"\x01" + uleb128(1) + b"\x00" + b"\x01" + (0).to_bytes(2, "little")
    return b"\x00" + b"\x00" + inputs + commands + sender + gas_data(gas_owner or sender) + expiration


class FakeChain:
    def __init__(self, epoch: int = 100, fail: Exception | None = None) -> None:
        self.epoch = epoch
        self.fail = fail
        self.executed: list[tuple[str, str]] = []
        self.bound: list[str] = []

    async def get_current_epoch(self) -> int:
        if self.fail is not None:
            raise self.fail
        return self.epoch

    def bind_sender(self, tx_bytes: bytes, sender: str) -> bytes:
        self.bound.append(sender)
        return tx_bytes

    async def execute_transaction(self, tx_b64: str, signature: str) -> ExecuteResult:
        self.executed.append((tx_b64, signature))
        return ExecuteResult(digest="9XFkGf3tZ3Qn1vXh5GkqPx", effects={"status": {"status": "success"}})

    async def get_balance(self, address: str) -> int:
        if self.fail is not None:
            raise self.fail
        return 1_000_000_000

    async def aclose(self) -> None:
        pass


class FakeSalt:
    def __init__(self, salt: str = "12345", fail: Exception | None = None) -> None:
        self.salt = salt
        self.fail = fail
        self.tokens: list[str] = []

    async def get_salt(self, token: str) -> str:
        self.tokens.append(token)
        if self.fail is not None:
            raise self.fail
        return self.salt

    async def aclose(self) -> None:
        pass


class FakeProver:
    def __init__(self, proof: Any = None, fail: Exception | None = None) -> None:
        self.proof = {"ok": True} if proof is None else proof
        self.fail = fail
        self.requests: list[ProverRequest] = []

    async def prove(self, request: ProverRequest) -> Any:
        self.requests.append(request)
        if self.fail is not None:
            raise self.fail
        return self.proof

    async def aclose(self) -> None:
        pass


@pytest.fixture(autouse=True)
def _isolated_settings(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "AUDIT_DIR", tmp_path / "audit")
    monkeypatch.setattr(settings, "MAX_EPOCH_WINDOW", 2)
    monkeypatch.setattr(settings, "CLIENT_ID_GOOGLE", TEST_AUDIENCE)
    monkeypatch.setattr(settings, "CHECK_EPOCH_BEFORE_SIGNING", True)
    yield
    registry.sessions.clear()


@pytest.fixture()
def session() -> SessionStore:
    return SessionStore()


@pytest.fixture()
def chain() -> FakeChain:
    return FakeChain(epoch=100)


@pytest.fixture()
def salt_service() -> FakeSalt:
    return FakeSalt()


@pytest.fixture()
def prover() -> FakeProver:
    return FakeProver()


@pytest.fixture()
def flow(session, chain, salt_service, prover) -> ZkLoginFlow:
    return ZkLoginFlow(
        session,
        chain=chain,
        salt_service=salt_service,
        prover=prover,
        session_id="test-session",
    )


@pytest.fixture()
def network_down() -> NetworkFailure:
    return NetworkFailure("connection refused")
