
# tests/test_flow.py
import asyncio
import base64
import hashlib
import json
from dataclasses import replace
from urllib.parse import parse_qs, urlparse

import pytest

from zkauth import flow as flow_module
from zkauth import keys
from zkauth.audit import log_path, verify_log_chain
from zkauth.errors import (
    MalformedToken,
    NetworkFailure,
    ProofServiceRejection,
    ServiceTimeout,
    SigningFailure,
    UnknownProvider,
)
from zkauth.flow import ZkLoginFlow
from zkauth.storage import AccountStore, SetupStore
from zkauth.transaction import get_sender, set_sender
from zkauth.zklogin import gen_address_seed
from tests.conftest import FakeChain, FakeProver, FakeSalt, make_token, mocked_address, transfer_tx


def _fragment(token: str) -> str:
    return f"#id_token={token}&authuser=0&prompt=none"


async def _login(flow: ZkLoginFlow, token: str | None = None):
    await flow.start_login("Google")
    return await flow.handle_redirect(_fragment(token or make_token()))


def _disk_full(event) -> None:
    raise OSError(28, "No space left on device")


class SenderBindingChain(FakeChain):
    def bind_sender(self, tx_bytes: bytes, sender: str) -> bytes:
        self.bound.append(sender)
        return set_sender(tx_bytes, sender)


# -----------------------------------------------------------------------------
# start_login
# -----------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_start_login_persists_setup_with_epoch_window(flow: ZkLoginFlow, session) -> None:
    """Epoch 100 with a window of 2 gives max_epoch 102 and no account."""
    await flow.start_login("Google")

    setup = SetupStore(session).load()
    assert setup is not None
    assert setup.provider == "Google"
    assert setup.max_epoch == 102
    assert len(AccountStore(session)) == 0


@pytest.mark.asyncio
async def test_start_login_url_carries_nonce_of_stored_key(flow: ZkLoginFlow, session) -> None:
    url = await flow.start_login("Google")

    parsed = urlparse(url)
    params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
    assert parsed.netloc == "accounts.google.com"
    assert params["response_type"] == "id_token"
    assert params["scope"] == "openid"
    assert params["client_id"] == "test-client.apps.googleusercontent.com"
    assert params["redirect_uri"].endswith("/callback")

    setup = SetupStore(session).load()
    sk = keys.load_ed25519_private_key_from_b64(setup.ephemeral_private_key)
    assert params["nonce"] == keys.compute_nonce(sk.public_key(), setup.max_epoch, setup.randomness)


@pytest.mark.asyncio
async def test_start_login_uses_a_fresh_key_each_attempt(flow: ZkLoginFlow, session) -> None:
    await flow.start_login("Google")
    first = SetupStore(session).load()
    await flow.start_login("Google")
    second = SetupStore(session).load()

    assert first.ephemeral_private_key != second.ephemeral_private_key
    assert first.randomness != second.randomness


@pytest.mark.asyncio
async def test_epoch_failure_writes_no_setup(session, salt_service, prover, network_down) -> None:
    flow = ZkLoginFlow(session, chain=FakeChain(fail=network_down), salt_service=salt_service, prover=prover)

    with pytest.raises(NetworkFailure):
        await flow.start_login("Google")

    assert SetupStore(session).load() is None


@pytest.mark.asyncio
async def test_unknown_provider(flow: ZkLoginFlow, session) -> None:
    with pytest.raises(UnknownProvider):
        await flow.start_login("Myspace")
    assert SetupStore(session).load() is None


# -----------------------------------------------------------------------------
# handle_redirect
# -----------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_redirect_commits_one_account(session, chain, prover) -> None:
    flow = ZkLoginFlow(
        session,
        chain=chain,
        salt_service=FakeSalt("12345"),
        prover=prover,
        derive_address=mocked_address,
    )
    token = make_token()

    await flow.start_login("Google")
    account = await flow.handle_redirect(_fragment(token))

    accounts = AccountStore(session).all()
    assert len(accounts) == 1
    assert accounts[0] == account
    assert account.max_epoch == 102
    assert account.salt == "12345"
    assert account.address == mocked_address(token, "12345")
    assert account.zk_proofs == {"ok": True}
    assert account.sub == "110169484474386276334"
    assert SetupStore(session).load() is None


@pytest.mark.asyncio
async def test_proof_is_bound_to_setup_key(flow: ZkLoginFlow, session, prover) -> None:
    await flow.start_login("Google")
    setup = SetupStore(session).load()
    token = make_token()

    account = await flow.handle_redirect(_fragment(token))

    sk = keys.load_ed25519_private_key_from_b64(setup.ephemeral_private_key)
    (req,) = prover.requests
    assert req.extended_ephemeral_public_key == keys.b64_std(keys.extended_public_key(sk.public_key()))
    assert req.jwt_randomness == setup.randomness
    assert req.max_epoch == 102
    assert req.jwt == token
    assert req.salt == "12345"
    assert req.key_claim_name == "sub"
    assert account.ephemeral_private_key == setup.ephemeral_private_key


@pytest.mark.asyncio
async def test_second_redirect_is_a_no_op(flow: ZkLoginFlow, session, salt_service) -> None:
    await _login(flow)

    again = await flow.handle_redirect(_fragment(make_token(sub="someone-else")))

    assert again is None
    assert len(AccountStore(session)) == 1
    assert len(salt_service.tokens) == 1


@pytest.mark.asyncio
async def test_redirect_without_setup_is_ignored(flow: ZkLoginFlow, session, salt_service) -> None:
    assert await flow.handle_redirect(_fragment(make_token())) is None
    assert len(AccountStore(session)) == 0
    assert salt_service.tokens == []


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", [None, "", "#state=abc", "?code=xyz"])
async def test_page_load_without_token_keeps_setup(flow: ZkLoginFlow, session, raw) -> None:
    await flow.start_login("Google")
    assert await flow.handle_redirect(raw) is None
    assert SetupStore(session).load() is not None


@pytest.mark.asyncio
async def test_malformed_token_keeps_setup(flow: ZkLoginFlow, session) -> None:
    await flow.start_login("Google")

    with pytest.raises(MalformedToken):
        await flow.handle_redirect("#id_token=garbage")

    assert SetupStore(session).load() is not None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "failure", [ProofServiceRejection("bad proof"), ServiceTimeout("slow"), NetworkFailure("HTTP 500")]
)
async def test_prover_failure_commits_nothing(session, chain, salt_service, failure) -> None:
    flow = ZkLoginFlow(session, chain=chain, salt_service=salt_service, prover=FakeProver(fail=failure))
    await flow.start_login("Google")

    with pytest.raises(type(failure)):
        await flow.handle_redirect(_fragment(make_token()))

    assert len(AccountStore(session)) == 0
    # the attempt is spent; the user restarts the login
    assert SetupStore(session).load() is None


@pytest.mark.asyncio
async def test_salt_failure_skips_prover(session, chain, prover, network_down) -> None:
    flow = ZkLoginFlow(session, chain=chain, salt_service=FakeSalt(fail=network_down), prover=prover)
    await flow.start_login("Google")

    with pytest.raises(NetworkFailure):
        await flow.handle_redirect(_fragment(make_token()))

    assert prover.requests == []
    assert len(AccountStore(session)) == 0


@pytest.mark.asyncio
async def test_address_without_prefix_is_normalized(session, chain, salt_service, prover) -> None:
    flow = ZkLoginFlow(
        session, chain=chain, salt_service=salt_service, prover=prover,
        derive_address=lambda token, salt: "abcdef",
    )
    account = await _login(flow)
    assert account.address == "0xabcdef"


@pytest.mark.asyncio
async def test_reset_then_stale_redirect_is_a_no_op(flow: ZkLoginFlow, session) -> None:
    token = make_token()
    await _login(flow, token)
    await flow.start_login("Google")

    flow.reset()

    assert SetupStore(session).load() is None
    assert flow.accounts() == []
    assert await flow.handle_redirect(_fragment(token)) is None
    assert flow.accounts() == []


@pytest.mark.asyncio
async def test_duplicate_logins_keep_both_accounts(flow: ZkLoginFlow) -> None:
    token = make_token()
    first = await _login(flow, token)
    second = await _login(flow, token)

    assert [a.address for a in flow.accounts()] == [second.address, first.address]
    assert first.address == second.address
    assert first.ephemeral_private_key != second.ephemeral_private_key


@pytest.mark.asyncio
async def test_concurrent_redirects_commit_one_account(flow: ZkLoginFlow, session, salt_service) -> None:
    await flow.start_login("Google")
    fragment = _fragment(make_token())

    results = await asyncio.gather(flow.handle_redirect(fragment), flow.handle_redirect(fragment))

    assert sum(r is not None for r in results) == 1
    assert len(AccountStore(session)) == 1
    assert len(salt_service.tokens) == 1


@pytest.mark.asyncio
async def test_audit_write_failure_after_commit_keeps_account(flow: ZkLoginFlow, session, monkeypatch) -> None:
    await flow.start_login("Google")
    monkeypatch.setattr(flow_module, "append_event", _disk_full)

    account = await flow.handle_redirect(_fragment(make_token()))

    assert account is not None
    assert AccountStore(session).all() == [account]

# -----------------------------------------------------------------------------
# sign
# -----------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_sign_executes_composite_signature(flow: ZkLoginFlow, chain) -> None:
    account = await _login(flow)
    tx_b64 = base64.b64encode(b"\x00tx-data").decode()

    digest = await flow.sign(account, tx_b64)

    assert digest == "9XFkGf3tZ3Qn1vXh5GkqPx"
    assert chain.bound == [account.address]
    ((sent_tx, zk_sig),) = chain.executed
    assert sent_tx == tx_b64

    body = json.loads(base64.b64decode(zk_sig)[1:])
    assert body["maxEpoch"] == 102
    assert body["inputs"]["ok"] is True
    assert body["inputs"]["addressSeed"] == gen_address_seed(account.salt, "sub", account.sub, account.aud)
    assert body["userSignature"]


@pytest.mark.asyncio
async def test_sign_rejects_seed_mismatch_without_submitting(flow: ZkLoginFlow, session, chain) -> None:
    account = await _login(flow)
    before = AccountStore(session).all()
    tampered = replace(account, salt="99999")

    with pytest.raises(SigningFailure, match="address seed mismatch"):
        await flow.sign(tampered, base64.b64encode(b"tx").decode())

    assert chain.executed == []
    assert AccountStore(session).all() == before


@pytest.mark.asyncio
async def test_sign_checks_seed_carried_in_proof(flow: ZkLoginFlow, chain) -> None:
    account = await _login(flow)
    legacy = replace(account, address_seed=None, zk_proofs={"addressSeed": "1"})

    with pytest.raises(SigningFailure):
        await flow.sign(legacy, base64.b64encode(b"tx").decode())
    assert chain.executed == []


@pytest.mark.asyncio
async def test_sign_sets_sender_before_signing(session, salt_service, prover) -> None:
    chain = SenderBindingChain()
    flow = ZkLoginFlow(session, chain=chain, salt_service=salt_service, prover=prover)
    account = await _login(flow)
    unsigned = transfer_tx(sender=bytes(32), recipient=bytes.fromhex("cd" * 32))

    digest = await flow.sign(account, base64.b64encode(unsigned).decode())

    assert digest == "9XFkGf3tZ3Qn1vXh5GkqPx"
    ((sent_tx, zk_sig),) = chain.executed
    sent = base64.b64decode(sent_tx)
    assert get_sender(sent) == account.address

    # the user signature covers the rewritten bytes
    user_sig = base64.b64decode(json.loads(base64.b64decode(zk_sig)[1:])["userSignature"])
    pk = keys.load_ed25519_private_key_from_b64(account.ephemeral_private_key).public_key()
    digest_input = hashlib.blake2b(keys.TRANSACTION_INTENT + sent, digest_size=32).digest()
    pk.verify(user_sig[1:65], digest_input)


@pytest.mark.asyncio
async def test_sign_rejects_bytes_without_a_sender_field(session, salt_service, prover) -> None:
    chain = SenderBindingChain()
    flow = ZkLoginFlow(session, chain=chain, salt_service=salt_service, prover=prover)
    account = await _login(flow)

    with pytest.raises(SigningFailure):
        await flow.sign(account, base64.b64encode(b"\x00\x00" + bytes(32) + b"\x01").decode())
    assert chain.executed == []


@pytest.mark.asyncio
async def test_audit_write_failure_after_execution_returns_digest(flow: ZkLoginFlow, chain, monkeypatch) -> None:
    account = await _login(flow)
    monkeypatch.setattr(flow_module, "append_event", _disk_full)

    digest = await flow.sign(account, base64.b64encode(b"tx").decode())

    assert digest == "9XFkGf3tZ3Qn1vXh5GkqPx"
    assert len(chain.executed) == 1

@pytest.mark.asyncio
async def test_sign_refuses_expired_material(flow: ZkLoginFlow, chain) -> None:
    account = await _login(flow)
    chain.epoch = 103

    with pytest.raises(SigningFailure, match="expired"):
        await flow.sign(account, base64.b64encode(b"tx").decode())
    assert chain.executed == []


@pytest.mark.asyncio
async def test_sign_wraps_unreadable_key(flow: ZkLoginFlow, chain) -> None:
    account = await _login(flow)
    broken = replace(account, ephemeral_private_key="!!")

    with pytest.raises(SigningFailure) as exc:
        await flow.sign(broken, base64.b64encode(b"tx").decode())
    assert exc.value.__cause__ is not None
    assert chain.executed == []


# -----------------------------------------------------------------------------
# session helpers + audit
# -----------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_balances_per_address(flow: ZkLoginFlow) -> None:
    account = await _login(flow)
    assert await flow.balances() == {account.address: 1_000_000_000}


@pytest.mark.asyncio
async def test_audit_chain_records_flow(flow: ZkLoginFlow) -> None:
    token = make_token()
    account = await _login(flow, token)
    await flow.handle_redirect(_fragment(token))
    await flow.sign(account, base64.b64encode(b"tx").decode())

    lines = [json.loads(line) for line in log_path().read_text().splitlines()]
    assert [e["event"] for e in lines] == [
        "login_started",
        "account_committed",
        "redirect_ignored",
        "tx_executed",
    ]
    assert lines[-1]["signature_len"] > 0
    assert len(lines[-1]["signature_sha3_256"]) == 64
    assert verify_log_chain()
    assert token not in log_path().read_text()
