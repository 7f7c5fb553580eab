# zkauth/flow.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# The zkLogin flow has two halves separated by a full browser navigation:
#
#   start_login()     epoch -> ephemeral key + randomness -> nonce
#                     -> persist SetupRecord -> IdP authorization URL
#   handle_redirect() id_token -> take SetupRecord (single use) -> salt
#                     -> address -> proof -> append AccountRecord
#
# The halves are correlated ONLY through the session slots, never through
# in-memory continuations. Later, sign() turns an AccountRecord plus pending
# transaction bytes into a composite zkLogin signature and submits it.
#
# Ordering rules:
#   - the SetupRecord is written before the URL is handed out, and not at all
#     if the epoch cannot be fetched
#   - the SetupRecord is taken (read + delete) before the first await, so a
#     second callback for the same attempt finds nothing
#   - the AccountRecord is appended only after every network call succeeded
#   - execution is the last step of sign(); nothing is submitted on failure
# -----------------------------------------------------------------------------

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from . import keys
from .audit import append_event, build_common
from .config import OPENID_PROVIDERS, Settings, settings
from .errors import (
    MalformedToken,
    NetworkFailure,
    ProofServiceRejection,
    SigningFailure,
    UnknownProvider,
)
from .models import ProverRequest
from .services import ChainRpcClient, ProverClient, SaltClient
from .storage import AccountRecord, AccountStore, SessionStore, SetupRecord, SetupStore
from .zklogin import (
    KEY_CLAIM_NAME,
    decode_claims,
    extract_id_token,
    gen_address_seed,
    get_zklogin_signature,
    jwt_to_address,
    normalize_address,
)

logger = logging.getLogger(__name__)


class ZkLoginFlow:
    def __init__(
        self,
        session: SessionStore,
        *,
        chain: Optional[ChainRpcClient] = None,
        salt_service: Optional[SaltClient] = None,
        prover: Optional[ProverClient] = None,
        derive_address: Callable[[str, str], str] = jwt_to_address,
        session_id: Optional[str] = None,
        config: Optional[Settings] = None,
    ):
        self.session = session
        self.setups = SetupStore(session)
        self.account_store = AccountStore(session)
        self.chain = chain or ChainRpcClient()
        self.salt_service = salt_service or SaltClient()
        self.prover = prover or ProverClient()
        self.derive_address = derive_address
        self.session_id = session_id
        self.config = config or settings

    # -------------------------------------------------------------------------
    # Login
    # -------------------------------------------------------------------------
    async def start_login(self, provider: str) -> str:
        """
        Begin a login attempt and return the identity provider URL to navigate to.

        Raises UnknownProvider, or NetworkFailure/ServiceTimeout when the epoch
        cannot be read. In both cases no SetupRecord is written.
        """
        auth_endpoint = OPENID_PROVIDERS.get(provider)
        if auth_endpoint is None:
            raise UnknownProvider(f"unsupported OpenID provider: {provider!r}")

        current_epoch = await self.chain.get_current_epoch()
        max_epoch = current_epoch + self.config.MAX_EPOCH_WINDOW

        keypair = keys.generate_keypair()
        randomness = keys.generate_randomness()
        nonce = keys.compute_nonce(keypair.public_key(), max_epoch, randomness)

        # must be persisted before the caller navigates away
        self.setups.save(
            SetupRecord(
                provider=provider,
                max_epoch=max_epoch,
                randomness=randomness,
                ephemeral_private_key=keys.private_key_to_b64(keypair),
            )
        )

        params = {
            "client_id": self.config.client_id_for(provider),
            "nonce": nonce,
            "redirect_uri": self.config.redirect_uri,
            "response_type": "id_token",
            "scope": "openid",
        }

        logger.info("login started provider=%s max_epoch=%d", provider, max_epoch)
        append_event(
            build_common(
                event="login_started",
                session_id=self.session_id,
                provider=provider,
                max_epoch=max_epoch,
                nonce=nonce,
            )
        )
        return f"{auth_endpoint}?{urlencode(params)}"

    async def handle_redirect(self, raw: Optional[str]) -> Optional[AccountRecord]:
        """
        Complete a login from the provider's redirect payload.

        Returns the new AccountRecord, or None when the payload carries no
        id_token or no login attempt is pending. Raises MalformedToken for an
        undecodable token (the pending attempt is left in place), and
        NetworkFailure/ServiceTimeout/ProofServiceRejection when a service call
        fails (the attempt is spent and nothing is stored).
        """
        token = extract_id_token(raw)
        if token is None:
            return None

        claims = decode_claims(token)

        setup = self.setups.take()
        if setup is None:
            logger.warning("ignoring redirect without a pending login")
            append_event(
                {
                    **build_common(event="redirect_ignored", session_id=self.session_id, token=token),
                    "reason": "stale_or_missing_setup",
                }
            )
            return None

        try:
            account = await self._complete(setup, token, claims)
        except (NetworkFailure, ProofServiceRejection, MalformedToken) as e:
            logger.error("login failed provider=%s: %s", setup.provider, e)
            append_event(
                {
                    **build_common(
                        event="login_failed",
                        session_id=self.session_id,
                        provider=setup.provider,
                        max_epoch=setup.max_epoch,
                        token=token,
                    ),
                    "reason": type(e).__name__,
                    "detail": str(e)[:200],
                }
            )
            raise

        self.account_store.append(account)

        logger.info("account committed provider=%s address=%s", account.provider, account.address)
        _audit_after_commit(
            build_common(
                event="account_committed",
                session_id=self.session_id,
                provider=account.provider,
                address=account.address,
                max_epoch=account.max_epoch,
                token=token,
            )
        )
        return account

    async def _complete(self, setup: SetupRecord, token: str, claims) -> AccountRecord:
        salt = await self.salt_service.get_salt(token)

        try:
            address = normalize_address(self.derive_address(token, salt))
        except ValueError as e:
            raise MalformedToken(f"cannot derive address: {e}") from e

        # the proof is bound to the SAME key that produced the nonce
        try:
            keypair = keys.load_ed25519_private_key_from_b64(setup.ephemeral_private_key)
        except ValueError as e:
            raise MalformedToken(f"pending login has an unreadable key: {e}") from e
        ext_pk = keys.extended_public_key(keypair.public_key())

        zk_proofs = await self.prover.prove(
            ProverRequest(
                max_epoch=setup.max_epoch,
                jwt_randomness=setup.randomness,
                extended_ephemeral_public_key=keys.b64_std(ext_pk),
                jwt=token,
                salt=salt,
                key_claim_name=KEY_CLAIM_NAME,
            )
        )

        return AccountRecord(
            provider=setup.provider,
            address=address,
            zk_proofs=zk_proofs,
            ephemeral_private_key=setup.ephemeral_private_key,
            salt=salt,
            sub=claims.sub,
            aud=claims.aud,
            max_epoch=setup.max_epoch,
            address_seed=gen_address_seed(salt, KEY_CLAIM_NAME, claims.sub, claims.aud),
            iss=claims.iss or None,
        )

    # -------------------------------------------------------------------------
    # Signing
    # -------------------------------------------------------------------------
    async def sign(self, account: AccountRecord, tx_bytes_b64: str) -> str:
        """
        Sign pending transaction bytes as `account` and execute them.

        Returns the transaction digest. Any failure is raised as SigningFailure
        with the original error chained; the account store is never touched.
        """
        try:
            digest, zk_signature = await self._sign_and_execute(account, tx_bytes_b64)
        except Exception as e:
            logger.exception("transaction failed for %s", account.address)
            append_event(
                {
                    **build_common(event="tx_failed", session_id=self.session_id, address=account.address),
                    "reason": type(e).__name__,
                    "detail": str(e)[:200],
                }
            )
            if isinstance(e, SigningFailure):
                raise
            raise SigningFailure(str(e) or type(e).__name__) from e

        logger.info("transaction executed digest=%s", digest)
        _audit_after_commit(
            {
                **build_common(
                    event="tx_executed",
                    session_id=self.session_id,
                    address=account.address,
                    signature=zk_signature,
                ),
                "digest": digest,
            }
        )
        return digest

    async def _sign_and_execute(self, account: AccountRecord, tx_bytes_b64: str) -> Tuple[str, str]:
        keypair = keys.load_ed25519_private_key_from_b64(account.ephemeral_private_key)

        if self.config.CHECK_EPOCH_BEFORE_SIGNING:
            current_epoch = await self.chain.get_current_epoch()
            if current_epoch > account.max_epoch:
                raise SigningFailure(
                    f"ephemeral key expired: epoch {current_epoch} is past max_epoch {account.max_epoch}"
                )

        tx_bytes = self.chain.bind_sender(keys.b64decode_loose(tx_bytes_b64), account.address)
        user_signature = keys.sign_transaction(keypair, tx_bytes)

        seed = gen_address_seed(account.salt, KEY_CLAIM_NAME, account.sub, account.aud)
        bound_seed = account.address_seed or _proof_seed(account.zk_proofs)
        if bound_seed is not None and str(bound_seed) != seed:
            raise SigningFailure("address seed mismatch: proof was generated for a different identity")

        inputs = {**(account.zk_proofs or {}), "addressSeed": seed}
        zk_signature = get_zklogin_signature(inputs, account.max_epoch, user_signature)

        result = await self.chain.execute_transaction(keys.b64_std(tx_bytes), zk_signature)
        return result.digest, zk_signature

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------
    def accounts(self) -> List[AccountRecord]:
        return self.account_store.all()

    async def balances(self) -> Dict[str, Optional[int]]:
        """Balance per account address; None where the lookup failed."""
        out: Dict[str, Optional[int]] = {}
        for acct in self.accounts():
            if acct.address in out:
                continue
            try:
                out[acct.address] = await self.chain.get_balance(acct.address)
            except NetworkFailure as e:
                logger.warning("balance lookup failed for %s: %s", acct.address, e)
                out[acct.address] = None
        return out

    def reset(self) -> None:
        """Wipe the pending setup and every account of this session."""
        self.session.clear()
        append_event(build_common(event="session_reset", session_id=self.session_id))


def _proof_seed(zk_proofs: Any) -> Optional[str]:
    if isinstance(zk_proofs, dict) and zk_proofs.get("addressSeed") is not None:
        return str(zk_proofs["addressSeed"])
    return None


def _audit_after_commit(event: Dict[str, Any]) -> None:
    # Runs after the account or transaction exists: write failures are logged, not raised.
    try:
        append_event(event)
    except OSError:
        logger.exception("audit write failed for %s event", event.get("event"))
