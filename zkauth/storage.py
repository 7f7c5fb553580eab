# zkauth/storage.py
import json
import logging
import secrets
import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from .config import settings

logger = logging.getLogger(__name__)

SETUP_KEY = "zklogin.setup"
ACCOUNTS_KEY = "zklogin.accounts"

EXPLORER_URL = "https://suiscan.xyz/{network}/account/{address}"


@dataclass
class SetupRecord:
    """Transient data of the one in-flight login attempt."""

    provider: str
    max_epoch: int
    randomness: str
    ephemeral_private_key: str

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SetupRecord":
        return cls(
            provider=str(d["provider"]),
            max_epoch=int(d["max_epoch"]),
            randomness=str(d["randomness"]),
            ephemeral_private_key=str(d["ephemeral_private_key"]),
        )


@dataclass(frozen=True)
class AccountRecord:
    provider: str
    address: str
    zk_proofs: Any
    ephemeral_private_key: str
    salt: str
    sub: str
    aud: str
    max_epoch: int

    # seed the proof was requested against (salt, "sub", sub, aud)
    address_seed: Optional[str] = None
    iss: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AccountRecord":
        return cls(
            provider=str(d["provider"]),
            address=str(d["address"]),
            zk_proofs=d.get("zk_proofs"),
            ephemeral_private_key=str(d["ephemeral_private_key"]),
            salt=str(d["salt"]),
            sub=str(d["sub"]),
            aud=str(d["aud"]),
            max_epoch=int(d["max_epoch"]),
            address_seed=d.get("address_seed"),
            iss=d.get("iss"),
        )

    @property
    def explorer_url(self) -> str:
        return EXPLORER_URL.format(network=settings.NETWORK, address=self.address)

    def public_view(self) -> Dict[str, Any]:
        """Fields safe to hand to a UI. Never includes key, salt or proof."""
        return {
            "provider": self.provider,
            "address": self.address,
            "sub": self.sub,
            "max_epoch": self.max_epoch,
            "explorer_url": self.explorer_url,
        }


class SessionStore:
    """
    Named slots holding serialized JSON, scoped to one browser session.

    All mutations run under one lock, so take() is an atomic read-then-delete
    and concurrent appends to a list slot cannot lose a record.
    """

    def __init__(self):
        self._slots: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._slots.get(key)

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._slots[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._slots.pop(key, None)

    def take(self, key: str) -> Optional[str]:
        with self._lock:
            return self._slots.pop(key, None)

    def update(self, key: str, fn) -> str:
        """Replace slot `key` with fn(current) while holding the lock."""
        with self._lock:
            new_value = fn(self._slots.get(key))
            self._slots[key] = new_value
            return new_value

    def clear(self) -> None:
        with self._lock:
            self._slots.clear()


class SetupStore:
    def __init__(self, session: SessionStore):
        self.session = session

    def save(self, setup: SetupRecord) -> None:
        self.session.put(SETUP_KEY, json.dumps(asdict(setup)))

    def load(self) -> Optional[SetupRecord]:
        return self._parse(self.session.get(SETUP_KEY))

    def take(self) -> Optional[SetupRecord]:
        """Load and delete the pending setup in one step (single use)."""
        return self._parse(self.session.take(SETUP_KEY))

    def clear(self) -> None:
        self.session.delete(SETUP_KEY)

    @staticmethod
    def _parse(raw: Optional[str]) -> Optional[SetupRecord]:
        if raw is None:
            return None
        try:
            return SetupRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("discarding unreadable setup slot")
            return None


def _valid_account_dict(d: Any) -> bool:
    return isinstance(d, dict) and isinstance(d.get("address"), str) and d["address"].startswith("0x")


class AccountStore:
    """Completed zkLogin accounts, newest first."""

    def __init__(self, session: SessionStore):
        self.session = session

    def append(self, account: AccountRecord) -> bool:
        """Insert `account` at the front. Returns False (and stores nothing) for a bad address."""
        if not account.address.startswith("0x"):
            logger.warning("refusing account without 0x address")
            return False

        def prepend(raw: Optional[str]) -> str:
            return json.dumps([asdict(account)] + self._raw_list(raw))

        self.session.update(ACCOUNTS_KEY, prepend)
        return True

    def all(self) -> List[AccountRecord]:
        out: List[AccountRecord] = []
        for d in self._raw_list(self.session.get(ACCOUNTS_KEY)):
            try:
                out.append(AccountRecord.from_dict(d))
            except (KeyError, TypeError, ValueError):
                continue
        return out

    def get(self, index: int) -> Optional[AccountRecord]:
        accounts = self.all()
        if 0 <= index < len(accounts):
            return accounts[index]
        return None

    def __len__(self) -> int:
        return len(self.all())

    @staticmethod
    def _raw_list(raw: Optional[str]) -> List[Dict[str, Any]]:
        # corrupted or foreign slot contents load as "no accounts"
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except ValueError:
            return []
        if not isinstance(data, list):
            return []
        return [d for d in data if _valid_account_dict(d)]


class SessionRegistry:
    """Browser session id -> SessionStore, for the HTTP embedding."""

    def __init__(self):
        self.sessions: Dict[str, SessionStore] = {}
        self._lock = threading.Lock()

    def new_session_id(self) -> str:
        return secrets.token_urlsafe(24)

    def get(self, session_id: str) -> Optional[SessionStore]:
        with self._lock:
            return self.sessions.get(session_id)

    def get_or_create(self, session_id: str) -> SessionStore:
        with self._lock:
            sess = self.sessions.get(session_id)
            if sess is None:
                sess = SessionStore()
                self.sessions[session_id] = sess
            return sess

    def drop(self, session_id: str) -> None:
        with self._lock:
            self.sessions.pop(session_id, None)


registry = SessionRegistry()
