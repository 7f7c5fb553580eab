from pathlib import Path
from urllib.parse import urlparse, urlunparse

from pydantic import field_validator
from pydantic_settings import BaseSettings


FULLNODE_URLS = {
    "mainnet": "https://fullnode.mainnet.sui.io:443",
    "testnet": "https://fullnode.testnet.sui.io:443",
    "devnet": "https://fullnode.devnet.sui.io:443",
    "localnet": "http://127.0.0.1:9000",
}

# provider name -> authorization endpoint
OPENID_PROVIDERS = {
    "Google": "https://accounts.google.com/o/oauth2/v2/auth",
}


class Settings(BaseSettings):
    ORIGIN: str = "http://127.0.0.1:8081"
    CALLBACK_PATH: str = "/callback"

    NETWORK: str = "testnet"
    # empty -> fullnode of NETWORK
    CHAIN_RPC_URL: str = ""

    # number of epochs an ephemeral key stays usable after login
    MAX_EPOCH_WINDOW: int = 2

    URL_SALT_SERVICE: str = "https://salt.api.mystenlabs.com/get_salt"
    URL_ZK_PROVER: str = "https://prover-dev.mystenlabs.com/v1"

    CLIENT_ID_GOOGLE: str = ""

    HTTP_TIMEOUT_SECONDS: float = 30.0

    # refuse to sign with material whose max_epoch has already passed
    CHECK_EPOCH_BEFORE_SIGNING: bool = True

    AUDIT_ENABLED: bool = True
    AUDIT_DIR: Path = Path(__file__).resolve().parent.parent / "audit"

    SESSION_COOKIE: str = "zklogin_sid"

    class Config:
        env_file = ".env"

    @field_validator("ORIGIN")
    @classmethod
    def normalize_origin(cls, v: str) -> str:
        """
        ORIGIN is the absolute http(s) origin the identity provider redirects
        back to. Whitespace and trailing slashes are stripped, the hostname is
        lowercased and path/query/fragment are dropped. An explicit port is kept.
        """
        v = (v or "").strip().rstrip("/")
        p = urlparse(v)

        if p.scheme not in ("http", "https"):
            raise ValueError("ORIGIN must start with http:// or https://")

        if not p.hostname:
            raise ValueError("ORIGIN must include a hostname")

        netloc = p.hostname.lower()
        if p.port:
            netloc = f"{netloc}:{p.port}"

        return urlunparse((p.scheme, netloc, "", "", "", ""))

    @field_validator("CALLBACK_PATH")
    @classmethod
    def normalize_callback_path(cls, v: str) -> str:
        v = (v or "").strip()
        if not v.startswith("/"):
            v = "/" + v
        return v

    @field_validator("NETWORK")
    @classmethod
    def normalize_network(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in FULLNODE_URLS:
            raise ValueError(f"NETWORK must be one of {sorted(FULLNODE_URLS)}")
        return v

    @field_validator("CHAIN_RPC_URL", "URL_SALT_SERVICE", "URL_ZK_PROVER")
    @classmethod
    def strip_url(cls, v: str) -> str:
        return (v or "").strip()

    @field_validator("MAX_EPOCH_WINDOW")
    @classmethod
    def positive_window(cls, v: int) -> int:
        if v < 0:
            raise ValueError("MAX_EPOCH_WINDOW cannot be negative")
        return v

    @field_validator("HTTP_TIMEOUT_SECONDS")
    @classmethod
    def positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("HTTP_TIMEOUT_SECONDS must be > 0")
        return v

    @field_validator("CHECK_EPOCH_BEFORE_SIGNING", "AUDIT_ENABLED", mode="before")
    @classmethod
    def normalize_flag(cls, v):
        # accept 0/1, "true"/"false" from env consistently
        if isinstance(v, bool):
            return v
        if isinstance(v, int):
            return bool(v)
        if isinstance(v, str):
            return v.strip().lower() not in ("0", "false", "no", "off", "")
        return True

    @property
    def rpc_url(self) -> str:
        return self.CHAIN_RPC_URL or FULLNODE_URLS[self.NETWORK]

    @property
    def redirect_uri(self) -> str:
        return self.ORIGIN + self.CALLBACK_PATH

    def client_id_for(self, provider: str) -> str:
        """Client id registered with `provider`, looked up as CLIENT_ID_<PROVIDER>."""
        return str(getattr(self, f"CLIENT_ID_{provider.upper()}", "") or "")


settings = Settings()
