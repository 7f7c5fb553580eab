from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SaltResponse(BaseModel):
    salt: str

    @field_validator("salt", mode="before")
    @classmethod
    def decimal_salt(cls, v):
        # some salt services answer with a JSON number
        v = str(v).strip()
        if not v.isdigit():
            raise ValueError("salt must be a non-negative decimal integer")
        return v


class ProverRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    max_epoch: int = Field(alias="maxEpoch")
    jwt_randomness: str = Field(alias="jwtRandomness")
    extended_ephemeral_public_key: str = Field(alias="extendedEphemeralPublicKey")
    jwt: str
    salt: str
    key_claim_name: str = Field(default="sub", alias="keyClaimName")


class ExecuteResult(BaseModel):
    digest: str
    effects: Optional[Dict[str, Any]] = None


class CallbackBody(BaseModel):
    # raw location.hash / location.search as seen by the browser
    redirect: str = ""


class SignBody(BaseModel):
    tx_bytes: str
