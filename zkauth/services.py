"""
zkauth/services.py

HTTP clients for the three external collaborators of the zkLogin flow:

- ChainRpcClient:  Sui-style JSON-RPC fullnode (epoch, execution, balances)
- SaltClient:      salt service, POST {jwt} -> {salt}
- ProverClient:    zk proof service, POST {maxEpoch, jwtRandomness, ...} -> proof blob

Every call runs with a bounded httpx timeout. Transport problems and non-2xx
answers become NetworkFailure, timeouts become ServiceTimeout. Nothing here
retries.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from .config import settings
from .errors import NetworkFailure, ProofServiceRejection, ServiceTimeout
from .models import ExecuteResult, ProverRequest, SaltResponse
from .transaction import set_sender

logger = logging.getLogger(__name__)


class _ServiceClient:
    """Lazily created httpx.AsyncClient shared by all calls of one service."""

    name = "service"

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.timeout_seconds = float(timeout_seconds or settings.HTTP_TIMEOUT_SECONDS)
        self._client = client
        self._client_lock = asyncio.Lock()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post(self, payload: Any) -> httpx.Response:
        client = await self._ensure_client()
        try:
            response = await client.post(
                self.url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise ServiceTimeout(f"{self.name} timed out after {self.timeout_seconds:g}s") from e
        except httpx.HTTPStatusError as e:
            raise NetworkFailure(f"{self.name} answered HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise NetworkFailure(f"{self.name} unreachable: {e}") from e
        return response

    async def _post_json(self, payload: Any) -> Any:
        response = await self._post(payload)
        try:
            return response.json()
        except ValueError as e:
            raise NetworkFailure(f"{self.name} returned invalid JSON") from e


# -----------------------------------------------------------------------------
# Chain RPC
# -----------------------------------------------------------------------------
class ChainRpcClient(_ServiceClient):
    name = "chain rpc"

    def __init__(self, url: Optional[str] = None, **kwargs) -> None:
        super().__init__(url or settings.rpc_url, **kwargs)
        self._ids = itertools.count(1)

    async def _rpc(self, method: str, params: list) -> Any:
        body = await self._post_json(
            {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        )
        if not isinstance(body, dict):
            raise NetworkFailure(f"{self.name}: malformed response to {method}")
        if body.get("error"):
            err = body["error"]
            msg = err.get("message") if isinstance(err, dict) else str(err)
            raise NetworkFailure(f"{self.name}: {method} failed: {msg}")
        return body.get("result")

    async def get_current_epoch(self) -> int:
        result = await self._rpc("suix_getLatestSuiSystemState", [])
        try:
            return int(result["epoch"])
        except (KeyError, TypeError, ValueError) as e:
            raise NetworkFailure(f"{self.name}: system state has no epoch") from e

    def bind_sender(self, tx_bytes: bytes, sender: str) -> bytes:
        """
        Return TransactionData bytes whose sender is `sender`.

        The sender field is located by walking the BCS layout and overwritten
        in place. Raises ValueError for bytes that are not a V1 programmable
        transaction.
        """
        return set_sender(tx_bytes, sender)

    async def execute_transaction(self, tx_b64: str, signature: str) -> ExecuteResult:
        result = await self._rpc(
            "sui_executeTransactionBlock",
            [
                tx_b64,
                [signature],
                {"showEffects": True, "showObjectChanges": True},
                "WaitForLocalExecution",
            ],
        )
        try:
            return ExecuteResult.model_validate(result)
        except ValidationError as e:
            raise NetworkFailure(f"{self.name}: execution result has no digest") from e

    async def get_balance(self, address: str) -> int:
        result = await self._rpc("suix_getBalance", [address])
        try:
            return int(result["totalBalance"])
        except (KeyError, TypeError, ValueError) as e:
            raise NetworkFailure(f"{self.name}: malformed balance for {address}") from e


# -----------------------------------------------------------------------------
# Salt service
# -----------------------------------------------------------------------------
class SaltClient(_ServiceClient):
    name = "salt service"

    def __init__(self, url: Optional[str] = None, **kwargs) -> None:
        super().__init__(url or settings.URL_SALT_SERVICE, **kwargs)

    async def get_salt(self, token: str) -> str:
        body = await self._post_json({"jwt": token})
        try:
            return SaltResponse.model_validate(body).salt
        except ValidationError as e:
            raise NetworkFailure(f"{self.name} returned no usable salt") from e


# -----------------------------------------------------------------------------
# Prover
# -----------------------------------------------------------------------------
class ProverClient(_ServiceClient):
    name = "zk prover"

    def __init__(self, url: Optional[str] = None, **kwargs) -> None:
        super().__init__(url or settings.URL_ZK_PROVER, **kwargs)

    async def prove(self, request: ProverRequest) -> Dict[str, Any]:
        """Return the proof blob untouched; only its outer shape is checked."""
        response = await self._post(request.model_dump(by_alias=True))
        try:
            body = response.json()
        except ValueError as e:
            raise ProofServiceRejection(f"{self.name} returned a malformed proof") from e

        if not isinstance(body, dict) or not body:
            raise ProofServiceRejection(f"{self.name} returned a malformed proof")
        if body.get("success") is False or body.get("error"):
            detail = body.get("error") or body.get("message") or "rejected"
            raise ProofServiceRejection(f"{self.name} rejected the request: {detail}")
        return body
