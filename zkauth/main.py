# zkauth/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# Thin HTTP glue around zkauth.flow for a browser front-end:
#   - It wires endpoints to ZkLoginFlow and maps the error taxonomy to status
#     codes. It MUST NOT implement crypto or flow ordering itself.
#   - Per-browser state lives in storage.registry, keyed by the session cookie.
#
# Key modules / responsibilities:
#   - config.py    : environment-driven settings (ORIGIN/NETWORK/service URLs)
#   - storage.py   : session slots (setup + accounts)
#   - keys.py      : ephemeral Ed25519 keys, nonce, transaction signatures
#   - zklogin.py   : claims, address seed, address, composite signature
#   - services.py  : chain RPC / salt / prover HTTP clients
#   - flow.py      : start_login / handle_redirect / sign
#   - audit.py     : append-only audit log
#
# The identity provider returns id_token in the URL fragment, which never
# reaches the server. The front-end posts location.hash to /api/v1/callback.
#
# WARNING (DEPLOYMENT):
# - storage.registry is in-process memory: NOT shared across Uvicorn workers.
#   Run a single worker, or pin browsers to a worker.
# -----------------------------------------------------------------------------

from contextlib import asynccontextmanager
from typing import Optional, Tuple

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import RedirectResponse

from .config import settings
from .errors import (
    MalformedToken,
    NetworkFailure,
    ProofServiceRejection,
    ServiceTimeout,
    SigningFailure,
    UnknownProvider,
    ZkLoginError,
)
from .flow import ZkLoginFlow
from .models import CallbackBody, SignBody
from .services import ChainRpcClient, ProverClient, SaltClient
from .storage import SessionStore, registry


# -----------------------------------------------------------------------------
# External service clients (one per process)
# -----------------------------------------------------------------------------
CHAIN = ChainRpcClient()
SALT = SaltClient()
PROVER = ProverClient()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    for client in (CHAIN, SALT, PROVER):
        await client.aclose()


app = FastAPI(
    title="zkLogin Session Service",
    version="0.1.0",
    lifespan=lifespan,
)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _session(request: Request, *, create: bool = False) -> Tuple[str, SessionStore]:
    """
    Session for the request cookie.

    Unknown or missing cookies get a throwaway store; only `create=True`
    (login, the one endpoint that writes state first) registers it.
    """
    sid = request.cookies.get(settings.SESSION_COOKIE)
    sess = registry.get(sid) if sid else None
    if sess is not None:
        return sid, sess

    sid = registry.new_session_id()
    if create:
        return sid, registry.get_or_create(sid)
    return sid, SessionStore()


def _set_cookie(response: Response, sid: str) -> None:
    if registry.get(sid) is None:
        return
    response.set_cookie(
        settings.SESSION_COOKIE,
        sid,
        httponly=True,
        samesite="lax",
        secure=settings.ORIGIN.startswith("https://"),
    )


def _flow(sid: str, sess: SessionStore) -> ZkLoginFlow:
    return ZkLoginFlow(
        sess,
        chain=CHAIN,
        salt_service=SALT,
        prover=PROVER,
        session_id=sid,
    )


def _http_error(e: ZkLoginError) -> HTTPException:
    if isinstance(e, UnknownProvider):
        return HTTPException(404, str(e))
    if isinstance(e, MalformedToken):
        return HTTPException(400, {"error": "malformed_token", "message": str(e)})
    if isinstance(e, ServiceTimeout):
        return HTTPException(504, {"error": "timeout", "message": str(e)})
    if isinstance(e, ProofServiceRejection):
        return HTTPException(502, {"error": "proof_rejected", "message": str(e)})
    if isinstance(e, NetworkFailure):
        return HTTPException(502, {"error": "network_failure", "message": str(e)})
    return HTTPException(500, {"error": "zklogin_error", "message": str(e)})


# -----------------------------------------------------------------------------
# Endpoints
# -----------------------------------------------------------------------------
@app.get("/api/v1/health")
def health():
    return {"ok": True, "network": settings.NETWORK}


@app.get("/api/v1/login/{provider}")
async def login(provider: str, request: Request):
    sid, sess = _session(request, create=True)
    try:
        url = await _flow(sid, sess).start_login(provider)
    except ZkLoginError as e:
        raise _http_error(e)

    resp = RedirectResponse(url, status_code=307)
    _set_cookie(resp, sid)
    return resp


async def _complete(raw: Optional[str], request: Request, response: Response):
    sid, sess = _session(request)
    _set_cookie(response, sid)
    try:
        account = await _flow(sid, sess).handle_redirect(raw)
    except ZkLoginError as e:
        raise _http_error(e)
    return {"ok": True, "account": account.public_view() if account else None}


@app.get("/api/v1/callback")
async def callback_query(request: Request, response: Response):
    return await _complete(request.url.query, request, response)


@app.post("/api/v1/callback")
async def callback_fragment(body: CallbackBody, request: Request, response: Response):
    return await _complete(body.redirect, request, response)


@app.get("/api/v1/accounts")
async def list_accounts(request: Request, response: Response, balances: bool = False):
    sid, sess = _session(request)
    _set_cookie(response, sid)
    flow = _flow(sid, sess)

    views = [a.public_view() for a in flow.accounts()]
    if balances:
        by_address = await flow.balances()
        for v in views:
            v["balance"] = by_address.get(v["address"])
    return {"accounts": views}


@app.post("/api/v1/accounts/{index}/sign")
async def sign_transaction(index: int, body: SignBody, request: Request, response: Response):
    sid, sess = _session(request)
    _set_cookie(response, sid)
    flow = _flow(sid, sess)

    account = flow.account_store.get(index)
    if account is None:
        raise HTTPException(404, "account not found")

    try:
        digest = await flow.sign(account, body.tx_bytes)
    except SigningFailure as e:
        return {"ok": False, "error": f"Transaction failed: {e}"}
    return {"ok": True, "digest": digest}


@app.post("/api/v1/reset")
def reset(request: Request, response: Response):
    sid, sess = _session(request)
    _flow(sid, sess).reset()
    registry.drop(sid)
    response.delete_cookie(settings.SESSION_COOKIE)
    return {"ok": True}
