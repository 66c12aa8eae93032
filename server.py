import logging
import secrets
from typing import Any, Dict, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ensoul import settings
from ensoul.backend import Backend
from ensoul.entities import Claw
from ensoul.errors import EnsoulError, Forbidden, Retired, Unauthenticated

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n",
)
logger = logging.getLogger("ensoul_backend")

SESSION_COOKIE = "ensoul_session"

app = FastAPI(title="Ensoul")

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_backend: Optional[Backend] = None


def get_backend() -> Backend:
    global _backend
    if _backend is None:
        _backend = Backend()
    return _backend


# -----------------------
# Errors
# -----------------------

@app.exception_handler(EnsoulError)
async def ensoul_error_handler(request: Request, exc: EnsoulError):
    return JSONResponse(status_code=exc.status, content=exc.to_body())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(p) for p in e.get("loc", ()) if p != "body") for e in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={"error": "invalid_shape", "message": "Malformed request body", "fields": fields},
    )


# -----------------------
# Request models
# -----------------------

class BatchRequest(BaseModel):
    handle: str
    # shape is checked by the batch validator so callers get its error codes
    fragments: Any = None


class RegisterClawRequest(BaseModel):
    name: str
    description: Optional[str] = None


class ClaimRequest(BaseModel):
    claim_code: str


class BindKeyRequest(BaseModel):
    api_key: str


class LoginRequest(BaseModel):
    address: str
    signature: str
    message: str


class SeedPreview(BaseModel):
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    seed_summary: Optional[str] = None
    dimensions: Optional[Dict[str, Any]] = None


class MintRequest(BaseModel):
    handle: str
    signature: str
    preview: Optional[SeedPreview] = None


class ConfirmMintRequest(BaseModel):
    handle: str
    tx_hash: str
    agent_id: Optional[int] = Field(default=None, ge=0)


class ChatMessageRequest(BaseModel):
    message: str


# -----------------------
# Auth helpers
# -----------------------

def _session_token(request: Request, x_session_token: Optional[str]) -> Optional[str]:
    return request.cookies.get(SESSION_COOKIE) or x_session_token


def require_wallet(
    request: Request,
    x_session_token: Optional[str] = Header(default=None),
    backend: Backend = Depends(get_backend),
) -> str:
    return backend.identity.require_session(_session_token(request, x_session_token))


def optional_wallet(
    request: Request,
    x_session_token: Optional[str] = Header(default=None),
    backend: Backend = Depends(get_backend),
) -> Optional[str]:
    return backend.identity.resolve_session(_session_token(request, x_session_token))


def require_claw(
    authorization: Optional[str] = Header(default=None),
    backend: Backend = Depends(get_backend),
) -> Claw:
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthenticated("Authentication required: Authorization: Bearer <api_key>")
    return backend.identity.authenticate_claw(authorization[len("Bearer "):].strip())


def require_operator(x_operator_key: Optional[str] = Header(default=None)) -> None:
    expected = settings.OPERATOR_KEY
    if not expected or not x_operator_key or not secrets.compare_digest(x_operator_key, expected):
        raise Forbidden("Operator key required", code="operator_only")


# -----------------------
# Fragments
# -----------------------

@app.post("/api/fragment/batch", status_code=201)
def submit_batch(
    req: BatchRequest,
    background_tasks: BackgroundTasks,
    claw: Claw = Depends(require_claw),
    backend: Backend = Depends(get_backend),
):
    body = backend.fragments.submit_batch(claw, req.handle, req.fragments)
    if settings.CURATION_MODE == "inline":
        background_tasks.add_task(backend.curation.review_batch, body["batch_id"])
    return body


@app.post("/api/fragment/submit")
def submit_single_fragment():
    raise Retired(
        "Single fragment submission has been retired. Use POST /api/fragment/batch with 3-6 fragments "
        "covering different dimensions.",
        code="retired",
    )


@app.get("/api/fragment/list")
def list_fragments(
    handle: Optional[str] = None,
    status: Optional[str] = None,
    dimension: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    backend: Backend = Depends(get_backend),
):
    return backend.fragments.list_fragments(
        handle=handle, status=status, dimension=dimension, page=page, limit=limit
    )


@app.get("/api/fragment/{fragment_id}")
def get_fragment(fragment_id: str, backend: Backend = Depends(get_backend)):
    return backend.fragments.get_fragment(fragment_id)


# -----------------------
# Claws
# -----------------------

@app.get("/api/claw/leaderboard")
def claw_leaderboard(page: int = 1, limit: int = 20, backend: Backend = Depends(get_backend)):
    return backend.directory.leaderboard(page=page, limit=limit)


@app.get("/api/claw/profile/{claw_id}")
def claw_public_profile(claw_id: str, backend: Backend = Depends(get_backend)):
    return backend.directory.claw_public_profile(claw_id)


@app.get("/api/claw/claim/{claim_code}")
def claim_info(claim_code: str, backend: Backend = Depends(get_backend)):
    return backend.identity.claim_info(claim_code)


@app.get("/api/claw/dashboard")
def claw_dashboard(claw: Claw = Depends(require_claw), backend: Backend = Depends(get_backend)):
    return backend.identity.claw_dashboard(claw.id)


@app.post("/api/claw/register", status_code=201)
def register_claw(req: RegisterClawRequest, backend: Backend = Depends(get_backend)):
    return backend.identity.register_claw(req.name, req.description)


@app.get("/api/claw/status")
def claw_status(claw: Claw = Depends(require_claw), backend: Backend = Depends(get_backend)):
    return backend.identity.claw_status(claw)


@app.get("/api/claw/me")
def claw_me(claw: Claw = Depends(require_claw), backend: Backend = Depends(get_backend)):
    body = backend.identity.claw_dashboard(claw.id)
    body["claw"] = backend.identity.claw_profile(claw)
    return body


@app.get("/api/claw/contributions")
def claw_contributions(
    page: int = 1,
    limit: int = 20,
    claw: Claw = Depends(require_claw),
    backend: Backend = Depends(get_backend),
):
    return backend.fragments.list_fragments(claw_id=claw.id, page=page, limit=limit)


@app.post("/api/claw/claim/verify")
def claim_claw(
    req: ClaimRequest,
    wallet: str = Depends(require_wallet),
    backend: Backend = Depends(get_backend),
):
    return backend.identity.claim_claw(wallet, req.claim_code)


@app.post("/api/claw/keys", status_code=201)
def bind_key(
    req: BindKeyRequest,
    wallet: str = Depends(require_wallet),
    backend: Backend = Depends(get_backend),
):
    return backend.identity.bind_key(wallet, req.api_key)


@app.get("/api/claw/keys")
def list_keys(wallet: str = Depends(require_wallet), backend: Backend = Depends(get_backend)):
    return backend.identity.list_bindings(wallet)


@app.delete("/api/claw/keys/{binding_id}")
def unbind_key(
    binding_id: str,
    wallet: str = Depends(require_wallet),
    backend: Backend = Depends(get_backend),
):
    backend.identity.unbind(wallet, binding_id)
    return {"message": "Claw unbound"}


@app.get("/api/claw/keys/{binding_id}/dashboard")
def bound_claw_dashboard(
    binding_id: str,
    wallet: str = Depends(require_wallet),
    backend: Backend = Depends(get_backend),
):
    claw_id = backend.identity.binding_claw_id(wallet, binding_id)
    return backend.identity.claw_dashboard(claw_id)


# -----------------------
# Wallet sessions
# -----------------------

@app.post("/api/auth/login")
def login(req: LoginRequest, response: Response, backend: Backend = Depends(get_backend)):
    token, body = backend.identity.login(req.address, req.signature, req.message)
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=backend.tuning.session_ttl_seconds,
        path="/",
        secure=settings.is_production(),
        httponly=True,
        samesite="lax",
    )
    return body


@app.post("/api/auth/logout")
def logout(
    request: Request,
    response: Response,
    x_session_token: Optional[str] = Header(default=None),
    backend: Backend = Depends(get_backend),
):
    backend.identity.logout(_session_token(request, x_session_token))
    response.delete_cookie(SESSION_COOKIE, path="/")
    return {"message": "Logged out"}


@app.get("/api/auth/session")
def current_session(wallet: str = Depends(require_wallet)):
    return {"address": wallet}


# -----------------------
# Souls
# -----------------------

@app.post("/api/shell/mint", status_code=201)
def mint_soul(
    req: MintRequest,
    wallet: str = Depends(require_wallet),
    backend: Backend = Depends(get_backend),
):
    preview = req.preview.model_dump() if req.preview else None
    return backend.souls.mint_soul(wallet, req.handle, req.signature, preview)


@app.post("/api/shell/confirm")
def confirm_mint(
    req: ConfirmMintRequest,
    wallet: str = Depends(require_wallet),
    backend: Backend = Depends(get_backend),
):
    return backend.souls.confirm_mint(wallet, req.handle, req.tx_hash, req.agent_id)


@app.get("/api/shell/list")
def list_souls(
    stage: Optional[str] = None,
    sort: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    backend: Backend = Depends(get_backend),
):
    return backend.directory.list_souls(stage=stage, sort=sort, search=search, page=page, limit=limit)


@app.get("/api/shell/{handle}")
def get_soul(handle: str, backend: Backend = Depends(get_backend)):
    return backend.souls.get_soul(handle)


@app.get("/api/shell/{handle}/dimensions")
def get_dimensions(handle: str, backend: Backend = Depends(get_backend)):
    return backend.souls.get_dimensions(handle)


@app.get("/api/shell/{handle}/history")
def get_history(handle: str, backend: Backend = Depends(get_backend)):
    return backend.souls.get_history(handle)


@app.get("/api/shell/{handle}/contributors")
def get_contributors(handle: str, backend: Backend = Depends(get_backend)):
    return backend.directory.contributors(handle)


@app.post("/api/shell/{handle}/condense", dependencies=[Depends(require_operator)])
def condense_soul(handle: str, backend: Backend = Depends(get_backend)):
    soul_id = backend.souls.soul_id_for(handle)
    condensation = backend.condensation.condense(soul_id, force=True)
    if condensation is None:
        return {"condensed": False, "message": "Nothing to condense"}
    return {
        "condensed": True,
        "version_from": condensation.version_from,
        "version_to": condensation.version_to,
        "frags_merged": condensation.frags_merged,
        "summary_diff": condensation.summary_diff,
    }


# -----------------------
# Chat
# -----------------------

@app.post("/api/chat/{handle}/session")
def create_chat_session(
    handle: str,
    wallet: Optional[str] = Depends(optional_wallet),
    backend: Backend = Depends(get_backend),
):
    return backend.chat.create_session(handle, wallet)


@app.post("/api/chat/sessions/{session_id}/message")
def send_chat_message(
    session_id: str,
    req: ChatMessageRequest,
    wallet: Optional[str] = Depends(optional_wallet),
    backend: Backend = Depends(get_backend),
):
    return backend.chat.send_message(session_id, req.message, wallet)


@app.get("/api/chat/sessions")
def list_chat_sessions(
    handle: Optional[str] = None,
    wallet: str = Depends(require_wallet),
    backend: Backend = Depends(get_backend),
):
    return backend.chat.list_sessions(wallet, handle)


@app.get("/api/chat/sessions/{session_id}")
def get_chat_session(
    session_id: str,
    wallet: Optional[str] = Depends(optional_wallet),
    backend: Backend = Depends(get_backend),
):
    return backend.chat.get_session(session_id, wallet)


@app.delete("/api/chat/sessions/{session_id}")
def delete_chat_session(
    session_id: str,
    wallet: str = Depends(require_wallet),
    backend: Backend = Depends(get_backend),
):
    backend.chat.delete_session(session_id, wallet)
    return {"status": "deleted"}


# -----------------------
# Public counters
# -----------------------

@app.get("/api/health")
def health():
    return {"status": "ok", "service": "ensoul-server"}


@app.get("/api/stats")
def global_stats(backend: Backend = Depends(get_backend)):
    return backend.directory.global_stats()


@app.get("/api/tasks")
def task_board(backend: Backend = Depends(get_backend)):
    return backend.directory.task_board()


# -----------------------
# Operator
# -----------------------

@app.get("/api/admin/stale-pending", dependencies=[Depends(require_operator)])
def stale_pending(backend: Backend = Depends(get_backend)):
    return backend.stale_pending_report()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
