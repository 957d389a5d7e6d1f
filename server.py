import asyncio
import functools
import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from uuid import uuid4
from typing import Optional, Any, Dict

from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from classes import settings
from classes.relay_errors import QuotaExceeded, RelayError
from classes.relay_service import RelayService, get_relay_service

logger = logging.getLogger("devblox_relay")

app = FastAPI(title="DevBlox AI Relay")

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Long-polls park a thread for up to LONG_POLL_MAX_WAIT_SECONDS; they get their
# own pool so prompt submissions never queue behind them.
POLL_EXECUTOR = ThreadPoolExecutor(max_workers=settings.LONG_POLL_WORKERS, thread_name_prefix="long-poll")

UID_COOKIE = "db_uid"
UID_COOKIE_MAX_AGE = 60 * 60 * 24 * 365


class RegisterRequest(BaseModel):
    project_id: str
    metadata: Optional[Dict[str, Any]] = None


class PromptRequest(BaseModel):
    project_id: Optional[str] = None
    session_id: Optional[str] = None
    prompt: Optional[str] = None


class IdentityRequest(BaseModel):
    project_id: Optional[str] = None
    session_id: Optional[str] = None


class UseRequest(BaseModel):
    amount: Optional[int] = 1


class RedeemRequest(BaseModel):
    code: Optional[str] = None


class ProjectRequest(BaseModel):
    name: Optional[str] = None


def get_or_set_uid(request: Request, response: Response) -> str:
    uid = request.cookies.get(UID_COOKIE)
    if not uid:
        uid = str(uuid4())
        response.set_cookie(
            UID_COOKIE,
            uid,
            httponly=True,
            samesite="lax",
            max_age=UID_COOKIE_MAX_AGE,
        )
    return uid


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError):
    body: Dict[str, Any] = {"error": str(exc), "kind": type(exc).__name__}
    if isinstance(exc, QuotaExceeded):
        body["used"] = exc.used
        body["max"] = exc.limit
    if exc.status_code >= 500:
        logger.warning("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc)
    return JSONResponse(status_code=exc.status_code, content=body)


# === sessions ===
@app.post("/sessions")
async def register_session(body: RegisterRequest, relay: RelayService = Depends(get_relay_service)):
    session_id = relay.register(body.project_id, body.metadata)
    return {"project_id": body.project_id.strip(), "session_id": session_id}


@app.delete("/sessions/{session_id}")
async def remove_session(session_id: str, relay: RelayService = Depends(get_relay_service)):
    return {"removed": relay.remove(session_id)}


# === AI prompt -> command ===
@app.post("/ai")
async def submit_prompt(
    body: PromptRequest,
    request: Request,
    response: Response,
    relay: RelayService = Depends(get_relay_service),
):
    uid = get_or_set_uid(request, response)
    command = await asyncio.to_thread(
        relay.submit_prompt, body.project_id, body.session_id, body.prompt, uid
    )
    try:
        preview = json.dumps(command.summary(), indent=2)
    except Exception:
        preview = str(command)
    logger.debug("submit_prompt response command=\n%s", preview)
    return {
        "success": True,
        "command": command.summary(),
        "code": command.payload.get("source"),
        "explainer": command.payload.get("explainer"),
        "usage": relay.usage(uid),
    }


# === plugin polling ===
@app.get("/ai-poll")
async def poll_commands(
    project_id: Optional[str] = None,
    session_id: Optional[str] = None,
    wait: float = 0,
    relay: RelayService = Depends(get_relay_service),
):
    if wait <= 0:
        commands = await asyncio.to_thread(relay.poll_commands, project_id, session_id)
        return {"commands": [c.summary() for c in commands]}

    # the deadline starts now, not when a long-poll worker frees up
    deadline = time.monotonic() + min(wait, relay.long_poll_max_wait)
    loop = asyncio.get_running_loop()
    commands = await loop.run_in_executor(
        POLL_EXECUTOR,
        functools.partial(relay.poll_commands, project_id, session_id, wait, deadline=deadline),
    )
    return {"commands": [c.summary() for c in commands]}


@app.post("/plugin/heartbeat")
async def heartbeat(body: Optional[IdentityRequest] = None, relay: RelayService = Depends(get_relay_service)):
    body = body or IdentityRequest()
    return relay.heartbeat(body.project_id, body.session_id)


@app.get("/plugin/status")
async def plugin_status(
    project_id: Optional[str] = None,
    session_id: Optional[str] = None,
    relay: RelayService = Depends(get_relay_service),
):
    return relay.status(project_id, session_id)


# === quota ===
@app.get("/usage")
async def get_usage(request: Request, response: Response, relay: RelayService = Depends(get_relay_service)):
    return relay.usage(get_or_set_uid(request, response))


@app.post("/usage/use")
async def use_quota(
    request: Request,
    response: Response,
    body: Optional[UseRequest] = None,
    relay: RelayService = Depends(get_relay_service),
):
    amount = max(1, (body.amount if body and body.amount else 1))
    return relay.use(get_or_set_uid(request, response), amount)


@app.post("/redeem")
async def redeem(
    body: RedeemRequest,
    request: Request,
    response: Response,
    relay: RelayService = Depends(get_relay_service),
):
    uid = get_or_set_uid(request, response)
    result = relay.redeem_code(uid, body.code)
    return {**result, "usage": relay.usage(uid)}


# === projects ===
@app.get("/projects")
async def list_projects(relay: RelayService = Depends(get_relay_service)):
    return relay.projects.projects()


@app.post("/projects")
async def create_project(body: Optional[ProjectRequest] = None, relay: RelayService = Depends(get_relay_service)):
    return relay.projects.create_project(body.name if body else None)


# === health ===
@app.get("/health")
async def health(relay: RelayService = Depends(get_relay_service)):
    return {"status": "online", **relay.health()}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
