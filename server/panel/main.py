from fastapi import FastAPI, Header, HTTPException, Request, Depends, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from datetime import datetime
from typing import Optional
import asyncio
import contextlib
import json
import logging
import os

import jwt
import uvicorn

from .config import get_settings
from .core.errors import PanelError
from .core.logging_config import setup_logging
from .core.security import create_access_token, decode_token, verify_password, verify_signature
from .db.models import utcnow
from .db.session import init_db
from .monitoring.analytics import render_snapshot
from .schemas.protocol import HeartbeatPayload, HostRequest, LoginRequest
from .services import Services, build_services, maintenance_loop

logger = logging.getLogger(__name__)

app = FastAPI(title="Agent Panel API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)


@app.on_event("startup")
async def _startup():
    # tests install their own services before the app starts
    if getattr(app.state, "services", None) is None:
        settings = get_settings()
        setup_logging("panel", settings.log_level)
        app.state.services = build_services(settings, publish=ws_broadcast)
    services: Services = app.state.services
    init_db(services.engine)
    app.state.maintenance = asyncio.create_task(maintenance_loop(services.store, services.settings))
    logger.info("Agent panel started")


@app.on_event("shutdown")
async def _shutdown():
    task = getattr(app.state, "maintenance", None)
    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    await app.state.services.orchestrator.aclose()


@app.exception_handler(PanelError)
async def _panel_error(request: Request, exc: PanelError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def get_services(request: Request) -> Services:
    return request.app.state.services


@app.get("/api/health")
def api_health():
    return {"status": "ok", "time": utcnow().isoformat()}


# --------- Auth (UI) ---------

def require_user(
    services: Services = Depends(get_services),
    authorization: str | None = Header(default=None, alias="Authorization"),
    token: str | None = Query(default=None),
):
    settings = services.settings
    tok: str | None = None
    if authorization and authorization.lower().startswith("bearer "):
        tok = authorization.split(" ", 1)[1].strip()
    elif token:
        tok = token
    if not tok:
        raise HTTPException(status_code=401, detail="Missing token")
    try:
        data = decode_token(tok, settings.jwt_secret)
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if not data or data.get("sub") != settings.ui_user:
        raise HTTPException(status_code=401, detail="Invalid token")
    return settings.ui_user


@app.post("/api/auth/login")
async def auth_login(payload: LoginRequest, services: Services = Depends(get_services)):
    settings = services.settings
    if not settings.jwt_secret:
        raise HTTPException(status_code=503, detail="Authentication is not configured")
    if not settings.ui_user or payload.username != settings.ui_user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if settings.ui_password_hash:
        ok = verify_password(payload.password, settings.ui_password_hash, True)
    else:
        ok = verify_password(payload.password, settings.ui_password, False)
    if not ok:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token(subject=settings.ui_user, secret=settings.jwt_secret)
    return {"token": token}


# --------- Agent lifecycle ---------

@app.get("/api/agent/status")
async def agent_status(host_id: str = Query(..., min_length=1), user: str = Depends(require_user), services: Services = Depends(get_services)):
    status = await services.orchestrator.check_agent_status(host_id)
    return status.model_dump(by_alias=True)


@app.get("/api/agent/status/cached")
def agent_status_cached(host_id: str = Query(..., min_length=1), user: str = Depends(require_user), services: Services = Depends(get_services)):
    status = services.orchestrator.cached_status(host_id)
    if status is None:
        raise HTTPException(status_code=404, detail="No status cached for host")
    return status.model_dump(by_alias=True)


@app.post("/api/agent/install")
async def agent_install(body: HostRequest, user: str = Depends(require_user), services: Services = Depends(get_services)):
    accepted = await services.orchestrator.install_agent(body.host_id)
    return accepted.model_dump(by_alias=True)


@app.post("/api/agent/uninstall")
async def agent_uninstall(body: HostRequest, user: str = Depends(require_user), services: Services = Depends(get_services)):
    accepted = await services.orchestrator.uninstall_agent(body.host_id)
    return accepted.model_dump(by_alias=True)


@app.post("/api/agent/start")
async def agent_start(body: HostRequest, user: str = Depends(require_user), services: Services = Depends(get_services)):
    accepted = await services.orchestrator.start_agent(body.host_id)
    return accepted.model_dump(by_alias=True)


@app.post("/api/agent/stop")
async def agent_stop(body: HostRequest, user: str = Depends(require_user), services: Services = Depends(get_services)):
    accepted = await services.orchestrator.stop_agent(body.host_id)
    return accepted.model_dump(by_alias=True)


@app.post("/api/agent/ensure-running", status_code=202)
async def agent_ensure_running(body: HostRequest, user: str = Depends(require_user), services: Services = Depends(get_services)):
    services.orchestrator.schedule_ensure_running(body.host_id)
    return {"accepted": True, "hostId": body.host_id}


@app.get("/api/agent/progress")
def agent_progress(host_id: str = Query(..., min_length=1), user: str = Depends(require_user), services: Services = Depends(get_services)):
    progress = services.orchestrator.get_progress(host_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="No progress recorded for host")
    return progress.model_dump(by_alias=True, mode="json")


@app.get("/api/agent/commands/{command_id}")
async def agent_command(command_id: str, host_id: str = Query(..., min_length=1), user: str = Depends(require_user), services: Services = Depends(get_services)):
    status = await services.orchestrator.poll_command(command_id, host_id)
    return {
        "commandId": status.command_id,
        "status": status.state.value,
        "output": status.output,
        "error": status.error_text,
    }


@app.get("/api/agent/commands")
def agent_commands(host_id: str = Query(..., min_length=1), limit: int = Query(50, ge=1, le=500), user: str = Depends(require_user), services: Services = Depends(get_services)):
    return [c.model_dump(by_alias=True, mode="json") for c in services.orchestrator.list_commands(host_id, limit=limit)]


@app.get("/api/agent/machine-id")
async def agent_machine_id(host_id: str = Query(..., min_length=1), user: str = Depends(require_user), services: Services = Depends(get_services)):
    return {"machineId": await services.orchestrator.get_machine_id(host_id)}


# --------- Analytics & metrics ---------

@app.get("/api/analytics")
async def analytics(host_id: str = Query(..., min_length=1), user: str = Depends(require_user), services: Services = Depends(get_services)):
    snapshot = await services.orchestrator.get_analytics(host_id)
    return render_snapshot(snapshot)


@app.get("/api/system-metrics")
async def system_metrics(host_id: str = Query(..., min_length=1), top: int = Query(20), user: str = Depends(require_user), services: Services = Depends(get_services)):
    return await services.orchestrator.get_system_metrics(host_id, top)


# --------- Heartbeats ---------

@app.post("/api/monitoring/heartbeat")
async def heartbeat(
    request: Request,
    services: Services = Depends(get_services),
    x_agent_id: str | None = Header(default=None, alias="X-Agent-Id"),
    x_signature: str | None = Header(default=None, alias="X-Signature"),
):
    raw = await request.body()
    if not x_agent_id or not x_signature:
        raise HTTPException(status_code=400, detail="Missing authentication headers")

    if not verify_signature(x_signature, raw, services.settings.server_psk):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = HeartbeatPayload.model_validate_json(raw)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Invalid payload")

    if payload.host_id != x_agent_id:
        raise HTTPException(status_code=400, detail="Agent ID mismatch")

    record = await services.orchestrator.record_heartbeat(payload.host_id, payload)
    return {"status": "ok", "timestamp": record.timestamp.isoformat()}


@app.post("/api/monitoring/pull/{host_id}")
async def pull_heartbeat(host_id: str, user: str = Depends(require_user), services: Services = Depends(get_services)):
    record = await services.orchestrator.pull_heartbeat(host_id)
    return {
        "online": record is not None,
        "heartbeat": record.model_dump(by_alias=True, mode="json") if record else None,
    }


@app.get("/api/monitoring/heartbeats/{host_id}/latest")
def latest_heartbeat(host_id: str, user: str = Depends(require_user), services: Services = Depends(get_services)):
    record = services.orchestrator.get_latest_heartbeat(host_id)
    if record is None:
        raise HTTPException(status_code=404, detail="No heartbeat recorded for host")
    return record.model_dump(by_alias=True, mode="json")


@app.get("/api/monitoring/heartbeats/{host_id}/summary")
def heartbeat_summary(
    host_id: str,
    start: datetime = Query(...),
    end: datetime = Query(...),
    user: str = Depends(require_user),
    services: Services = Depends(get_services),
):
    summary = services.orchestrator.get_metrics_summary(host_id, start, end)
    if summary is None:
        raise HTTPException(status_code=404, detail="No metrics found for this host")
    return summary.model_dump(by_alias=True)


@app.get("/api/monitoring/heartbeats")
def list_heartbeats(
    host_id: str = Query(..., min_length=1),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    limit: int = Query(100, ge=1, le=1000),
    user: str = Depends(require_user),
    services: Services = Depends(get_services),
):
    records = services.store.query(host_id, start=start, end=end, limit=limit)
    return [r.model_dump(by_alias=True, mode="json") for r in records]


@app.get("/api/monitoring/online")
def online_hosts(user: str = Depends(require_user), services: Services = Depends(get_services)):
    return {
        "hosts": services.orchestrator.list_online_hosts(),
        "windowSeconds": services.settings.liveness_window_seconds,
    }


# --------- WebSocket push ---------
_ws_clients: set[WebSocket] = set()


@app.websocket("/api/ws")
async def websocket_endpoint(ws: WebSocket):
    # Simple token via query param ?token=
    settings = ws.app.state.services.settings
    token = ws.query_params.get("token")
    try:
        data = decode_token(token, settings.jwt_secret) if token else None
    except jwt.PyJWTError:
        data = None
    if not data or data.get("sub") != settings.ui_user:
        await ws.close(code=4401)
        return
    await ws.accept()
    _ws_clients.add(ws)
    try:
        while True:
            await ws.receive_text()  # no-op; keepalive if needed
    except WebSocketDisconnect:
        pass
    finally:
        _ws_clients.discard(ws)


async def ws_broadcast(message: dict):
    if not _ws_clients:
        return
    dead: list[WebSocket] = []
    text = json.dumps(message)
    for ws in list(_ws_clients):
        try:
            await ws.send_text(text)
        except Exception:
            dead.append(ws)
    for ws in dead:
        _ws_clients.discard(ws)


def run():
    uvicorn.run("panel.main:app", host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
