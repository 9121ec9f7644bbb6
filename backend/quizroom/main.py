from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging

from dotenv import load_dotenv
from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError
from sqlalchemy import text
from starlette.middleware.cors import CORSMiddleware

from .clock import now_ms
from .config import settings
from .db import check_db_connection, count_live_sessions, get_db, init_db
from .logging_utils import configure_logging
from .metrics import ACTIVE_SESSIONS, CONTENT_TYPE_LATEST, REQUESTS_TOTAL, generate_latest
from .routers.leaderboards import router as leaderboards_router
from .routers.sessions import client_ip, router as sessions_router
from .runtime import http_rate_limiter, sessions, ws_manager
from .schemas import GuestAuthRequest, GuestAuthResponse, WsPingMessage
from .security import decode_token, issue_guest_identity, token_from_websocket
from .state import SessionDocument
from .store import SessionNotFoundError

load_dotenv()
configure_logging()
logger = logging.getLogger("quizroom.app")

app = FastAPI(title="QuizRoom API", version="1.0.0")
api_router = APIRouter(prefix="/api")


@app.on_event("startup")
async def startup_event() -> None:
    check_db_connection()
    init_db()
    live = count_live_sessions()
    ACTIVE_SESSIONS.set(live)
    logger.info(
        "Backend startup complete",
        extra={
            "event": "startup",
            "db_backend": "sqlite" if settings.is_sqlite else "postgres",
        },
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_guard_middleware(request: Request, call_next):
    path = request.url.path
    method = request.method
    ip = client_ip(request)

    if not http_rate_limiter.allow(f"http:{ip}", settings.rate_limit_requests_per_min, 60):
        logger.warning("HTTP rate limit exceeded", extra={"event": "http_rate_limited", "ip": ip, "path": path})
        REQUESTS_TOTAL.labels(method=method, path=path, status="429").inc()
        return JSONResponse(status_code=429, content={"detail": "Rate limit exceeded"})

    response = await call_next(request)
    REQUESTS_TOTAL.labels(method=method, path=path, status=str(response.status_code)).inc()
    return response


@api_router.get("/")
async def root() -> dict[str, str]:
    return {"message": "QuizRoom API"}


@api_router.post("/auth/guest", response_model=GuestAuthResponse)
async def auth_guest(payload: GuestAuthRequest) -> GuestAuthResponse:
    return GuestAuthResponse(**issue_guest_identity(payload.nickname, payload.host_key))


@app.get("/health")
async def healthcheck() -> dict[str, str]:
    with get_db() as session:
        session.execute(text("SELECT 1"))
    return {"status": "ok", "ts": datetime.now(timezone.utc).isoformat()}


@app.get("/metrics")
async def metrics() -> Response:
    if not settings.enable_prometheus_metrics:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


api_router.include_router(sessions_router)
api_router.include_router(leaderboards_router)
app.include_router(api_router)


@app.websocket("/ws/sessions/{pin}")
async def session_socket(websocket: WebSocket, pin: str) -> None:
    """Push every committed change of ``pin`` to the connected viewer.

    Each push carries ``server_time`` so clients can re-anchor their clocks.
    Players receive the redacted snapshot; the host and admins see answers.
    """
    try:
        auth = decode_token(token_from_websocket(websocket))
    except HTTPException:
        await websocket.close(code=4401)
        return

    await ws_manager.connect(pin, auth.player_id, websocket)

    async def push(document: SessionDocument) -> None:
        if auth.player_id in document.banned_users:
            return
        is_host = auth.is_admin or document.host_id == auth.player_id
        await websocket.send_json(
            {"type": "session", "data": document.snapshot(viewer_is_host=is_host), "server_time": now_ms()}
        )

    closed = asyncio.Event()

    async def fail(exc: Exception) -> None:
        closed.set()
        detail = str(exc) if isinstance(exc, (SessionNotFoundError, ValueError)) else "Subscription failed"
        await websocket.send_json({"type": "error", "detail": detail})
        await websocket.close(code=4404)

    unsubscribe = await sessions.subscribe(pin, push, fail)
    if closed.is_set():
        unsubscribe()
        await ws_manager.disconnect(pin, auth.player_id, websocket)
        return

    try:
        while True:
            try:
                message = await asyncio.wait_for(websocket.receive_json(), timeout=45)
            except asyncio.TimeoutError:
                await websocket.send_json({"type": "ping", "server_time": now_ms()})
                continue

            try:
                WsPingMessage.model_validate(message)
            except ValidationError:
                await websocket.send_json({"type": "error", "detail": "Unsupported message type"})
                continue
            await websocket.send_json({"type": "pong", "server_time": now_ms()})
    except WebSocketDisconnect:
        pass
    finally:
        unsubscribe()
        await ws_manager.disconnect(pin, auth.player_id, websocket)
