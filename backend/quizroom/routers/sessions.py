from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from ..results import OperationResult
from ..runtime import game, sessions, store, ws_manager
from ..schemas import (
    AnswerRequest,
    CreateSessionRequest,
    JoinRequest,
    KickRequest,
    LateJoinRequest,
    ReactionRequest,
    SessionUpdateRequest,
)
from ..security import AuthContext, auth_context_from_header, optional_auth_context, require_admin

router = APIRouter(prefix="/sessions", tags=["sessions"])


def respond(result: OperationResult) -> JSONResponse:
    return JSONResponse(status_code=result.status_code, content=result.to_payload())


def client_ip(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def require_session_host(pin: str, auth: AuthContext) -> AuthContext:
    """Host-only routes are open to the session's creator and to admins.

    A missing session passes through so the service reports it.
    """
    document = store.load(pin)
    if document is not None and document.host_id != auth.player_id and not auth.is_admin:
        raise HTTPException(status_code=403, detail="Only the host can do this")
    return auth


@router.post("")
async def create_session(
    payload: CreateSessionRequest,
    auth: AuthContext = Depends(auth_context_from_header),
) -> JSONResponse:
    require_admin(auth)
    result = await sessions.create_session(
        quiz=payload.quiz.model_dump(),
        host_id=auth.player_id,
        leaderboard_id=payload.leaderboard_id,
        leaderboard_name=payload.leaderboard_name,
    )
    return respond(result)


@router.get("/{pin}")
async def get_session(pin: str, auth: Optional[AuthContext] = Depends(optional_auth_context)) -> JSONResponse:
    viewer_id = None
    if auth is not None:
        viewer_id = auth.player_id
    return respond(await sessions.get_session(pin, viewer_id=viewer_id))


@router.patch("/{pin}")
async def update_session(
    pin: str,
    payload: SessionUpdateRequest,
    auth: AuthContext = Depends(auth_context_from_header),
) -> JSONResponse:
    require_session_host(pin, auth)
    return respond(await sessions.update_session(pin, payload.model_dump(exclude_unset=True)))


@router.delete("/{pin}")
async def delete_session(pin: str, auth: AuthContext = Depends(auth_context_from_header)) -> JSONResponse:
    require_session_host(pin, auth)
    game.cancel_timers(pin)
    return respond(await sessions.delete_session(pin))


# ---------- membership ----------
@router.post("/{pin}/join")
async def join_session(
    pin: str,
    payload: JoinRequest,
    request: Request,
    auth: AuthContext = Depends(auth_context_from_header),
) -> JSONResponse:
    result = await sessions.join_session(pin, payload.name, auth.player_id, client_key=client_ip(request))
    return respond(result)


@router.post("/{pin}/leave")
async def leave_session(pin: str, auth: AuthContext = Depends(auth_context_from_header)) -> JSONResponse:
    return respond(await sessions.leave_session(pin, auth.player_id))


@router.post("/{pin}/recover")
async def recover_session(pin: str, auth: AuthContext = Depends(auth_context_from_header)) -> JSONResponse:
    return respond(await sessions.recover_session(pin, auth.player_id))


@router.post("/{pin}/kick")
async def kick_player(
    pin: str,
    payload: KickRequest,
    auth: AuthContext = Depends(auth_context_from_header),
) -> JSONResponse:
    require_session_host(pin, auth)
    result = await sessions.kick_player(pin, payload.user_id)
    if result.success:
        await ws_manager.kick(pin, payload.user_id)
    return respond(result)


@router.post("/{pin}/late-join")
async def toggle_late_join(
    pin: str,
    payload: LateJoinRequest,
    auth: AuthContext = Depends(auth_context_from_header),
) -> JSONResponse:
    require_session_host(pin, auth)
    return respond(await sessions.toggle_late_join(pin, payload.allow_late_join))


# ---------- game progression ----------
@router.post("/{pin}/start")
async def start_game(pin: str, auth: AuthContext = Depends(auth_context_from_header)) -> JSONResponse:
    require_session_host(pin, auth)
    return respond(await game.start_game(pin))


@router.post("/{pin}/question")
async def start_question(pin: str, auth: AuthContext = Depends(auth_context_from_header)) -> JSONResponse:
    require_session_host(pin, auth)
    return respond(await game.start_question_timer(pin))


@router.post("/{pin}/results")
async def show_results(pin: str, auth: AuthContext = Depends(auth_context_from_header)) -> JSONResponse:
    require_session_host(pin, auth)
    return respond(await game.show_question_results(pin))


@router.post("/{pin}/next")
async def next_question(pin: str, auth: AuthContext = Depends(auth_context_from_header)) -> JSONResponse:
    require_session_host(pin, auth)
    return respond(await game.next_question(pin))


@router.post("/{pin}/end")
async def end_game(pin: str, auth: AuthContext = Depends(auth_context_from_header)) -> JSONResponse:
    require_session_host(pin, auth)
    return respond(await game.end_game(pin))


@router.post("/{pin}/answer")
async def submit_answer(
    pin: str,
    payload: AnswerRequest,
    auth: AuthContext = Depends(auth_context_from_header),
) -> JSONResponse:
    return respond(await game.submit_answer(pin, auth.player_id, payload.answer_index))


@router.post("/{pin}/reactions")
async def send_reaction(
    pin: str,
    payload: ReactionRequest,
    auth: AuthContext = Depends(auth_context_from_header),
) -> JSONResponse:
    return respond(await game.send_reaction(pin, auth.player_id, payload.emoji))
