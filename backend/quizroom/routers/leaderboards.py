from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from ..runtime import leaderboards
from ..schemas import LeaderboardCreateRequest, LeaderboardRenameRequest
from ..security import AuthContext, auth_context_from_header, require_admin
from .sessions import respond

router = APIRouter(prefix="/leaderboards", tags=["leaderboards"])


@router.post("")
async def create_leaderboard(
    payload: LeaderboardCreateRequest,
    auth: AuthContext = Depends(auth_context_from_header),
) -> JSONResponse:
    require_admin(auth)
    return respond(leaderboards.create_leaderboard(payload.name, course=payload.course, year=payload.year))


@router.get("")
async def list_leaderboards() -> JSONResponse:
    return respond(leaderboards.list_leaderboards())


@router.get("/{leaderboard_id}")
async def get_leaderboard(
    leaderboard_id: str,
    limit: Optional[int] = Query(default=None, ge=1, le=100),
) -> JSONResponse:
    return respond(leaderboards.get_leaderboard(leaderboard_id, limit=limit))


@router.patch("/{leaderboard_id}")
async def rename_leaderboard(
    leaderboard_id: str,
    payload: LeaderboardRenameRequest,
    auth: AuthContext = Depends(auth_context_from_header),
) -> JSONResponse:
    require_admin(auth)
    return respond(leaderboards.rename_leaderboard(leaderboard_id, payload.name))


@router.delete("/{leaderboard_id}")
async def delete_leaderboard(
    leaderboard_id: str,
    auth: AuthContext = Depends(auth_context_from_header),
) -> JSONResponse:
    require_admin(auth)
    return respond(leaderboards.delete_leaderboard(leaderboard_id))


@router.post("/{leaderboard_id}/flush")
async def flush_leaderboard(
    leaderboard_id: str,
    auth: AuthContext = Depends(auth_context_from_header),
) -> JSONResponse:
    require_admin(auth)
    return respond(leaderboards.flush_leaderboard(leaderboard_id))
