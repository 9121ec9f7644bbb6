from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hmac
from typing import Any, Optional
import uuid

from fastapi import Header, HTTPException, WebSocket
import jwt

from .config import settings


@dataclass(frozen=True)
class AuthContext:
    player_id: str
    nickname: str
    is_admin: bool


def create_access_token(player_id: str, nickname: str, is_admin: bool = False) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": player_id,
        "nickname": nickname,
        "is_admin": is_admin,
        "iat": now,
        "exp": now + timedelta(minutes=settings.jwt_exp_minutes),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def issue_guest_identity(nickname: str, host_key: Optional[str] = None) -> dict[str, Any]:
    """Mint an anonymous identity; hosts additionally prove the shared host key."""
    player_id = str(uuid.uuid4())
    is_admin = bool(
        nickname.lower() in settings.admin_nicknames
        and host_key
        and hmac.compare_digest(host_key, settings.host_access_key)
    )
    return {
        "user_id": player_id,
        "nickname": nickname,
        "is_admin": is_admin,
        "access_token": create_access_token(player_id, nickname, is_admin=is_admin),
        "token_type": "bearer",
    }


def decode_token(token: str) -> AuthContext:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(status_code=401, detail="Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    player_id = payload.get("sub")
    nickname = payload.get("nickname")
    if not player_id or not nickname:
        raise HTTPException(status_code=401, detail="Malformed token payload")

    return AuthContext(player_id=player_id, nickname=nickname, is_admin=bool(payload.get("is_admin", False)))


def get_bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")

    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid Authorization header")
    return parts[1].strip()


def auth_context_from_header(authorization: Optional[str] = Header(default=None)) -> AuthContext:
    return decode_token(get_bearer_token(authorization))


def optional_auth_context(authorization: Optional[str] = Header(default=None)) -> Optional[AuthContext]:
    if not authorization:
        return None
    return decode_token(get_bearer_token(authorization))


def require_admin(auth: AuthContext) -> AuthContext:
    if not auth.is_admin:
        raise HTTPException(status_code=403, detail="Host privileges required")
    return auth


def token_from_websocket(websocket: WebSocket) -> str:
    query_token = websocket.query_params.get("token")
    if query_token:
        return query_token

    auth_header = websocket.headers.get("authorization")
    if auth_header and auth_header.lower().startswith("bearer "):
        return auth_header.split(" ", 1)[1].strip()

    raise HTTPException(status_code=401, detail="WebSocket token is missing")
