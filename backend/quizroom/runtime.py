"""Process-wide service instances shared by the HTTP and WebSocket layers."""

from __future__ import annotations

from .game_service import GameService
from .leaderboard_service import LeaderboardService
from .rate_limit import FixedWindowLimiter, SlidingWindowLimiter
from .session_service import SessionService
from .store import SessionStore
from .ws_manager import ConnectionManager

store = SessionStore()
game_limiter = FixedWindowLimiter()
leaderboards = LeaderboardService()
sessions = SessionService(store, limiter=game_limiter)
game = GameService(store, leaderboards=leaderboards, limiter=game_limiter)
ws_manager = ConnectionManager()
http_rate_limiter = SlidingWindowLimiter()
