from __future__ import annotations

import inspect
import logging
import re
from typing import Any, Callable, Mapping, Optional, Union

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from .clock import now_ms
from .config import settings
from .metrics import JOINS_TOTAL
from .rate_limit import FixedWindowLimiter
from .results import OperationResult, infrastructure_failure
from .state import QuizSnapshot, SessionDocument
from .store import DataCallback, ErrorCallback, PinAllocationError, SessionNotFoundError, SessionStore

logger = logging.getLogger("quizroom.sessions")

PIN_PATTERN = re.compile(r"^\d{4}$")
HOST_EDITABLE_FIELDS = frozenset({"allow_late_join", "leaderboard_id", "leaderboard_name"})


def validate_pin(pin: Optional[str]) -> Optional[str]:
    if not pin or not isinstance(pin, str):
        return "PIN is required"
    if not PIN_PATTERN.match(pin):
        return "PIN must be exactly 4 digits"
    return None


def clean_player_name(name: Optional[str]) -> str:
    if not name or not isinstance(name, str):
        return ""
    return "".join(ch for ch in name if ch.isprintable()).strip()


def validate_player_name(name: str) -> Optional[str]:
    if not name:
        return "Name is required"
    if len(name) > settings.max_name_length:
        return f"Name must be {settings.max_name_length} characters or less"
    return None


def validate_quiz(quiz: QuizSnapshot) -> Optional[str]:
    if not quiz.questions:
        return "Invalid quiz: must have at least one question"
    for number, question in enumerate(quiz.questions, start=1):
        if len(question.options) != 4:
            return f"Invalid quiz: question {number} must have exactly 4 options"
        if not 0 <= question.correct < len(question.options):
            return f"Invalid quiz: question {number} has no valid correct option"
    return None


async def run_change(
    store: SessionStore,
    pin: str,
    change: Callable[[SessionDocument], OperationResult],
    *,
    event: str,
    fallback: str,
    not_found: str = "Session not found",
) -> OperationResult:
    """Apply ``change`` under the room lock and fold store faults into a result."""
    try:
        _, result = await store.mutate(pin, change)
    except SessionNotFoundError:
        return OperationResult.fail(not_found, status_code=404)
    except SQLAlchemyError:
        return infrastructure_failure(logger, event, fallback, pin=pin)
    return result


class SessionService:
    """Room lifecycle and membership rules."""

    def __init__(
        self,
        store: SessionStore,
        limiter: Optional[FixedWindowLimiter] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.store = store
        self.limiter = limiter or FixedWindowLimiter()
        self._clock = clock or now_ms

    def _reject_join(self, pin: Optional[str], reason: str, error: str, status_code: int) -> OperationResult:
        JOINS_TOTAL.labels(outcome=reason).inc()
        logger.info("Join rejected", extra={"event": "join_rejected", "pin": pin, "reason": reason})
        return OperationResult.fail(error, status_code=status_code)

    # ---------- lifecycle ----------
    async def create_session(
        self,
        quiz: Union[QuizSnapshot, Mapping[str, Any]],
        host_id: Optional[str] = None,
        leaderboard_id: Optional[str] = None,
        leaderboard_name: Optional[str] = None,
    ) -> OperationResult:
        try:
            # Always validated from a dump so the session owns an independent copy.
            raw = quiz.model_dump() if isinstance(quiz, QuizSnapshot) else quiz
            snapshot = QuizSnapshot.model_validate(raw)
        except ValidationError:
            return OperationResult.fail("Invalid quiz: malformed quiz payload")

        error = validate_quiz(snapshot)
        if error:
            return OperationResult.fail(error)

        created_at = self._clock()

        def build(pin: str) -> SessionDocument:
            return SessionDocument(
                pin=pin,
                quiz=snapshot.model_copy(deep=True),
                host_id=host_id,
                created_at=created_at,
                leaderboard_id=leaderboard_id,
                leaderboard_name=leaderboard_name,
            )

        try:
            document = await self.store.create(build, attempts=settings.pin_attempts)
        except PinAllocationError:
            logger.error("PIN space exhausted", extra={"event": "pin_allocation_failed"})
            return OperationResult.fail("Could not allocate a unique PIN", status_code=503)
        except SQLAlchemyError:
            return infrastructure_failure(logger, "session_create_failed", "Failed to create session")

        logger.info("Session created", extra={"event": "session_created", "pin": document.pin})
        return OperationResult.ok(pin=document.pin, session=document.snapshot(viewer_is_host=True))

    async def get_session(self, pin: str, viewer_id: Optional[str] = None) -> OperationResult:
        error = validate_pin(pin)
        if error:
            return OperationResult.fail(error)
        try:
            document = self.store.load(pin)
        except SQLAlchemyError:
            return infrastructure_failure(logger, "session_get_failed", "Failed to get session", pin=pin)
        if document is None:
            return OperationResult.fail("Session not found", status_code=404)
        is_host = viewer_id is not None and viewer_id == document.host_id
        return OperationResult.ok(session=document.snapshot(viewer_is_host=is_host))

    async def delete_session(self, pin: str) -> OperationResult:
        if not pin:
            return OperationResult.fail("PIN is required")
        try:
            deleted = await self.store.delete(pin)
        except SQLAlchemyError:
            return infrastructure_failure(logger, "session_delete_failed", "Failed to delete session", pin=pin)
        if deleted:
            logger.info("Session deleted", extra={"event": "session_deleted", "pin": pin})
        return OperationResult.ok(deleted=deleted)

    async def subscribe(
        self,
        pin: str,
        on_data: DataCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Callable[[], None]:
        if not pin:
            if on_error is not None:
                outcome = on_error(ValueError("PIN is required"))
                if inspect.isawaitable(outcome):
                    await outcome
            return lambda: None
        return await self.store.subscribe(pin, on_data, on_error)

    # ---------- membership ----------
    async def join_session(
        self,
        pin: str,
        name: str,
        user_id: str,
        client_key: str = "local",
    ) -> OperationResult:
        """Admit ``user_id`` to the room under ``name``.

        Gates run in a fixed order and the first failing one decides the
        error. The join limiter is keyed by the caller's address, so switching
        identities does not buy extra PIN guesses.
        """
        limiter_key = f"session-join:{client_key}"
        limit = self.limiter.check(limiter_key, settings.join_max_attempts, settings.join_window_ms)
        if not limit.allowed:
            return self._reject_join(
                pin,
                "rate_limited",
                f"Too many join attempts. Please wait {limit.reset_in} seconds.",
                429,
            )

        error = validate_pin(pin)
        if error:
            return self._reject_join(pin, "invalid_pin", error, 400)

        display_name = clean_player_name(name)
        error = validate_player_name(display_name)
        if error:
            return self._reject_join(pin, "invalid_name", error, 400)

        if not user_id:
            return self._reject_join(pin, "missing_user", "User ID is required", 400)

        def change(document: SessionDocument) -> OperationResult:
            if document.status != "lobby" and not document.allow_late_join:
                return self._reject_join(
                    pin, "late_join_disabled", "Game already in progress. Late joining is disabled.", 409
                )
            if user_id in document.banned_users:
                return self._reject_join(pin, "banned", "You have been removed from this game.", 403)

            key = display_name.lower()
            for uid, existing in document.players.items():
                if uid != user_id and existing.strip().lower() == key:
                    return self._reject_join(
                        pin, "name_taken", "This name is already taken. Please choose a different name.", 409
                    )

            document.players[user_id] = display_name
            document.scores[user_id] = document.scores.get(user_id, 0)
            return OperationResult.ok(
                pin=pin,
                name=display_name,
                session=document.snapshot(),
                should_wait=document.status == "lobby",
            )

        try:
            _, result = await self.store.mutate(pin, change)
        except SessionNotFoundError:
            return self._reject_join(pin, "not_found", "PIN not found!", 404)
        except SQLAlchemyError:
            JOINS_TOTAL.labels(outcome="error").inc()
            return infrastructure_failure(logger, "session_join_failed", "Failed to join session", pin=pin)

        if result.success:
            self.limiter.reset(limiter_key)
            JOINS_TOTAL.labels(outcome="joined").inc()
            logger.info(
                "Player joined session",
                extra={"event": "session_joined", "pin": pin, "player_id": user_id},
            )
        return result

    async def recover_session(self, pin: str, user_id: str) -> OperationResult:
        if validate_pin(pin) or not user_id:
            return OperationResult.fail("Invalid saved session data")
        try:
            document = self.store.load(pin)
        except SQLAlchemyError:
            return infrastructure_failure(logger, "session_recover_failed", "Failed to recover session", pin=pin)
        if document is None:
            return OperationResult.fail("Saved session no longer exists", status_code=404)
        if not document.is_member(user_id):
            return OperationResult.fail("You are no longer in this session", status_code=403)
        return OperationResult.ok(pin=pin, name=document.players[user_id], session=document.snapshot())

    async def kick_player(self, pin: str, user_id: str) -> OperationResult:
        if not pin or not user_id:
            return OperationResult.fail("PIN and userId are required")

        def change(document: SessionDocument) -> OperationResult:
            if user_id not in document.banned_users:
                document.banned_users.append(user_id)
            document.remove_player(user_id)
            return OperationResult.ok()

        result = await run_change(self.store, pin, change, event="session_kick_failed", fallback="Failed to kick player")
        if result.success:
            logger.info("Player kicked", extra={"event": "player_kicked", "pin": pin, "player_id": user_id})
        return result

    async def leave_session(self, pin: str, user_id: str) -> OperationResult:
        if not pin or not user_id:
            return OperationResult.fail("PIN and userId are required")

        def change(document: SessionDocument) -> OperationResult:
            document.remove_player(user_id)
            return OperationResult.ok()

        return await run_change(self.store, pin, change, event="session_leave_failed", fallback="Failed to leave session")

    async def toggle_late_join(self, pin: str, allow: bool) -> OperationResult:
        if not pin:
            return OperationResult.fail("PIN is required")

        def change(document: SessionDocument) -> OperationResult:
            document.allow_late_join = bool(allow)
            return OperationResult.ok(allow_late_join=document.allow_late_join)

        return await run_change(
            self.store, pin, change, event="late_join_toggle_failed", fallback="Failed to toggle late join"
        )

    async def update_session(self, pin: str, updates: Mapping[str, Any]) -> OperationResult:
        if not pin:
            return OperationResult.fail("PIN is required")
        if not updates:
            return OperationResult.fail("No updates provided")
        unsupported = sorted(set(updates) - HOST_EDITABLE_FIELDS)
        if unsupported:
            return OperationResult.fail(f"Unsupported update field: {', '.join(unsupported)}")

        def change(document: SessionDocument) -> OperationResult:
            if "allow_late_join" in updates:
                document.allow_late_join = bool(updates["allow_late_join"])
            if "leaderboard_id" in updates:
                document.leaderboard_id = updates["leaderboard_id"] or None
            if "leaderboard_name" in updates:
                document.leaderboard_name = updates["leaderboard_name"] or None
            return OperationResult.ok()

        return await run_change(self.store, pin, change, event="session_update_failed", fallback="Failed to update session")
