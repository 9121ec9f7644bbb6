"""Shared session document store.

One row per room holds the JSON session document. Every mutation of a room
runs under that room's ``asyncio.Lock``, so a read-check-write sequence such as
the countdown guard behaves as a compare-and-set. Subscribers are notified in
write order once the change has been committed.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import inspect
import itertools
import json
import logging
import secrets
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import get_db
from .metrics import ACTIVE_SESSIONS, ACTIVE_SUBSCRIPTIONS
from .models import utcnow
from .state import SessionDocument

logger = logging.getLogger("quizroom.store")

T = TypeVar("T")

DataCallback = Callable[[SessionDocument], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[Exception], Union[None, Awaitable[None]]]


class SessionNotFoundError(LookupError):
    def __init__(self, pin: str) -> None:
        super().__init__("Session not found")
        self.pin = pin


class PinAllocationError(RuntimeError):
    pass


def generate_pin() -> str:
    return str(1000 + secrets.randbelow(9000))


@dataclass
class _Subscription:
    on_data: DataCallback
    on_error: Optional[ErrorCallback]


async def _invoke(callback: Callable[..., Any], *args: Any) -> None:
    outcome = callback(*args)
    if inspect.isawaitable(outcome):
        await outcome


class SessionStore:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._subscribers: dict[str, dict[int, _Subscription]] = {}
        self._ids = itertools.count(1)

    def _lock(self, pin: str) -> asyncio.Lock:
        lock = self._locks.get(pin)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[pin] = lock
        return lock

    # ---------- persistence ----------
    def _read(self, session: Session, pin: str) -> Optional[SessionDocument]:
        row = session.execute(
            text("SELECT document FROM sessions WHERE pin = :pin"),
            {"pin": pin},
        ).mappings().first()
        if not row:
            return None
        return SessionDocument.model_validate(json.loads(row["document"]))

    def _write(self, session: Session, document: SessionDocument) -> None:
        session.execute(
            text(
                """
                UPDATE sessions
                SET document = :document,
                    status = :status,
                    version = version + 1,
                    updated_at = :updated_at
                WHERE pin = :pin
                """
            ),
            {
                "document": document.model_dump_json(),
                "status": document.status,
                "updated_at": utcnow(),
                "pin": document.pin,
            },
        )

    def load(self, pin: str) -> Optional[SessionDocument]:
        with get_db() as session:
            return self._read(session, pin)

    # ---------- lifecycle ----------
    async def create(
        self,
        build: Callable[[str], SessionDocument],
        attempts: int,
    ) -> SessionDocument:
        for _ in range(attempts):
            pin = generate_pin()
            document = build(pin)
            try:
                with get_db() as session:
                    session.execute(
                        text(
                            """
                            INSERT INTO sessions (pin, status, host_id, document, version, created_at, updated_at)
                            VALUES (:pin, :status, :host_id, :document, 1, :created_at, :updated_at)
                            """
                        ),
                        {
                            "pin": pin,
                            "status": document.status,
                            "host_id": document.host_id,
                            "document": document.model_dump_json(),
                            "created_at": utcnow(),
                            "updated_at": utcnow(),
                        },
                    )
            except IntegrityError:
                logger.info("PIN collision, retrying", extra={"event": "pin_collision", "pin": pin})
                continue
            ACTIVE_SESSIONS.inc()
            return document

        raise PinAllocationError("Could not allocate a unique PIN")

    async def mutate(
        self,
        pin: str,
        change: Callable[[SessionDocument], T],
    ) -> tuple[SessionDocument, T]:
        """Apply ``change`` to the current document of ``pin`` under its lock.

        The document is persisted and subscribers notified only when
        ``change`` actually modified it. Callbacks must not mutate the same
        session synchronously.
        """
        async with self._lock(pin):
            with get_db() as session:
                document = self._read(session, pin)
                if document is None:
                    raise SessionNotFoundError(pin)
                original = document.model_copy(deep=True)
                outcome = change(document)
                changed = document != original
                if changed:
                    self._write(session, document)

            if changed:
                await self._notify(pin, document)
            return document, outcome

    async def delete(self, pin: str) -> bool:
        async with self._lock(pin):
            with get_db() as session:
                deleted = session.execute(
                    text("DELETE FROM sessions WHERE pin = :pin"),
                    {"pin": pin},
                ).rowcount
            if not deleted:
                return False

            ACTIVE_SESSIONS.dec()
            subscribers = self._subscribers.pop(pin, {})
            ACTIVE_SUBSCRIPTIONS.dec(len(subscribers))
            for subscription in list(subscribers.values()):
                if subscription.on_error is None:
                    continue
                try:
                    await _invoke(subscription.on_error, SessionNotFoundError(pin))
                except Exception:
                    logger.exception(
                        "Subscriber error callback failed",
                        extra={"event": "subscriber_error_failed", "pin": pin},
                    )
        self._locks.pop(pin, None)
        return True

    # ---------- change notification ----------
    async def subscribe(
        self,
        pin: str,
        on_data: DataCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Callable[[], None]:
        """Register for pushes of ``pin``; the current document is delivered first."""
        try:
            document = self.load(pin)
        except Exception as exc:
            logger.exception("Session subscription failed", extra={"event": "subscribe_failed", "pin": pin})
            if on_error is not None:
                await _invoke(on_error, exc)
            return lambda: None

        if document is None:
            if on_error is not None:
                await _invoke(on_error, SessionNotFoundError(pin))
            return lambda: None

        subscription_id = next(self._ids)
        self._subscribers.setdefault(pin, {})[subscription_id] = _Subscription(on_data, on_error)
        ACTIVE_SUBSCRIPTIONS.inc()
        await _invoke(on_data, document)

        def unsubscribe() -> None:
            room = self._subscribers.get(pin)
            if room and room.pop(subscription_id, None) is not None:
                ACTIVE_SUBSCRIPTIONS.dec()
                if not room:
                    self._subscribers.pop(pin, None)

        return unsubscribe

    async def _notify(self, pin: str, document: SessionDocument) -> None:
        for subscription in list(self._subscribers.get(pin, {}).values()):
            try:
                await _invoke(subscription.on_data, document)
            except Exception:
                logger.exception(
                    "Subscriber push failed",
                    extra={"event": "subscriber_push_failed", "pin": pin},
                )

    def subscriber_count(self, pin: str) -> int:
        return len(self._subscribers.get(pin, {}))
