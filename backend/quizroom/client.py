"""Client-side view logic for host and player screens, without rendering.

``SessionObserver`` consumes the messages pushed on the session socket and
derives everything a screen needs to decide what to show: the phase, the
remaining time, whether this player already answered, how many reactions are
left, which reactions are on screen, and whether the player was removed.
``RecoveryPointer`` remembers the last joined room on disk so a reloaded
client can rejoin.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Union

from .clock import ClockSync, convert_server_time, now_ms
from .config import settings

logger = logging.getLogger("quizroom.client")

ROUND_PHASES = frozenset({"countdown", "question"})


class SessionObserver:
    def __init__(
        self,
        user_id: str,
        is_host: bool = False,
        clock: Optional[ClockSync] = None,
        local_clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.user_id = user_id
        self.is_host = is_host
        self._local_clock = local_clock or now_ms
        self.clock = clock or ClockSync(local_clock=self._local_clock)

        self.session: Optional[dict[str, Any]] = None
        self.phase: Optional[str] = None
        self.current_question = 0
        self.answered = False
        self.player_answer: Optional[int] = None
        self.reaction_count = 0
        self.kicked = False
        self.ended = False
        self.last_error: Optional[str] = None
        self.predicted_question_start: Optional[int] = None

        self._seen_reactions: set[str] = set()
        self._visible_reactions: dict[str, tuple[dict[str, Any], int]] = {}

    # ---------- inbound ----------
    def handle_message(self, message: Mapping[str, Any]) -> list[str]:
        kind = message.get("type")
        if kind == "session":
            return self.apply_snapshot(message.get("data") or {}, message.get("server_time"))
        if kind == "kicked":
            return self._mark_kicked()
        if kind == "error":
            self.last_error = message.get("detail")
            if self.last_error == "Session not found":
                self.ended = True
                return ["ended"]
            return ["error"]
        if kind in {"ping", "pong"}:
            self.clock.sync_clock_offset(message.get("server_time"))
        return []

    def apply_snapshot(self, data: Mapping[str, Any], server_time: Any = None) -> list[str]:
        """Fold one pushed snapshot into local state and report what changed."""
        self.clock.sync_clock_offset(server_time)

        if not self.is_host and self.user_id in (data.get("banned_users") or []):
            return self._mark_kicked()

        events: list[str] = []
        previous = self.phase
        phase = data.get("status") or "lobby"

        if not self.is_host and phase in ROUND_PHASES and previous not in ROUND_PHASES:
            self.answered = False
            self.player_answer = None
            self.reaction_count = 0
            events.append("new_question")

        if self.is_host:
            if phase == "countdown":
                self.predicted_question_start = convert_server_time(data.get("countdown_end")) or None
            elif phase != "question":
                self.predicted_question_start = None

        if not self.is_host and phase == "results" and self.session is not None:
            before = int((self.session.get("scores") or {}).get(self.user_id) or 0)
            after = int((data.get("scores") or {}).get(self.user_id) or 0)
            if after > before:
                events.append("score_up")

        if phase != previous:
            events.append("phase_changed")

        self.session = dict(data)
        self.phase = phase
        self.current_question = int(data.get("current_question") or 0)
        self._ingest_reactions(data.get("reactions") or [])
        return events

    def _mark_kicked(self) -> list[str]:
        self.kicked = True
        self.session = None
        self.phase = None
        return ["kicked"]

    # ---------- timing ----------
    @property
    def question_start_time(self) -> Optional[int]:
        """Authoritative start when known, then the fallback, then the host's own prediction."""
        if self.session is None or self.phase != "question":
            return None
        for key in ("question_start_time", "question_start_time_fallback"):
            value = convert_server_time(self.session.get(key))
            if value:
                return value
        return self.predicted_question_start if self.is_host else None

    def time_remaining(self) -> int:
        if self.session is None:
            return 0
        if self.phase == "countdown":
            return self.clock.get_remaining_until(self.session.get("countdown_end"))
        if self.phase == "question":
            return self.clock.get_countdown_remaining(self.question_start_time, settings.question_seconds)
        return 0

    def question_expired(self) -> bool:
        return self.phase == "question" and self.question_start_time is not None and self.time_remaining() == 0

    # ---------- player actions ----------
    def can_answer(self) -> bool:
        return not self.kicked and self.phase == "question" and not self.answered

    def mark_answered(self, answer_index: int) -> None:
        self.answered = True
        self.player_answer = answer_index

    def reactions_left(self) -> int:
        return max(0, settings.max_reactions_per_question - self.reaction_count)

    def can_react(self) -> bool:
        return not self.kicked and self.reactions_left() > 0

    def record_reaction_sent(self) -> None:
        self.reaction_count += 1

    # ---------- reactions ----------
    def _ingest_reactions(self, reactions: list[Mapping[str, Any]]) -> None:
        now = self._local_clock()
        ttl = int(settings.reaction_display_seconds * 1000)
        for reaction in reactions:
            reaction_id = str(reaction.get("id") or "")
            if not reaction_id or reaction_id in self._seen_reactions:
                continue
            self._seen_reactions.add(reaction_id)
            self._visible_reactions[reaction_id] = (dict(reaction), now + ttl)

    def visible_reactions(self) -> list[dict[str, Any]]:
        now = self._local_clock()
        expired = [key for key, (_, expires_at) in self._visible_reactions.items() if expires_at <= now]
        for key in expired:
            self._visible_reactions.pop(key, None)
        return [reaction for reaction, _ in self._visible_reactions.values()]


class RecoveryPointer:
    """On-disk pointer ``{"pin", "name"}`` to the room this client last joined."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def save(self, pin: str, name: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps({"pin": pin, "name": name}), encoding="utf-8")

    def load(self) -> Optional[dict[str, str]]:
        """Return the saved pointer, discarding it when it cannot be trusted."""
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            self.discard()
            return None

        if not isinstance(data, dict) or not data.get("pin") or not data.get("name"):
            self.discard()
            return None
        return {"pin": str(data["pin"]), "name": str(data["name"])}

    def clear(self, pin: Optional[str] = None) -> None:
        """Forget the pointer, or only when it still points at ``pin``."""
        if pin is None:
            self.discard()
            return
        saved = self.load()
        if saved and saved["pin"] == pin:
            self.discard()

    def discard(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        except OSError:
            logger.warning("Could not remove recovery pointer", extra={"event": "recovery_pointer_discard_failed"})
