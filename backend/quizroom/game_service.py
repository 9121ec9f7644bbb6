from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from .clock import now_ms
from .config import settings
from .leaderboard_service import LeaderboardService
from .metrics import ANSWERS_TOTAL, PHASE_TRANSITIONS_TOTAL, REACTIONS_TOTAL
from .rate_limit import FixedWindowLimiter
from .results import OperationResult, infrastructure_failure
from .scoring import PlayerProgress, apply_missed_question, score_answer
from .session_service import run_change
from .state import (
    AnswerRecord,
    CountdownPhase,
    FinalPhase,
    QuestionPhase,
    Reaction,
    ResultsPhase,
    SessionDocument,
)
from .store import SessionStore

logger = logging.getLogger("quizroom.game")


def _progress_of(document: SessionDocument, uid: str) -> PlayerProgress:
    return PlayerProgress(
        score=document.scores.get(uid, 0),
        streak=document.streaks.get(uid, 0),
        cold_streak=document.cold_streaks.get(uid, 0),
        correct_count=document.correct_counts.get(uid, 0),
        badges=dict(document.badges.get(uid, {})),
    )


def _store_progress(document: SessionDocument, uid: str, progress: PlayerProgress) -> None:
    document.scores[uid] = progress.score
    document.streaks[uid] = progress.streak
    document.cold_streaks[uid] = progress.cold_streak
    document.correct_counts[uid] = progress.correct_count
    document.badges[uid] = dict(progress.badges)


class GameService:
    """Phase transitions, scoring and reactions for live sessions.

    Every transition is a change applied through ``SessionStore.mutate`` and
    therefore serialised per room. When auto-advance is on, the service keeps
    one timer per room that fires the countdown and question deadlines; the
    timers go through the same guarded transitions as the host, so whichever
    fires first wins and the other is a no-op.
    """

    def __init__(
        self,
        store: SessionStore,
        leaderboards: Optional[LeaderboardService] = None,
        limiter: Optional[FixedWindowLimiter] = None,
        clock: Optional[Callable[[], int]] = None,
        auto_advance: Optional[bool] = None,
    ) -> None:
        self.store = store
        self.leaderboards = leaderboards or LeaderboardService()
        self.limiter = limiter or FixedWindowLimiter()
        self._clock = clock or now_ms
        self._auto_advance = auto_advance
        self._timers: dict[str, asyncio.Task] = {}

    @property
    def auto_advance(self) -> bool:
        if self._auto_advance is None:
            return settings.enable_auto_advance
        return self._auto_advance

    # ---------- timers ----------
    def _schedule(self, pin: str, delay_ms: int, action: Callable[[], Awaitable[Any]]) -> None:
        if not self.auto_advance:
            return
        self.cancel_timers(pin)
        task = asyncio.get_running_loop().create_task(self._fire_after(pin, max(0, delay_ms) / 1000, action))
        self._timers[pin] = task

    async def _fire_after(self, pin: str, delay: float, action: Callable[[], Awaitable[Any]]) -> None:
        try:
            await asyncio.sleep(delay)
            await action()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Session timer failed", extra={"event": "timer_failed", "pin": pin})
        finally:
            if self._timers.get(pin) is asyncio.current_task():
                self._timers.pop(pin, None)

    def cancel_timers(self, pin: str) -> None:
        task = self._timers.pop(pin, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _transitioned(self, pin: str, phase: str, **extra: Any) -> None:
        PHASE_TRANSITIONS_TOTAL.labels(phase=phase).inc()
        logger.info("Session phase changed", extra={"event": "phase_changed", "pin": pin, "phase": phase, **extra})

    def _begin_countdown(self, document: SessionDocument) -> int:
        countdown_end = self._clock() + settings.countdown_ms
        document.reset_round()
        document.phase = CountdownPhase(countdown_end=countdown_end)
        return countdown_end

    def _schedule_question(self, pin: str, countdown_end: int, question_index: int) -> None:
        self._schedule(
            pin,
            countdown_end - self._clock(),
            lambda: self.start_question_timer(pin, expected_question=question_index),
        )

    # ---------- transitions ----------
    async def start_game(self, pin: str) -> OperationResult:
        if not pin:
            return OperationResult.fail("PIN is required")

        def change(document: SessionDocument) -> OperationResult:
            if document.status != "lobby":
                return OperationResult.fail("Game can only be started from the lobby", status_code=409)
            document.current_question = 0
            countdown_end = self._begin_countdown(document)
            return OperationResult.ok(countdown_end=countdown_end)

        result = await run_change(self.store, pin, change, event="game_start_failed", fallback="Failed to start game")
        if result.success:
            self._transitioned(pin, "countdown", question=0)
            self._schedule_question(pin, result.get("countdown_end"), 0)
        return result

    async def start_question_timer(self, pin: str, expected_question: Optional[int] = None) -> OperationResult:
        """Open the question once the countdown has elapsed.

        Only acts while the room is still counting down (and, for timers, on
        the question it was scheduled for); any other state is a successful
        no-op so racing callers are harmless.
        """
        if not pin:
            return OperationResult.fail("PIN is required")

        def change(document: SessionDocument) -> OperationResult:
            if not isinstance(document.phase, CountdownPhase):
                return OperationResult.ok(started=False)
            if expected_question is not None and document.current_question != expected_question:
                return OperationResult.ok(started=False)
            started_at = self._clock()
            document.phase = QuestionPhase(
                question_start_time=started_at,
                question_start_time_fallback=document.phase.countdown_end,
            )
            return OperationResult.ok(
                started=True,
                question=document.current_question,
                question_start_time=started_at,
            )

        result = await run_change(
            self.store, pin, change, event="question_start_failed", fallback="Failed to start question timer"
        )
        if result.success and result.get("started"):
            question_index = result.get("question")
            self._transitioned(pin, "question", question=question_index)
            self._schedule(
                pin,
                settings.question_ms,
                lambda: self.show_question_results(pin, expected_question=question_index),
            )
        return result

    async def show_question_results(self, pin: str, expected_question: Optional[int] = None) -> OperationResult:
        if not pin:
            return OperationResult.fail("PIN is required")

        def change(document: SessionDocument) -> OperationResult:
            if expected_question is not None and (
                document.status != "question" or document.current_question != expected_question
            ):
                return OperationResult.ok(changed=False)
            if document.status == "results":
                return OperationResult.ok(changed=False)
            if document.status != "question":
                return OperationResult.fail("Results can only be shown for an open question", status_code=409)
            document.phase = ResultsPhase()
            return OperationResult.ok(changed=True, question=document.current_question)

        result = await run_change(
            self.store, pin, change, event="show_results_failed", fallback="Failed to show results"
        )
        if result.success and result.get("changed"):
            self.cancel_timers(pin)
            self._transitioned(pin, "results", question=result.get("question"))
        return result

    async def next_question(self, pin: str) -> OperationResult:
        if not pin:
            return OperationResult.fail("PIN is required")

        def change(document: SessionDocument) -> OperationResult:
            if document.status != "results":
                return OperationResult.fail("Next question is only available after results", status_code=409)

            for uid in document.players:
                if uid not in document.answers:
                    _store_progress(document, uid, apply_missed_question(_progress_of(document, uid)))

            if document.current_question + 1 >= document.total_questions:
                document.phase = FinalPhase()
                document.reactions = []
                document.reaction_counts = {}
                return OperationResult.ok(is_final=True)

            document.current_question += 1
            countdown_end = self._begin_countdown(document)
            return OperationResult.ok(
                is_final=False,
                question=document.current_question,
                countdown_end=countdown_end,
            )

        result = await run_change(
            self.store, pin, change, event="next_question_failed", fallback="Failed to move to next question"
        )
        if not result.success:
            return result

        if result.get("is_final"):
            self.cancel_timers(pin)
            self._transitioned(pin, "final")
        else:
            question_index = result.get("question")
            self._transitioned(pin, "countdown", question=question_index)
            self._schedule_question(pin, result.get("countdown_end"), question_index)
        return result

    async def end_game(self, pin: str) -> OperationResult:
        """Fold the final standings into the linked leaderboard, then dispose of the room.

        The merge is claimed through ``leaderboard_merged`` under the room
        lock, so a repeated or concurrent end never merges twice. Ending is
        unconditional: a failed merge is logged and reported as
        ``merge_error`` but the room is disposed anyway.
        """
        if not pin:
            return OperationResult.fail("PIN is required")

        def claim(document: SessionDocument) -> OperationResult:
            if document.status != "final":
                return OperationResult.fail("Game can only be ended from the final results", status_code=409)
            if not document.leaderboard_id or document.leaderboard_merged:
                return OperationResult.ok(merge=None)
            document.leaderboard_merged = True
            return OperationResult.ok(
                merge={
                    "leaderboard_id": document.leaderboard_id,
                    "players": dict(document.players),
                    "scores": dict(document.scores),
                }
            )

        result = await run_change(self.store, pin, claim, event="game_end_failed", fallback="Failed to end game")
        if not result.success:
            return result

        merge = result.get("merge")
        merge_error = None
        if merge:
            merged = self.leaderboards.save_scores_to_leaderboard(
                merge["leaderboard_id"], merge["players"], merge["scores"]
            )
            if not merged.success:
                merge_error = merged.error
                logger.warning(
                    "Leaderboard merge failed; ending game anyway",
                    extra={
                        "event": "leaderboard_merge_skipped",
                        "pin": pin,
                        "leaderboard_id": merge["leaderboard_id"],
                        "reason": merge_error,
                    },
                )

        self.cancel_timers(pin)
        try:
            await self.store.delete(pin)
        except SQLAlchemyError:
            return infrastructure_failure(logger, "game_end_failed", "Failed to end game", pin=pin)

        logger.info("Game ended", extra={"event": "game_ended", "pin": pin})
        return OperationResult.ok(merged=bool(merge) and merge_error is None, merge_error=merge_error)

    # ---------- player actions ----------
    async def submit_answer(self, pin: str, user_id: str, answer_index: int) -> OperationResult:
        """Score one answer for the current question.

        Latency is measured on the server from the question start; the
        answer is refused after the question window plus grace period, and a
        player's first answer for a question is final.
        """
        if not pin or not user_id:
            return OperationResult.fail("PIN and userId are required")

        limit = self.limiter.check(
            f"answer-submit:{user_id}", settings.answer_max_attempts, settings.answer_window_ms
        )
        if not limit.allowed:
            return OperationResult.fail(
                f"Too many answers. Please wait {limit.reset_in} seconds.", status_code=429
            )

        def change(document: SessionDocument) -> OperationResult:
            if not document.is_member(user_id):
                return OperationResult.fail("You are not a player in this session", status_code=403)
            if not isinstance(document.phase, QuestionPhase):
                return OperationResult.fail("No question is open for answers", status_code=409)
            question = document.question
            if not 0 <= answer_index < len(question.options):
                return OperationResult.fail("Invalid answer option")
            if user_id in document.answers:
                return OperationResult.fail("Answer already submitted", status_code=409)

            now = self._clock()
            latency = max(0, now - document.phase.question_start_time)
            if latency > settings.question_ms + settings.answer_grace_ms:
                return OperationResult.fail("Time's up! Answer not counted.", status_code=409)

            outcome = score_answer(
                _progress_of(document, user_id),
                selected_index=answer_index,
                correct_index=question.correct,
                latency_ms=latency,
                question_index=document.current_question,
                total_questions=document.total_questions,
                first_answer_of_game=not document.first_answer_taken,
                base_points=settings.base_points,
                speed_demon_ms=settings.speed_demon_ms,
            )
            document.answers[user_id] = AnswerRecord(
                answer_index=answer_index,
                answer_time=latency,
                timestamp=now,
                correct=outcome.is_correct,
                points=outcome.points,
            )
            _store_progress(document, user_id, outcome.progress)
            document.first_answer_taken = True
            return OperationResult.ok(
                correct=outcome.is_correct,
                points=outcome.points,
                multiplier=outcome.multiplier,
                score=outcome.progress.score,
                streak=outcome.progress.streak,
                answer_time=latency,
                new_badges=list(outcome.new_badges),
            )

        result = await run_change(self.store, pin, change, event="answer_submit_failed", fallback="Failed to submit answer")
        if result.success:
            ANSWERS_TOTAL.labels(correct=str(result.get("correct")).lower()).inc()
        else:
            logger.info(
                "Answer rejected",
                extra={"event": "answer_rejected", "pin": pin, "player_id": user_id, "reason": result.error},
            )
        return result

    async def send_reaction(self, pin: str, user_id: str, emoji: str) -> OperationResult:
        if not pin or not user_id or not emoji:
            return OperationResult.fail("PIN, emoji, and userId are required")
        if emoji not in settings.reaction_emojis:
            return OperationResult.fail("Unsupported reaction")

        def change(document: SessionDocument) -> OperationResult:
            if not document.is_member(user_id):
                return OperationResult.fail("You are not a player in this session", status_code=403)
            if document.status == "final":
                return OperationResult.fail("The game is over", status_code=409)
            sent = document.reaction_counts.get(user_id, 0)
            if sent >= settings.max_reactions_per_question:
                return OperationResult.fail("Reaction limit reached for this question", status_code=429)

            limit = self.limiter.check(
                f"reaction-send:{user_id}", settings.reaction_max_attempts, settings.reaction_window_ms
            )
            if not limit.allowed:
                return OperationResult.fail(
                    f"Too many reactions. Please wait {limit.reset_in} seconds.", status_code=429
                )

            now = self._clock()
            reaction = Reaction(
                id=f"{now}-{secrets.token_hex(4)}",
                emoji=emoji,
                player_name=document.players[user_id],
                timestamp=now,
            )
            document.reactions = [*document.reactions, reaction][-settings.reaction_history_size:]
            document.reaction_counts[user_id] = sent + 1
            return OperationResult.ok(reaction=reaction.model_dump())

        result = await run_change(self.store, pin, change, event="reaction_send_failed", fallback="Failed to send reaction")
        if result.success:
            REACTIONS_TOTAL.inc()
        return result
