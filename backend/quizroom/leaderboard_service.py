from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Mapping, Optional
import uuid

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import settings
from .db import get_db
from .models import utcnow
from .results import OperationResult, infrastructure_failure

logger = logging.getLogger("quizroom.leaderboard")

MAX_LEADERBOARD_NAME = 100


def normalize_name_key(display_name: str) -> str:
    return display_name.lower().strip()


def _iso(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _validate_name(name: Optional[str]) -> Optional[str]:
    if not name or not name.strip():
        return "Leaderboard name is required"
    if len(name.strip()) > MAX_LEADERBOARD_NAME:
        return f"Leaderboard name must be {MAX_LEADERBOARD_NAME} characters or less"
    return None


class LeaderboardService:
    """Durable cross-session standings keyed by normalised display name."""

    def _one(self, session: Session, query: str, params: Optional[dict[str, Any]] = None) -> Optional[Mapping[str, Any]]:
        return session.execute(text(query), params or {}).mappings().first()

    def _all(self, session: Session, query: str, params: Optional[dict[str, Any]] = None) -> list[Mapping[str, Any]]:
        return list(session.execute(text(query), params or {}).mappings().all())

    def _standings(self, session: Session, leaderboard_id: str, limit: int) -> list[dict[str, Any]]:
        rows = self._all(
            session,
            """
            SELECT name_key, display_name, total_score, quizzes_taken, last_played
            FROM leaderboard_entries
            WHERE leaderboard_id = :leaderboard_id
            ORDER BY total_score DESC, display_name ASC
            LIMIT :limit
            """,
            {"leaderboard_id": leaderboard_id, "limit": limit},
        )
        return [
            {
                "key": row["name_key"],
                "display_name": row["display_name"],
                "total_score": row["total_score"],
                "quizzes_taken": row["quizzes_taken"],
                "last_played": _iso(row["last_played"]),
            }
            for row in rows
        ]

    def _serialize(self, session: Session, row: Mapping[str, Any], limit: int) -> dict[str, Any]:
        return {
            "id": row["id"],
            "name": row["name"],
            "course": row["course"],
            "year": row["year"],
            "created_at": _iso(row["created_at"]),
            "players": self._standings(session, row["id"], limit),
        }

    def exists(self, leaderboard_id: str) -> bool:
        with get_db() as session:
            return self._one(session, "SELECT id FROM leaderboards WHERE id = :id", {"id": leaderboard_id}) is not None

    def create_leaderboard(
        self,
        name: str,
        course: Optional[str] = None,
        year: Optional[int] = None,
    ) -> OperationResult:
        error = _validate_name(name)
        if error:
            return OperationResult.fail(error)

        leaderboard_id = str(uuid.uuid4())
        try:
            with get_db() as session:
                session.execute(
                    text(
                        """
                        INSERT INTO leaderboards (id, name, course, year, created_at)
                        VALUES (:id, :name, :course, :year, :created_at)
                        """
                    ),
                    {
                        "id": leaderboard_id,
                        "name": name.strip(),
                        "course": course.strip() if course else None,
                        "year": year,
                        "created_at": utcnow(),
                    },
                )
        except SQLAlchemyError:
            return infrastructure_failure(logger, "leaderboard_create_failed", "Failed to create leaderboard")

        logger.info("Leaderboard created", extra={"event": "leaderboard_created", "leaderboard_id": leaderboard_id})
        return OperationResult.ok(leaderboard_id=leaderboard_id)

    def get_leaderboard(self, leaderboard_id: str, limit: Optional[int] = None) -> OperationResult:
        top_n = limit or settings.leaderboard_top_n
        try:
            with get_db() as session:
                row = self._one(session, "SELECT * FROM leaderboards WHERE id = :id", {"id": leaderboard_id})
                if not row:
                    return OperationResult.fail("Leaderboard not found", status_code=404)
                payload = self._serialize(session, row, top_n)
        except SQLAlchemyError:
            return infrastructure_failure(
                logger, "leaderboard_get_failed", "Failed to load leaderboard", leaderboard_id=leaderboard_id
            )
        return OperationResult.ok(leaderboard=payload)

    def list_leaderboards(self) -> OperationResult:
        try:
            with get_db() as session:
                rows = self._all(session, "SELECT * FROM leaderboards ORDER BY created_at DESC")
                payload = [self._serialize(session, row, settings.leaderboard_top_n) for row in rows]
        except SQLAlchemyError:
            return infrastructure_failure(logger, "leaderboard_list_failed", "Failed to load leaderboards")
        return OperationResult.ok(leaderboards=payload)

    def rename_leaderboard(self, leaderboard_id: str, new_name: str) -> OperationResult:
        if not leaderboard_id:
            return OperationResult.fail("Leaderboard ID is required")
        error = _validate_name(new_name)
        if error:
            return OperationResult.fail(error)

        try:
            with get_db() as session:
                updated = session.execute(
                    text("UPDATE leaderboards SET name = :name WHERE id = :id"),
                    {"name": new_name.strip(), "id": leaderboard_id},
                ).rowcount
        except SQLAlchemyError:
            return infrastructure_failure(
                logger, "leaderboard_rename_failed", "Failed to rename leaderboard", leaderboard_id=leaderboard_id
            )
        if not updated:
            return OperationResult.fail("Leaderboard not found", status_code=404)
        return OperationResult.ok()

    def flush_leaderboard(self, leaderboard_id: str) -> OperationResult:
        if not leaderboard_id:
            return OperationResult.fail("Leaderboard ID is required")
        try:
            with get_db() as session:
                if not self._one(session, "SELECT id FROM leaderboards WHERE id = :id", {"id": leaderboard_id}):
                    return OperationResult.fail("Leaderboard not found", status_code=404)
                session.execute(
                    text("DELETE FROM leaderboard_entries WHERE leaderboard_id = :id"),
                    {"id": leaderboard_id},
                )
        except SQLAlchemyError:
            return infrastructure_failure(
                logger, "leaderboard_flush_failed", "Failed to flush leaderboard", leaderboard_id=leaderboard_id
            )
        logger.info("Leaderboard flushed", extra={"event": "leaderboard_flushed", "leaderboard_id": leaderboard_id})
        return OperationResult.ok()

    def delete_leaderboard(self, leaderboard_id: str) -> OperationResult:
        if not leaderboard_id:
            return OperationResult.fail("Leaderboard ID is required")
        try:
            with get_db() as session:
                session.execute(
                    text("DELETE FROM leaderboard_entries WHERE leaderboard_id = :id"),
                    {"id": leaderboard_id},
                )
                deleted = session.execute(
                    text("DELETE FROM leaderboards WHERE id = :id"),
                    {"id": leaderboard_id},
                ).rowcount
        except SQLAlchemyError:
            return infrastructure_failure(
                logger, "leaderboard_delete_failed", "Failed to delete leaderboard", leaderboard_id=leaderboard_id
            )
        if not deleted:
            return OperationResult.fail("Leaderboard not found", status_code=404)
        return OperationResult.ok()

    # ---------- merge ----------
    def _merge_player(
        self,
        session: Session,
        leaderboard_id: str,
        display_name: str,
        score: int,
    ) -> None:
        # Single-statement upsert: SQLite and PostgreSQL share this syntax.
        session.execute(
            text(
                """
                INSERT INTO leaderboard_entries (
                    leaderboard_id, name_key, display_name, total_score, quizzes_taken, last_played
                ) VALUES (
                    :leaderboard_id, :name_key, :display_name, :score, 1, :now
                )
                ON CONFLICT (leaderboard_id, name_key) DO UPDATE
                SET total_score = leaderboard_entries.total_score + excluded.total_score,
                    quizzes_taken = leaderboard_entries.quizzes_taken + 1,
                    last_played = excluded.last_played,
                    display_name = excluded.display_name
                """
            ),
            {
                "leaderboard_id": leaderboard_id,
                "name_key": normalize_name_key(display_name),
                "display_name": display_name,
                "score": score,
                "now": utcnow(),
            },
        )

    def save_scores_to_leaderboard(
        self,
        leaderboard_id: str,
        session_players: Mapping[str, str],
        session_scores: Mapping[str, int],
    ) -> OperationResult:
        """Fold one finished session into a leaderboard.

        Each player is an independent atomic increment, so two sessions ending
        at the same moment cannot overwrite each other's totals.
        """
        if not leaderboard_id:
            return OperationResult.fail("Leaderboard ID is required")
        if session_players is None or session_scores is None:
            return OperationResult.fail("Session players and scores are required")

        try:
            with get_db() as session:
                if not self._one(session, "SELECT id FROM leaderboards WHERE id = :id", {"id": leaderboard_id}):
                    return OperationResult.fail("Leaderboard not found", status_code=404)
                for uid, display_name in session_players.items():
                    if not display_name or not display_name.strip():
                        continue
                    self._merge_player(session, leaderboard_id, display_name, int(session_scores.get(uid) or 0))
        except SQLAlchemyError:
            return infrastructure_failure(
                logger,
                "leaderboard_merge_failed",
                "Failed to save scores to leaderboard",
                leaderboard_id=leaderboard_id,
            )

        logger.info(
            "Session scores merged into leaderboard",
            extra={"event": "leaderboard_merged", "leaderboard_id": leaderboard_id},
        )
        return OperationResult.ok(merged_players=len(session_players))
