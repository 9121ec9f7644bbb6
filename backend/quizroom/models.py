from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class SessionRecord(Base):
    __tablename__ = "sessions"
    __table_args__ = (
        CheckConstraint(
            "status IN ('lobby', 'countdown', 'question', 'results', 'final')",
            name="ck_sessions_status",
        ),
        Index("ix_sessions_status", "status"),
    )

    pin: Mapped[str] = mapped_column(String(4), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="lobby")
    host_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    document: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Leaderboard(Base):
    __tablename__ = "leaderboards"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    course: Mapped[str | None] = mapped_column(String(100), nullable=True)
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class LeaderboardEntry(Base):
    __tablename__ = "leaderboard_entries"
    __table_args__ = (
        Index("ix_leaderboard_entries_total_score", "leaderboard_id", "total_score"),
    )

    leaderboard_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("leaderboards.id", ondelete="CASCADE"),
        primary_key=True,
    )
    name_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(64), nullable=False)
    total_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quizzes_taken: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_played: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
