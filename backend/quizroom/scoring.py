from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Mapping


@dataclass(frozen=True)
class BadgeType:
    icon: str
    name: str
    description: str


# "comeback" is catalogued for clients but nothing in the scoring path awards it.
BADGE_TYPES: dict[str, BadgeType] = {
    "first_blood": BadgeType(icon="🎯", name="First Blood", description="First correct answer of the game"),
    "speed_demon": BadgeType(icon="⚡", name="Speed Demon", description="Answered correctly in under 3 seconds"),
    "on_fire": BadgeType(icon="🔥", name="On Fire", description="4+ correct streak"),
    "comeback": BadgeType(icon="🚀", name="Comeback", description="Moved up 3+ leaderboard places"),
    "perfect_game": BadgeType(icon="👑", name="Perfect Game", description="All answers correct"),
}


def streak_multiplier(streak: int) -> int:
    if streak >= 4:
        return 4
    if streak >= 3:
        return 3
    if streak >= 2:
        return 2
    return 1


@dataclass(frozen=True)
class PlayerProgress:
    score: int = 0
    streak: int = 0
    cold_streak: int = 0
    correct_count: int = 0
    badges: Mapping[str, bool] = field(default_factory=dict)


@dataclass(frozen=True)
class AnswerOutcome:
    is_correct: bool
    points: int
    multiplier: int
    progress: PlayerProgress
    new_badges: tuple[str, ...]


def score_answer(
    progress: PlayerProgress,
    *,
    selected_index: int,
    correct_index: int,
    latency_ms: int,
    question_index: int,
    total_questions: int,
    first_answer_of_game: bool,
    base_points: int = 100,
    speed_demon_ms: int = 3000,
) -> AnswerOutcome:
    """Apply one answer to a player's running state.

    Badges already earned are kept; a wrong answer never revokes them.
    """
    is_correct = selected_index == correct_index
    new_streak = progress.streak + 1 if is_correct else 0
    multiplier = streak_multiplier(new_streak)
    points = base_points * multiplier if is_correct else 0
    correct_count = progress.correct_count + 1 if is_correct else progress.correct_count

    badges = dict(progress.badges)
    earned: list[str] = []

    def _award(key: str) -> None:
        if not badges.get(key):
            badges[key] = True
            earned.append(key)

    if is_correct and question_index == 0 and first_answer_of_game:
        _award("first_blood")
    if is_correct and latency_ms < speed_demon_ms:
        _award("speed_demon")
    if new_streak >= 4:
        _award("on_fire")
    if is_correct and question_index == total_questions - 1 and correct_count == total_questions:
        _award("perfect_game")

    updated = PlayerProgress(
        score=progress.score + points,
        streak=new_streak,
        cold_streak=0 if is_correct else progress.cold_streak + 1,
        correct_count=correct_count,
        badges=badges,
    )
    return AnswerOutcome(
        is_correct=is_correct,
        points=points,
        multiplier=multiplier,
        progress=updated,
        new_badges=tuple(earned),
    )


def apply_missed_question(progress: PlayerProgress) -> PlayerProgress:
    return replace(progress, streak=0, cold_streak=progress.cold_streak + 1)


@dataclass(frozen=True)
class RankedPlayer:
    rank: int
    uid: str
    name: str
    score: int

    def as_dict(self) -> dict[str, object]:
        return {"rank": self.rank, "uid": self.uid, "name": self.name, "score": self.score}


def rank_players(players: Mapping[str, str], scores: Mapping[str, int]) -> list[RankedPlayer]:
    """Order players by score, ties broken by display name.

    Every client derives the same order from the same data.
    """
    rows = [(uid, name, int(scores.get(uid) or 0)) for uid, name in players.items()]
    rows.sort(key=lambda row: (-row[2], row[1].casefold(), row[1], row[0]))
    return [
        RankedPlayer(rank=position, uid=uid, name=name, score=score)
        for position, (uid, name, score) in enumerate(rows, start=1)
    ]
