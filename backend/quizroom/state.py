"""Session document and its phase variants.

A session is one JSON document per room. The phase is a closed union: each
variant carries only the timestamps that are meaningful while it is active,
so a ``countdown_end`` can never linger into the question phase.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .scoring import rank_players


class QuizQuestion(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: str
    options: list[str]
    correct: int
    explanation: Optional[str] = None


class QuizSnapshot(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    title: str
    questions: list[QuizQuestion]


class LobbyPhase(BaseModel):
    status: Literal["lobby"] = "lobby"


class CountdownPhase(BaseModel):
    status: Literal["countdown"] = "countdown"
    countdown_end: int


class QuestionPhase(BaseModel):
    status: Literal["question"] = "question"
    question_start_time: int
    question_start_time_fallback: int


class ResultsPhase(BaseModel):
    status: Literal["results"] = "results"


class FinalPhase(BaseModel):
    status: Literal["final"] = "final"


Phase = Annotated[
    Union[LobbyPhase, CountdownPhase, QuestionPhase, ResultsPhase, FinalPhase],
    Field(discriminator="status"),
]


class AnswerRecord(BaseModel):
    answer_index: int
    answer_time: int
    timestamp: int
    correct: bool
    points: int


class Reaction(BaseModel):
    id: str
    emoji: str
    player_name: str
    timestamp: int


class SessionDocument(BaseModel):
    pin: str
    quiz: QuizSnapshot
    phase: Phase = Field(default_factory=LobbyPhase)
    host_id: Optional[str] = None
    created_at: int = 0
    players: dict[str, str] = Field(default_factory=dict)
    scores: dict[str, int] = Field(default_factory=dict)
    streaks: dict[str, int] = Field(default_factory=dict)
    cold_streaks: dict[str, int] = Field(default_factory=dict)
    correct_counts: dict[str, int] = Field(default_factory=dict)
    badges: dict[str, dict[str, bool]] = Field(default_factory=dict)
    answers: dict[str, AnswerRecord] = Field(default_factory=dict)
    banned_users: list[str] = Field(default_factory=list)
    current_question: int = 0
    allow_late_join: bool = True
    reactions: list[Reaction] = Field(default_factory=list)
    reaction_counts: dict[str, int] = Field(default_factory=dict)
    leaderboard_id: Optional[str] = None
    leaderboard_name: Optional[str] = None
    leaderboard_merged: bool = False
    first_answer_taken: bool = False

    @property
    def status(self) -> str:
        return self.phase.status

    @property
    def total_questions(self) -> int:
        return len(self.quiz.questions)

    @property
    def question(self) -> QuizQuestion:
        return self.quiz.questions[self.current_question]

    @property
    def countdown_end(self) -> Optional[int]:
        if isinstance(self.phase, CountdownPhase):
            return self.phase.countdown_end
        return None

    @property
    def question_start_time(self) -> Optional[int]:
        if isinstance(self.phase, QuestionPhase):
            return self.phase.question_start_time
        return None

    def is_member(self, user_id: str) -> bool:
        return user_id in self.players

    def remove_player(self, user_id: str) -> None:
        for field in (
            self.players,
            self.scores,
            self.streaks,
            self.cold_streaks,
            self.correct_counts,
            self.badges,
            self.answers,
            self.reaction_counts,
        ):
            field.pop(user_id, None)

    def reset_round(self) -> None:
        self.answers = {}
        self.reactions = []
        self.reaction_counts = {}

    def _revealed(self, index: int) -> bool:
        if self.status == "final":
            return True
        if index < self.current_question:
            return True
        return index == self.current_question and self.status == "results"

    def snapshot(self, viewer_is_host: bool = False) -> dict[str, Any]:
        """Wire form of the document.

        The phase union is flattened into ``status`` plus its timestamps, and
        players never see the correct option of a question that has not been
        revealed yet. Until then their copy of ``answers`` only says who has
        answered and when, never which option or how it scored.
        """
        payload = self.model_dump(mode="json", exclude={"phase", "host_id", "reaction_counts"})
        payload["status"] = self.status
        payload["countdown_end"] = self.countdown_end
        payload["question_start_time"] = self.question_start_time
        payload["question_start_time_fallback"] = (
            self.phase.question_start_time_fallback if isinstance(self.phase, QuestionPhase) else None
        )
        payload["leaderboard"] = [
            entry.as_dict() for entry in rank_players(self.players, self.scores)
        ]

        if not viewer_is_host:
            for index, question in enumerate(payload["quiz"]["questions"]):
                if not self._revealed(index):
                    question.pop("correct", None)
                    question.pop("explanation", None)
            if not self._revealed(self.current_question):
                payload["answers"] = {
                    uid: {"answer_time": record["answer_time"], "timestamp": record["timestamp"]}
                    for uid, record in payload["answers"].items()
                }
        return payload
