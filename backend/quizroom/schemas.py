from __future__ import annotations

from typing import Annotated, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class GuestAuthRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    nickname: str = Field(min_length=1, max_length=30)
    host_key: Optional[str] = Field(default=None, max_length=256)


class GuestAuthResponse(BaseModel):
    user_id: str
    nickname: str
    is_admin: bool
    access_token: str
    token_type: str = "bearer"


OptionText = Annotated[str, Field(min_length=1, max_length=500)]


class QuestionPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    text: str = Field(min_length=1, max_length=1000)
    options: list[OptionText] = Field(min_length=4, max_length=4)
    correct: int = Field(ge=0, le=3)
    explanation: Optional[str] = Field(default=None, max_length=2000)


class QuizPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    id: Optional[str] = Field(default=None, max_length=100)
    title: str = Field(min_length=1, max_length=200)
    questions: list[QuestionPayload] = Field(min_length=1, max_length=200)


class CreateSessionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    quiz: QuizPayload
    leaderboard_id: Optional[str] = Field(default=None, max_length=36)
    leaderboard_name: Optional[str] = Field(default=None, max_length=100)


class JoinRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Length rules are applied by the join gates so the error text stays specific.
    name: str = Field(max_length=200)


class AnswerRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    answer_index: int


class ReactionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    emoji: str = Field(min_length=1, max_length=16)


class KickRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1, max_length=64)


class LateJoinRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    allow_late_join: bool


class SessionUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    allow_late_join: Optional[bool] = None
    leaderboard_id: Optional[str] = Field(default=None, max_length=36)
    leaderboard_name: Optional[str] = Field(default=None, max_length=100)


class LeaderboardCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: str = Field(max_length=200)
    course: Optional[str] = Field(default=None, max_length=100)
    year: Optional[int] = Field(default=None, ge=1900, le=3000)


class LeaderboardRenameRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: str = Field(max_length=200)


class WsPingMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["ping"]
