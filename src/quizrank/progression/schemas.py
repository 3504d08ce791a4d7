"""Pydantic schemas for progression endpoints."""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

Difficulty = Literal["easy", "medium", "hard"]


class QuestionResult(BaseModel):
    question_id: int
    is_correct: bool
    time_taken: float | None = Field(default=None, ge=0)


class AttemptData(BaseModel):
    """A completed quiz attempt as submitted by the client."""

    total_questions: int = Field(ge=1)
    correct_answers: int = Field(ge=0)
    difficulty: Difficulty = "medium"
    time_taken: float = Field(default=0.0, ge=0, description="Total seconds spent on the attempt")
    score: int = Field(default=0, ge=0)
    category_id: int | None = Field(default=None, ge=1)
    mode: Literal["solo", "multiplayer"] = "solo"
    won: bool | None = None
    question_times: list[float] | None = None
    question_results: list[QuestionResult] | None = None
    session_id: int | None = None

    @model_validator(mode="after")
    def _check_counts(self) -> AttemptData:
        if self.correct_answers > self.total_questions:
            raise ValueError("correct_answers cannot exceed total_questions")
        if self.question_results is not None and len(self.question_results) > self.total_questions:
            raise ValueError("more question results than questions")
        if self.question_times is not None and any(t < 0 for t in self.question_times):
            raise ValueError("question times must be non-negative")
        return self

    @property
    def average_time(self) -> float:
        return self.time_taken / self.total_questions

    @property
    def accuracy(self) -> float:
        return self.correct_answers / self.total_questions * 100

    @property
    def is_perfect(self) -> bool:
        return self.correct_answers == self.total_questions


class XPCalculationRequest(BaseModel):
    attempt: AttemptData
    current_streak: int | None = Field(default=None, ge=0)


class XPCalculationResponse(BaseModel):
    xp: int
    base: float
    difficulty_multiplier: float
    perfect_multiplier: float
    speed_multiplier: float
    streak_multiplier: float
    score_bonus: float


class ApplyXPRequest(BaseModel):
    xp: int = Field(ge=0)
    source: str = "manual"
    idempotency_key: str | None = Field(default=None, max_length=256)


class ProgressionSnapshot(BaseModel):
    earned_xp: int
    total_xp: int
    level: int
    current_level_xp: int
    xp_to_next_level: int
    level_progress: float
    title: str
    leveled_up: bool
    previous_level: int
    applied: bool = True
    unlocked_achievements: list[str] = []


class StatisticsResponse(BaseModel):
    user_id: int
    total_xp: int
    questions_answered: int
    correct_answers: int
    accuracy: float
    games_played: int
    games_won: int
    perfect_games: int
    multiplayer_wins: int
    best_game_score: int
    current_streak: int
    longest_streak: int
    last_activity_date: date | None
    total_time_played: float
    fastest_answer_time: float | None
    category_stats: dict
    difficulty_stats: dict
    achievements_earned: int


class UserProgressionInfo(BaseModel):
    id: int
    username: str
    total_xp: int
    level: int
    title: str
    current_level_xp: int
    xp_to_next_level: int
    level_progress: float


class RecentAchievement(BaseModel):
    code: str
    name: str
    category: str
    xp_reward: int
    earned_at: datetime


class ProgressionResponse(BaseModel):
    user: UserProgressionInfo
    statistics: StatisticsResponse
    recent_achievements: list[RecentAchievement]


class LevelEntry(BaseModel):
    level: int
    title: str
    min_xp: int
    max_xp: int


class AllLevelsResponse(BaseModel):
    levels: list[LevelEntry]
