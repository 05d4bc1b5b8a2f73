"""Score model shared by the parser, the rule engine and the voice loop.

Everything here is immutable. The voice loop controller is the only code that
builds new GameState values, and it does so with ``dataclasses.replace``.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

ALLOWED_TARGET_SCORES = (11, 15, 21)
DEFAULT_TARGET_SCORE = 21
TEAM_NAME_MAX_LENGTH = 16


class Team(str, Enum):
    A = "A"
    B = "B"


class UpdateSource(str, Enum):
    VOICE = "VOICE"
    MANUAL = "MANUAL"


@dataclass(frozen=True)
class ScoreEvent:
    timestamp: float  # wall clock, seconds since epoch
    old_score_a: int
    old_score_b: int
    new_score_a: int
    new_score_b: int
    source: UpdateSource

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "old_score_a": self.old_score_a,
            "old_score_b": self.old_score_b,
            "new_score_a": self.new_score_a,
            "new_score_b": self.new_score_b,
            "source": self.source.value,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ScoreEvent":
        return cls(
            timestamp=float(d["timestamp"]),
            old_score_a=int(d["old_score_a"]),
            old_score_b=int(d["old_score_b"]),
            new_score_a=int(d["new_score_a"]),
            new_score_b=int(d["new_score_b"]),
            source=UpdateSource(str(d.get("source", "MANUAL")).upper()),
        )


@dataclass(frozen=True)
class GameState:
    team_a_score: int = 0
    team_b_score: int = 0
    target_score: int = DEFAULT_TARGET_SCORE
    win_by_two: bool = True
    three_point_mode: bool = False
    team_a_name: str = "A"
    team_b_name: str = "B"
    game_active: bool = True
    last_update_source: UpdateSource = UpdateSource.MANUAL
    history: tuple[ScoreEvent, ...] = field(default_factory=tuple)

    @property
    def scores(self) -> tuple[int, int]:
        return self.team_a_score, self.team_b_score

    def score_of(self, team: Team) -> int:
        return self.team_a_score if team == Team.A else self.team_b_score

    def fresh(self) -> "GameState":
        """A new game keeping only names, target and rule toggles."""
        return GameState(
            target_score=self.target_score,
            win_by_two=self.win_by_two,
            three_point_mode=self.three_point_mode,
            team_a_name=self.team_a_name,
            team_b_name=self.team_b_name,
        )

    def to_dict(self) -> dict:
        return {
            "team_a_score": self.team_a_score,
            "team_b_score": self.team_b_score,
            "target_score": self.target_score,
            "win_by_two": self.win_by_two,
            "three_point_mode": self.three_point_mode,
            "team_a_name": self.team_a_name,
            "team_b_name": self.team_b_name,
            "game_active": self.game_active,
            "last_update_source": self.last_update_source.value,
            "history": [e.to_dict() for e in self.history],
        }


def sanitize_team_name(raw: str | None, fallback: str) -> str:
    name = re.sub(r"\s+", " ", str(raw or "")).strip()[:TEAM_NAME_MAX_LENGTH]
    return name or fallback


def parse_team(value) -> Team | None:
    try:
        return Team(str(value).strip().upper())
    except ValueError:
        return None
