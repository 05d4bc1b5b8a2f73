"""Game rules for score transitions.

Pure functions: state in, result out. Nothing in here mutates a GameState.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional, Tuple

from game_state import GameState, Team


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    reason: Optional[str] = None
    scoring_team: Optional[Team] = None


def _invalid(reason: str) -> ValidationResult:
    return ValidationResult(is_valid=False, reason=reason)


def max_jump(state: GameState) -> int:
    return 3 if state.three_point_mode else 2


def validate_voice_transition(state: GameState, new_a: int, new_b: int) -> ValidationResult:
    if not state.game_active:
        return _invalid("Game is finished")
    if new_a < 0 or new_b < 0:
        return _invalid("Negative scores are invalid")

    delta_a = new_a - state.team_a_score
    delta_b = new_b - state.team_b_score

    if delta_a == 0 and delta_b == 0:
        return _invalid("No score change")
    if delta_a < 0 or delta_b < 0:
        return _invalid("Score cannot decrease")
    if delta_a > 0 and delta_b > 0:
        return _invalid("Both teams cannot score at once")

    jump = max_jump(state)
    if delta_a > jump or delta_b > jump:
        return _invalid("Jump too large")

    # Without win-by-two only one side can be at/above target during play
    if not state.win_by_two and new_a >= state.target_score and new_b >= state.target_score:
        return _invalid("Impossible win state")

    if delta_a > 0:
        team = Team.A
    elif delta_b > 0:
        team = Team.B
    else:
        team = None
    return ValidationResult(is_valid=True, scoring_team=team)


def winner_for(score_a: int, score_b: int, target_score: int, win_by_two: bool) -> Optional[Team]:
    if score_a < target_score and score_b < target_score:
        return None
    if win_by_two:
        if abs(score_a - score_b) < 2:
            return None
    elif score_a == score_b:
        return None
    return Team.A if score_a > score_b else Team.B


def game_point_team(state: GameState) -> Optional[Team]:
    if not state.game_active:
        return None

    threshold = state.target_score - 1 if state.win_by_two else state.target_score
    a_at_point = state.team_a_score >= threshold
    b_at_point = state.team_b_score >= threshold

    if a_at_point and not b_at_point:
        return Team.A
    if b_at_point and not a_at_point:
        return Team.B
    if a_at_point and b_at_point and state.team_a_score != state.team_b_score:
        return Team.A if state.team_a_score > state.team_b_score else Team.B
    return None


def resolve_game_meta(state: GameState) -> Tuple[GameState, Optional[Team], Optional[Team]]:
    """Recompute game_active, the winner and the game-point team for a state."""
    winner = winner_for(state.team_a_score, state.team_b_score, state.target_score, state.win_by_two)
    resolved = replace(state, game_active=winner is None)
    return resolved, winner, game_point_team(resolved)
