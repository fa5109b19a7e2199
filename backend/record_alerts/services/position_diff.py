"""
Position diff engine: compares a watched account's stored rank with the current top-N.

Pure and synchronous. The outcome is a tagged variant (``kind``) so callers match on it
instead of probing dict keys. Positions from the API are authoritative; the score is
carried for display only and never triggers a change.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from record_alerts.schemas.leaderboard import LeaderboardEntry


class Unchanged(BaseModel):
    kind: Literal["unchanged"] = "unchanged"
    position: int
    score: int | None = None


class PositionChanged(BaseModel):
    kind: Literal["position_changed"] = "position_changed"
    new_position: int
    previous_position: int
    new_score: int


class DroppedOut(BaseModel):
    kind: Literal["dropped_out"] = "dropped_out"
    previous_position: int


DiffResult = Annotated[Union[Unchanged, PositionChanged, DroppedOut], Field(discriminator="kind")]


def find_entry(current_top_n: list[LeaderboardEntry], account_id: str) -> LeaderboardEntry | None:
    for entry in current_top_n:
        if entry.account_id == account_id:
            return entry
    return None


def diff_position(
    prior_position: int,
    prior_score: int | None,
    current_top_n: list[LeaderboardEntry],
    account_id: str,
    top_n: int = 5,
) -> Unchanged | PositionChanged | DroppedOut:
    """
    Absent from ``current_top_n`` (or ranked beyond ``top_n``) -> DroppedOut.
    Present at another position -> PositionChanged. Same position -> Unchanged, whatever the score:
    ``prior_score`` and the entry's score are informational and never trigger a change.
    """
    entry = find_entry(current_top_n, account_id)
    if entry is None or entry.position > top_n:
        return DroppedOut(previous_position=prior_position)
    if entry.position != prior_position:
        return PositionChanged(
            new_position=entry.position,
            previous_position=prior_position,
            new_score=entry.score,
        )
    return Unchanged(position=prior_position, score=entry.score)
