"""Pydantic schemas for Nadeo leaderboard and Trackmania Exchange responses."""

from pydantic import BaseModel


class LeaderboardEntry(BaseModel):
    """One ranked record on a map leaderboard."""

    account_id: str
    position: int
    score: int  # milliseconds
    timestamp: int | None = None  # epoch seconds the record was driven
    zone_name: str | None = None

    @classmethod
    def from_api(cls, item: dict) -> "LeaderboardEntry":
        return cls(
            account_id=item["accountId"],
            position=int(item["position"]),
            score=int(item["score"]),
            timestamp=int(item["timestamp"]) if item.get("timestamp") is not None else None,
            zone_name=item.get("zoneName"),
        )


class MapInfo(BaseModel):
    """Map listed by Trackmania Exchange for an author."""

    map_uid: str
    name: str
    exchange_id: int | None = None
