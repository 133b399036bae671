from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class User:
    """
    A player known to the leaderboard.

    A user is identified by a client-generated session id, a Telegram user
    id, or both once a session player links their Telegram account.
    """

    id: int
    session_id: Optional[str]
    platform_user_id: Optional[int]
    display_name: Optional[str]
    created_at: str
    updated_at: str

    @property
    def public_name(self) -> str:
        return self.display_name or f"Player #{self.id}"


@dataclass
class GameResult:
    """A stored game result. Never updated after insertion."""

    id: int
    user_id: int
    score: int
    targets_hit: int
    shots_fired: int
    accuracy: float
    max_combo: int
    duration_ms: int
    game_mode: str
    created_at: str


@dataclass
class UserStats:
    total_games: int = 0
    best_score: int = 0
    total_hits: int = 0
    avg_accuracy: float = 0.0
    best_combo: int = 0
    total_playtime_ms: int = 0


@dataclass
class LeaderboardEntry:
    rank: int
    user_id: int
    username: str
    result: GameResult


@dataclass
class LeaderboardPage:
    kind: str
    entries: List[LeaderboardEntry] = field(default_factory=list)
    total: int = 0
    limit: int = 0
    offset: int = 0

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total
