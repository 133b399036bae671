"""Persistence and ranking queries over the ``users`` and ``scores`` tables."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, List, Optional

import aiosqlite

from .db import Database
from .models import GameResult, LeaderboardEntry, LeaderboardPage, User, UserStats
from .validation import ResultCandidate


DEFAULT_LIMIT = 10
MAX_LIMIT = 100
MAX_OFFSET = 100_000
RECENT_RESULTS = 5

# Ranking kind -> ordering column. Only these names ever reach the SQL text.
RANKING_COLUMNS = {
    "score": "score",
    "hits": "targets_hit",
    "accuracy": "accuracy",
}

USER_COLUMNS = "id, session_id, platform_user_id, display_name, created_at, updated_at"
RESULT_COLUMNS = (
    "id, user_id, score, targets_hit, shots_fired, accuracy, max_combo, "
    "duration_ms, game_mode, created_at"
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def clamp_int(value, default: int, low: int, high: int) -> int:
    """Coerce ``value`` to an int in ``[low, high]``; garbage gives ``default``."""
    if isinstance(value, bool):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


def _user(row) -> User:
    return User(
        id=int(row["id"]),
        session_id=row["session_id"],
        platform_user_id=row["platform_user_id"],
        display_name=row["display_name"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _result(row) -> GameResult:
    return GameResult(
        id=int(row["id"]),
        user_id=int(row["user_id"]),
        score=int(row["score"]),
        targets_hit=int(row["targets_hit"]),
        shots_fired=int(row["shots_fired"]),
        accuracy=float(row["accuracy"]),
        max_combo=int(row["max_combo"]),
        duration_ms=int(row["duration_ms"]),
        game_mode=row["game_mode"],
        created_at=row["created_at"],
    )


class ScoreStore:
    def __init__(
        self,
        db: Database,
        min_shots_for_accuracy: int = 10,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db = db
        self._min_shots_for_accuracy = min_shots_for_accuracy
        self._clock = clock

    def _now(self) -> str:
        return self._clock().isoformat(timespec="microseconds")

    # -- users -----------------------------------------------------------

    async def _fetch_user(self, where: str, value) -> Optional[User]:
        async with self._db.connection() as conn:
            async with conn.execute(
                f"SELECT {USER_COLUMNS} FROM users WHERE {where} = ?", (value,)
            ) as cur:
                row = await cur.fetchone()
        return _user(row) if row else None

    async def get_user(self, user_id: int) -> Optional[User]:
        return await self._fetch_user("id", user_id)

    async def get_user_by_session(self, session_id: str) -> Optional[User]:
        return await self._fetch_user("session_id", session_id)

    async def get_user_by_platform(self, platform_user_id: int) -> Optional[User]:
        return await self._fetch_user("platform_user_id", platform_user_id)

    async def upsert_platform_user(self, platform_user_id: int, display_name: Optional[str]) -> None:
        now = self._now()
        async with self._db.transaction() as conn:
            await conn.execute(
                "INSERT INTO users (platform_user_id, display_name, created_at, updated_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(platform_user_id) DO UPDATE SET "
                "display_name=COALESCE(excluded.display_name, users.display_name), "
                "updated_at=excluded.updated_at",
                (platform_user_id, display_name, now, now),
            )

    async def upsert_session_user(
        self,
        session_id: str,
        platform_user_id: Optional[int] = None,
        display_name: Optional[str] = None,
    ) -> None:
        now = self._now()
        async with self._db.transaction() as conn:
            await conn.execute(
                "INSERT INTO users (session_id, platform_user_id, display_name, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(session_id) DO UPDATE SET "
                "display_name=COALESCE(excluded.display_name, users.display_name), "
                "updated_at=excluded.updated_at",
                (session_id, platform_user_id, display_name, now, now),
            )

    async def link_platform(self, user_id: int, platform_user_id: int) -> bool:
        """Attach a platform id to a user that has none. Raises on a taken id."""
        async with self._db.transaction() as conn:
            cur = await conn.execute(
                "UPDATE users SET platform_user_id = ?, updated_at = ? "
                "WHERE id = ? AND platform_user_id IS NULL",
                (platform_user_id, self._now(), user_id),
            )
            return cur.rowcount > 0

    async def set_display_name(self, user_id: int, display_name: str) -> bool:
        async with self._db.transaction() as conn:
            cur = await conn.execute(
                "UPDATE users SET display_name = ?, updated_at = ? WHERE id = ?",
                (display_name, self._now(), user_id),
            )
            return cur.rowcount > 0

    async def display_name_taken(self, display_name: str, exclude_user_id: int) -> bool:
        async with self._db.connection() as conn:
            async with conn.execute(
                "SELECT 1 FROM users WHERE display_name = ? COLLATE NOCASE AND id != ? LIMIT 1",
                (display_name, exclude_user_id),
            ) as cur:
                return await cur.fetchone() is not None

    # -- results ---------------------------------------------------------

    async def insert_result(self, user_id: int, candidate: ResultCandidate, game_mode: str) -> GameResult:
        created_at = self._now()
        accuracy = candidate.accuracy
        async with self._db.transaction() as conn:
            cur = await conn.execute(
                "INSERT INTO scores (user_id, score, targets_hit, shots_fired, accuracy, "
                "max_combo, duration_ms, game_mode, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    user_id,
                    candidate.score,
                    candidate.targets_hit,
                    candidate.shots_fired,
                    accuracy,
                    candidate.max_combo,
                    candidate.duration_ms,
                    game_mode,
                    created_at,
                ),
            )
            result_id = cur.lastrowid
        return GameResult(
            id=int(result_id),
            user_id=user_id,
            score=candidate.score,
            targets_hit=candidate.targets_hit,
            shots_fired=candidate.shots_fired,
            accuracy=accuracy,
            max_combo=candidate.max_combo,
            duration_ms=candidate.duration_ms,
            game_mode=game_mode,
            created_at=created_at,
        )

    async def recent_results(self, user_id: int, limit: int = RECENT_RESULTS) -> List[GameResult]:
        limit = clamp_int(limit, RECENT_RESULTS, 1, MAX_LIMIT)
        async with self._db.connection() as conn:
            async with conn.execute(
                f"SELECT {RESULT_COLUMNS} FROM scores WHERE user_id = ? "
                "ORDER BY created_at DESC, id DESC LIMIT ?",
                (user_id, limit),
            ) as cur:
                rows = await cur.fetchall()
        return [_result(row) for row in rows]

    async def user_stats(self, user_id: int) -> UserStats:
        async with self._db.connection() as conn:
            async with conn.execute(
                """
                SELECT
                  COUNT(*) AS total_games,
                  COALESCE(MAX(score), 0) AS best_score,
                  COALESCE(SUM(targets_hit), 0) AS total_hits,
                  COALESCE(AVG(accuracy), 0) AS avg_accuracy,
                  COALESCE(MAX(max_combo), 0) AS best_combo,
                  COALESCE(SUM(duration_ms), 0) AS total_playtime_ms
                FROM scores
                WHERE user_id = ?
                """,
                (user_id,),
            ) as cur:
                row = await cur.fetchone()
        return UserStats(
            total_games=int(row["total_games"]),
            best_score=int(row["best_score"]),
            total_hits=int(row["total_hits"]),
            avg_accuracy=float(row["avg_accuracy"]),
            best_combo=int(row["best_combo"]),
            total_playtime_ms=int(row["total_playtime_ms"]),
        )

    async def _count_better(self, conn: aiosqlite.Connection, user_id: int, score: int) -> int:
        async with conn.execute(
            """
            SELECT COUNT(*) AS better
            FROM (
              SELECT user_id, MAX(score) AS best_score
              FROM scores
              WHERE user_id != ?
              GROUP BY user_id
            )
            WHERE best_score > ?
            """,
            (user_id, score),
        ) as cur:
            row = await cur.fetchone()
        return int(row["better"])

    async def user_rank(self, user_id: int) -> int:
        """1 + the number of other players whose best score beats this one's."""
        async with self._db.connection() as conn:
            async with conn.execute(
                "SELECT COALESCE(MAX(score), 0) AS best FROM scores WHERE user_id = ?",
                (user_id,),
            ) as cur:
                best = int((await cur.fetchone())["best"])
            return 1 + await self._count_better(conn, user_id, best)

    async def rank_for_score(self, score: int, user_id: int) -> int:
        """Position ``score`` would take against every other player's best."""
        async with self._db.connection() as conn:
            return 1 + await self._count_better(conn, user_id, score)

    async def leaderboard(self, kind: str = "score", limit=DEFAULT_LIMIT, offset=0) -> LeaderboardPage:
        column = RANKING_COLUMNS.get(kind)
        if column is None:
            raise ValueError(f"unknown leaderboard type {kind!r}")
        limit = clamp_int(limit, DEFAULT_LIMIT, 1, MAX_LIMIT)
        offset = clamp_int(offset, 0, 0, MAX_OFFSET)

        where = ""
        params: list = []
        if kind == "accuracy":
            where = "WHERE s.shots_fired >= ?"
            params.append(self._min_shots_for_accuracy)

        query = f"""
            WITH ranked AS (
              SELECT s.*, ROW_NUMBER() OVER (
                PARTITION BY s.user_id
                ORDER BY s.{column} DESC, s.created_at DESC, s.id DESC
              ) AS row_num
              FROM scores s
              {where}
            )
            SELECT r.id, r.user_id, r.score, r.targets_hit, r.shots_fired, r.accuracy,
                   r.max_combo, r.duration_ms, r.game_mode, r.created_at,
                   u.display_name
            FROM ranked r
            JOIN users u ON u.id = r.user_id
            WHERE r.row_num = 1
            ORDER BY r.{column} DESC, r.created_at DESC, r.id DESC
            LIMIT ? OFFSET ?
        """
        count_query = f"SELECT COUNT(DISTINCT s.user_id) AS total FROM scores s {where}"

        async with self._db.connection() as conn:
            async with conn.execute(query, (*params, limit, offset)) as cur:
                rows = await cur.fetchall()
            async with conn.execute(count_query, tuple(params)) as cur:
                total = int((await cur.fetchone())["total"])

        entries = [
            LeaderboardEntry(
                rank=offset + index + 1,
                user_id=int(row["user_id"]),
                username=row["display_name"] or f"Player #{row['user_id']}",
                result=_result(row),
            )
            for index, row in enumerate(rows)
        ]
        return LeaderboardPage(kind=kind, entries=entries, total=total, limit=limit, offset=offset)
