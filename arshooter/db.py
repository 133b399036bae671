"""Bounded pool of aiosqlite connections and the schema they share."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

import aiosqlite

from .errors import ServiceUnavailableError


logger = logging.getLogger("arshooter.db")

BUSY_TIMEOUT_SECONDS = 5.0

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  session_id TEXT UNIQUE,
  platform_user_id INTEGER UNIQUE,
  display_name TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS scores (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
  score INTEGER NOT NULL CHECK (score >= 0),
  targets_hit INTEGER NOT NULL CHECK (targets_hit >= 0),
  shots_fired INTEGER NOT NULL CHECK (shots_fired >= 0),
  accuracy REAL NOT NULL DEFAULT 0,
  max_combo INTEGER NOT NULL CHECK (max_combo >= 1),
  duration_ms INTEGER NOT NULL CHECK (duration_ms >= 0),
  game_mode TEXT NOT NULL DEFAULT 'endless',
  created_at TEXT NOT NULL,
  CHECK (shots_fired = 0 OR targets_hit <= shots_fired)
);

CREATE INDEX IF NOT EXISTS idx_scores_user_created ON scores(user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_scores_score ON scores(score DESC);
CREATE INDEX IF NOT EXISTS idx_scores_targets ON scores(targets_hit DESC);
CREATE INDEX IF NOT EXISTS idx_scores_accuracy ON scores(accuracy DESC);
"""


class Database:
    """A fixed number of connections handed out one request at a time.

    Callers beyond ``size`` wait in line for up to ``acquire_timeout`` seconds.
    """

    def __init__(self, path: str, size: int = 5, acquire_timeout: float = 10.0) -> None:
        self.path = path
        self.size = max(1, size)
        self.acquire_timeout = acquire_timeout
        self._idle: Optional[asyncio.Queue] = None
        self._connections: List[aiosqlite.Connection] = []

    @property
    def is_open(self) -> bool:
        return self._idle is not None

    async def open(self) -> None:
        if self.is_open:
            return
        self._idle = asyncio.Queue(maxsize=self.size)
        for index in range(self.size):
            conn = await aiosqlite.connect(self.path, timeout=BUSY_TIMEOUT_SECONDS)
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON")
            if index == 0:
                await conn.execute("PRAGMA journal_mode = WAL")
                await conn.executescript(SCHEMA_SQL)
                await conn.commit()
            self._connections.append(conn)
            self._idle.put_nowait(conn)
        logger.info("database pool opened path=%s size=%s", self.path, self.size)

    async def close(self, timeout: Optional[float] = None) -> None:
        """Wait for every connection to come back, then close them all."""
        if not self.is_open:
            return
        idle, self._idle = self._idle, None
        wait = self.acquire_timeout if timeout is None else timeout
        returned = 0
        try:
            for _ in range(len(self._connections)):
                await asyncio.wait_for(idle.get(), timeout=wait)
                returned += 1
        except asyncio.TimeoutError:
            logger.warning(
                "closing pool with %s connection(s) still in use",
                len(self._connections) - returned,
            )
        for conn in self._connections:
            await conn.close()
        self._connections = []
        logger.info("database pool closed")

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        idle = self._idle
        if idle is None:
            raise ServiceUnavailableError("Database is not available", reason="db_closed")
        try:
            conn = await asyncio.wait_for(idle.get(), timeout=self.acquire_timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("database pool exhausted size=%s", self.size)
            raise ServiceUnavailableError("Server is busy, try again", reason="db_pool_timeout") from exc
        try:
            yield conn
        except BaseException:
            await conn.rollback()
            raise
        finally:
            idle.put_nowait(conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self.connection() as conn:
            yield conn
            await conn.commit()
