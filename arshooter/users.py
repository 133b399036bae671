"""Map resolved identities onto durable user rows."""

from __future__ import annotations

import logging
from typing import Optional

import aiosqlite

from .auth import AuthContext, PlatformIdentity
from .errors import NotFoundError
from .models import User
from .store import ScoreStore


logger = logging.getLogger("arshooter.users")

DISPLAY_NAME_MAX_LENGTH = 32
DEV_PLATFORM_USER_ID = 999999999


def _handle_for(identity: PlatformIdentity) -> Optional[str]:
    if not identity.username:
        return None
    return identity.username[:DISPLAY_NAME_MAX_LENGTH]


class UserReconciler:
    """Find-or-create users without duplicating rows under concurrent requests.

    Creation always goes through an upsert on the unique key followed by a
    re-read, so two first-time submissions for the same identity end up on
    the same row whichever of them wins the insert.
    """

    def __init__(self, store: ScoreStore) -> None:
        self._store = store

    async def reconcile(self, auth: AuthContext, session_id: Optional[str] = None) -> User:
        if auth.identity is not None:
            return await self.for_platform(auth.identity, link_session_id=session_id or auth.session_id)
        if auth.session_id:
            return await self.for_session(auth.session_id)
        raise ValueError("auth context carries no identity")

    async def for_session(self, session_id: str) -> User:
        user = await self._store.get_user_by_session(session_id)
        if user is not None:
            return user
        await self._store.upsert_session_user(session_id)
        return await self._reread(self._store.get_user_by_session, session_id)

    async def for_platform(self, identity: PlatformIdentity, link_session_id: Optional[str] = None) -> User:
        store = self._store
        handle = _handle_for(identity)

        user = await store.get_user_by_platform(identity.platform_user_id)
        if user is not None:
            if handle and handle != user.display_name:
                # Presentation only, last write wins.
                await store.set_display_name(user.id, handle)
                user.display_name = handle
            return user

        if link_session_id:
            linked = await self._link_session(link_session_id, identity.platform_user_id)
            if linked is not None:
                if handle and not linked.display_name:
                    await store.set_display_name(linked.id, handle)
                    linked.display_name = handle
                return linked

        await store.upsert_platform_user(identity.platform_user_id, handle)
        return await self._reread(store.get_user_by_platform, identity.platform_user_id)

    async def ensure_dev_user(self, session_id: str, mock_platform_user_id: Optional[int] = None) -> User:
        """Find or create a development user keyed by session id."""
        store = self._store
        user = await store.get_user_by_session(session_id)
        if user is not None:
            return user

        platform_user_id = mock_platform_user_id or DEV_PLATFORM_USER_ID
        if await store.get_user_by_platform(platform_user_id) is not None:
            # The mock id already belongs to someone else; keep the session only.
            platform_user_id = None
        try:
            await store.upsert_session_user(session_id, platform_user_id, "dev_user")
        except aiosqlite.IntegrityError:
            await store.upsert_session_user(session_id, None, "dev_user")
        return await self._reread(store.get_user_by_session, session_id)

    async def _link_session(self, session_id: str, platform_user_id: int) -> Optional[User]:
        store = self._store
        user = await store.get_user_by_session(session_id)
        if user is None or user.platform_user_id is not None:
            return None
        try:
            if not await store.link_platform(user.id, platform_user_id):
                return None
        except aiosqlite.IntegrityError:
            # Another request created a row for this platform id first.
            logger.info("platform link lost race user=%s", user.id)
            return None
        logger.info("linked platform identity to session user=%s", user.id)
        user.platform_user_id = platform_user_id
        return user

    @staticmethod
    async def _reread(getter, key) -> User:
        user = await getter(key)
        if user is None:
            raise NotFoundError("User could not be created", reason="user_missing")
        return user
