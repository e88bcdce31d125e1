"""Global online/offline presence."""

from __future__ import annotations

import logging
from typing import Any

from app.models.enums import PresenceStatus

from ..errors import PersistenceError
from .registry import ConnectionRegistry, utcnow_iso
from .stores import UserStatusStore


logger = logging.getLogger(__name__)


class PresenceTracker:
    """Persist presence changes and announce them to every connected user.

    Whether a user is already online is tracked in memory from the registry's
    register/unregister results, never by re-reading the persisted flag, so two
    racing connects cannot both announce the user.
    """

    def __init__(self, registry: ConnectionRegistry, statuses: UserStatusStore) -> None:
        self._registry = registry
        self._statuses = statuses
        self._online: set[int] = set()

    def is_online(self, user_id: int) -> bool:
        return user_id in self._online

    async def mark_online(
        self, user_id: int, *, replaced: bool = False, profile: dict[str, Any] | None = None
    ) -> bool:
        """Return whether a ``user_online`` announcement was broadcast."""

        announce = not replaced and user_id not in self._online
        self._online.add(user_id)
        await self._persist("set_online", user_id)
        if not announce:
            return False
        payload = {**(profile or {}), "userId": user_id, "timestamp": utcnow_iso()}
        await self._registry.broadcast("user_online", payload, exclude_user=user_id)
        logger.info("User %s is online", user_id)
        return True

    async def mark_offline(self, user_id: int) -> bool:
        if self._registry.resolve(user_id) is not None:
            return False
        await self._persist("set_offline", user_id)
        if self._registry.resolve(user_id) is not None:
            # Reconnected during the write; the user never left.
            await self._persist("set_online", user_id)
            return False
        if user_id not in self._online:
            return False
        self._online.discard(user_id)
        await self._registry.broadcast(
            "user_offline", {"userId": user_id, "lastSeen": utcnow_iso()}, exclude_user=user_id
        )
        logger.info("User %s is offline", user_id)
        return True

    async def record_heartbeat(self, user_id: int) -> None:
        self._registry.touch(user_id)
        await self._persist("touch", user_id)

    async def update_status(self, user_id: int, status: PresenceStatus) -> None:
        await self._persist("set_status", user_id, status)
        await self._registry.broadcast(
            "user_status_update",
            {"userId": user_id, "status": status.value, "timestamp": utcnow_iso()},
            exclude_user=user_id,
        )

    async def _persist(self, operation: str, user_id: int, *args: Any) -> None:
        try:
            await getattr(self._statuses, operation)(user_id, *args)
        except PersistenceError:
            logger.warning(
                "Failed to persist presence change %s for user %s",
                operation,
                user_id,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )


__all__ = ["PresenceTracker"]
