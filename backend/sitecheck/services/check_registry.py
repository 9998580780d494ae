import asyncio
import logging
import uuid
from typing import Dict, Optional

from sitecheck.services.check_session import CheckSession

logger = logging.getLogger(__name__)


class CheckRegistry:
    """In-process index of sessions that are still streaming, keyed by check id."""

    def __init__(self) -> None:
        self._sessions: Dict[str, CheckSession] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, check_id: str) -> bool:
        return check_id in self._sessions

    async def register(self, session: CheckSession) -> str:
        check_id = str(uuid.uuid4())
        async with self._lock:
            self._sessions[check_id] = session
        logger.debug("Registered check %s", check_id)
        return check_id

    def get(self, check_id: str) -> Optional[CheckSession]:
        return self._sessions.get(check_id)

    async def remove(self, check_id: str) -> Optional[CheckSession]:
        async with self._lock:
            return self._sessions.pop(check_id, None)

    async def stop(self, check_id: str) -> bool:
        """Stop a registered check. False when unknown or already finished."""
        session = self.get(check_id)
        if session is None:
            return False
        return await session.stop()

    async def stop_all(self) -> int:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        stopped = 0
        for session in sessions:
            if await session.stop():
                stopped += 1
        if stopped:
            logger.info("Stopped %d running checks", stopped)
        return stopped
