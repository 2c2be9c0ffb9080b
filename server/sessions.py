"""Per-session ProximityCache instances, LRU-capped."""
from collections import OrderedDict
from typing import Callable, Dict, Optional

from spatial_cache.cache import ProximityCache


class SessionRegistry:
    """
    Maps a browsing session id to its own ProximityCache.

    The least recently used session is dropped once `max_sessions` is exceeded.
    """

    def __init__(self, factory: Callable[[], ProximityCache], max_sessions: int = 256) -> None:
        if max_sessions < 1:
            raise ValueError("max_sessions must be >= 1")
        self._factory = factory
        self._max = max_sessions
        self._sessions: "OrderedDict[str, ProximityCache]" = OrderedDict()

    def get(self, session_id: str) -> Optional[ProximityCache]:
        cache = self._sessions.get(session_id)
        if cache is not None:
            self._sessions.move_to_end(session_id)
        return cache

    def get_or_create(self, session_id: str, viewer_id: Optional[str] = None) -> ProximityCache:
        cache = self.get(session_id)
        if cache is None:
            cache = self._factory()
            self._sessions[session_id] = cache
            while len(self._sessions) > self._max:
                _, old = self._sessions.popitem(last=False)
                old.clear()
        cache.set_viewer(viewer_id)
        return cache

    def drop(self, session_id: str) -> bool:
        cache = self._sessions.pop(session_id, None)
        if cache is None:
            return False
        cache.clear()
        return True

    def stats(self) -> Dict[str, int]:
        return {
            "sessions": len(self._sessions),
            "max_sessions": self._max,
            "records": sum(c.store.size() for c in self._sessions.values()),
        }

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions
