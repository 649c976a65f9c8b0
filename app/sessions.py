"""Per-session engine cache for the view API."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Tuple

from detail_engine import DetailEngine
from list_engine import ListEngine
from navigation import MemoryNavigator
from notifications import Notifier


logger = logging.getLogger("entkit.sessions")

DEFAULT_SESSION = "default"
MAX_DETAILS_PER_SESSION = 20


@dataclass
class Session:
    session_id: str
    notifier: Notifier = field(default_factory=Notifier)
    navigator: MemoryNavigator = field(default_factory=MemoryNavigator)
    lists: Dict[str, ListEngine] = field(default_factory=dict)
    details: Dict[Tuple[str, str], DetailEngine] = field(default_factory=dict)
    ts: float = field(default_factory=time.monotonic)


class SessionCache:
    """Sessions idle longer than ``ttl_s`` are dropped on the next access."""

    def __init__(
        self,
        ttl_s: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
        max_details: int = MAX_DETAILS_PER_SESSION,
    ) -> None:
        self.ttl_s = ttl_s
        self.max_details = max(1, max_details)
        self._clock = clock
        self._sessions: Dict[str, Session] = {}

    def _evict(self, now: float) -> None:
        expired = [sid for sid, s in self._sessions.items() if now - s.ts >= self.ttl_s]
        for sid in expired:
            del self._sessions[sid]
            logger.info("session_expired session=%s", sid)

    def get(self, session_id: str | None) -> Session:
        sid = (session_id or "").strip() or DEFAULT_SESSION
        now = self._clock()
        self._evict(now)
        session = self._sessions.get(sid)
        if session is None:
            session = Session(sid, ts=now)
            self._sessions[sid] = session
            logger.info("session_created session=%s", sid)
        session.ts = now
        return session

    def list_engine(self, session: Session, resource_key: str, factory: Callable[[Session], ListEngine]) -> tuple[ListEngine, bool]:
        """Returns ``(engine, created)``."""
        engine = session.lists.get(resource_key)
        if engine is not None:
            return engine, False
        engine = factory(session)
        session.lists[resource_key] = engine
        return engine, True

    def detail_engine(
        self,
        session: Session,
        resource_key: str,
        entity_id: Any,
        factory: Callable[[Session], DetailEngine],
    ) -> tuple[DetailEngine, bool]:
        """Most recently used engines are kept; beyond ``max_details`` the oldest is dropped."""
        key = (resource_key, str(entity_id))
        engine = session.details.pop(key, None)
        created = engine is None
        if created:
            engine = factory(session)
        session.details[key] = engine
        while len(session.details) > self.max_details:
            oldest = next(iter(session.details))
            del session.details[oldest]
            logger.info("detail_engine_evicted session=%s resource=%s id=%s", session.session_id, *oldest)
        return engine, created

    def drop(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def clear(self) -> None:
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)
