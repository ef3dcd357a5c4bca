"""Session-keyed registry.

Every piece of per-session state hangs off a SessionContext, so several
sessions can run side by side in one process without sharing anything.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from core.logging_utils import get_logger
from core.trading_container import SessionContainer

logger = get_logger(__name__)


@dataclass
class SessionContext:
    session_id: str
    container: SessionContainer
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


ContainerFactory = Callable[..., SessionContainer]


class SessionRegistry:
    def __init__(self, factory: ContainerFactory = SessionContainer):
        self._factory = factory
        self._sessions: Dict[str, SessionContext] = {}

    def get_or_create(self, session_id: str, **options: Any) -> SessionContext:
        context = self._sessions.get(session_id)
        if context is None:
            context = SessionContext(session_id, self._factory(session_id, **options))
            self._sessions[session_id] = context
            logger.info("[SESSION] Created %s", session_id)
        return context

    def get(self, session_id: str) -> Optional[SessionContext]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> bool:
        removed = self._sessions.pop(session_id, None)
        if removed is not None:
            logger.info("[SESSION] Removed %s", session_id)
        return removed is not None

    def sessions(self) -> List[str]:
        return list(self._sessions.keys())

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
