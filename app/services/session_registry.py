"""In-memory registry of bridged sessions."""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog


logger = structlog.get_logger(__name__)


@dataclass
class SessionRecord:
    """Registry entry for one session."""

    id: str
    source: str
    created_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def active(self) -> bool:
        return self.ended_at is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "created_at": self.created_at,
            "ended_at": self.ended_at,
            "active": self.active,
            "metadata": self.metadata,
        }


class SessionRegistry:
    """Tracks sessions for the lifetime of the process."""

    def __init__(self, max_ended: int = 1000) -> None:
        """Initialize registry.

        Args:
            max_ended: Ended sessions kept for lookup before the oldest are dropped
        """
        self._sessions: Dict[str, SessionRecord] = {}
        self._ended: List[str] = []
        self._max_ended = max_ended

    def create_session(self, source: str, **metadata: Any) -> str:
        """Register a new session.

        Args:
            source: Where the session came from ("phone" or "browser")
            **metadata: Extra details stored with the record

        Returns:
            New session id
        """
        session_id = str(uuid.uuid4())
        self._sessions[session_id] = SessionRecord(id=session_id, source=source, metadata=metadata)
        logger.info("Session created", session_id=session_id, source=source)
        return session_id

    def end_session(self, session_id: str) -> None:
        """Mark a session ended. Unknown or already ended ids are ignored."""
        record = self._sessions.get(session_id)
        if record is None or not record.active:
            return

        record.ended_at = time.time()
        self._ended.append(session_id)
        logger.info(
            "Session ended",
            session_id=session_id,
            duration_s=round(record.ended_at - record.created_at, 2)
        )

        while len(self._ended) > self._max_ended:
            self._sessions.pop(self._ended.pop(0), None)

    def get(self, session_id: str) -> Optional[SessionRecord]:
        return self._sessions.get(session_id)

    def active_count(self) -> int:
        return sum(1 for record in self._sessions.values() if record.active)
