"""Audit sink for session lifecycle events.

Recording is fire-and-forget: a failure to record is logged and never
reaches the caller's audio path.
"""

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

import structlog


logger = structlog.get_logger(__name__)


@dataclass
class AuditRecord:
    """One audited event."""

    event: str
    session_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event,
            "session_id": self.session_id,
            "metadata": self.metadata,
            "timestamp": self.timestamp,
        }


class AuditSink:
    """Bounded in-memory audit log."""

    def __init__(self, max_records: int = 10000) -> None:
        self._records: Deque[AuditRecord] = deque(maxlen=max_records)

    def record(self, event: str, session_id: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Record an event. Never raises.

        Args:
            event: Event name, e.g. "session.started"
            session_id: Session the event belongs to
            metadata: Optional JSON-serializable details
        """
        try:
            self._records.append(AuditRecord(
                event=event,
                session_id=session_id,
                metadata=dict(metadata or {})
            ))
            logger.debug("Audit event", audit_event=event, session_id=session_id)
        except Exception as e:
            logger.error("Failed to record audit event", audit_event=event, error=str(e))

    def for_session(self, session_id: str) -> List[AuditRecord]:
        """Records of one session, oldest first."""
        return [record for record in self._records if record.session_id == session_id]

    def __len__(self) -> int:
        return len(self._records)
