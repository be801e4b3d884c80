"""Collaborators around the bridge: session registry, audit sink, rate limiter."""

__all__ = [
    "AuditRecord",
    "AuditSink",
    "RateLimitDecision",
    "RateLimiter",
    "SessionRecord",
    "SessionRegistry",
]

from app.services.audit import AuditRecord, AuditSink
from app.services.rate_limiter import RateLimitDecision, RateLimiter
from app.services.session_registry import SessionRecord, SessionRegistry
