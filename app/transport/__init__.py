"""Downstream transports.

- PhoneTransport: telephony media stream (μ-law 8kHz, stream token, marks)
- BrowserTransport: browser microphone (PCM16 24kHz, JSON messages)
"""

__all__ = [
    "BrowserTransport",
    "DownstreamClosed",
    "DownstreamConnection",
    "PhoneTransport",
    "StarletteConnection",
    "TransportAdapter",
    "TransportEvent",
    "TransportEventType",
]

from app.transport.base import (
    DownstreamClosed,
    DownstreamConnection,
    StarletteConnection,
    TransportAdapter,
    TransportEvent,
    TransportEventType,
)
from app.transport.browser import BrowserTransport
from app.transport.phone import PhoneTransport
