"""Audio bridge between downstream transports and the realtime AI endpoint.

This module provides the per-call bridging layer:
- CallBridge: runs uplink and downlink for one call and tears both down together
- TurnTakingController: commit decisions and barge-in handling
"""

__all__ = [
    "CallBridge",
    "DirectionFinished",
    "EnergyVadPolicy",
    "TurnPolicy",
    "TurnTakingController",
    "UpstreamVadPolicy",
    "create_turn_policy",
]

from app.bridge.turn_taking import (
    EnergyVadPolicy,
    TurnPolicy,
    TurnTakingController,
    UpstreamVadPolicy,
    create_turn_policy,
)
from app.bridge.call_bridge import CallBridge, DirectionFinished
