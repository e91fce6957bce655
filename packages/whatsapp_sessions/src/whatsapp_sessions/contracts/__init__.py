"""
Instance Event Contracts

Event types and envelope for instance lifecycle events.
"""

from whatsapp_sessions.contracts.envelope import InstanceEnvelope
from whatsapp_sessions.contracts.event_types import InstanceEventType

__all__ = [
    "InstanceEnvelope",
    "InstanceEventType",
]
