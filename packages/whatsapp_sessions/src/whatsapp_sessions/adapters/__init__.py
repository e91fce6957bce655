"""
Connection Adapters

Adapters for the WhatsApp protocol engine.
Supports Evolution API (production) and Stub (development).
"""

from whatsapp_sessions.adapters.base import (
    AdapterError,
    CloseReason,
    ConnectionAdapter,
    ConnectionState,
    ConnectionUpdate,
    DisconnectReason,
    OpenedTransport,
    RemoteUser,
    Transport,
)
from whatsapp_sessions.adapters.evolution import EvolutionConnectionAdapter
from whatsapp_sessions.adapters.stub import StubConnectionAdapter

__all__ = [
    "AdapterError",
    "CloseReason",
    "ConnectionAdapter",
    "ConnectionState",
    "ConnectionUpdate",
    "DisconnectReason",
    "EvolutionConnectionAdapter",
    "OpenedTransport",
    "RemoteUser",
    "StubConnectionAdapter",
    "Transport",
]
