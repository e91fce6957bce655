"""
WhatsApp Sessions

Multi-tenant WhatsApp instance lifecycle: pairing, live handle registry,
reconnection and startup restore.
"""

from whatsapp_sessions.keys import SessionKey
from whatsapp_sessions.manager import (
    InstanceManager,
    SendResult,
    SessionResult,
    StatusReport,
    build_instance_manager,
)
from whatsapp_sessions.persistence.models import InstanceStatus

__all__ = [
    "InstanceManager",
    "InstanceStatus",
    "SendResult",
    "SessionKey",
    "SessionResult",
    "StatusReport",
    "build_instance_manager",
]
