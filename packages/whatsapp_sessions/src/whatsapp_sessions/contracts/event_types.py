"""
Instance Event Types

Lifecycle events published by the session gateway.
"""

from enum import Enum


class InstanceEventType(str, Enum):
    """
    Event types for instance lifecycle transitions.

    - QR_GENERATED: a pairing QR code is waiting to be scanned
    - CONNECTED: the session opened
    - RECONNECT_SCHEDULED: the session closed and will be retried
    - LOGGED_OUT: the session was revoked from the phone
    - DISCONNECTED: reconnection gave up or restore failed
    - REMOVED: the tenant disconnected the instance
    """

    QR_GENERATED = "whatsapp_instance_qr_generated"
    CONNECTED = "whatsapp_instance_connected"
    RECONNECT_SCHEDULED = "whatsapp_instance_reconnect_scheduled"
    LOGGED_OUT = "whatsapp_instance_logged_out"
    DISCONNECTED = "whatsapp_instance_disconnected"
    REMOVED = "whatsapp_instance_removed"

    def __str__(self) -> str:
        return self.value
