"""
Instance Event Streams

Redis Stream producer for instance lifecycle events.
"""

from whatsapp_sessions.streams.producer import INSTANCE_EVENTS_STREAM, InstanceEventProducer

__all__ = [
    "INSTANCE_EVENTS_STREAM",
    "InstanceEventProducer",
]
