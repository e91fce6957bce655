"""
Instance Event Envelope

Standard wrapper for instance lifecycle events on Redis Streams.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4


@dataclass
class InstanceEnvelope:
    """
    Event envelope for instance lifecycle events.

    Attributes:
        event_id: Unique identifier for this event instance
        event_type: Type of event (InstanceEventType value)
        tenant_token: Tenant that owns the instance
        instance_id: Instance the event is about
        occurred_at: When the event occurred (UTC)
        version: Event contract version
        payload: Event-specific data
        metadata: Additional metadata (source, etc.)
    """

    event_id: UUID
    event_type: str
    tenant_token: str
    instance_id: str
    occurred_at: datetime
    payload: dict[str, Any]
    version: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        event_type: str,
        tenant_token: str,
        instance_id: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> "InstanceEnvelope":
        """Create a new envelope with auto-generated event_id and timestamp."""
        return cls(
            event_id=uuid4(),
            event_type=event_type,
            tenant_token=tenant_token,
            instance_id=instance_id,
            occurred_at=datetime.now(timezone.utc),
            payload=payload,
            metadata=metadata or {},
        )

    @classmethod
    def from_stream_message(cls, msg_id: str, data: dict[str, str]) -> "InstanceEnvelope":
        """Parse a Redis Stream message into an envelope."""
        metadata = json.loads(data.get("metadata", "{}"))
        metadata["stream_msg_id"] = msg_id

        return cls(
            event_id=UUID(data["event_id"]),
            event_type=data["event_type"],
            tenant_token=data["tenant_token"],
            instance_id=data["instance_id"],
            occurred_at=datetime.fromisoformat(data["occurred_at"]),
            version=int(data.get("version", "1")),
            payload=json.loads(data.get("payload", "{}")),
            metadata=metadata,
        )

    def to_stream_data(self) -> dict[str, str]:
        """Convert to dictionary suitable for Redis Stream (all string values)."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "tenant_token": self.tenant_token,
            "instance_id": self.instance_id,
            "occurred_at": self.occurred_at.isoformat(),
            "version": str(self.version),
            "payload": json.dumps(self.payload),
            "metadata": json.dumps(self.metadata),
        }
