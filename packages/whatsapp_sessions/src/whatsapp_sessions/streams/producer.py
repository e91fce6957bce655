"""
Instance Event Producer

Publishes instance lifecycle events to a Redis Stream. Publishing is
best-effort: a Redis failure is logged and never reaches the state machine.
"""

import logging
from typing import Any

import redis

from gatewaycore.redis import publish_to_stream
from whatsapp_sessions.contracts.envelope import InstanceEnvelope
from whatsapp_sessions.contracts.event_types import InstanceEventType
from whatsapp_sessions.keys import SessionKey

logger = logging.getLogger(__name__)

INSTANCE_EVENTS_STREAM = "whatsapp:instance_events"


class InstanceEventProducer:
    """
    Producer for publishing instance lifecycle events to Redis Streams.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        stream_name: str = INSTANCE_EVENTS_STREAM,
        max_len: int = 100000,
    ):
        self.redis = redis_client
        self.stream_name = stream_name
        self.max_len = max_len

    def publish(
        self,
        event_type: InstanceEventType,
        key: SessionKey,
        payload: dict[str, Any] | None = None,
    ) -> str | None:
        """
        Publish a lifecycle event for ``key``.

        Returns:
            Stream message ID, or None if Redis was unavailable
        """
        envelope = InstanceEnvelope.create(
            event_type=event_type.value,
            tenant_token=key.tenant_token,
            instance_id=key.instance_id,
            payload=payload or {},
            metadata={"source": "whatsapp-gateway"},
        )

        try:
            msg_id = publish_to_stream(
                self.redis, self.stream_name, envelope.to_stream_data(), max_len=self.max_len
            )
        except redis.RedisError as e:
            logger.warning(
                f"Failed to publish {event_type.value}: {e}",
                extra={"session_key": str(key), "stream": self.stream_name},
            )
            return None

        logger.debug(
            f"Published {event_type.value} to {self.stream_name}",
            extra={"event_id": str(envelope.event_id), "stream_msg_id": msg_id},
        )
        return msg_id
