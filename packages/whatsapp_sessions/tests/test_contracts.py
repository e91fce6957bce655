"""
Tests for instance event contracts and the Redis Streams producer.
"""

from unittest.mock import MagicMock

import redis

from whatsapp_sessions.contracts import InstanceEnvelope, InstanceEventType
from whatsapp_sessions.keys import SessionKey
from whatsapp_sessions.streams import INSTANCE_EVENTS_STREAM, InstanceEventProducer


class TestInstanceEnvelope:
    def test_create(self):
        envelope = InstanceEnvelope.create(
            event_type=InstanceEventType.CONNECTED.value,
            tenant_token="t1",
            instance_id="i1",
            payload={"status": "connected"},
        )

        assert envelope.event_type == "whatsapp_instance_connected"
        assert envelope.version == 1
        assert envelope.occurred_at.tzinfo is not None

    def test_stream_data_is_all_strings(self):
        envelope = InstanceEnvelope.create("whatsapp_instance_qr_generated", "t1", "i1", {"status": "qr_generated"})
        data = envelope.to_stream_data()

        assert all(isinstance(v, str) for v in data.values())

    def test_from_stream_message(self):
        envelope = InstanceEnvelope.create(
            "whatsapp_instance_logged_out", "t1", "i1", {"code": 401}, metadata={"source": "test"}
        )

        parsed = InstanceEnvelope.from_stream_message("1700000000000-0", envelope.to_stream_data())

        assert parsed.event_id == envelope.event_id
        assert parsed.occurred_at == envelope.occurred_at
        assert parsed.payload == {"code": 401}
        assert parsed.metadata == {"source": "test", "stream_msg_id": "1700000000000-0"}


class TestInstanceEventProducer:
    def test_publish(self):
        client = MagicMock()
        client.xadd.return_value = "1700000000000-0"
        producer = InstanceEventProducer(client)

        msg_id = producer.publish(InstanceEventType.CONNECTED, SessionKey("t1", "i1"), {"status": "connected"})

        assert msg_id == "1700000000000-0"
        stream, data = client.xadd.call_args.args
        assert stream == INSTANCE_EVENTS_STREAM
        assert data["event_type"] == "whatsapp_instance_connected"
        assert data["tenant_token"] == "t1"
        assert data["instance_id"] == "i1"
        assert client.xadd.call_args.kwargs == {"maxlen": 100000, "approximate": True}

    def test_redis_failure_is_swallowed(self):
        client = MagicMock()
        client.xadd.side_effect = redis.ConnectionError("connection refused")
        producer = InstanceEventProducer(client, stream_name="custom:stream")

        assert producer.publish(InstanceEventType.REMOVED, SessionKey("t1", "i1")) is None

    async def test_lifecycle_events_reach_the_stream(self, make_manager, adapter, wait_until):
        client = MagicMock()
        client.xadd.return_value = "1-0"
        manager = make_manager(events=InstanceEventProducer(client))

        result = await manager.create_or_resume_session("t1")
        key = SessionKey("t1", result.instance_id)
        adapter.latest(manager.lifecycle.credential_dir(key)).simulate_scan()
        await wait_until(lambda: client.xadd.call_count == 2)

        event_types = [c.args[1]["event_type"] for c in client.xadd.call_args_list]
        assert event_types == ["whatsapp_instance_qr_generated", "whatsapp_instance_connected"]
