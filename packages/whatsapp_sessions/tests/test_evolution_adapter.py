"""
Tests for the Evolution API connection adapter.

The Evolution server is replaced by an in-memory fake behind
httpx.MockTransport.
"""

import json

import httpx
import pytest
import pytest_asyncio

from whatsapp_sessions.adapters.base import AdapterError, ConnectionState
from whatsapp_sessions.adapters.evolution import METADATA_FILE, EvolutionConnectionAdapter, instance_name_for
from whatsapp_sessions.keys import SessionKey
from whatsapp_sessions.persistence.models import InstanceStatus

API_URL = "https://evolution.test"
API_KEY = "test-api-key"


class FakeEvolutionApi:
    """Minimal stateful Evolution API."""

    def __init__(self):
        self.instances: dict[str, dict] = {}
        self.requests: list[tuple[str, str]] = []
        self.sent: list[dict] = []
        self.qr_code = "2@first-code"
        self.fail_with: int | None = None
        self.malformed_state = False

    def pair(self, name: str, owner: str = "5511977776666@s.whatsapp.net", profile: str = "Loja Evo") -> None:
        self.instances[name].update(state="open", ownerJid=owner, profileName=profile)

    def close(self, name: str, reason: int) -> None:
        self.instances[name].update(state="close", disconnectionReasonCode=reason)

    def handler(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path
        self.requests.append((method, path))

        if request.headers.get("apikey") != API_KEY:
            return httpx.Response(401, json={"error": "Unauthorized"})
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"message": "boom"})

        if method == "POST" and path == "/instance/create":
            name = json.loads(request.content)["instanceName"]
            if name in self.instances:
                return httpx.Response(403, json={"response": {"message": ["name already in use"]}})
            self.instances[name] = {"name": name, "state": "close"}
            return httpx.Response(201, json={"instance": {"instanceName": name, "status": "created"}})

        if method == "GET" and path.startswith("/instance/connectionState/"):
            name = path.rsplit("/", 1)[-1]
            if self.malformed_state:
                return httpx.Response(200, json=[{"instanceName": name}])
            state = self.instances.get(name, {}).get("state", "close")
            return httpx.Response(200, json={"instance": {"instanceName": name, "state": state}})

        if method == "GET" and path.startswith("/instance/connect/"):
            name = path.rsplit("/", 1)[-1]
            if name not in self.instances:
                return httpx.Response(404, json={"error": "Not Found"})
            if self.instances[name]["state"] == "close":
                self.instances[name]["state"] = "connecting"
            return httpx.Response(200, json={"code": self.qr_code, "pairingCode": None})

        if method == "GET" and path == "/instance/fetchInstances":
            name = request.url.params["instanceName"]
            return httpx.Response(200, json=[self.instances[name]] if name in self.instances else [])

        if method == "POST" and path.startswith("/message/sendText/"):
            body = json.loads(request.content)
            self.sent.append(body)
            return httpx.Response(201, json={"key": {"id": f"EVO{len(self.sent)}"}, "status": "PENDING"})

        if method == "DELETE" and path.startswith("/instance/logout/"):
            name = path.rsplit("/", 1)[-1]
            self.instances[name].update(state="close", ownerJid=None)
            return httpx.Response(200, json={"status": "SUCCESS"})

        return httpx.Response(404, json={"error": "Not Found"})


@pytest.fixture
def api():
    return FakeEvolutionApi()


@pytest_asyncio.fixture
async def evolution(api):
    adapter = EvolutionConnectionAdapter(
        api_url=API_URL + "/",
        api_key=API_KEY,
        poll_interval=0.01,
        http_transport=httpx.MockTransport(api.handler),
    )
    yield adapter
    await adapter.close()


@pytest_asyncio.fixture
async def open_transport(evolution, tmp_path):
    """Open a transport for <tmp>/t1/<instance_id>, collecting its updates."""
    opened = []

    async def open_(instance_id: str = "i1"):
        credential_dir = tmp_path / "t1" / instance_id
        credential_dir.mkdir(parents=True, exist_ok=True)
        result = await evolution.open(credential_dir)
        updates = []
        result.transport.subscribe(updates.append)
        opened.append(result.transport)
        return result, updates

    yield open_
    for transport in opened:
        await transport.terminate()


class TestInstanceName:
    def test_token_and_instance(self, tmp_path):
        assert instance_name_for(tmp_path / "t1" / "i1") == "t1_i1"


class TestEvolutionTransport:
    async def test_open_creates_instance_and_emits_qr(self, api, open_transport, wait_until, tmp_path):
        result, updates = await open_transport()

        await wait_until(lambda: any(u.qr for u in updates))

        assert updates[0].connection is ConnectionState.CONNECTING
        assert [u.qr for u in updates if u.qr] == ["2@first-code"]
        assert ("POST", "/instance/create") in api.requests
        assert json.loads((tmp_path / "t1" / "i1" / METADATA_FILE).read_text())["instance_name"] == "t1_i1"

    async def test_new_qr_code_is_emitted_once(self, api, open_transport, wait_until):
        _, updates = await open_transport()
        await wait_until(lambda: any(u.qr for u in updates))

        api.qr_code = "2@second-code"
        await wait_until(lambda: len([u for u in updates if u.qr]) == 2)

        assert [u.qr for u in updates if u.qr] == ["2@first-code", "2@second-code"]

    async def test_open_state_resolves_account(self, api, open_transport, wait_until):
        result, updates = await open_transport()
        await wait_until(lambda: "t1_i1" in api.instances)

        api.pair("t1_i1")
        await wait_until(lambda: any(u.connection is ConnectionState.OPEN for u in updates))

        opened = next(u for u in updates if u.connection is ConnectionState.OPEN)
        assert opened.user.id == "5511977776666@s.whatsapp.net"
        assert opened.user.name == "Loja Evo"
        assert result.transport.user == opened.user

    async def test_remote_close_carries_reason(self, api, open_transport, wait_until):
        result, updates = await open_transport()
        await wait_until(lambda: "t1_i1" in api.instances)
        api.pair("t1_i1")
        await wait_until(lambda: any(u.connection is ConnectionState.OPEN for u in updates))

        api.close("t1_i1", 401)
        await wait_until(lambda: result.transport.closed)

        assert updates[-1].connection is ConnectionState.CLOSE
        assert updates[-1].close_reason.is_logout

    async def test_existing_metadata_skips_create(self, api, open_transport, tmp_path):
        credential_dir = tmp_path / "t1" / "i1"
        credential_dir.mkdir(parents=True)
        (credential_dir / METADATA_FILE).write_text(json.dumps({"instance_name": "t1_i1"}))

        await open_transport()

        assert ("POST", "/instance/create") not in api.requests

    async def test_instance_that_already_exists_is_adopted(self, api, open_transport):
        api.instances["t1_i1"] = {"name": "t1_i1", "state": "close"}

        result, _ = await open_transport()

        assert not result.transport.closed

    async def test_send(self, api, open_transport):
        result, _ = await open_transport()

        message_id = await result.transport.send("5511988887777@s.whatsapp.net", "Olá")

        assert message_id == "EVO1"
        assert api.sent == [{"number": "5511988887777", "text": "Olá"}]

    async def test_logout(self, api, open_transport, wait_until):
        result, updates = await open_transport()

        await result.transport.logout()

        assert ("DELETE", "/instance/logout/t1_i1") in api.requests
        assert result.transport.closed
        assert updates[-1].close_reason.is_logout

    async def test_polling_failure_is_a_transient_close(self, api, open_transport, wait_until):
        result, updates = await open_transport()
        api.fail_with = 502

        await wait_until(lambda: result.transport.closed)

        assert updates[-1].close_reason.code == 408

    async def test_malformed_state_payload_is_a_transient_close(self, api, open_transport, wait_until):
        result, updates = await open_transport()
        await wait_until(lambda: any(u.qr for u in updates))
        api.malformed_state = True

        await wait_until(lambda: result.transport.closed)

        assert updates[-1].connection is ConnectionState.CLOSE
        assert updates[-1].close_reason.code == 408
        assert "AttributeError" in updates[-1].close_reason.message


class TestRequests:
    async def test_server_error_is_retryable(self, api, evolution):
        api.fail_with = 503

        with pytest.raises(AdapterError) as exc_info:
            await evolution.connection_state("t1_i1")

        assert exc_info.value.code == "503"
        assert exc_info.value.retryable

    async def test_client_error_is_not_retryable(self, evolution):
        with pytest.raises(AdapterError) as exc_info:
            await evolution.connect("missing")

        assert exc_info.value.code == "404"
        assert not exc_info.value.retryable

    async def test_bad_api_key(self, api):
        adapter = EvolutionConnectionAdapter(
            api_url=API_URL, api_key="wrong", http_transport=httpx.MockTransport(api.handler)
        )

        with pytest.raises(AdapterError) as exc_info:
            await adapter.connection_state("t1_i1")

        assert exc_info.value.code == "401"
        assert str(exc_info.value) == "Unauthorized"
        await adapter.close()

    async def test_network_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        adapter = EvolutionConnectionAdapter(
            api_url=API_URL, api_key=API_KEY, http_transport=httpx.MockTransport(refuse)
        )

        with pytest.raises(AdapterError) as exc_info:
            await adapter.connection_state("t1_i1")

        assert exc_info.value.code == "HTTP_ERROR"
        assert exc_info.value.retryable
        await adapter.close()

    async def test_fetch_instance_accepts_wrapped_entries(self, api, evolution):
        api.instances["t1_i1"] = {"instance": {"instanceName": "t1_i1", "owner": "551100@s.whatsapp.net"}}

        data = await evolution.fetch_instance("t1_i1")

        assert data["owner"] == "551100@s.whatsapp.net"


class TestManagerOverEvolution:
    async def test_pairing_through_manager(self, api, evolution, make_manager, wait_until):
        manager = make_manager(adapter=evolution)

        result = await manager.create_or_resume_session("t1")
        assert result.status is InstanceStatus.QR_GENERATED
        assert "2@first-code" in result.qr

        api.pair(f"t1_{result.instance_id}")
        await wait_until(lambda: manager.get_status("t1").connected)

        assert manager.get_status("t1").identity.phone == "5511977776666"

        sent = await manager.send("t1", result.instance_id, "5511988887777", "hello")
        assert sent.message_id == "EVO1"

        await manager.disconnect("t1", result.instance_id)
        assert ("DELETE", f"/instance/logout/t1_{result.instance_id}") in api.requests
        assert SessionKey("t1", result.instance_id) not in manager.registry
