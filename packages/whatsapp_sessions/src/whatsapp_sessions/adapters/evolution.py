"""
Evolution API Connection Adapter

Runs WhatsApp sessions on an Evolution API server (Baileys-based WhatsApp
Web integration). Each session maps to one remote instance named
``<tenant_token>_<instance_id>``. The transport polls the instance's
connection state and turns it into connection updates.

Documentation: https://doc.evolution-api.com/
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import httpx

from whatsapp_sessions.adapters.base import (
    AdapterError,
    BaseTransport,
    CloseReason,
    ConnectionAdapter,
    ConnectionState,
    ConnectionUpdate,
    DisconnectReason,
    OpenedTransport,
    RemoteUser,
)

logger = logging.getLogger(__name__)

METADATA_FILE = "evolution.json"


def instance_name_for(credential_dir: Path) -> str:
    """Remote instance name for a ``<root>/<token>/<instance_id>`` directory."""
    path = Path(credential_dir)
    return f"{path.parent.name}_{path.name}"


class EvolutionConnectionAdapter(ConnectionAdapter):
    """
    Connection adapter backed by the Evolution API REST endpoints.
    """

    name = "evolution"

    def __init__(
        self,
        api_url: str,
        api_key: str,
        poll_interval: float = 2.0,
        timeout: float = 30.0,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize Evolution API adapter.

        Args:
            api_url: Base URL of Evolution API (e.g., "https://evolution-api.example.com")
            api_key: API key for authentication
            poll_interval: Seconds between connection state polls
            timeout: HTTP request timeout
            http_transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._http_transport = http_transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={
                    "Content-Type": "application/json",
                    "apikey": self.api_key,
                },
                transport=self._http_transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        json_data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Make an authenticated API request."""
        client = await self._get_client()
        url = f"{self.api_url}{endpoint}"

        try:
            response = await client.request(method.upper(), url, json=json_data, params=params)
        except httpx.RequestError as e:
            logger.error(f"HTTP request failed: {e}")
            raise AdapterError(
                message=f"HTTP request failed: {e}",
                code="HTTP_ERROR",
                retryable=True,
            ) from e

        try:
            response_data = response.json() if response.content else {}
        except ValueError:
            response_data = {"message": response.text}

        if response.status_code >= 400:
            error = "Unknown error"
            if isinstance(response_data, dict):
                error = response_data.get("error") or response_data.get("message") or error
                if isinstance(response_data.get("response"), dict):
                    error = response_data["response"].get("message", error)
            raise AdapterError(
                message=str(error),
                code=str(response.status_code),
                details=response_data if isinstance(response_data, dict) else {"body": response_data},
                retryable=response.status_code >= 500,
            )

        return response_data

    # =========================================================================
    # Instance API
    # =========================================================================

    async def create_instance(self, instance_name: str) -> dict[str, Any]:
        """Create the remote instance (QR-based Baileys integration)."""
        payload = {
            "instanceName": instance_name,
            "qrcode": True,
            "integration": "WHATSAPP-BAILEYS",
        }
        return await self._make_request("POST", "/instance/create", payload)

    async def connection_state(self, instance_name: str) -> str:
        """Remote state: ``open``, ``connecting`` or ``close``."""
        response = await self._make_request("GET", f"/instance/connectionState/{instance_name}")
        instance = response.get("instance") or {}
        return instance.get("state") or response.get("state") or "close"

    async def connect(self, instance_name: str) -> str | None:
        """Ask the instance to connect; returns the raw QR payload if pairing is needed."""
        response = await self._make_request("GET", f"/instance/connect/{instance_name}")
        return response.get("code") or (response.get("qrcode") or {}).get("code")

    async def fetch_instance(self, instance_name: str) -> dict[str, Any]:
        """Instance details (owner, profile name, last disconnection reason)."""
        response = await self._make_request(
            "GET", "/instance/fetchInstances", params={"instanceName": instance_name}
        )
        entries = response if isinstance(response, list) else response.get("instance", [])
        if isinstance(entries, dict):
            entries = [entries]
        for entry in entries:
            data = entry.get("instance", entry)
            if instance_name in (data.get("name"), data.get("instanceName")):
                return data
        return {}

    async def send_text(self, instance_name: str, number: str, text: str) -> str | None:
        response = await self._make_request(
            "POST",
            f"/message/sendText/{instance_name}",
            {"number": number, "text": text},
        )
        return (response.get("key") or {}).get("id") or response.get("id")

    async def logout_instance(self, instance_name: str) -> None:
        await self._make_request("DELETE", f"/instance/logout/{instance_name}")

    # =========================================================================
    # ConnectionAdapter
    # =========================================================================

    async def open(self, credential_dir: Path) -> OpenedTransport:
        path = Path(credential_dir)
        name = instance_name_for(path)
        metadata = path / METADATA_FILE

        exists = await asyncio.to_thread(metadata.exists)
        if not exists:
            try:
                await self.create_instance(name)
            except AdapterError as e:
                # 403 "name already in use": the instance survived a lost metadata file
                if e.code != "403":
                    raise
            await asyncio.to_thread(
                metadata.write_text, json.dumps({"instance_name": name, "owner": None})
            )

        transport = EvolutionTransport(self, name, path)
        transport.start()
        logger.info("Opened Evolution transport", extra={"instance": name, "restored": exists})
        return OpenedTransport(transport=transport, save_credentials=transport.save_credentials)


class EvolutionTransport(BaseTransport):
    """Transport that mirrors the remote instance state into connection updates."""

    def __init__(self, adapter: EvolutionConnectionAdapter, instance_name: str, credential_dir: Path):
        super().__init__()
        self.adapter = adapter
        self.instance_name = instance_name
        self.credential_dir = credential_dir
        self._task: asyncio.Task | None = None
        self._opened = False

    def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._poll())

    async def _resolve_user(self) -> RemoteUser | None:
        data = await self.adapter.fetch_instance(self.instance_name)
        owner = data.get("ownerJid") or data.get("owner")
        if not owner:
            return None
        return RemoteUser(id=owner, name=data.get("profileName"))

    async def _close_code(self) -> int:
        data = await self.adapter.fetch_instance(self.instance_name)
        code = data.get("disconnectionReasonCode")
        return int(code) if code else int(DisconnectReason.CONNECTION_CLOSED)

    async def _poll(self) -> None:
        self.emit(ConnectionUpdate(connection=ConnectionState.CONNECTING))
        last_qr: str | None = None
        try:
            while not self.closed:
                state = await self.adapter.connection_state(self.instance_name)
                if state == "open":
                    if not self._opened:
                        self._opened = True
                        user = await self._resolve_user()
                        self.emit(ConnectionUpdate(connection=ConnectionState.OPEN, user=user))
                elif self._opened:
                    if state == "close":
                        code = await self._close_code()
                        self.emit(
                            ConnectionUpdate(
                                connection=ConnectionState.CLOSE,
                                close_reason=CloseReason(code=code, message="remote instance closed"),
                            )
                        )
                        return
                else:
                    qr = await self.adapter.connect(self.instance_name)
                    if qr and qr != last_qr:
                        last_qr = qr
                        self.emit(ConnectionUpdate(qr=qr))
                await asyncio.sleep(self.adapter.poll_interval)
        except AdapterError as e:
            logger.warning(
                f"Evolution polling failed: {e}",
                extra={"instance": self.instance_name, "code": e.code},
            )
            self._lost(str(e))
        except Exception as e:
            # Malformed payloads must still end in a close so the session is retried
            logger.exception("Unexpected Evolution polling error", extra={"instance": self.instance_name})
            self._lost(f"{type(e).__name__}: {e}")

    def _lost(self, message: str) -> None:
        if not self.closed:
            self.emit(
                ConnectionUpdate(
                    connection=ConnectionState.CLOSE,
                    close_reason=CloseReason(code=DisconnectReason.CONNECTION_LOST, message=message),
                )
            )

    def _stop(self, code: int, message: str) -> None:
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
        if not self.closed:
            self.emit(
                ConnectionUpdate(
                    connection=ConnectionState.CLOSE,
                    close_reason=CloseReason(code=code, message=message),
                )
            )

    async def save_credentials(self) -> None:
        user = self.user
        data = {"instance_name": self.instance_name, "owner": user.id if user else None}
        path = self.credential_dir / METADATA_FILE
        await asyncio.to_thread(path.write_text, json.dumps(data))

    async def send(self, destination: str, text: str) -> str | None:
        if self.closed:
            raise AdapterError("Connection is closed", code="CLOSED")
        number = destination.split("@")[0]
        message_id = await self.adapter.send_text(self.instance_name, number, text)
        logger.info(
            "Sent text message via Evolution API",
            extra={"to": number, "message_id": message_id, "instance": self.instance_name},
        )
        return message_id

    async def logout(self) -> None:
        await self.adapter.logout_instance(self.instance_name)
        self._stop(DisconnectReason.LOGGED_OUT, "logout")

    async def terminate(self) -> None:
        self._stop(DisconnectReason.CONNECTION_CLOSED, "terminated")
