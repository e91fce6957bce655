"""
Stub Connection Adapter

In-process stand-in for the protocol engine, used for local development
and tests.

- A credential directory without ``creds.json`` yields a QR payload
- A directory with ``creds.json`` opens immediately as the saved account
- Scans, drops and remote logouts are triggered explicitly (or the scan
  after ``auto_pair_seconds``)
- ``fail_open`` makes the next opens for a directory raise
"""

import asyncio
import json
import logging
from pathlib import Path
from uuid import uuid4

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

CREDS_FILE = "creds.json"

DEFAULT_USER = RemoteUser(id="5511999999999:1@s.whatsapp.net", name="Stub User")


class StubTransport(BaseTransport):
    """Transport driven by explicit simulation calls."""

    def __init__(
        self,
        credential_dir: Path,
        saved_user: RemoteUser | None = None,
        auto_pair_seconds: float | None = None,
    ):
        super().__init__()
        self.credential_dir = credential_dir
        self.saved_user = saved_user
        self.auto_pair_seconds = auto_pair_seconds
        self.qr_payload: str | None = None
        self.is_open = False
        self.logged_out = False
        self.fail_sends = False
        self.fail_logout = False
        self.sent_messages: list[dict[str, str]] = []
        self._auto_pair: asyncio.TimerHandle | None = None

    def boot(self) -> None:
        """Emit the initial updates of a fresh connection."""
        if self.closed:
            return
        self.emit(ConnectionUpdate(connection=ConnectionState.CONNECTING))
        if self.saved_user is not None:
            self._open(self.saved_user)
            return
        self.qr_payload = f"2@{uuid4().hex},{uuid4().hex[:16]}"
        self.emit(ConnectionUpdate(qr=self.qr_payload))
        if self.auto_pair_seconds is not None:
            loop = asyncio.get_running_loop()
            self._auto_pair = loop.call_later(self.auto_pair_seconds, self.simulate_scan)

    def _open(self, user: RemoteUser) -> None:
        self.is_open = True
        self.emit(ConnectionUpdate(connection=ConnectionState.OPEN, user=user))

    def _close(self, code: int, message: str = "") -> None:
        if self.closed:
            return
        if self._auto_pair is not None:
            self._auto_pair.cancel()
        self.is_open = False
        self.emit(
            ConnectionUpdate(
                connection=ConnectionState.CLOSE,
                close_reason=CloseReason(code=code, message=message),
            )
        )

    # =========================================================================
    # Simulation
    # =========================================================================

    def simulate_scan(self, user: RemoteUser | None = None) -> None:
        """The QR code was scanned on the phone."""
        if self.closed or self.is_open:
            return
        self._open(user or DEFAULT_USER)

    def drop(self, code: int = DisconnectReason.CONNECTION_LOST) -> None:
        """Close the connection with ``code``."""
        self._close(int(code), "stub drop")

    def simulate_remote_logout(self) -> None:
        """The session was revoked from the phone."""
        self._close(DisconnectReason.LOGGED_OUT, "logged out from phone")

    # =========================================================================
    # Transport
    # =========================================================================

    async def save_credentials(self) -> None:
        user = self.user
        if user is None:
            return
        data = {"me": {"id": user.id, "name": user.name}}
        path = self.credential_dir / CREDS_FILE
        await asyncio.to_thread(path.write_text, json.dumps(data))

    async def send(self, destination: str, text: str) -> str | None:
        if self.closed or not self.is_open:
            raise AdapterError("Connection is not open", code="NOT_OPEN")
        if self.fail_sends:
            raise AdapterError("Simulated send failure", code="STUB_SEND_FAILED", retryable=True)

        message_id = f"stub_msg_{uuid4().hex[:16]}"
        self.sent_messages.append({"id": message_id, "to": destination, "text": text})
        logger.info(
            f"[STUB] Sent text message to {destination}",
            extra={"to": destination, "message_id": message_id},
        )
        return message_id

    async def logout(self) -> None:
        if self.fail_logout:
            raise AdapterError("Simulated logout failure", code="STUB_LOGOUT_FAILED")
        if self.closed:
            raise AdapterError("Connection already closed", code="CLOSED")
        self.logged_out = True
        self._close(DisconnectReason.LOGGED_OUT, "logout")

    async def terminate(self) -> None:
        self._close(DisconnectReason.CONNECTION_CLOSED, "terminated")


class StubConnectionAdapter(ConnectionAdapter):
    """Adapter that hands out StubTransports and remembers them for inspection."""

    name = "stub"

    def __init__(self, auto_pair_seconds: float | None = None):
        self.auto_pair_seconds = auto_pair_seconds
        self.transports: list[StubTransport] = []
        self._open_failures: dict[Path, int] = {}

    def fail_open(self, credential_dir: Path, times: int = 1) -> None:
        """Make the next ``times`` opens of ``credential_dir`` raise AdapterError."""
        self._open_failures[Path(credential_dir)] = times

    def transports_for(self, credential_dir: Path) -> list[StubTransport]:
        path = Path(credential_dir)
        return [t for t in self.transports if t.credential_dir == path]

    def latest(self, credential_dir: Path) -> StubTransport | None:
        transports = self.transports_for(credential_dir)
        return transports[-1] if transports else None

    @staticmethod
    def write_credentials(credential_dir: Path, user: RemoteUser = DEFAULT_USER) -> None:
        """Pre-seed a credential directory as if the account had paired before."""
        path = Path(credential_dir)
        path.mkdir(parents=True, exist_ok=True)
        (path / CREDS_FILE).write_text(json.dumps({"me": {"id": user.id, "name": user.name}}))

    def _load_user(self, credential_dir: Path) -> RemoteUser | None:
        path = credential_dir / CREDS_FILE
        if not path.exists():
            return None
        try:
            me = json.loads(path.read_text()).get("me") or {}
        except (OSError, ValueError) as e:
            logger.warning(f"[STUB] Unreadable credentials in {credential_dir}: {e}")
            return None
        if not me.get("id"):
            return None
        return RemoteUser(id=me["id"], name=me.get("name"))

    async def open(self, credential_dir: Path) -> OpenedTransport:
        path = Path(credential_dir)
        remaining = self._open_failures.get(path, 0)
        if remaining > 0:
            self._open_failures[path] = remaining - 1
            raise AdapterError(f"Simulated open failure for {path}", code="STUB_OPEN_FAILED", retryable=True)

        saved_user = await asyncio.to_thread(self._load_user, path)
        transport = StubTransport(path, saved_user=saved_user, auto_pair_seconds=self.auto_pair_seconds)
        self.transports.append(transport)

        # Updates arrive after open() returns, like a real socket.
        asyncio.get_running_loop().call_soon(transport.boot)

        logger.info(
            "[STUB] Opened transport",
            extra={"credential_dir": str(path), "restored": saved_user is not None},
        )
        return OpenedTransport(transport=transport, save_credentials=transport.save_credentials)
